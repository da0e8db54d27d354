#!/usr/bin/env python
# backend/studysphere/commands/repair_conversations.py
"""
Conversation repair command for StudySphere.

Brings legacy conversation data back in line with the one-conversation-
per-pair rule and replaces placeholder user names.

Usage:
    python -m studysphere.commands.repair_conversations                # Run every step
    python -m studysphere.commands.repair_conversations --step dedupe  # Run one step
    python -m studysphere.commands.repair_conversations --dry-run      # Report only
"""

import argparse
import json
import logging
import sys
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from studysphere.core.exceptions import TransientStoreException
from studysphere.database import SessionLocal
from studysphere.services.maintenance_service import (
    ConversationMaintenanceService,
    MaintenanceReport,
)

STEPS = ("all", "normalize", "dedupe", "index", "names")

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="repair_conversations",
        description="Repair conversation pairs, indexes and placeholder user names",
    )
    parser.add_argument(
        "--step",
        choices=STEPS,
        default="all",
        help="Which repair to run (default: all, in dependency order)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Do the work, report it, then roll back; schema changes are skipped",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print reports as JSON instead of text",
    )
    return parser


def run(db: Session, step: str, dry_run: bool = False) -> List[MaintenanceReport]:
    """Run the requested step(s) against an open session."""
    service = ConversationMaintenanceService(db)
    return service.run_step(step, dry_run=dry_run)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point. Returns a process exit code."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    logger.info("Starting conversation repair: step=%s dry_run=%s", args.step, args.dry_run)

    db = SessionLocal()
    try:
        reports = run(db, args.step, dry_run=args.dry_run)
    except TransientStoreException as e:
        logger.error("Conversation repair aborted: %s", e.message)
        return 2
    finally:
        db.close()

    if args.json:
        print(json.dumps([report.to_dict() for report in reports], indent=2))
    else:
        for report in reports:
            print(report)

    failed = sum(report.failed for report in reports)
    if failed:
        logger.warning("Conversation repair finished with %d failed records", failed)
        return 1
    logger.info("Conversation repair complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
