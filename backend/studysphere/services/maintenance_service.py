# backend/studysphere/services/maintenance_service.py
"""
Conversation maintenance and repair jobs.

Legacy data breaks the one-conversation-per-pair rule in a few ways: slots
stored in the wrong order, the same pair stored twice, the old non-unique
participants index, and users whose names are placeholders. Each job here
repairs one of those and is safe to re-run.

Every record is handled inside its own SAVEPOINT. A record that fails is
counted and the batch moves on. A dry run does the same work and rolls it
back at the end; schema changes are skipped entirely.
"""

from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import asdict, dataclass
import logging
import re
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException, TransientStoreException
from ..models.conversation import (
    LEGACY_PARTICIPANTS_INDEX_NAME,
    PAIR_INDEX_NAME,
    Conversation,
    normalize_pair,
)
from ..models.user import User
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.conversation_repository import ConversationRepository
from ..repositories.factory import RepositoryFactory
from ..repositories.message_repository import MessageRepository
from ..repositories.user_repository import UserRepository
from .base import BaseService
from .identity_resolver import display_name_from_email, display_name_from_identifier

logger = logging.getLogger(__name__)

PLACEHOLDER_NAME_RE = re.compile(r"^(default.*|unknown|undefined|null|none)$", re.IGNORECASE)
IDENTIFIER_NAME_RE = re.compile(r"^(Student|Tutor|Admin|User|Unknown) \w{4}$")
ID_FRAGMENT_MIN_LENGTH = 4


def is_placeholder_name(user: User) -> bool:
    """
    True when a user's stored name needs replacing.

    Blank parts, known placeholder words, the "{Role} xxxx" fallback shape
    and fragments of the user's own id all count. An id fragment must
    contain a digit, so real names that happen to spell part of an id are
    left alone.
    """
    first = (user.first_name or "").strip()
    last = (user.last_name or "").strip()
    if not first or not last:
        return True
    if IDENTIFIER_NAME_RE.match(f"{first} {last}"):
        return True

    user_id = str(user.id or "").lower()
    for part in (first, last):
        if PLACEHOLDER_NAME_RE.match(part):
            return True
        if (
            user_id
            and len(part) >= ID_FRAGMENT_MIN_LENGTH
            and part.isalnum()
            and any(ch.isdigit() for ch in part)
            and part.lower() in user_id
        ):
            return True
    return False


def derive_name_parts(user: User) -> Tuple[str, str]:
    """Email-derived name, else the identifier fallback, split into first/last."""
    name = display_name_from_email(user.email) or display_name_from_identifier(
        str(user.id or ""), user.role
    )
    first, _, last = name.partition(" ")
    return first, last


@dataclass
class MaintenanceReport:
    """Counters for one maintenance step."""

    name: str
    examined: int = 0
    updated: int = 0
    removed: int = 0
    skipped: int = 0
    failed: int = 0
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def __str__(self) -> str:
        prefix = "[dry-run] " if self.dry_run else ""
        return (
            f"{prefix}{self.name}: examined={self.examined} updated={self.updated} "
            f"removed={self.removed} skipped={self.skipped} failed={self.failed}"
        )


class ConversationMaintenanceService(BaseService):
    """Idempotent repair jobs for conversations and user display names."""

    def __init__(
        self,
        db: Session,
        conversation_repository: Optional[ConversationRepository] = None,
        message_repository: Optional[MessageRepository] = None,
        user_repository: Optional[UserRepository] = None,
    ):
        super().__init__(db)
        self.conversation_repository = (
            conversation_repository or RepositoryFactory.create_conversation_repository(db)
        )
        self.message_repository = message_repository or RepositoryFactory.create_message_repository(
            db
        )
        self.user_repository = user_repository or RepositoryFactory.create_user_repository(db)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _step(self, report: MaintenanceReport) -> Iterator[MaintenanceReport]:
        """Commit the step, or roll it back for a dry run, then record outcomes."""
        try:
            yield report
            if report.dry_run:
                self.db.rollback()
            else:
                self.db.commit()
        except (SQLAlchemyError, RepositoryException) as e:
            self.logger.error("[MAINTENANCE] %s aborted: %s", report.name, e)
            self.db.rollback()
            raise TransientStoreException(details={"step": report.name}) from e
        except Exception:
            self.db.rollback()
            raise

        for outcome in ("updated", "removed", "skipped", "failed"):
            prometheus_metrics.record_maintenance_outcome(
                report.name, outcome, getattr(report, outcome)
            )
        self.logger.info("[MAINTENANCE] %s", report)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    @BaseService.measure_operation("normalize_pairs")
    def normalize_pairs(self, dry_run: bool = False) -> MaintenanceReport:
        """
        Put every conversation's slots in sorted order.

        Rows with a missing slot or a self-pair are counted as failed. A
        swap that would collide with an already normalized row is skipped;
        collapse_duplicates merges that pair.
        """
        report = MaintenanceReport(name="normalize_pairs", dry_run=dry_run)
        with self._step(report):
            for conversation in self.conversation_repository.list_all_ordered():
                report.examined += 1
                one, two = conversation.participant_one_id, conversation.participant_two_id
                if not one or not two or one == two:
                    report.failed += 1
                    self.logger.warning(
                        "[MAINTENANCE] Malformed conversation %s (%s, %s)",
                        conversation.id,
                        one,
                        two,
                    )
                    continue
                if conversation.is_normalized:
                    continue

                try:
                    with self.conversation_repository.savepoint():
                        self.conversation_repository.swap_slots(conversation)
                except IntegrityError:
                    report.skipped += 1
                    self.logger.info(
                        "[MAINTENANCE] Swap of %s collides with an existing pair; "
                        "left for dedupe",
                        conversation.id,
                    )
                    continue
                report.updated += 1
                self.logger.info("[MAINTENANCE] Normalized conversation %s", conversation.id)
        return report

    def _group_by_pair(
        self, conversations: List[Conversation], report: MaintenanceReport
    ) -> "OrderedDict[Tuple[str, str], List[Conversation]]":
        groups: "OrderedDict[Tuple[str, str], List[Conversation]]" = OrderedDict()
        for conversation in conversations:
            report.examined += 1
            one, two = conversation.participant_one_id, conversation.participant_two_id
            if not one or not two or one == two:
                report.skipped += 1
                continue
            groups.setdefault(normalize_pair(one, two), []).append(conversation)
        return groups

    def _merge_into(self, keeper: Conversation, duplicate: Conversation) -> int:
        """Move one duplicate's state onto the keeper and delete it."""
        moved = self.message_repository.reassign_conversation(duplicate.id, keeper.id)

        keeper_participants = {keeper.participant_one_id, keeper.participant_two_id}
        for user_id, count in duplicate.unread_count.items():
            if user_id not in keeper_participants:
                continue
            if count > 0:
                self.conversation_repository.increment_unread(keeper.id, user_id, count)
            else:
                self.conversation_repository.ensure_unread_row(keeper.id, user_id)

        if duplicate.last_message_time is not None and (
            keeper.last_message_time is None
            or duplicate.last_message_time > keeper.last_message_time
        ):
            self.conversation_repository.record_last_message(
                keeper.id, duplicate.last_message or "", duplicate.last_message_time
            )

        if keeper.tutor_profile_id is None and duplicate.tutor_profile_id is not None:
            keeper.tutor_profile_id = duplicate.tutor_profile_id
        if keeper.student_profile_id is None and duplicate.student_profile_id is not None:
            keeper.student_profile_id = duplicate.student_profile_id

        self.conversation_repository.delete_conversation(duplicate)
        return moved

    @BaseService.measure_operation("collapse_duplicates")
    def collapse_duplicates(self, dry_run: bool = False) -> MaintenanceReport:
        """
        Merge conversations that share a participant pair.

        The earliest conversation by (created_at, id) is kept. Messages move
        to it and unread counts are added to its counters before each
        duplicate is deleted. A keeper with swapped slots is normalized once
        all of its duplicates are gone.
        """
        report = MaintenanceReport(name="collapse_duplicates", dry_run=dry_run)
        with self._step(report):
            conversations = self.conversation_repository.list_all_ordered()
            groups = self._group_by_pair(conversations, report)

            for pair, members in groups.items():
                if len(members) < 2:
                    continue
                keeper, duplicates = members[0], members[1:]
                merged = 0
                for duplicate in duplicates:
                    duplicate_id = duplicate.id
                    try:
                        with self.conversation_repository.savepoint():
                            moved = self._merge_into(keeper, duplicate)
                    except (IntegrityError, RepositoryException) as e:
                        report.failed += 1
                        self.logger.error(
                            "[MAINTENANCE] Could not merge %s into %s: %s",
                            duplicate_id,
                            keeper.id,
                            e,
                        )
                        continue
                    merged += 1
                    report.removed += 1
                    self.logger.info(
                        "[MAINTENANCE] Merged %s into %s for pair %s (%d messages moved)",
                        duplicate_id,
                        keeper.id,
                        "/".join(pair),
                        moved,
                    )
                if merged == len(duplicates) and not keeper.is_normalized:
                    # The keeper now holds the pair alone; sort its slots so lookups find it
                    try:
                        with self.conversation_repository.savepoint():
                            self.conversation_repository.swap_slots(keeper)
                    except (IntegrityError, RepositoryException) as e:
                        report.failed += 1
                        self.logger.error(
                            "[MAINTENANCE] Could not normalize keeper %s: %s", keeper.id, e
                        )
                if merged:
                    report.updated += 1
        return report

    @BaseService.measure_operation("rebuild_pair_index")
    def rebuild_pair_index(self, dry_run: bool = False) -> MaintenanceReport:
        """
        Replace the legacy participants index with the unique pair index.

        Creating the unique index fails while duplicates remain; that is
        counted as failed and the legacy index is left alone.
        """
        report = MaintenanceReport(name="rebuild_pair_index", dry_run=dry_run)
        with self._step(report):
            connection = self.db.connection()
            existing = {
                index["name"] for index in inspect(connection).get_indexes(Conversation.__tablename__)
            }
            report.examined = len(existing)

            if PAIR_INDEX_NAME in existing:
                report.skipped += 1
            elif dry_run:
                report.updated += 1
                self.logger.info("[MAINTENANCE] Would create %s", PAIR_INDEX_NAME)
            else:
                pair_index = next(
                    index
                    for index in Conversation.__table__.indexes
                    if index.name == PAIR_INDEX_NAME
                )
                try:
                    with self.conversation_repository.savepoint():
                        pair_index.create(bind=self.db.connection(), checkfirst=True)
                except SQLAlchemyError as e:
                    report.failed += 1
                    self.logger.error(
                        "[MAINTENANCE] Could not create %s; run dedupe first: %s",
                        PAIR_INDEX_NAME,
                        e,
                    )
                    return report
                report.updated += 1
                self.logger.info("[MAINTENANCE] Created %s", PAIR_INDEX_NAME)

            if LEGACY_PARTICIPANTS_INDEX_NAME in existing:
                if dry_run:
                    self.logger.info(
                        "[MAINTENANCE] Would drop %s", LEGACY_PARTICIPANTS_INDEX_NAME
                    )
                else:
                    self.db.connection().exec_driver_sql(
                        f"DROP INDEX IF EXISTS {LEGACY_PARTICIPANTS_INDEX_NAME}"
                    )
                    self.logger.info("[MAINTENANCE] Dropped %s", LEGACY_PARTICIPANTS_INDEX_NAME)
                report.removed += 1
        return report

    @BaseService.measure_operation("backfill_display_names")
    def backfill_display_names(self, dry_run: bool = False) -> MaintenanceReport:
        """Replace blank or placeholder user names with derived ones."""
        report = MaintenanceReport(name="backfill_display_names", dry_run=dry_run)
        with self._step(report):
            for user in self.user_repository.list_all_ordered():
                if not is_placeholder_name(user):
                    continue
                report.examined += 1

                first, last = derive_name_parts(user)
                if (first, last) == ((user.first_name or "").strip(), (user.last_name or "").strip()):
                    report.skipped += 1
                    continue

                previous = f"{user.first_name or ''} {user.last_name or ''}".strip()
                try:
                    with self.user_repository.savepoint():
                        self.user_repository.update(user.id, first_name=first, last_name=last)
                except (SQLAlchemyError, RepositoryException) as e:
                    report.failed += 1
                    self.logger.error("[MAINTENANCE] Could not rename user %s: %s", user.id, e)
                    continue
                report.updated += 1
                self.logger.info(
                    "[MAINTENANCE] Renamed user %s: %r -> %r",
                    user.id,
                    previous,
                    f"{first} {last}".strip(),
                )
        return report

    def run_step(self, step: str, dry_run: bool = False) -> List[MaintenanceReport]:
        """Run one named step, or every step in order for ``all``."""
        runners = {
            "normalize": self.normalize_pairs,
            "dedupe": self.collapse_duplicates,
            "index": self.rebuild_pair_index,
            "names": self.backfill_display_names,
        }
        if step == "all":
            return self.run_all(dry_run=dry_run)
        if step not in runners:
            raise ValueError(f"Unknown maintenance step: {step}")
        return [runners[step](dry_run=dry_run)]

    def run_all(self, dry_run: bool = False) -> List[MaintenanceReport]:
        """Normalize, collapse, normalize again, rebuild the index, backfill names."""
        return [
            self.normalize_pairs(dry_run=dry_run),
            self.collapse_duplicates(dry_run=dry_run),
            self.normalize_pairs(dry_run=dry_run),
            self.rebuild_pair_index(dry_run=dry_run),
            self.backfill_display_names(dry_run=dry_run),
        ]
