"""Tests for the repair_conversations command."""

import json

import pytest

from studysphere.commands import repair_conversations
from studysphere.core.exceptions import TransientStoreException
from studysphere.models import Conversation


@pytest.fixture
def use_test_session(db, monkeypatch):
    monkeypatch.setattr(repair_conversations, "SessionLocal", lambda: db)


@pytest.fixture
def reversed_duplicate(make_user, make_raw_conversation):
    a, b = make_user(), make_user()
    low, high = sorted([a.id, b.id])
    make_raw_conversation(low, high)
    make_raw_conversation(high, low)
    return low, high


class TestParser:
    def test_defaults(self) -> None:
        args = repair_conversations.build_parser().parse_args([])

        assert args.step == "all"
        assert args.dry_run is False
        assert args.json is False

    def test_rejects_unknown_step(self) -> None:
        with pytest.raises(SystemExit):
            repair_conversations.build_parser().parse_args(["--step", "vacuum"])


def test_run_single_step(db, reversed_duplicate) -> None:
    reports = repair_conversations.run(db, "dedupe")

    assert [r.name for r in reports] == ["collapse_duplicates"]
    assert db.query(Conversation).count() == 1


def test_main_prints_json(db, use_test_session, reversed_duplicate, capsys) -> None:
    code = repair_conversations.main(["--json"])

    assert code == 0
    reports = json.loads(capsys.readouterr().out)
    assert [r["name"] for r in reports][:2] == ["normalize_pairs", "collapse_duplicates"]
    assert reports[1]["removed"] == 1
    assert db.query(Conversation).count() == 1


def test_main_dry_run_changes_nothing(db, use_test_session, reversed_duplicate, capsys) -> None:
    code = repair_conversations.main(["--step", "dedupe", "--dry-run"])

    assert code == 0
    assert capsys.readouterr().out.startswith("[dry-run] collapse_duplicates")
    assert db.query(Conversation).count() == 2


def test_main_reports_failed_records(db, use_test_session, make_user, make_raw_conversation) -> None:
    make_raw_conversation(make_user().id, None)

    assert repair_conversations.main(["--step", "normalize"]) == 1


def test_main_store_failure_exit_code(use_test_session, monkeypatch) -> None:
    def broken(*args, **kwargs):
        raise TransientStoreException()

    monkeypatch.setattr(repair_conversations, "run", broken)

    assert repair_conversations.main([]) == 2
