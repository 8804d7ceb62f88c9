"""Summary: Tests for SQLite storage layer.

Importance: Ensures persistence behaves as expected for core workflows.
Alternatives: Rely on manual testing for storage operations.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from planpilot.models import ActionType, Label, UsageRecord, User
from planpilot.storage.sqlite_store import SqliteStore


def _store(tmp_path: Path) -> SqliteStore:
    store = SqliteStore(str(tmp_path / "test.db"))
    store.initialize()
    return store


def test_ensure_user_is_idempotent(tmp_path: Path) -> None:
    """Summary: Verify the same email always maps to the same user id.

    Importance: Cache keys and history rows are scoped by user id.
    Alternatives: Create a new user on every start.
    """

    store = _store(tmp_path)
    first = store.ensure_user(User(display_name="Local User", email="local@planpilot"))
    second = store.ensure_user(User(display_name="Local User", email="local@planpilot"))
    assert first == second
    stored = store.get_user(first)
    assert stored is not None
    assert stored.email == "local@planpilot"
    assert store.get_user(first + 1) is None


def test_labels_upsert_by_id(tmp_path: Path) -> None:
    """Summary: Verify saving a label twice updates it in place.

    Importance: Label sync should not duplicate the catalog.
    Alternatives: Delete and recreate labels on sync.
    """

    store = _store(tmp_path)
    store.save_label(Label(id="Label_1", name="Finance"), user_id=1)
    store.save_label(Label(id="Label_1", name="Finance", description="Bills"), user_id=1)
    store.save_label(Label(id="Label_2", name="Travel"), user_id=2)
    labels = store.list_labels(1)
    assert labels == [Label(id="Label_1", name="Finance", description="Bills")]


def test_rules_round_trip_actions(tmp_path: Path) -> None:
    """Summary: Verify rule actions and label names persist.

    Importance: Rule constraints are enforced from stored data.
    Alternatives: Keep rules in memory only.
    """

    store = _store(tmp_path)
    rule_id = store.create_rule(
        1, "Receipts", "File receipts", [ActionType.LABEL, ActionType.ARCHIVE], ["Finance"]
    )
    rules = store.list_rules(1)
    assert len(rules) == 1
    assert rules[0].id == rule_id
    assert rules[0].actions == (ActionType.LABEL, ActionType.ARCHIVE)
    assert rules[0].label_names == ("Finance",)
    assert store.list_rules(2) == []


def test_history_is_unique_per_plan(tmp_path: Path) -> None:
    """Summary: Ensure a plan can only be recorded once per thread.

    Importance: History doubles as the execution idempotency guard.
    Alternatives: Deduplicate at read time.
    """

    store = _store(tmp_path)
    first = store.add_history_entry(
        user_id=1,
        thread_id="T1",
        message_id="M1",
        plan_id="p1",
        rule_id=None,
        actions=[ActionType.LABEL],
        data={"label": "Finance"},
        automated=False,
    )
    duplicate = store.add_history_entry(
        user_id=1,
        thread_id="T1",
        message_id="M1",
        plan_id="p1",
        rule_id=None,
        actions=[ActionType.ARCHIVE],
        data={},
        automated=True,
    )
    second = store.add_history_entry(
        user_id=1,
        thread_id="T1",
        message_id="M1",
        plan_id="p2",
        rule_id=3,
        actions=[ActionType.ARCHIVE],
        data={},
        automated=True,
    )
    assert duplicate.id == first.id
    assert duplicate.actions == (ActionType.LABEL,)
    history = store.list_history(1)
    assert [entry.plan_id for entry in history] == ["p2", "p1"]
    assert history[0].rule_id == 3
    assert history[0].automated is True
    assert store.find_history_entry(1, "T1", "p3") is None


def test_usage_totals(tmp_path: Path) -> None:
    """Summary: Verify usage records accumulate per user.

    Importance: Quota reporting sums recorded usage.
    Alternatives: Keep a running counter only.
    """

    store = _store(tmp_path)
    now = datetime.utcnow()
    store.add_usage(UsageRecord(user_id=1, tokens_used=100, model="mock", created_at=now))
    store.add_usage(UsageRecord(user_id=1, tokens_used=50, model="mock", created_at=now))
    store.add_usage(UsageRecord(user_id=2, tokens_used=7, model="mock", created_at=now))
    assert store.total_usage(1) == 150
    assert len(store.list_usage(1)) == 2
    assert store.total_usage(3) == 0
