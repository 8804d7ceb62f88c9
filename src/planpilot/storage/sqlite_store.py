"""Summary: SQLite storage implementation for PlanPilot.

Importance: Provides a local-first relational store for users, rules, labels, history, and usage.
Alternatives: Use an ORM or an external database immediately.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from planpilot.models import (
    ActionType,
    Label,
    PlanExecutionHistoryEntry,
    PromptHistoryEntry,
    Rule,
    UsageRecord,
    User,
)


@dataclass(frozen=True)
class StoredUser:
    """Summary: User record with database identifier.

    Importance: Enables multi-user and future tenant boundaries.
    Alternatives: Keep only a single implicit user without records.
    """

    id: int
    display_name: str
    email: str


_HISTORY_COLUMNS = (
    "id, user_id, thread_id, message_id, plan_id, rule_id, actions, data, automated, created_at"
)


class SqliteStore:
    """Summary: SQLite-backed storage for PlanPilot.

    Importance: Enables local-first persistence with minimal dependencies.
    Alternatives: Use Postgres and SQLAlchemy from day one.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = Path(db_path)

    def initialize(self) -> None:
        """Summary: Create tables if they do not exist.

        Importance: Ensures the database is ready for planning and execution.
        Alternatives: Run migrations using a dedicated migration tool.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    display_name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS labels (
                    id TEXT NOT NULL,
                    user_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    PRIMARY KEY (id, user_id),
                    UNIQUE(name, user_id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS rules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    instructions TEXT NOT NULL,
                    actions TEXT NOT NULL,
                    label_names TEXT NOT NULL DEFAULT '[]'
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS plan_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    thread_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    plan_id TEXT NOT NULL,
                    rule_id INTEGER,
                    actions TEXT NOT NULL,
                    data TEXT NOT NULL,
                    automated INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE(user_id, thread_id, plan_id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS usage (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    tokens_used INTEGER NOT NULL,
                    model TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS prompt_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    prompt TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            connection.commit()

    def ensure_user(self, user: User) -> int:
        """Summary: Ensure a user exists and return their ID.

        Importance: Provides a stable user record for data ownership.
        Alternatives: Omit user records in single-user mode.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO users (display_name, email) VALUES (?, ?)",
                (user.display_name, user.email),
            )
            if cursor.rowcount:
                user_id = cursor.lastrowid
            else:
                cursor.execute("SELECT id FROM users WHERE email = ?", (user.email,))
                row = cursor.fetchone()
                user_id = int(row[0]) if row else 0
            connection.commit()
        return int(user_id)

    def get_user(self, user_id: int) -> StoredUser | None:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT id, display_name, email FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        return StoredUser(*row) if row else None

    def save_label(self, label: Label, user_id: int) -> None:
        """Summary: Create or update a label in the user's catalog.

        Importance: Labels are the targets offered to the planner.
        Alternatives: Read labels live from the mail provider on every plan.
        """

        with self._connection() as connection:
            connection.execute(
                """
                INSERT INTO labels (id, user_id, name, description) VALUES (?, ?, ?, ?)
                ON CONFLICT(id, user_id) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description
                """,
                (label.id, user_id, label.name, label.description),
            )
            connection.commit()

    def list_labels(self, user_id: int) -> list[Label]:
        with self._connection() as connection:
            rows = connection.execute(
                "SELECT id, name, description FROM labels WHERE user_id = ? ORDER BY name",
                (user_id,),
            ).fetchall()
        return [Label(*row) for row in rows]

    def create_rule(
        self,
        user_id: int,
        name: str,
        instructions: str,
        actions: list[ActionType],
        label_names: list[str] | None = None,
    ) -> int:
        """Summary: Persist a rule and return its ID.

        Importance: Rules constrain and attribute the plans the model proposes.
        Alternatives: Keep rules in a JSON config file.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO rules (user_id, name, instructions, actions, label_names)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    name,
                    instructions,
                    json.dumps([action.value for action in actions]),
                    json.dumps(label_names or []),
                ),
            )
            rule_id = cursor.lastrowid
            connection.commit()
        return int(rule_id)

    def list_rules(self, user_id: int) -> list[Rule]:
        with self._connection() as connection:
            rows = connection.execute(
                """
                SELECT id, user_id, name, instructions, actions, label_names
                FROM rules
                WHERE user_id = ?
                ORDER BY id ASC
                """,
                (user_id,),
            ).fetchall()
        return [
            Rule(
                id=int(row[0]),
                user_id=int(row[1]),
                name=row[2],
                instructions=row[3],
                actions=tuple(ActionType.parse(item) for item in json.loads(row[4])),
                label_names=tuple(json.loads(row[5])),
            )
            for row in rows
        ]

    def add_history_entry(
        self,
        user_id: int,
        thread_id: str,
        message_id: str,
        plan_id: str,
        rule_id: int | None,
        actions: list[ActionType],
        data: dict[str, Any],
        automated: bool,
    ) -> PlanExecutionHistoryEntry:
        """Summary: Append an execution record and return it.

        Importance: History is the proof that a plan was applied.
        Alternatives: Store only the last execution per thread.

        If an entry for the same (user, thread, plan) already exists, the
        existing entry is returned unchanged.
        """

        created_at = datetime.utcnow()
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO plan_history (
                    user_id, thread_id, message_id, plan_id, rule_id, actions, data, automated, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    thread_id,
                    message_id,
                    plan_id,
                    rule_id,
                    json.dumps([action.value for action in actions]),
                    json.dumps(data),
                    int(automated),
                    created_at.isoformat(),
                ),
            )
            connection.commit()
        entry = self.find_history_entry(user_id, thread_id, plan_id)
        if entry is None:
            raise RuntimeError(f"History entry for thread {thread_id} was not persisted")
        return entry

    def find_history_entry(
        self, user_id: int, thread_id: str, plan_id: str
    ) -> PlanExecutionHistoryEntry | None:
        with self._connection() as connection:
            row = connection.execute(
                f"""
                SELECT {_HISTORY_COLUMNS} FROM plan_history
                WHERE user_id = ? AND thread_id = ? AND plan_id = ?
                """,
                (user_id, thread_id, plan_id),
            ).fetchone()
        return _history_from_row(row) if row else None

    def list_history(self, user_id: int, limit: int = 50) -> list[PlanExecutionHistoryEntry]:
        with self._connection() as connection:
            rows = connection.execute(
                f"""
                SELECT {_HISTORY_COLUMNS} FROM plan_history
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [_history_from_row(row) for row in rows]

    def add_usage(self, record: UsageRecord) -> int:
        """Summary: Append a usage record.

        Importance: Tracks token consumption for quota and billing.
        Alternatives: Aggregate usage in a counter without per-call rows.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT INTO usage (user_id, tokens_used, model, created_at) VALUES (?, ?, ?, ?)",
                (record.user_id, record.tokens_used, record.model, record.created_at.isoformat()),
            )
            usage_id = cursor.lastrowid
            connection.commit()
        return int(usage_id)

    def list_usage(self, user_id: int, limit: int = 50) -> list[UsageRecord]:
        with self._connection() as connection:
            rows = connection.execute(
                """
                SELECT user_id, tokens_used, model, created_at FROM usage
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [
            UsageRecord(
                user_id=int(row[0]),
                tokens_used=int(row[1]),
                model=row[2],
                created_at=datetime.fromisoformat(row[3]),
            )
            for row in rows
        ]

    def total_usage(self, user_id: int) -> int:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT COALESCE(SUM(tokens_used), 0) FROM usage WHERE user_id = ?", (user_id,)
            ).fetchone()
        return int(row[0])

    def add_prompt(self, user_id: int, prompt: str) -> PromptHistoryEntry:
        """Summary: Append a version of the user's general prompt.

        Importance: The newest entry is the prompt used for planning.
        Alternatives: Store the prompt on the user row.
        """

        created_at = datetime.utcnow()
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT INTO prompt_history (user_id, prompt, created_at) VALUES (?, ?, ?)",
                (user_id, prompt, created_at.isoformat()),
            )
            prompt_id = cursor.lastrowid
            connection.commit()
        return PromptHistoryEntry(
            id=int(prompt_id), user_id=user_id, prompt=prompt, created_at=created_at
        )

    def list_prompts(self, user_id: int, limit: int = 50) -> list[PromptHistoryEntry]:
        with self._connection() as connection:
            rows = connection.execute(
                """
                SELECT id, user_id, prompt, created_at FROM prompt_history
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [
            PromptHistoryEntry(
                id=int(row[0]),
                user_id=int(row[1]),
                prompt=row[2],
                created_at=datetime.fromisoformat(row[3]),
            )
            for row in rows
        ]

    def delete_prompt(self, user_id: int, prompt_id: int) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "DELETE FROM prompt_history WHERE id = ? AND user_id = ?", (prompt_id, user_id)
            )
            connection.commit()
            return cursor.rowcount > 0

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Summary: Context manager for SQLite connections.

        Importance: Ensures connections are closed cleanly after use.
        Alternatives: Keep a single long-lived connection.
        """

        connection = sqlite3.connect(self._db_path, timeout=30)
        try:
            yield connection
        finally:
            connection.close()


def _history_from_row(row: tuple[Any, ...]) -> PlanExecutionHistoryEntry:
    return PlanExecutionHistoryEntry(
        id=int(row[0]),
        user_id=int(row[1]),
        thread_id=row[2],
        message_id=row[3],
        plan_id=row[4],
        rule_id=int(row[5]) if row[5] is not None else None,
        actions=tuple(ActionType.parse(item) for item in json.loads(row[6])),
        data=json.loads(row[7]),
        automated=bool(row[8]),
        created_at=datetime.fromisoformat(row[9]),
    )
