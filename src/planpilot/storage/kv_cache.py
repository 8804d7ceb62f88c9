"""Summary: SQLite-backed key-value cache with per-key version stamps.

Importance: Holds the authoritative plan per thread without TTL eviction.
Alternatives: Use Redis or another external key-value store.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator


@dataclass(frozen=True)
class CacheEntry:
    """Summary: A cached value with its version stamp.

    Importance: Lets callers detect that an entry changed since they read it.
    Alternatives: Return bare values without versions.
    """

    key: str
    value: Any
    version: int


class KeyValueCache:
    """Summary: Namespaced key-value cache stored in SQLite.

    Importance: Provides single-key atomic get, put, and delete.
    Alternatives: Keep the cache in process memory.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = Path(db_path)

    def initialize(self) -> None:
        """Summary: Create the cache table if it does not exist.

        Importance: Ensures the cache is ready before the first lookup.
        Alternatives: Run migrations using a dedicated migration tool.
        """

        with self._connection() as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_cache (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    PRIMARY KEY (namespace, key)
                )
                """
            )
            connection.commit()

    def get(self, namespace: str, key: str) -> CacheEntry | None:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT key, value, version FROM kv_cache WHERE namespace = ? AND key = ?",
                (namespace, key),
            ).fetchone()
        if not row:
            return None
        return CacheEntry(key=row[0], value=json.loads(row[1]), version=int(row[2]))

    def put(self, namespace: str, key: str, value: Any) -> int:
        """Summary: Write a value, replacing any existing one, and return its new version.

        Importance: Last write wins; the version increments on every write.
        Alternatives: Reject overwrites and require explicit deletes.
        """

        with self._connection() as connection:
            connection.execute(
                """
                INSERT INTO kv_cache (namespace, key, value, version)
                VALUES (?, ?, ?, 1)
                ON CONFLICT(namespace, key) DO UPDATE SET
                    value = excluded.value,
                    version = kv_cache.version + 1
                """,
                (namespace, key, json.dumps(value)),
            )
            row = connection.execute(
                "SELECT version FROM kv_cache WHERE namespace = ? AND key = ?",
                (namespace, key),
            ).fetchone()
            connection.commit()
        return int(row[0])

    def compare_and_put(
        self, namespace: str, key: str, value: Any, expected_version: int | None
    ) -> bool:
        """Summary: Write a value only if the entry is still at the expected version.

        Importance: Lets a writer detect that someone else changed the entry first.
        Alternatives: Serialize all writers behind a lock.

        An expected_version of None means the key must not exist yet.
        """

        with self._connection() as connection:
            if expected_version is None:
                cursor = connection.execute(
                    "INSERT OR IGNORE INTO kv_cache (namespace, key, value, version) VALUES (?, ?, ?, 1)",
                    (namespace, key, json.dumps(value)),
                )
            else:
                cursor = connection.execute(
                    """
                    UPDATE kv_cache SET value = ?, version = version + 1
                    WHERE namespace = ? AND key = ? AND version = ?
                    """,
                    (json.dumps(value), namespace, key, expected_version),
                )
            connection.commit()
        return cursor.rowcount > 0

    def delete(self, namespace: str, key: str, expected_version: int | None = None) -> bool:
        """Summary: Delete an entry, optionally only if its version matches.

        Importance: Lets callers remove exactly the entry they read.
        Alternatives: Delete unconditionally and accept lost updates.
        """

        with self._connection() as connection:
            if expected_version is None:
                cursor = connection.execute(
                    "DELETE FROM kv_cache WHERE namespace = ? AND key = ?", (namespace, key)
                )
            else:
                cursor = connection.execute(
                    "DELETE FROM kv_cache WHERE namespace = ? AND key = ? AND version = ?",
                    (namespace, key, expected_version),
                )
            connection.commit()
        return cursor.rowcount > 0

    def items(self, namespace: str, prefix: str = "") -> list[CacheEntry]:
        with self._connection() as connection:
            rows = connection.execute(
                """
                SELECT key, value, version FROM kv_cache
                WHERE namespace = ? AND substr(key, 1, ?) = ?
                ORDER BY key
                """,
                (namespace, len(prefix), prefix),
            ).fetchall()
        return [CacheEntry(key=row[0], value=json.loads(row[1]), version=int(row[2])) for row in rows]

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(self._db_path, timeout=30)
        try:
            yield connection
        finally:
            connection.close()
