"""SQLite-backed record storage keyed by (partition key, sort key)."""

from __future__ import annotations

import json
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

Item = Dict[str, Any]


def _item_keys(item: Item) -> tuple[str, str]:
    pk = item.get("pk")
    sk = item.get("sk")
    if not pk or not sk:
        raise ValueError("Item must include 'pk' and 'sk' keys")
    return pk, sk


class RecordTransaction:
    """Item operations bound to one open write transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def get_item(self, *, partition_key: str, sort_key: str) -> Optional[Item]:
        row = self._conn.execute(
            "SELECT data FROM records WHERE pk = ? AND sk = ?",
            (partition_key, sort_key),
        ).fetchone()
        return json.loads(row[0]) if row else None

    def put_item(self, item: Item) -> None:
        pk, sk = _item_keys(item)
        self._conn.execute(
            """
            INSERT INTO records (pk, sk, data, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(pk, sk) DO UPDATE
                SET data = excluded.data, updated_at = excluded.updated_at
            """,
            (pk, sk, json.dumps(item), time.time()),
        )

    def put_item_if_absent(self, item: Item) -> bool:
        """Insert ``item`` unless its key exists. Returns True when inserted."""
        pk, sk = _item_keys(item)
        cursor = self._conn.execute(
            "INSERT OR IGNORE INTO records (pk, sk, data, updated_at) VALUES (?, ?, ?, ?)",
            (pk, sk, json.dumps(item), time.time()),
        )
        return cursor.rowcount == 1

    def delete_item(self, *, partition_key: str, sort_key: str) -> bool:
        cursor = self._conn.execute(
            "DELETE FROM records WHERE pk = ? AND sk = ?",
            (partition_key, sort_key),
        )
        return cursor.rowcount == 1


class SQLiteStore:
    """
    Small document store over a single ``records`` table.

    Every public call runs in its own ``BEGIN IMMEDIATE`` transaction; callers
    that need several reads and writes to land together use ``transaction()``.
    """

    def __init__(self, db_path: str, *, timeout_seconds: float = 10.0) -> None:
        self._db_path = Path(db_path)
        self._timeout = timeout_seconds
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    pk TEXT NOT NULL,
                    sk TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (pk, sk)
                )
                """
            )

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(
            self._db_path,
            timeout=self._timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def write_connection(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection holding the write lock; committed on exit, rolled back on error."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @contextmanager
    def transaction(self) -> Iterator[RecordTransaction]:
        """Yield item operations bound to one write transaction."""
        with self.write_connection() as conn:
            yield RecordTransaction(conn)

    def put_item(self, item: Item) -> None:
        with self.transaction() as txn:
            txn.put_item(item)

    def put_item_if_absent(self, item: Item) -> bool:
        with self.transaction() as txn:
            return txn.put_item_if_absent(item)

    def get_item(self, *, partition_key: str, sort_key: str) -> Optional[Item]:
        with self._connect() as conn:
            return RecordTransaction(conn).get_item(partition_key=partition_key, sort_key=sort_key)

    def delete_item(self, *, partition_key: str, sort_key: str) -> bool:
        with self.transaction() as txn:
            return txn.delete_item(partition_key=partition_key, sort_key=sort_key)

    def list_items_with_prefix(self, *, partition_key: str, sort_key_prefix: str) -> list[Item]:
        escaped = sort_key_prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT data FROM records WHERE pk = ? AND sk LIKE ? ESCAPE '\\' ORDER BY sk",
                (partition_key, f"{escaped}%"),
            ).fetchall()
        return [json.loads(row[0]) for row in rows]


__all__ = ["RecordTransaction", "SQLiteStore"]
