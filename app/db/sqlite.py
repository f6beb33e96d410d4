from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from app.db.schema import SQLITE_SCHEMA_STATEMENTS


class SqliteDatabase:
    """SQLite file shared by the transactions and task repositories."""

    def __init__(self, db_path: str | Path, *, busy_timeout_s: float = 5.0) -> None:
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout_s = max(0.1, float(busy_timeout_s))
        self._initialize()

    @property
    def path(self) -> Path:
        return self._db_path

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        # Autocommit mode: multi-statement writes open BEGIN IMMEDIATE explicitly.
        conn = sqlite3.connect(str(self._db_path), timeout=self._busy_timeout_s, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _initialize(self) -> None:
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in SQLITE_SCHEMA_STATEMENTS:
                conn.execute(statement)

    def reset(self) -> None:
        with self.write_tx() as conn:
            conn.execute("DELETE FROM enrichment_tasks")
            conn.execute("DELETE FROM transactions")
