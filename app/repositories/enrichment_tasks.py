from __future__ import annotations

import itertools
import re
import threading
from datetime import UTC, datetime
from typing import Any

from app.db.postgres import PostgresTxRunner
from app.db.sqlite import SqliteDatabase

TASK_STATUSES = ("pending", "processing", "completed", "failed")
OPEN_STATUSES = ("pending", "processing")

_COLUMNS = (
    "task_id",
    "tenant_id",
    "transaction_id",
    "status",
    "attempts",
    "error_message",
    "created_at",
    "claimed_at",
    "processed_at",
    "updated_at",
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _iso(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ts(value)
    return str(value)


def _ts(value: datetime) -> str:
    # Stored timestamps are UTC so text order matches time order.
    return value.astimezone(UTC).isoformat()


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value.astimezone(UTC)
    return datetime.fromisoformat(str(value)).astimezone(UTC)


def _new_task(*, task_id: str, tenant_id: str, transaction_id: str, now: datetime) -> dict[str, Any]:
    ts = _ts(now)
    return {
        "task_id": task_id,
        "tenant_id": tenant_id,
        "transaction_id": transaction_id,
        "status": "pending",
        "attempts": 0,
        "error_message": None,
        "created_at": ts,
        "claimed_at": None,
        "processed_at": None,
        "updated_at": ts,
    }


def _empty_counts() -> dict[str, int]:
    return {status: 0 for status in TASK_STATUSES}


class InMemoryEnrichmentTasksRepository:
    """Task queue held in a dict; every transition runs under one lock."""

    def __init__(self, tasks: dict[str, dict[str, Any]]) -> None:
        self._tasks = tasks
        self._lock = threading.RLock()
        self._seq = itertools.count()
        self._order: dict[str, int] = {}

    def _scoped(self, *, tenant_id: str, task_id: str) -> dict[str, Any] | None:
        row = self._tasks.get(task_id)
        if row is None or row.get("tenant_id") != tenant_id:
            return None
        return row

    def _fifo_key(self, row: dict[str, Any]) -> tuple[datetime, int]:
        return (_as_datetime(row["created_at"]), self._order.get(str(row["task_id"]), 0))

    def enqueue(
        self,
        *,
        tenant_id: str,
        transaction_id: str,
        task_id: str,
        now: datetime,
    ) -> tuple[dict[str, Any], bool]:
        with self._lock:
            for row in self._tasks.values():
                if (
                    row.get("tenant_id") == tenant_id
                    and row.get("transaction_id") == transaction_id
                    and row.get("status") in OPEN_STATUSES
                ):
                    return dict(row), False
            task = _new_task(task_id=task_id, tenant_id=tenant_id, transaction_id=transaction_id, now=now)
            self._tasks[task_id] = task
            self._order[task_id] = next(self._seq)
            return dict(task), True

    def get(self, *, tenant_id: str, task_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._scoped(tenant_id=tenant_id, task_id=task_id)
            return dict(row) if row is not None else None

    def list_for_transaction(self, *, tenant_id: str, transaction_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                row
                for row in self._tasks.values()
                if row.get("tenant_id") == tenant_id and row.get("transaction_id") == transaction_id
            ]
            rows.sort(key=self._fifo_key)
            return [dict(row) for row in rows]

    def claim_pending(self, *, tenant_id: str, limit: int, now: datetime) -> list[dict[str, Any]]:
        with self._lock:
            pending = [
                row
                for row in self._tasks.values()
                if row.get("tenant_id") == tenant_id and row.get("status") == "pending"
            ]
            pending.sort(key=self._fifo_key)
            claimed: list[dict[str, Any]] = []
            for row in pending[: max(0, int(limit))]:
                row["status"] = "processing"
                row["attempts"] = int(row.get("attempts", 0)) + 1
                row["claimed_at"] = _ts(now)
                row["updated_at"] = _ts(now)
                claimed.append(dict(row))
            return claimed

    def _transition(
        self,
        *,
        tenant_id: str,
        task_id: str,
        expected_attempts: int,
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        with self._lock:
            row = self._scoped(tenant_id=tenant_id, task_id=task_id)
            if row is None:
                return None
            if row.get("status") != "processing" or int(row.get("attempts", 0)) != int(expected_attempts):
                return None
            row.update(changes)
            return dict(row)

    def mark_completed(
        self, *, tenant_id: str, task_id: str, expected_attempts: int, now: datetime
    ) -> dict[str, Any] | None:
        return self._transition(
            tenant_id=tenant_id,
            task_id=task_id,
            expected_attempts=expected_attempts,
            changes={
                "status": "completed",
                "error_message": None,
                "processed_at": _ts(now),
                "updated_at": _ts(now),
            },
        )

    def mark_pending(
        self, *, tenant_id: str, task_id: str, expected_attempts: int, error_message: str, now: datetime
    ) -> dict[str, Any] | None:
        return self._transition(
            tenant_id=tenant_id,
            task_id=task_id,
            expected_attempts=expected_attempts,
            changes={"status": "pending", "error_message": error_message, "updated_at": _ts(now)},
        )

    def mark_failed(
        self, *, tenant_id: str, task_id: str, expected_attempts: int, error_message: str, now: datetime
    ) -> dict[str, Any] | None:
        return self._transition(
            tenant_id=tenant_id,
            task_id=task_id,
            expected_attempts=expected_attempts,
            changes={"status": "failed", "error_message": error_message, "updated_at": _ts(now)},
        )

    def requeue_stale(
        self, *, tenant_id: str, claimed_before: datetime, error_message: str, now: datetime
    ) -> list[dict[str, Any]]:
        cutoff = _as_datetime(claimed_before)
        with self._lock:
            requeued: list[dict[str, Any]] = []
            for row in self._tasks.values():
                if row.get("tenant_id") != tenant_id or row.get("status") != "processing":
                    continue
                claimed_at = row.get("claimed_at")
                if claimed_at is not None and _as_datetime(claimed_at) >= cutoff:
                    continue
                row["status"] = "pending"
                row["error_message"] = error_message
                row["updated_at"] = _ts(now)
                requeued.append(dict(row))
            return requeued

    def list_tenants(self, *, status: str = "pending") -> list[str]:
        with self._lock:
            return sorted(
                {str(row["tenant_id"]) for row in self._tasks.values() if row.get("status") == status}
            )

    def status_counts(self, *, tenant_id: str) -> dict[str, int]:
        with self._lock:
            counts = _empty_counts()
            for row in self._tasks.values():
                if row.get("tenant_id") == tenant_id:
                    counts[str(row["status"])] = counts.get(str(row["status"]), 0) + 1
            return counts


class SqliteEnrichmentTasksRepository:
    """SQLite task queue; claims run inside BEGIN IMMEDIATE so concurrent processes serialize."""

    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    @staticmethod
    def _row_to_dict(row: Any) -> dict[str, Any]:
        data = {name: row[name] for name in _COLUMNS}
        data["attempts"] = int(data["attempts"])
        return data

    def enqueue(
        self,
        *,
        tenant_id: str,
        transaction_id: str,
        task_id: str,
        now: datetime,
    ) -> tuple[dict[str, Any], bool]:
        with self._db.write_tx() as conn:
            row = conn.execute(
                """
                SELECT * FROM enrichment_tasks
                WHERE tenant_id = ? AND transaction_id = ? AND status IN ('pending', 'processing')
                ORDER BY created_at ASC
                LIMIT 1
                """,
                (tenant_id, transaction_id),
            ).fetchone()
            if row is not None:
                return self._row_to_dict(row), False
            task = _new_task(task_id=task_id, tenant_id=tenant_id, transaction_id=transaction_id, now=now)
            conn.execute(
                f"INSERT INTO enrichment_tasks({', '.join(_COLUMNS)}) VALUES ({', '.join('?' for _ in _COLUMNS)})",
                tuple(task[name] for name in _COLUMNS),
            )
            return task, True

    def get(self, *, tenant_id: str, task_id: str) -> dict[str, Any] | None:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM enrichment_tasks WHERE tenant_id = ? AND task_id = ? LIMIT 1",
                (tenant_id, task_id),
            ).fetchone()
        return self._row_to_dict(row) if row is not None else None

    def list_for_transaction(self, *, tenant_id: str, transaction_id: str) -> list[dict[str, Any]]:
        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM enrichment_tasks
                WHERE tenant_id = ? AND transaction_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (tenant_id, transaction_id),
            ).fetchall()
        return [self._row_to_dict(row) for row in rows]

    def claim_pending(self, *, tenant_id: str, limit: int, now: datetime) -> list[dict[str, Any]]:
        ts = _ts(now)
        with self._db.write_tx() as conn:
            rows = conn.execute(
                """
                SELECT task_id FROM enrichment_tasks
                WHERE tenant_id = ? AND status = 'pending'
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (tenant_id, max(0, int(limit))),
            ).fetchall()
            claimed: list[dict[str, Any]] = []
            for row in rows:
                cur = conn.execute(
                    """
                    UPDATE enrichment_tasks
                    SET status = 'processing', attempts = attempts + 1, claimed_at = ?, updated_at = ?
                    WHERE task_id = ? AND status = 'pending'
                    """,
                    (ts, ts, row["task_id"]),
                )
                if cur.rowcount != 1:
                    continue
                updated = conn.execute(
                    "SELECT * FROM enrichment_tasks WHERE task_id = ?",
                    (row["task_id"],),
                ).fetchone()
                claimed.append(self._row_to_dict(updated))
            return claimed

    def _transition(
        self,
        *,
        tenant_id: str,
        task_id: str,
        expected_attempts: int,
        assignments: str,
        params: tuple[Any, ...],
    ) -> dict[str, Any] | None:
        with self._db.write_tx() as conn:
            cur = conn.execute(
                f"""
                UPDATE enrichment_tasks
                SET {assignments}
                WHERE tenant_id = ? AND task_id = ? AND status = 'processing' AND attempts = ?
                """,
                (*params, tenant_id, task_id, int(expected_attempts)),
            )
            if cur.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM enrichment_tasks WHERE task_id = ?", (task_id,)).fetchone()
            return self._row_to_dict(row)

    def mark_completed(
        self, *, tenant_id: str, task_id: str, expected_attempts: int, now: datetime
    ) -> dict[str, Any] | None:
        ts = _ts(now)
        return self._transition(
            tenant_id=tenant_id,
            task_id=task_id,
            expected_attempts=expected_attempts,
            assignments="status = 'completed', error_message = NULL, processed_at = ?, updated_at = ?",
            params=(ts, ts),
        )

    def mark_pending(
        self, *, tenant_id: str, task_id: str, expected_attempts: int, error_message: str, now: datetime
    ) -> dict[str, Any] | None:
        return self._transition(
            tenant_id=tenant_id,
            task_id=task_id,
            expected_attempts=expected_attempts,
            assignments="status = 'pending', error_message = ?, updated_at = ?",
            params=(error_message, _ts(now)),
        )

    def mark_failed(
        self, *, tenant_id: str, task_id: str, expected_attempts: int, error_message: str, now: datetime
    ) -> dict[str, Any] | None:
        return self._transition(
            tenant_id=tenant_id,
            task_id=task_id,
            expected_attempts=expected_attempts,
            assignments="status = 'failed', error_message = ?, updated_at = ?",
            params=(error_message, _ts(now)),
        )

    def requeue_stale(
        self, *, tenant_id: str, claimed_before: datetime, error_message: str, now: datetime
    ) -> list[dict[str, Any]]:
        with self._db.write_tx() as conn:
            rows = conn.execute(
                """
                SELECT task_id FROM enrichment_tasks
                WHERE tenant_id = ? AND status = 'processing'
                  AND (claimed_at IS NULL OR claimed_at < ?)
                """,
                (tenant_id, _ts(claimed_before)),
            ).fetchall()
            requeued: list[dict[str, Any]] = []
            for row in rows:
                conn.execute(
                    """
                    UPDATE enrichment_tasks
                    SET status = 'pending', error_message = ?, updated_at = ?
                    WHERE task_id = ? AND status = 'processing'
                    """,
                    (error_message, _ts(now), row["task_id"]),
                )
                updated = conn.execute(
                    "SELECT * FROM enrichment_tasks WHERE task_id = ?",
                    (row["task_id"],),
                ).fetchone()
                requeued.append(self._row_to_dict(updated))
            return requeued

    def list_tenants(self, *, status: str = "pending") -> list[str]:
        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT tenant_id FROM enrichment_tasks
                WHERE status = ?
                ORDER BY tenant_id ASC
                """,
                (status,),
            ).fetchall()
        return [str(row["tenant_id"]) for row in rows if row["tenant_id"]]

    def status_counts(self, *, tenant_id: str) -> dict[str, int]:
        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT status, COUNT(1) AS cnt FROM enrichment_tasks
                WHERE tenant_id = ?
                GROUP BY status
                """,
                (tenant_id,),
            ).fetchall()
        counts = _empty_counts()
        for row in rows:
            counts[str(row["status"])] = int(row["cnt"])
        return counts


class PostgresEnrichmentTasksRepository:
    """Task queue for postgres; claims use FOR UPDATE SKIP LOCKED, every query stays tenant-scoped."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "enrichment_tasks") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)
        self._columns = ", ".join(_COLUMNS)

    @staticmethod
    def _row_to_dict(row: tuple) -> dict[str, Any]:
        data = dict(zip(_COLUMNS, row))
        data["attempts"] = int(data["attempts"])
        for name in ("created_at", "claimed_at", "processed_at", "updated_at"):
            data[name] = _iso(data[name])
        return data

    def enqueue(
        self,
        *,
        tenant_id: str,
        transaction_id: str,
        task_id: str,
        now: datetime,
    ) -> tuple[dict[str, Any], bool]:
        lock_sql = "SELECT pg_advisory_xact_lock(hashtext(%s))"
        select_sql = f"""
            SELECT {self._columns}
            FROM {self._table_name}
            WHERE tenant_id = %s AND transaction_id = %s AND status IN ('pending', 'processing')
            ORDER BY created_at ASC
            LIMIT 1
        """
        insert_sql = f"""
            INSERT INTO {self._table_name} (
                task_id, tenant_id, transaction_id, status, attempts, created_at, updated_at
            ) VALUES (%s, %s, %s, 'pending', 0, %s, %s)
            RETURNING {self._columns}
        """

        def _op(conn: Any) -> tuple[dict[str, Any], bool]:
            with conn.cursor() as cur:
                cur.execute(lock_sql, (f"{tenant_id}:{transaction_id}",))
                cur.execute(select_sql, (tenant_id, transaction_id))
                existing = cur.fetchone()
                if existing is not None:
                    return self._row_to_dict(existing), False
                cur.execute(insert_sql, (task_id, tenant_id, transaction_id, now, now))
                row = cur.fetchone()
            return self._row_to_dict(row), True

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def get(self, *, tenant_id: str, task_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._columns}
            FROM {self._table_name}
            WHERE tenant_id = %s AND task_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, task_id))
                row = cur.fetchone()
            return self._row_to_dict(row) if row is not None else None

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list_for_transaction(self, *, tenant_id: str, transaction_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {self._columns}
            FROM {self._table_name}
            WHERE tenant_id = %s AND transaction_id = %s
            ORDER BY created_at ASC, task_id ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, transaction_id))
                rows = cur.fetchall()
            return [self._row_to_dict(row) for row in rows]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def claim_pending(self, *, tenant_id: str, limit: int, now: datetime) -> list[dict[str, Any]]:
        sql = f"""
            UPDATE {self._table_name} AS t
            SET status = 'processing', attempts = t.attempts + 1, claimed_at = %s, updated_at = %s
            WHERE t.task_id IN (
                SELECT task_id
                FROM {self._table_name}
                WHERE tenant_id = %s AND status = 'pending'
                ORDER BY created_at ASC, task_id ASC
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            AND t.status = 'pending'
            RETURNING {", ".join(f"t.{name}" for name in _COLUMNS)}
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (now, now, tenant_id, max(0, int(limit))))
                rows = cur.fetchall()
            claimed = [self._row_to_dict(row) for row in rows]
            claimed.sort(key=lambda x: (str(x["created_at"]), str(x["task_id"])))
            return claimed

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def _transition(
        self,
        *,
        tenant_id: str,
        task_id: str,
        expected_attempts: int,
        assignments: str,
        params: tuple[Any, ...],
    ) -> dict[str, Any] | None:
        sql = f"""
            UPDATE {self._table_name}
            SET {assignments}
            WHERE tenant_id = %s AND task_id = %s AND status = 'processing' AND attempts = %s
            RETURNING {self._columns}
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (*params, tenant_id, task_id, int(expected_attempts)))
                row = cur.fetchone()
            return self._row_to_dict(row) if row is not None else None

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def mark_completed(
        self, *, tenant_id: str, task_id: str, expected_attempts: int, now: datetime
    ) -> dict[str, Any] | None:
        return self._transition(
            tenant_id=tenant_id,
            task_id=task_id,
            expected_attempts=expected_attempts,
            assignments="status = 'completed', error_message = NULL, processed_at = %s, updated_at = %s",
            params=(now, now),
        )

    def mark_pending(
        self, *, tenant_id: str, task_id: str, expected_attempts: int, error_message: str, now: datetime
    ) -> dict[str, Any] | None:
        return self._transition(
            tenant_id=tenant_id,
            task_id=task_id,
            expected_attempts=expected_attempts,
            assignments="status = 'pending', error_message = %s, updated_at = %s",
            params=(error_message, now),
        )

    def mark_failed(
        self, *, tenant_id: str, task_id: str, expected_attempts: int, error_message: str, now: datetime
    ) -> dict[str, Any] | None:
        return self._transition(
            tenant_id=tenant_id,
            task_id=task_id,
            expected_attempts=expected_attempts,
            assignments="status = 'failed', error_message = %s, updated_at = %s",
            params=(error_message, now),
        )

    def requeue_stale(
        self, *, tenant_id: str, claimed_before: datetime, error_message: str, now: datetime
    ) -> list[dict[str, Any]]:
        sql = f"""
            UPDATE {self._table_name}
            SET status = 'pending', error_message = %s, updated_at = %s
            WHERE tenant_id = %s AND status = 'processing'
              AND (claimed_at IS NULL OR claimed_at < %s)
            RETURNING {self._columns}
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (error_message, now, tenant_id, claimed_before))
                rows = cur.fetchall()
            return [self._row_to_dict(row) for row in rows]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list_tenants(self, *, status: str = "pending") -> list[str]:
        sql = f"""
            SELECT DISTINCT tenant_id
            FROM {self._table_name}
            WHERE status = %s
            ORDER BY tenant_id ASC
        """

        def _op(conn: Any) -> list[str]:
            with conn.cursor() as cur:
                cur.execute(sql, (status,))
                rows = cur.fetchall()
            return [str(row[0]) for row in rows if row[0]]

        return self._tx_runner.run_unscoped(fn=_op)

    def status_counts(self, *, tenant_id: str) -> dict[str, int]:
        sql = f"""
            SELECT status, COUNT(1)
            FROM {self._table_name}
            WHERE tenant_id = %s
            GROUP BY status
        """

        def _op(conn: Any) -> dict[str, int]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                rows = cur.fetchall()
            counts = _empty_counts()
            for status, cnt in rows:
                counts[str(status)] = int(cnt)
            return counts

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
