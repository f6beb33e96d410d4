from __future__ import annotations

import json
import re
import threading
from datetime import datetime
from typing import Any

from app.db.postgres import PostgresTxRunner
from app.db.sqlite import SqliteDatabase

_FIELDS = (
    "transaction_id",
    "tenant_id",
    "description",
    "counterparty_name",
    "amount_minor",
    "direction",
    "category_id",
    "category_name",
    "created_at",
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _iso(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _public(row: dict[str, Any]) -> dict[str, Any]:
    out = {name: row.get(name) for name in _FIELDS}
    out["amount_minor"] = int(out["amount_minor"] or 0)
    out["has_embedding"] = row.get("embedding") is not None
    out["embedding_model"] = row.get("embedding_model")
    out["embedded_at"] = row.get("embedded_at")
    return out


class InMemoryTransactionsRepository:
    def __init__(self, transactions: dict[str, dict[str, Any]]) -> None:
        self._transactions = transactions
        self._lock = threading.RLock()

    def _scoped(self, *, tenant_id: str, transaction_id: str) -> dict[str, Any] | None:
        row = self._transactions.get(transaction_id)
        if row is None or row.get("tenant_id") != tenant_id:
            return None
        return row

    def create(self, *, transaction: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            row = dict(transaction)
            row.setdefault("embedding", None)
            row.setdefault("embedding_model", None)
            row.setdefault("embedded_at", None)
            self._transactions[str(row["transaction_id"])] = row
            return _public(row)

    def get(self, *, tenant_id: str, transaction_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._scoped(tenant_id=tenant_id, transaction_id=transaction_id)
            return _public(row) if row is not None else None

    def delete(self, *, tenant_id: str, transaction_id: str) -> bool:
        with self._lock:
            if self._scoped(tenant_id=tenant_id, transaction_id=transaction_id) is None:
                return False
            self._transactions.pop(transaction_id, None)
            return True

    def get_embedding(self, *, tenant_id: str, transaction_id: str) -> list[float] | None:
        with self._lock:
            row = self._scoped(tenant_id=tenant_id, transaction_id=transaction_id)
            if row is None or row.get("embedding") is None:
                return None
            return list(row["embedding"])

    def set_embedding(
        self,
        *,
        tenant_id: str,
        transaction_id: str,
        embedding: list[float],
        model: str,
        now: datetime,
    ) -> bool:
        with self._lock:
            row = self._scoped(tenant_id=tenant_id, transaction_id=transaction_id)
            if row is None:
                return False
            row["embedding"] = list(embedding)
            row["embedding_model"] = model
            row["embedded_at"] = now.isoformat()
            return True

    def list_recent(self, *, tenant_id: str, limit: int, missing_embedding_only: bool) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                row
                for row in self._transactions.values()
                if row.get("tenant_id") == tenant_id
                and (not missing_embedding_only or row.get("embedding") is None)
            ]
            rows.sort(key=lambda x: (str(x.get("created_at", "")), str(x["transaction_id"])), reverse=True)
            return [_public(row) for row in rows[: max(0, int(limit))]]

    def coverage_counts(self, *, tenant_id: str) -> tuple[int, int]:
        with self._lock:
            total = 0
            with_vector = 0
            for row in self._transactions.values():
                if row.get("tenant_id") != tenant_id:
                    continue
                total += 1
                if row.get("embedding") is not None:
                    with_vector += 1
            return total, with_vector


class SqliteTransactionsRepository:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    @staticmethod
    def _row_to_dict(row: Any) -> dict[str, Any]:
        data = {name: row[name] for name in _FIELDS}
        data["embedding"] = row["embedding"]
        data["embedding_model"] = row["embedding_model"]
        data["embedded_at"] = row["embedded_at"]
        return _public(data)

    def create(self, *, transaction: dict[str, Any]) -> dict[str, Any]:
        embedding = transaction.get("embedding")
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO transactions(
                    transaction_id, tenant_id, description, counterparty_name, amount_minor,
                    direction, category_id, category_name, created_at, embedding, embedding_model, embedded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    transaction["transaction_id"],
                    transaction["tenant_id"],
                    transaction.get("description") or "",
                    transaction.get("counterparty_name"),
                    int(transaction["amount_minor"]),
                    transaction["direction"],
                    transaction.get("category_id"),
                    transaction.get("category_name"),
                    transaction["created_at"],
                    json.dumps(embedding) if embedding is not None else None,
                    transaction.get("embedding_model"),
                    transaction.get("embedded_at"),
                ),
            )
        return _public({**transaction, "embedding": embedding})

    def get(self, *, tenant_id: str, transaction_id: str) -> dict[str, Any] | None:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE tenant_id = ? AND transaction_id = ? LIMIT 1",
                (tenant_id, transaction_id),
            ).fetchone()
        return self._row_to_dict(row) if row is not None else None

    def delete(self, *, tenant_id: str, transaction_id: str) -> bool:
        with self._db.connect() as conn:
            cur = conn.execute(
                "DELETE FROM transactions WHERE tenant_id = ? AND transaction_id = ?",
                (tenant_id, transaction_id),
            )
            return cur.rowcount > 0

    def get_embedding(self, *, tenant_id: str, transaction_id: str) -> list[float] | None:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT embedding FROM transactions WHERE tenant_id = ? AND transaction_id = ? LIMIT 1",
                (tenant_id, transaction_id),
            ).fetchone()
        if row is None or row["embedding"] is None:
            return None
        return [float(x) for x in json.loads(row["embedding"])]

    def set_embedding(
        self,
        *,
        tenant_id: str,
        transaction_id: str,
        embedding: list[float],
        model: str,
        now: datetime,
    ) -> bool:
        with self._db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE transactions
                SET embedding = ?, embedding_model = ?, embedded_at = ?
                WHERE tenant_id = ? AND transaction_id = ?
                """,
                (json.dumps(list(embedding)), model, now.isoformat(), tenant_id, transaction_id),
            )
            return cur.rowcount > 0

    def list_recent(self, *, tenant_id: str, limit: int, missing_embedding_only: bool) -> list[dict[str, Any]]:
        where = "tenant_id = ?"
        if missing_embedding_only:
            where += " AND embedding IS NULL"
        with self._db.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM transactions
                WHERE {where}
                ORDER BY created_at DESC, transaction_id DESC
                LIMIT ?
                """,
                (tenant_id, max(0, int(limit))),
            ).fetchall()
        return [self._row_to_dict(row) for row in rows]

    def coverage_counts(self, *, tenant_id: str) -> tuple[int, int]:
        with self._db.connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(1) AS total, COUNT(embedding) AS with_vector
                FROM transactions
                WHERE tenant_id = ?
                """,
                (tenant_id,),
            ).fetchone()
        return int(row["total"]), int(row["with_vector"])


class PostgresTransactionsRepository:
    """Transactions boundary for postgres; reads fields and writes the vector column only."""

    _COLUMNS = (
        "transaction_id, tenant_id, description, counterparty_name, amount_minor, direction, "
        "category_id, category_name, created_at, embedding IS NOT NULL, embedding_model, embedded_at"
    )

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "transactions") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _row_to_dict(row: tuple) -> dict[str, Any]:
        return {
            "transaction_id": row[0],
            "tenant_id": row[1],
            "description": row[2],
            "counterparty_name": row[3],
            "amount_minor": int(row[4]),
            "direction": row[5],
            "category_id": row[6],
            "category_name": row[7],
            "created_at": _iso(row[8]),
            "has_embedding": bool(row[9]),
            "embedding_model": row[10],
            "embedded_at": _iso(row[11]),
        }

    @staticmethod
    def _vector_literal(embedding: list[float]) -> str:
        return "[" + ",".join(repr(float(x)) for x in embedding) + "]"

    def create(self, *, transaction: dict[str, Any]) -> dict[str, Any]:
        tenant_id = str(transaction["tenant_id"])
        sql = f"""
            INSERT INTO {self._table_name} (
                transaction_id, tenant_id, description, counterparty_name, amount_minor,
                direction, category_id, category_name, created_at,
                embedding, embedding_model, embedded_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s::vector, %s, %s)
            RETURNING {self._COLUMNS}
        """
        embedding = transaction.get("embedding")
        vector = self._vector_literal(embedding) if embedding is not None else None

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        transaction["transaction_id"],
                        tenant_id,
                        transaction.get("description") or "",
                        transaction.get("counterparty_name"),
                        int(transaction["amount_minor"]),
                        transaction["direction"],
                        transaction.get("category_id"),
                        transaction.get("category_name"),
                        transaction["created_at"],
                        vector,
                        transaction.get("embedding_model") if vector is not None else None,
                        transaction.get("embedded_at") if vector is not None else None,
                    ),
                )
                row = cur.fetchone()
            return self._row_to_dict(row)

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def get(self, *, tenant_id: str, transaction_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._COLUMNS}
            FROM {self._table_name}
            WHERE tenant_id = %s AND transaction_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, transaction_id))
                row = cur.fetchone()
            return self._row_to_dict(row) if row is not None else None

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def delete(self, *, tenant_id: str, transaction_id: str) -> bool:
        sql = f"DELETE FROM {self._table_name} WHERE tenant_id = %s AND transaction_id = %s"

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, transaction_id))
                return cur.rowcount > 0

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def get_embedding(self, *, tenant_id: str, transaction_id: str) -> list[float] | None:
        sql = f"""
            SELECT embedding::text
            FROM {self._table_name}
            WHERE tenant_id = %s AND transaction_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> list[float] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, transaction_id))
                row = cur.fetchone()
            if row is None or row[0] is None:
                return None
            return [float(x) for x in json.loads(row[0])]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def set_embedding(
        self,
        *,
        tenant_id: str,
        transaction_id: str,
        embedding: list[float],
        model: str,
        now: datetime,
    ) -> bool:
        sql = f"""
            UPDATE {self._table_name}
            SET embedding = %s::vector, embedding_model = %s, embedded_at = %s
            WHERE tenant_id = %s AND transaction_id = %s
        """

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (self._vector_literal(embedding), model, now, tenant_id, transaction_id),
                )
                return cur.rowcount > 0

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list_recent(self, *, tenant_id: str, limit: int, missing_embedding_only: bool) -> list[dict[str, Any]]:
        where = "tenant_id = %s"
        if missing_embedding_only:
            where += " AND embedding IS NULL"
        sql = f"""
            SELECT {self._COLUMNS}
            FROM {self._table_name}
            WHERE {where}
            ORDER BY created_at DESC, transaction_id DESC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, max(0, int(limit))))
                rows = cur.fetchall()
            return [self._row_to_dict(row) for row in rows]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def coverage_counts(self, *, tenant_id: str) -> tuple[int, int]:
        sql = f"""
            SELECT COUNT(1), COUNT(embedding)
            FROM {self._table_name}
            WHERE tenant_id = %s
        """

        def _op(conn: Any) -> tuple[int, int]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                row = cur.fetchone()
            return int(row[0]), int(row[1])

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
