from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from app.db.postgres import PostgresTxRunner
from app.db.rls import PostgresRlsManager
from app.db.sqlite import SqliteDatabase
from app.errors import ApiError
from app.repositories.enrichment_tasks import (
    InMemoryEnrichmentTasksRepository,
    PostgresEnrichmentTasksRepository,
    SqliteEnrichmentTasksRepository,
)
from app.repositories.transactions import (
    InMemoryTransactionsRepository,
    PostgresTransactionsRepository,
    SqliteTransactionsRepository,
)
from app.runtime_profile import env_bool, env_int, true_stack_required
from app.text_representation import direction_label

logger = logging.getLogger(__name__)

DEFAULT_SQLITE_PATH = ".runtime/finapp_embeddings.sqlite3"


class InMemoryStore:
    """Transactions plus the enrichment task queue for one process."""

    backend_name = "memory"

    def __init__(self) -> None:
        self.transactions: dict[str, dict[str, Any]] = {}
        self.enrichment_tasks: dict[str, dict[str, Any]] = {}
        self.transactions_repository: Any = InMemoryTransactionsRepository(self.transactions)
        self.tasks_repository: Any = InMemoryEnrichmentTasksRepository(self.enrichment_tasks)

    @staticmethod
    def _utcnow() -> datetime:
        return datetime.now(UTC)

    @staticmethod
    def _new_task_id() -> str:
        return f"etask_{uuid.uuid4().hex[:12]}"

    def reset(self) -> None:
        self.transactions.clear()
        self.enrichment_tasks.clear()
        self.transactions_repository = InMemoryTransactionsRepository(self.transactions)
        self.tasks_repository = InMemoryEnrichmentTasksRepository(self.enrichment_tasks)

    def create_transaction(
        self,
        *,
        tenant_id: str,
        description: str,
        amount_minor: int,
        direction: str,
        category_id: str | None = None,
        category_name: str | None = None,
        counterparty_name: str | None = None,
        transaction_id: str | None = None,
        created_at: datetime | None = None,
        embedding: list[float] | None = None,
        embedding_model: str | None = None,
    ) -> dict[str, Any]:
        """Insert a transaction; one without a vector gets a pending enrichment task."""
        direction_label(direction)
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
            raise TypeError("amount_minor must be an integer number of minor units")
        now = self._utcnow()
        created = created_at or now
        row = {
            "transaction_id": transaction_id or f"txn_{uuid.uuid4().hex[:12]}",
            "tenant_id": tenant_id,
            "description": description,
            "counterparty_name": counterparty_name,
            "amount_minor": amount_minor,
            "direction": direction,
            "category_id": category_id,
            "category_name": category_name,
            "created_at": created.astimezone(UTC).isoformat(),
            "embedding": list(embedding) if embedding is not None else None,
            "embedding_model": embedding_model if embedding is not None else None,
            "embedded_at": now.isoformat() if embedding is not None else None,
        }
        data = self.transactions_repository.create(transaction=row)
        if embedding is None:
            try:
                task, _ = self.tasks_repository.enqueue(
                    tenant_id=tenant_id,
                    transaction_id=data["transaction_id"],
                    task_id=self._new_task_id(),
                    now=now,
                )
            except Exception:
                # The row is committed; backfill_enrichment picks it up later.
                logger.exception(
                    "enqueue failed for transaction %s of tenant %s; left for backfill",
                    data["transaction_id"],
                    tenant_id,
                )
                data["enrichment_task_id"] = None
            else:
                data["enrichment_task_id"] = task["task_id"]
        return data

    def get_transaction(self, *, tenant_id: str, transaction_id: str) -> dict[str, Any] | None:
        return self.transactions_repository.get(tenant_id=tenant_id, transaction_id=transaction_id)

    def delete_transaction(self, *, tenant_id: str, transaction_id: str) -> bool:
        # Tasks are kept; the worker fails them on the not-found path.
        return self.transactions_repository.delete(tenant_id=tenant_id, transaction_id=transaction_id)

    def enqueue_enrichment(self, *, tenant_id: str, transaction_id: str) -> dict[str, Any]:
        if self.get_transaction(tenant_id=tenant_id, transaction_id=transaction_id) is None:
            raise ApiError(
                code="TRANSACTION_NOT_FOUND",
                message="transaction not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        task, created = self.tasks_repository.enqueue(
            tenant_id=tenant_id,
            transaction_id=transaction_id,
            task_id=self._new_task_id(),
            now=self._utcnow(),
        )
        return {**task, "created": created}

    def backfill_enrichment(self, *, tenant_id: str, limit: int = 500) -> dict[str, Any]:
        rows = self.transactions_repository.list_recent(
            tenant_id=tenant_id,
            limit=limit,
            missing_embedding_only=True,
        )
        enqueued = 0
        existing = 0
        task_ids: list[str] = []
        for row in rows:
            task, created = self.tasks_repository.enqueue(
                tenant_id=tenant_id,
                transaction_id=row["transaction_id"],
                task_id=self._new_task_id(),
                now=self._utcnow(),
            )
            task_ids.append(task["task_id"])
            if created:
                enqueued += 1
            else:
                existing += 1
        return {
            "scanned": len(rows),
            "enqueued": enqueued,
            "already_queued": existing,
            "task_ids": task_ids,
        }

    def get_enrichment_task(self, *, tenant_id: str, task_id: str) -> dict[str, Any]:
        task = self.tasks_repository.get(tenant_id=tenant_id, task_id=task_id)
        if task is None:
            raise ApiError(
                code="TASK_NOT_FOUND",
                message="enrichment task not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        return task


class SqliteBackedStore(InMemoryStore):
    backend_name = "sqlite"

    def __init__(self, db_path: str | Path, *, busy_timeout_s: float = 5.0) -> None:
        super().__init__()
        self._db = SqliteDatabase(db_path, busy_timeout_s=busy_timeout_s)
        self.transactions_repository = SqliteTransactionsRepository(self._db)
        self.tasks_repository = SqliteEnrichmentTasksRepository(self._db)

    def reset(self) -> None:
        self._db.reset()


class PostgresBackedStore(InMemoryStore):
    backend_name = "postgres"

    def __init__(
        self,
        *,
        dsn: str,
        apply_schema: bool = False,
        apply_rls: bool = False,
        connect_timeout_s: int = 5,
        statement_timeout_ms: int = 5000,
    ) -> None:
        super().__init__()
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._tx_runner = PostgresTxRunner(
            dsn,
            connect_timeout_s=connect_timeout_s,
            statement_timeout_ms=statement_timeout_ms,
        )
        if apply_schema or apply_rls:
            manager = PostgresRlsManager(dsn)
            manager.apply_schema()
            if apply_rls:
                manager.apply()
        self.transactions_repository = PostgresTransactionsRepository(tx_runner=self._tx_runner)
        self.tasks_repository = PostgresEnrichmentTasksRepository(tx_runner=self._tx_runner)

    def reset(self) -> None:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM enrichment_tasks")
                cur.execute("DELETE FROM transactions")

        self._tx_runner.run_unscoped(fn=_op)


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    backend = env.get("FINAPP_STORE_BACKEND", "memory").strip().lower()
    if true_stack_required(env) and backend != "postgres":
        raise RuntimeError("FINAPP_STORE_BACKEND must be postgres when FINAPP_REQUIRE_TRUESTACK=true")
    if backend == "sqlite":
        db_path = env.get("FINAPP_SQLITE_PATH", DEFAULT_SQLITE_PATH)
        return SqliteBackedStore(db_path)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when FINAPP_STORE_BACKEND=postgres")
        return PostgresBackedStore(
            dsn=dsn,
            apply_schema=env_bool(env, "POSTGRES_APPLY_SCHEMA", default=False),
            apply_rls=env_bool(env, "POSTGRES_APPLY_RLS", default=False),
            statement_timeout_ms=env_int(env, "POSTGRES_STATEMENT_TIMEOUT_MS", default=5000, minimum=1),
        )
    if backend != "memory":
        logger.warning("unknown FINAPP_STORE_BACKEND=%s, using in-memory store", backend)
    return InMemoryStore()


store = create_store_from_env()
