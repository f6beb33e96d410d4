from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, fields
from datetime import UTC, datetime, timedelta
from typing import Any

from app.embedding_provider import EmbeddingProvider, create_embedding_provider
from app.errors import ProviderError, StoreWriteError
from app.runtime_profile import env_float, env_int
from app.text_representation import build_text_for_transaction

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "transaction not found"
STALE_CLAIM_MESSAGE = "claim expired"

OUTCOME_COMPLETED = "completed"
OUTCOME_RETRYING = "retrying"
OUTCOME_FAILED = "failed"
OUTCOME_STORE_FAILED = "store_failed"
OUTCOME_SUPERSEDED = "superseded"
OUTCOME_TIMED_OUT = "timed_out"


@dataclass
class WorkerRunStats:
    processed: int = 0
    failed: int = 0
    retrying: int = 0
    store_failed: int = 0
    claimed: int = 0
    superseded: int = 0
    timed_out: int = 0

    def record(self, outcome: str) -> None:
        if outcome == OUTCOME_COMPLETED:
            self.processed += 1
        elif outcome == OUTCOME_FAILED:
            self.failed += 1
        elif outcome == OUTCOME_RETRYING:
            self.retrying += 1
        elif outcome == OUTCOME_STORE_FAILED:
            self.store_failed += 1
        elif outcome == OUTCOME_SUPERSEDED:
            self.superseded += 1
        elif outcome == OUTCOME_TIMED_OUT:
            self.timed_out += 1

    def merge(self, other: dict[str, int]) -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + int(other.get(item.name, 0)))

    def as_dict(self) -> dict[str, int]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


class EmbeddingBatchWorker:
    """Claims pending enrichment tasks and drives them to completed, pending or failed.

    Each claim marks tasks processing and increments attempts before any
    provider call. Every later transition is conditioned on the task still
    being processing with the attempts value this worker claimed, so a task
    requeued by the stale sweep and picked up elsewhere is never overwritten.
    """

    def __init__(
        self,
        *,
        store: Any,
        provider: EmbeddingProvider,
        max_attempts: int = 3,
        batch_size: int = 20,
        tenant_burst_limit: int = 20,
        concurrency: int = 1,
        task_timeout_s: float = 60.0,
        poll_interval_ms: int = 1000,
        stale_claim_s: float = 900.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.max_attempts = max(1, int(max_attempts))
        self.batch_size = max(1, int(batch_size))
        self.tenant_burst_limit = max(1, int(tenant_burst_limit))
        self.concurrency = max(1, int(concurrency))
        self.task_timeout_s = max(0.1, float(task_timeout_s))
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self.stale_claim_s = max(0.0, float(stale_claim_s))
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def _tasks(self) -> Any:
        return self.store.tasks_repository

    @property
    def _transactions(self) -> Any:
        return self.store.transactions_repository

    def _persist_vector(self, *, task: dict[str, Any], vector: list[float]) -> bool:
        try:
            return bool(
                self._transactions.set_embedding(
                    tenant_id=task["tenant_id"],
                    transaction_id=task["transaction_id"],
                    embedding=vector,
                    model=self.provider.model,
                    now=self._clock(),
                )
            )
        except Exception as exc:
            raise StoreWriteError(str(exc)) from exc

    def _fail_or_retry(self, *, task: dict[str, Any], message: str) -> str:
        attempts = int(task["attempts"])
        kwargs = {
            "tenant_id": task["tenant_id"],
            "task_id": task["task_id"],
            "expected_attempts": attempts,
            "error_message": message,
            "now": self._clock(),
        }
        if attempts >= self.max_attempts:
            updated = self._tasks.mark_failed(**kwargs)
            outcome = OUTCOME_FAILED
        else:
            updated = self._tasks.mark_pending(**kwargs)
            outcome = OUTCOME_RETRYING
        if updated is None:
            return OUTCOME_SUPERSEDED
        return outcome

    def _mark_not_found(self, task: dict[str, Any]) -> str:
        updated = self._tasks.mark_failed(
            tenant_id=task["tenant_id"],
            task_id=task["task_id"],
            expected_attempts=int(task["attempts"]),
            error_message=NOT_FOUND_MESSAGE,
            now=self._clock(),
        )
        return OUTCOME_FAILED if updated is not None else OUTCOME_SUPERSEDED

    def process_task(self, task: dict[str, Any]) -> str:
        tenant_id = task["tenant_id"]
        task_id = task["task_id"]
        transaction = self._transactions.get(tenant_id=tenant_id, transaction_id=task["transaction_id"])
        if transaction is None:
            logger.warning("task %s references missing transaction %s", task_id, task["transaction_id"])
            return self._mark_not_found(task)

        try:
            text = build_text_for_transaction(transaction)
            vector = self.provider.embed(text)
        except ProviderError as exc:
            logger.warning(
                "embedding failed for task %s (attempt %d/%d): %s",
                task_id,
                int(task["attempts"]),
                self.max_attempts,
                exc.message,
            )
            return self._fail_or_retry(task=task, message=exc.message)
        except Exception as exc:
            logger.exception("unexpected error while enriching task %s", task_id)
            return self._fail_or_retry(task=task, message=f"{type(exc).__name__}: {exc}")

        try:
            written = self._persist_vector(task=task, vector=vector)
        except StoreWriteError as exc:
            logger.error(
                "store write failed for task %s transaction %s (dimensions=%d): %s",
                task_id,
                task["transaction_id"],
                len(vector),
                exc,
            )
            updated = self._tasks.mark_pending(
                tenant_id=tenant_id,
                task_id=task_id,
                expected_attempts=int(task["attempts"]),
                error_message=f"store write failed: {exc}",
                now=self._clock(),
            )
            return OUTCOME_STORE_FAILED if updated is not None else OUTCOME_SUPERSEDED
        if not written:
            return self._mark_not_found(task)

        updated = self._tasks.mark_completed(
            tenant_id=tenant_id,
            task_id=task_id,
            expected_attempts=int(task["attempts"]),
            now=self._clock(),
        )
        if updated is None:
            logger.warning("task %s lost its claim before completion", task_id)
            return OUTCOME_SUPERSEDED
        return OUTCOME_COMPLETED

    def _guarded(self, task: dict[str, Any]) -> str:
        try:
            return self.process_task(task)
        except Exception:
            # A failing state write leaves the task processing for the stale sweep.
            logger.exception("task %s aborted; left for stale-claim recovery", task.get("task_id"))
            return OUTCOME_SUPERSEDED

    def _run_claimed(self, claimed: list[dict[str, Any]], stats: WorkerRunStats) -> bool:
        outcomes: list[str] = []
        if self.concurrency == 1 or len(claimed) == 1:
            outcomes = [self._guarded(task) for task in claimed]
        else:
            pool = ThreadPoolExecutor(max_workers=min(self.concurrency, len(claimed)))
            try:
                futures = [(task, pool.submit(self._guarded, task)) for task in claimed]
                for task, future in futures:
                    try:
                        outcomes.append(future.result(timeout=self.task_timeout_s))
                    except FuturesTimeoutError:
                        logger.warning(
                            "task %s exceeded %.1fs; left processing for stale-claim recovery",
                            task["task_id"],
                            self.task_timeout_s,
                        )
                        outcomes.append(OUTCOME_TIMED_OUT)
            finally:
                pool.shutdown(wait=False, cancel_futures=True)
        for outcome in outcomes:
            stats.record(outcome)
        return any(outcome in {OUTCOME_RETRYING, OUTCOME_STORE_FAILED} for outcome in outcomes)

    def run_once(self, max_tasks: int | None = None) -> dict[str, int]:
        """Process up to ``max_tasks`` pending tasks across tenants.

        Tenants are visited round-robin with at most ``tenant_burst_limit``
        claims per pass. A tenant whose batch returned a task to pending is not
        claimed again in the same run, so a retry waits for the next run.
        """
        budget = self.batch_size if max_tasks is None else max(0, int(max_tasks))
        stats = WorkerRunStats()
        done_tenants: set[str] = set()
        while stats.claimed < budget:
            tenants = [x for x in self._tasks.list_tenants(status="pending") if x not in done_tenants]
            if not tenants:
                break
            progressed = False
            for tenant_id in tenants:
                remaining = budget - stats.claimed
                if remaining <= 0:
                    break
                limit = min(self.batch_size, self.tenant_burst_limit, remaining)
                claimed = self._tasks.claim_pending(tenant_id=tenant_id, limit=limit, now=self._clock())
                if not claimed:
                    done_tenants.add(tenant_id)
                    continue
                progressed = True
                stats.claimed += len(claimed)
                requeued = self._run_claimed(claimed, stats)
                if requeued or len(claimed) < limit:
                    done_tenants.add(tenant_id)
            if not progressed:
                break
        if stats.claimed:
            logger.info("embedding batch finished: %s", stats.as_dict())
        return stats.as_dict()

    def requeue_stale(self, stale_after_s: float | None = None) -> dict[str, Any]:
        threshold = self.stale_claim_s if stale_after_s is None else max(0.0, float(stale_after_s))
        now = self._clock()
        cutoff = now - timedelta(seconds=threshold)
        task_ids: list[str] = []
        for tenant_id in self._tasks.list_tenants(status="processing"):
            requeued = self._tasks.requeue_stale(
                tenant_id=tenant_id,
                claimed_before=cutoff,
                error_message=STALE_CLAIM_MESSAGE,
                now=now,
            )
            task_ids.extend(str(task["task_id"]) for task in requeued)
        if task_ids:
            logger.warning("requeued %d stale enrichment tasks older than %.0fs", len(task_ids), threshold)
        return {"requeued": len(task_ids), "task_ids": task_ids, "stale_after_s": threshold}

    def run_forever(
        self,
        *,
        max_tasks: int | None = None,
        stop_after_iterations: int | None = None,
    ) -> dict[str, int]:
        aggregate = WorkerRunStats()
        requeued = 0
        iterations = 0
        while True:
            requeued += int(self.requeue_stale()["requeued"])
            current = self.run_once(max_tasks)
            aggregate.merge(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["claimed"]) == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        return {**aggregate.as_dict(), "requeued_stale": requeued, "iterations": iterations}


def create_batch_worker_from_env(
    *,
    store: Any,
    provider: EmbeddingProvider | None = None,
    environ: Mapping[str, str] | None = None,
) -> EmbeddingBatchWorker:
    env = os.environ if environ is None else environ
    return EmbeddingBatchWorker(
        store=store,
        provider=provider or create_embedding_provider(env),
        max_attempts=env_int(env, "WORKER_MAX_ATTEMPTS", default=3, minimum=1),
        batch_size=env_int(env, "WORKER_BATCH_SIZE", default=20, minimum=1),
        tenant_burst_limit=env_int(env, "WORKER_TENANT_BURST_LIMIT", default=20, minimum=1),
        concurrency=env_int(env, "WORKER_CONCURRENCY", default=1, minimum=1),
        task_timeout_s=env_float(env, "WORKER_TASK_TIMEOUT_S", default=60.0, minimum=0.1),
        poll_interval_ms=env_int(env, "WORKER_POLL_INTERVAL_MS", default=1000, minimum=1),
        stale_claim_s=env_float(env, "WORKER_STALE_CLAIM_S", default=900.0, minimum=0.0),
    )
