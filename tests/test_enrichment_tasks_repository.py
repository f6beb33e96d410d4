from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta, timezone

import pytest

from app.db.sqlite import SqliteDatabase
from app.repositories.enrichment_tasks import (
    InMemoryEnrichmentTasksRepository,
    PostgresEnrichmentTasksRepository,
    SqliteEnrichmentTasksRepository,
)

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryEnrichmentTasksRepository({})
    return SqliteEnrichmentTasksRepository(SqliteDatabase(tmp_path / "tasks.sqlite3"))


def _enqueue(repo, idx: int, *, tenant_id: str = "tenant_a", at: datetime | None = None) -> dict:
    task, created = repo.enqueue(
        tenant_id=tenant_id,
        transaction_id=f"txn_{idx}",
        task_id=f"etask_{tenant_id}_{idx}",
        now=at or T0 + timedelta(seconds=idx),
    )
    assert created is True
    return task


def test_enqueue_creates_pending_task(repo):
    task = _enqueue(repo, 1)

    assert task["status"] == "pending"
    assert task["attempts"] == 0
    assert task["processed_at"] is None
    assert repo.get(tenant_id="tenant_a", task_id=task["task_id"])["transaction_id"] == "txn_1"
    assert repo.get(tenant_id="tenant_b", task_id=task["task_id"]) is None


def test_enqueue_is_idempotent_while_task_is_open(repo):
    first = _enqueue(repo, 1)
    again, created = repo.enqueue(tenant_id="tenant_a", transaction_id="txn_1", task_id="etask_dup", now=T0)

    assert created is False
    assert again["task_id"] == first["task_id"]

    [claimed] = repo.claim_pending(tenant_id="tenant_a", limit=5, now=T0)
    repo.mark_completed(tenant_id="tenant_a", task_id=claimed["task_id"], expected_attempts=1, now=T0)
    _, created_after_completion = repo.enqueue(
        tenant_id="tenant_a", transaction_id="txn_1", task_id="etask_new", now=T0
    )
    assert created_after_completion is True
    assert len(repo.list_for_transaction(tenant_id="tenant_a", transaction_id="txn_1")) == 2


def test_claim_is_fifo_and_increments_attempts(repo):
    _enqueue(repo, 3, at=T0 + timedelta(seconds=30))
    _enqueue(repo, 1, at=T0 + timedelta(seconds=10))
    _enqueue(repo, 2, at=T0 + timedelta(seconds=20))

    claimed = repo.claim_pending(tenant_id="tenant_a", limit=2, now=T0 + timedelta(minutes=1))

    assert [x["transaction_id"] for x in claimed] == ["txn_1", "txn_2"]
    assert all(x["status"] == "processing" and x["attempts"] == 1 for x in claimed)
    assert all(x["claimed_at"] == (T0 + timedelta(minutes=1)).isoformat() for x in claimed)
    assert repo.claim_pending(tenant_id="tenant_a", limit=5, now=T0)[0]["transaction_id"] == "txn_3"
    assert repo.claim_pending(tenant_id="tenant_a", limit=5, now=T0) == []


def test_claim_is_tenant_scoped(repo):
    _enqueue(repo, 1, tenant_id="tenant_a")
    _enqueue(repo, 1, tenant_id="tenant_b")

    claimed = repo.claim_pending(tenant_id="tenant_b", limit=10, now=T0)

    assert [x["tenant_id"] for x in claimed] == ["tenant_b"]
    assert repo.list_tenants(status="pending") == ["tenant_a"]
    assert repo.list_tenants(status="processing") == ["tenant_b"]


def test_claim_and_stale_cutoff_compare_instants_across_offsets(repo):
    plus_two = timezone(timedelta(hours=2))
    _enqueue(repo, 1, at=T0)
    # 10:30+02:00 is 08:30 UTC, earlier than T0.
    _enqueue(repo, 2, at=datetime(2026, 3, 1, 10, 30, tzinfo=plus_two))

    claimed = repo.claim_pending(tenant_id="tenant_a", limit=2, now=datetime(2026, 3, 1, 11, 0, tzinfo=plus_two))

    assert [x["transaction_id"] for x in claimed] == ["txn_2", "txn_1"]
    assert claimed[0]["claimed_at"] == "2026-03-01T09:00:00+00:00"
    requeued = repo.requeue_stale(
        tenant_id="tenant_a",
        claimed_before=datetime(2026, 3, 1, 10, 30, tzinfo=plus_two),
        error_message="claim expired",
        now=T0,
    )
    assert requeued == []


def test_transitions_require_matching_claim(repo):
    task = _enqueue(repo, 1)

    assert repo.mark_completed(tenant_id="tenant_a", task_id=task["task_id"], expected_attempts=0, now=T0) is None

    [claimed] = repo.claim_pending(tenant_id="tenant_a", limit=1, now=T0)
    assert repo.mark_failed(
        tenant_id="tenant_a", task_id=claimed["task_id"], expected_attempts=2, error_message="x", now=T0
    ) is None

    done = repo.mark_completed(tenant_id="tenant_a", task_id=claimed["task_id"], expected_attempts=1, now=T0)
    assert done["status"] == "completed"
    assert done["processed_at"] == T0.isoformat()
    assert done["error_message"] is None
    assert repo.mark_completed(tenant_id="tenant_a", task_id=claimed["task_id"], expected_attempts=1, now=T0) is None


def test_mark_pending_keeps_attempts_and_records_error(repo):
    task = _enqueue(repo, 1)
    repo.claim_pending(tenant_id="tenant_a", limit=1, now=T0)

    retried = repo.mark_pending(
        tenant_id="tenant_a",
        task_id=task["task_id"],
        expected_attempts=1,
        error_message="provider unavailable",
        now=T0,
    )

    assert retried["status"] == "pending"
    assert retried["attempts"] == 1
    assert retried["error_message"] == "provider unavailable"
    [again] = repo.claim_pending(tenant_id="tenant_a", limit=1, now=T0)
    assert again["attempts"] == 2


def test_requeue_stale_only_moves_old_claims(repo):
    old = _enqueue(repo, 1)
    fresh = _enqueue(repo, 2)
    repo.claim_pending(tenant_id="tenant_a", limit=1, now=T0)
    repo.claim_pending(tenant_id="tenant_a", limit=1, now=T0 + timedelta(minutes=30))

    requeued = repo.requeue_stale(
        tenant_id="tenant_a",
        claimed_before=T0 + timedelta(minutes=15),
        error_message="claim expired",
        now=T0 + timedelta(minutes=31),
    )

    assert [x["task_id"] for x in requeued] == [old["task_id"]]
    assert requeued[0]["attempts"] == 1
    assert requeued[0]["error_message"] == "claim expired"
    assert repo.get(tenant_id="tenant_a", task_id=fresh["task_id"])["status"] == "processing"
    # The original claimant can no longer complete the requeued task.
    assert repo.mark_completed(tenant_id="tenant_a", task_id=old["task_id"], expected_attempts=1, now=T0) is None


def test_status_counts(repo):
    for idx in range(4):
        _enqueue(repo, idx)
    claimed = repo.claim_pending(tenant_id="tenant_a", limit=2, now=T0)
    repo.mark_completed(tenant_id="tenant_a", task_id=claimed[0]["task_id"], expected_attempts=1, now=T0)

    assert repo.status_counts(tenant_id="tenant_a") == {
        "pending": 2,
        "processing": 1,
        "completed": 1,
        "failed": 0,
    }
    assert repo.status_counts(tenant_id="tenant_b") == {
        "pending": 0,
        "processing": 0,
        "completed": 0,
        "failed": 0,
    }


def test_sqlite_concurrent_claims_never_overlap(tmp_path):
    db_path = tmp_path / "shared.sqlite3"
    seed = SqliteEnrichmentTasksRepository(SqliteDatabase(db_path))
    for idx in range(40):
        _enqueue(seed, idx)

    claimed_ids: list[str] = []
    lock = threading.Lock()
    barrier = threading.Barrier(4)

    def _worker(repo: SqliteEnrichmentTasksRepository) -> None:
        barrier.wait()
        while True:
            batch = repo.claim_pending(tenant_id="tenant_a", limit=3, now=T0)
            if not batch:
                return
            with lock:
                claimed_ids.extend(x["task_id"] for x in batch)

    repos = [SqliteEnrichmentTasksRepository(SqliteDatabase(db_path, busy_timeout_s=10.0)) for _ in range(4)]
    threads = [threading.Thread(target=_worker, args=(repo,)) for repo in repos]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(claimed_ids) == 40
    assert len(set(claimed_ids)) == 40


def test_postgres_claim_uses_skip_locked_and_sorts_rows():
    statements: list[tuple[str, tuple | None]] = []
    returned = [
        ("etask_2", "tenant_a", "txn_2", "processing", 1, None, T0 + timedelta(seconds=2), T0, None, T0),
        ("etask_1", "tenant_a", "txn_1", "processing", 1, None, T0 + timedelta(seconds=1), T0, None, T0),
    ]

    class FakeCursor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def execute(self, query: str, params=None):
            statements.append((" ".join(query.split()), params))

        def fetchall(self):
            return returned

    class FakeConnection:
        def cursor(self):
            return FakeCursor()

    class FakeRunner:
        def run_in_tx(self, *, tenant_id: str, fn):
            assert tenant_id == "tenant_a"
            return fn(FakeConnection())

    repo = PostgresEnrichmentTasksRepository(tx_runner=FakeRunner())
    claimed = repo.claim_pending(tenant_id="tenant_a", limit=5, now=T0)

    sql, params = statements[0]
    assert "FOR UPDATE SKIP LOCKED" in sql
    assert "attempts = t.attempts + 1" in sql
    assert params == (T0, T0, "tenant_a", 5)
    assert [x["task_id"] for x in claimed] == ["etask_1", "etask_2"]
    assert claimed[0]["created_at"] == (T0 + timedelta(seconds=1)).isoformat()


def test_postgres_transition_is_conditioned_on_claim():
    statements: list[tuple[str, tuple | None]] = []

    class FakeCursor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def execute(self, query: str, params=None):
            statements.append((" ".join(query.split()), params))

        def fetchone(self):
            return None

    class FakeConnection:
        def cursor(self):
            return FakeCursor()

    class FakeRunner:
        def run_in_tx(self, *, tenant_id: str, fn):
            return fn(FakeConnection())

    repo = PostgresEnrichmentTasksRepository(tx_runner=FakeRunner())
    result = repo.mark_failed(
        tenant_id="tenant_a",
        task_id="etask_1",
        expected_attempts=3,
        error_message="provider unavailable",
        now=T0,
    )

    assert result is None
    sql, params = statements[0]
    assert "status = 'processing' AND attempts = %s" in sql
    assert params == ("provider unavailable", T0, "tenant_a", "etask_1", 3)


def test_postgres_tasks_repository_rejects_invalid_table_name():
    class DummyRunner:
        def run_in_tx(self, *, tenant_id: str, fn):
            return fn(None)

    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresEnrichmentTasksRepository(tx_runner=DummyRunner(), table_name="tasks;drop table x")
