from __future__ import annotations

import pytest

from app.batch_worker import EmbeddingBatchWorker
from app.coverage import coverage_percent, get_coverage


def test_coverage_for_empty_account(memory_store):
    data = get_coverage(store=memory_store, tenant_id="tenant_empty")

    assert data["total_transactions"] == 0
    assert data["with_vector"] == 0
    assert data["without_vector"] == 0
    assert data["coverage_percent"] == 0


def test_coverage_counts_add_up_and_round(memory_store, provider, clock):
    for idx in range(3):
        memory_store.create_transaction(
            tenant_id="tenant_a",
            description=f"Invoice {idx}",
            amount_minor=10000 + idx,
            direction="income",
        )
    memory_store.create_transaction(tenant_id="tenant_b", description="Other", amount_minor=1, direction="income")
    EmbeddingBatchWorker(store=memory_store, provider=provider, clock=clock).run_once(1)

    data = get_coverage(store=memory_store, tenant_id="tenant_a")

    assert data["with_vector"] + data["without_vector"] == data["total_transactions"] == 3
    assert data["coverage_percent"] == 33.33
    assert data["tasks"] == {"pending": 2, "processing": 0, "completed": 1, "failed": 0}


@pytest.mark.parametrize(("total", "with_vector", "expected"), [(0, 0, 0), (8, 8, 100.0), (3, 2, 66.67)])
def test_coverage_percent(total, with_vector, expected):
    assert coverage_percent(total, with_vector) == expected


def test_coverage_propagates_data_source_errors(memory_store, monkeypatch):
    def _boom(**kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(memory_store.transactions_repository, "coverage_counts", _boom)

    with pytest.raises(RuntimeError, match="database unavailable"):
        get_coverage(store=memory_store, tenant_id="tenant_a")
