from __future__ import annotations

from datetime import UTC, datetime, timedelta

from app.on_demand import OnDemandEnricher


def _seed(store, description: str, *, minutes: int = 0, embedding=None) -> dict:
    return store.create_transaction(
        tenant_id="tenant_a",
        description=description,
        amount_minor=-2500,
        direction="expense",
        category_name="Travel",
        created_at=datetime(2026, 2, 1, tzinfo=UTC) + timedelta(minutes=minutes),
        embedding=embedding,
        embedding_model="seed" if embedding else None,
    )


def test_enrich_one_for_unknown_transaction_returns_failure(memory_store, provider):
    enricher = OnDemandEnricher(store=memory_store, provider=provider)

    result = enricher.enrich_one(tenant_id="tenant_a", transaction_id="txn_missing")

    assert result["status"] == "failed"
    assert result["detail"] == "transaction not found"
    assert memory_store.enrichment_tasks == {}
    assert provider.calls == []


def test_enrich_one_overwrites_vector_and_leaves_tasks_alone(memory_store, provider):
    txn = _seed(memory_store, "Train to Berlin", embedding=[9.0, 9.0, 9.0, 9.0])
    enricher = OnDemandEnricher(store=memory_store, provider=provider)

    result = enricher.enrich_one(tenant_id="tenant_a", transaction_id=txn["transaction_id"])

    assert result["status"] == "success"
    assert result["dimensions"] == 4
    assert result["preview"].startswith("Type: Expense | Description: Train to Berlin")
    assert memory_store.transactions_repository.get_embedding(
        tenant_id="tenant_a", transaction_id=txn["transaction_id"]
    ) == [0.1, 0.2, 0.3, 0.4]
    assert memory_store.enrichment_tasks == {}


def test_enrich_one_reports_provider_error(memory_store, provider):
    txn = _seed(memory_store, "Hotel BROKEN")
    provider.fail_marker = "BROKEN"
    enricher = OnDemandEnricher(store=memory_store, provider=provider)

    result = enricher.enrich_one(tenant_id="tenant_a", transaction_id=txn["transaction_id"])

    assert result == {
        "status": "failed",
        "transaction_id": txn["transaction_id"],
        "preview": None,
        "dimensions": 0,
        "detail": "provider unavailable",
    }
    task = memory_store.tasks_repository.get(tenant_id="tenant_a", task_id=txn["enrichment_task_id"])
    assert (task["status"], task["attempts"]) == ("pending", 0)


def test_enrich_batch_takes_newest_unembedded_first_and_isolates_failures(memory_store, provider):
    _seed(memory_store, "Oldest", minutes=1)
    _seed(memory_store, "Already done", minutes=2, embedding=[1.0, 1.0, 1.0, 1.0])
    broken = _seed(memory_store, "BROKEN taxi", minutes=3)
    newest = _seed(memory_store, "Newest", minutes=4)
    provider.fail_marker = "BROKEN"

    result = OnDemandEnricher(store=memory_store, provider=provider).enrich_batch(
        tenant_id="tenant_a",
        skip_existing=True,
        page_size=2,
    )

    assert result["total"] == 2
    assert result["processed"] == 1
    assert result["failed"] == 1
    assert result["results"] == [
        {"id": newest["transaction_id"], "status": "success", "detail": "4 dimensions"},
        {"id": broken["transaction_id"], "status": "failed", "detail": "provider unavailable"},
    ]


def test_enrich_batch_without_skip_existing_reembeds_everything(memory_store, provider):
    _seed(memory_store, "One", minutes=1, embedding=[1.0, 1.0, 1.0, 1.0])
    _seed(memory_store, "Two", minutes=2)

    result = OnDemandEnricher(store=memory_store, provider=provider).enrich_batch(
        tenant_id="tenant_a",
        skip_existing=False,
    )

    assert (result["total"], result["processed"], result["failed"]) == (2, 2, 0)


def test_enrich_batch_with_nothing_eligible(memory_store, provider):
    _seed(memory_store, "Done", embedding=[1.0, 1.0, 1.0, 1.0])

    result = OnDemandEnricher(store=memory_store, provider=provider).enrich_batch(tenant_id="tenant_a")

    assert result == {"processed": 0, "failed": 0, "total": 0, "results": [], "message": "nothing to do"}


def test_enrich_one_reports_store_write_failure(memory_store, provider, monkeypatch):
    txn = _seed(memory_store, "Parking garage")

    def _locked(**kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(memory_store.transactions_repository, "set_embedding", _locked)

    result = OnDemandEnricher(store=memory_store, provider=provider).enrich_one(
        tenant_id="tenant_a",
        transaction_id=txn["transaction_id"],
    )

    assert result["status"] == "failed"
    assert result["detail"] == "store write failed: database is locked"
    assert result["dimensions"] == 0
    task = memory_store.tasks_repository.get(tenant_id="tenant_a", task_id=txn["enrichment_task_id"])
    assert (task["status"], task["attempts"]) == ("pending", 0)


def test_batch_reports_store_write_failure_per_item(memory_store, provider, monkeypatch):
    txn = _seed(memory_store, "Parking garage")

    def _broken(**kwargs):
        raise RuntimeError("disk I/O error")

    monkeypatch.setattr(memory_store.transactions_repository, "set_embedding", _broken)

    result = OnDemandEnricher(store=memory_store, provider=provider).enrich_batch(tenant_id="tenant_a")

    assert result["failed"] == 1
    assert result["results"] == [
        {"id": txn["transaction_id"], "status": "failed", "detail": "store write failed: disk I/O error"}
    ]


def test_row_deleted_before_write_is_reported_as_not_found(memory_store, provider, monkeypatch):
    txn = _seed(memory_store, "Museum tickets")
    monkeypatch.setattr(memory_store.transactions_repository, "set_embedding", lambda **kwargs: False)
    enricher = OnDemandEnricher(store=memory_store, provider=provider)

    one = enricher.enrich_one(tenant_id="tenant_a", transaction_id=txn["transaction_id"])
    batch = enricher.enrich_batch(tenant_id="tenant_a")

    assert (one["status"], one["detail"]) == ("failed", "transaction not found")
    assert batch["results"] == [
        {"id": txn["transaction_id"], "status": "failed", "detail": "transaction not found"}
    ]
