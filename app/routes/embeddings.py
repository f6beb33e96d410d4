from __future__ import annotations

from fastapi import APIRouter, Request

from app.coverage import get_coverage
from app.routes._deps import enricher_from_request, store_from_request, tenant_id_from_request, trace_id_from_request
from app.schemas import BackfillRequest, EnqueueTaskRequest, EnrichBatchRequest, success_envelope

router = APIRouter(prefix="/api/v1/embeddings", tags=["embeddings"])


@router.post("/transactions/{transaction_id}")
def enrich_transaction(transaction_id: str, request: Request):
    result = enricher_from_request(request).enrich_one(
        tenant_id=tenant_id_from_request(request),
        transaction_id=transaction_id,
    )
    return success_envelope(result, trace_id_from_request(request), message=result["status"])


@router.post("/batch")
def enrich_batch(
    request: Request,
    payload: EnrichBatchRequest | None = None,
):
    payload = payload or EnrichBatchRequest()
    result = enricher_from_request(request).enrich_batch(
        tenant_id=tenant_id_from_request(request),
        skip_existing=payload.skip_existing,
        page_size=payload.page_size,
    )
    return success_envelope(result, trace_id_from_request(request), message=result["message"])


@router.get("/coverage")
def embedding_coverage(request: Request):
    data = get_coverage(store=store_from_request(request), tenant_id=tenant_id_from_request(request))
    return success_envelope(data, trace_id_from_request(request))


@router.post("/tasks", status_code=202)
def enqueue_enrichment_task(payload: EnqueueTaskRequest, request: Request):
    data = store_from_request(request).enqueue_enrichment(
        tenant_id=tenant_id_from_request(request),
        transaction_id=payload.transaction_id,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/tasks/backfill", status_code=202)
def backfill_enrichment_tasks(
    request: Request,
    payload: BackfillRequest | None = None,
):
    payload = payload or BackfillRequest()
    data = store_from_request(request).backfill_enrichment(
        tenant_id=tenant_id_from_request(request),
        limit=payload.limit,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/tasks/{task_id}")
def get_enrichment_task(task_id: str, request: Request):
    data = store_from_request(request).get_enrichment_task(
        tenant_id=tenant_id_from_request(request),
        task_id=task_id,
    )
    return success_envelope(data, trace_id_from_request(request))
