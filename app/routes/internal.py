from __future__ import annotations

from fastapi import APIRouter, Header, Request

from app.routes._deps import batch_worker_from_request, trace_id_from_request
from app.schemas import RequeueStaleRequest, RunBatchRequest, success_envelope
from app.security import verify_cron_secret

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


@router.post("/embeddings/run-batch")
def internal_run_embedding_batch(
    request: Request,
    payload: RunBatchRequest | None = None,
    authorization: str | None = Header(default=None),
):
    payload = payload or RunBatchRequest()
    verify_cron_secret(authorization=authorization, cfg=request.app.state.security_cfg)
    result = batch_worker_from_request(request).run_once(payload.max_tasks)
    return success_envelope(result, trace_id_from_request(request))


@router.post("/embeddings/requeue-stale")
def internal_requeue_stale_tasks(
    request: Request,
    payload: RequeueStaleRequest | None = None,
    authorization: str | None = Header(default=None),
):
    payload = payload or RequeueStaleRequest()
    verify_cron_secret(authorization=authorization, cfg=request.app.state.security_cfg)
    result = batch_worker_from_request(request).requeue_stale(payload.stale_after_s)
    return success_envelope(result, trace_id_from_request(request))
