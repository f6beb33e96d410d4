from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class RunBatchRequest(BaseModel):
    max_tasks: int = Field(default=20, ge=0, le=1000)


class RequeueStaleRequest(BaseModel):
    stale_after_s: float | None = Field(default=None, ge=0)


class EnrichBatchRequest(BaseModel):
    skip_existing: bool = True
    page_size: int = Field(default=50, ge=1, le=500)


class EnqueueTaskRequest(BaseModel):
    transaction_id: str = Field(min_length=1)


class BackfillRequest(BaseModel):
    limit: int = Field(default=500, ge=1, le=10000)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
