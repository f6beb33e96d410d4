from __future__ import annotations

from typing import Any


def coverage_percent(total: int, with_vector: int) -> float:
    if total <= 0:
        return 0
    return round(with_vector * 100.0 / total, 2)


def get_coverage(*, store: Any, tenant_id: str) -> dict[str, Any]:
    """Vector coverage of a tenant's transactions plus the task queue breakdown.

    Both reads are independent snapshots; counts may drift by a few rows while
    a batch is running. Repository errors propagate to the caller.
    """
    total, with_vector = store.transactions_repository.coverage_counts(tenant_id=tenant_id)
    return {
        "total_transactions": int(total),
        "with_vector": int(with_vector),
        "without_vector": int(total) - int(with_vector),
        "coverage_percent": coverage_percent(int(total), int(with_vector)),
        "tasks": store.tasks_repository.status_counts(tenant_id=tenant_id),
    }
