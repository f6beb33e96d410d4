from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from app.embedding_provider import EmbeddingProvider
from app.errors import ProviderError, StoreWriteError
from app.text_representation import build_text_for_transaction

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 120
MAX_PAGE_SIZE = 500
NOT_FOUND_DETAIL = "transaction not found"


def _preview(text: str) -> str:
    flat = " | ".join(line for line in text.splitlines() if line)
    if len(flat) <= PREVIEW_CHARS:
        return flat
    return flat[: PREVIEW_CHARS - 3] + "..."


def _failed(transaction_id: str, detail: str) -> dict[str, Any]:
    return {
        "status": "failed",
        "transaction_id": transaction_id,
        "preview": None,
        "dimensions": 0,
        "detail": detail,
    }


class OnDemandEnricher:
    """Synchronous enrichment outside the task queue; never reads or writes tasks."""

    def __init__(
        self,
        *,
        store: Any,
        provider: EmbeddingProvider,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self._clock = clock or (lambda: datetime.now(UTC))

    def _embed_and_store(self, transaction: dict[str, Any]) -> tuple[str, list[float], bool]:
        """Returns the text, the vector and whether the row still existed for the write."""
        text = build_text_for_transaction(transaction)
        vector = self.provider.embed(text)
        try:
            written = self.store.transactions_repository.set_embedding(
                tenant_id=transaction["tenant_id"],
                transaction_id=transaction["transaction_id"],
                embedding=vector,
                model=self.provider.model,
                now=self._clock(),
            )
        except Exception as exc:
            raise StoreWriteError(str(exc)) from exc
        return text, vector, bool(written)

    def enrich_one(self, *, tenant_id: str, transaction_id: str) -> dict[str, Any]:
        transaction = self.store.transactions_repository.get(tenant_id=tenant_id, transaction_id=transaction_id)
        if transaction is None:
            return _failed(transaction_id, NOT_FOUND_DETAIL)
        try:
            text, vector, written = self._embed_and_store(transaction)
        except ProviderError as exc:
            logger.warning("on-demand embedding failed for %s: %s", transaction_id, exc.message)
            return _failed(transaction_id, exc.message)
        except StoreWriteError as exc:
            logger.error("on-demand store write failed for %s: %s", transaction_id, exc)
            return _failed(transaction_id, f"store write failed: {exc}")
        except ValueError as exc:
            return _failed(transaction_id, str(exc))
        if not written:
            return _failed(transaction_id, NOT_FOUND_DETAIL)
        return {
            "status": "success",
            "transaction_id": transaction_id,
            "preview": _preview(text),
            "dimensions": len(vector),
            "detail": None,
        }

    def enrich_batch(
        self,
        *,
        tenant_id: str,
        skip_existing: bool = True,
        page_size: int = 50,
    ) -> dict[str, Any]:
        limit = min(MAX_PAGE_SIZE, max(1, int(page_size)))
        rows = self.store.transactions_repository.list_recent(
            tenant_id=tenant_id,
            limit=limit,
            missing_embedding_only=skip_existing,
        )
        if not rows:
            return {"processed": 0, "failed": 0, "total": 0, "results": [], "message": "nothing to do"}

        results: list[dict[str, Any]] = []
        processed = 0
        failed = 0
        for row in rows:
            item_id = row["transaction_id"]
            try:
                _, vector, written = self._embed_and_store(row)
            except ProviderError as exc:
                detail = exc.message
            except StoreWriteError as exc:
                logger.error("on-demand store write failed for %s: %s", item_id, exc)
                detail = f"store write failed: {exc}"
            except Exception as exc:
                logger.exception("on-demand batch item %s failed", item_id)
                detail = str(exc)
            else:
                if written:
                    processed += 1
                    results.append({"id": item_id, "status": "success", "detail": f"{len(vector)} dimensions"})
                    continue
                detail = NOT_FOUND_DETAIL
            failed += 1
            results.append({"id": item_id, "status": "failed", "detail": detail})
        logger.info("on-demand batch for tenant %s: processed=%d failed=%d", tenant_id, processed, failed)
        return {
            "processed": processed,
            "failed": failed,
            "total": len(rows),
            "results": results,
            "message": f"processed {processed} of {len(rows)}",
        }
