"""
Embedding provider adapter: text -> fixed-length vector.

Architecture:
  - ProviderConfig: per-provider settings (model, api_key, base_url, dimensions, timeout)
  - OpenAIEmbeddingProvider: any OpenAI-compatible /embeddings endpoint
  - MockEmbeddingProvider: deterministic vectors when no provider is configured
  - Every failure surfaces as ProviderError; the client never retries on its
    own (max_retries=0), attempt accounting belongs to the batch worker.

Configuration via environment variables:
  EMBEDDING_PROVIDER     = openai | openrouter | ollama | custom  (default: openai)
  EMBEDDING_MODEL        = text-embedding-3-small
  EMBEDDING_DIMENSIONS   = 1536
  EMBEDDING_TIMEOUT_S    = 15
  OPENAI_API_KEY         = sk-...
  OPENAI_BASE_URL        = https://api.openai.com/v1   (or custom endpoint)
  OPENROUTER_API_KEY     = sk-or-...
  OLLAMA_BASE_URL        = http://localhost:11434/v1
  MOCK_EMBEDDINGS_ENABLED = true                       (force mock mode)
"""

from __future__ import annotations

import logging
import os
import time
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from app.errors import ProviderError
from app.runtime_profile import env_float, env_int

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_EMBEDDING_DIMENSIONS = 1536
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
USAGE_LOG_MAXLEN = 1000


class EmbeddingProvider(Protocol):
    model: str
    dimensions: int

    def embed(self, text: str) -> list[float]: ...


@dataclass
class ProviderConfig:
    provider: str = "openai"
    model: str = DEFAULT_EMBEDDING_MODEL
    api_key: str = ""
    base_url: str = ""
    dimensions: int = DEFAULT_EMBEDDING_DIMENSIONS
    timeout_s: float = 15.0
    send_dimensions: bool = True


@dataclass
class EmbeddingUsage:
    prompt_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    dimensions: int = 0
    latency_ms: float = 0.0


# Recent calls only; older entries drop off in long-running workers.
_call_usage_log: deque[EmbeddingUsage] = deque(maxlen=USAGE_LOG_MAXLEN)


def get_usage_log() -> list[EmbeddingUsage]:
    return list(_call_usage_log)


def reset_usage_log() -> None:
    _call_usage_log.clear()


def _get_provider_config(environ: Mapping[str, str] | None = None) -> ProviderConfig:
    env = os.environ if environ is None else environ
    provider = env.get("EMBEDDING_PROVIDER", "openai").strip().lower() or "openai"
    dimensions = env_int(env, "EMBEDDING_DIMENSIONS", default=DEFAULT_EMBEDDING_DIMENSIONS, minimum=1)
    timeout_s = env_float(env, "EMBEDDING_TIMEOUT_S", default=15.0, minimum=0.1)
    model = env.get("EMBEDDING_MODEL", "").strip()

    if provider == "ollama":
        return ProviderConfig(
            provider="ollama",
            model=model or "nomic-embed-text",
            api_key=env.get("OPENAI_API_KEY", "ollama").strip() or "ollama",
            base_url=env.get("OLLAMA_BASE_URL", "http://localhost:11434/v1").strip(),
            dimensions=dimensions,
            timeout_s=timeout_s,
            send_dimensions=False,
        )

    if provider == "openrouter":
        return ProviderConfig(
            provider="openrouter",
            model=model or f"openai/{DEFAULT_EMBEDDING_MODEL}",
            api_key=env.get("OPENROUTER_API_KEY", "").strip(),
            base_url=env.get("OPENROUTER_BASE_URL", OPENROUTER_BASE_URL).strip(),
            dimensions=dimensions,
            timeout_s=timeout_s,
        )

    return ProviderConfig(
        provider=provider,
        model=model or DEFAULT_EMBEDDING_MODEL,
        api_key=env.get("OPENAI_API_KEY", "").strip(),
        base_url=env.get("OPENAI_BASE_URL", "").strip(),
        dimensions=dimensions,
        timeout_s=timeout_s,
    )


def is_real_provider_available(environ: Mapping[str, str] | None = None) -> bool:
    from app import mock_embeddings

    env = os.environ if environ is None else environ
    forced = env.get("MOCK_EMBEDDINGS_ENABLED")
    if forced is None:
        mock_enabled = mock_embeddings.MOCK_EMBEDDINGS_ENABLED
    else:
        mock_enabled = forced.strip().lower() == "true"
    if mock_enabled:
        return False
    config = _get_provider_config(env)
    if config.provider == "ollama":
        return bool(config.base_url)
    return bool(config.api_key)


def _create_client(config: ProviderConfig):
    try:
        import openai
    except ImportError:
        raise RuntimeError("openai package is required. Install with: pip install openai")

    kwargs: dict[str, Any] = {
        "timeout": config.timeout_s,
        "max_retries": 0,
    }
    if config.api_key:
        kwargs["api_key"] = config.api_key
    if config.base_url:
        kwargs["base_url"] = config.base_url
    return openai.OpenAI(**kwargs)


class OpenAIEmbeddingProvider:
    """OpenAI-compatible embeddings client with a bounded timeout and no retries."""

    def __init__(self, config: ProviderConfig, *, client: Any | None = None) -> None:
        self.config = config
        self.model = config.model
        self.dimensions = config.dimensions
        self._client = client if client is not None else _create_client(config)

    def _vector_from_response(self, response: Any) -> list[float]:
        data = getattr(response, "data", None)
        if not data:
            raise ProviderError("invalid embedding response: no embedding data")
        raw = getattr(data[0], "embedding", None)
        if not isinstance(raw, (list, tuple)) or not raw:
            raise ProviderError("invalid embedding response: embedding is not a list")
        try:
            vector = [float(x) for x in raw]
        except (TypeError, ValueError) as exc:
            raise ProviderError("invalid embedding response: non-numeric values") from exc
        if len(vector) != self.dimensions:
            raise ProviderError(
                f"invalid embedding response: expected {self.dimensions} dimensions, got {len(vector)}"
            )
        return vector

    def embed(self, text: str) -> list[float]:
        if not text.strip():
            raise ProviderError("cannot embed empty text")
        kwargs: dict[str, Any] = {"model": self.model, "input": text}
        if self.config.send_dimensions:
            kwargs["dimensions"] = self.dimensions

        t0 = time.monotonic()
        try:
            response = self._client.embeddings.create(**kwargs)
        except ProviderError:
            raise
        except Exception as exc:
            status_code = getattr(exc, "status_code", None)
            logger.warning(
                "embedding request to %s failed (%s, status=%s)",
                self.config.provider,
                type(exc).__name__,
                status_code,
            )
            raise ProviderError(
                f"embedding request failed: {type(exc).__name__}: {exc}",
                status_code=status_code,
            ) from exc
        elapsed_ms = (time.monotonic() - t0) * 1000

        vector = self._vector_from_response(response)
        usage_data = getattr(response, "usage", None)
        _call_usage_log.append(
            EmbeddingUsage(
                prompt_tokens=getattr(usage_data, "prompt_tokens", 0) if usage_data else 0,
                total_tokens=getattr(usage_data, "total_tokens", 0) if usage_data else 0,
                model=self.model,
                dimensions=len(vector),
                latency_ms=round(elapsed_ms, 1),
            )
        )
        return vector


class MockEmbeddingProvider:
    def __init__(self, *, dimensions: int = DEFAULT_EMBEDDING_DIMENSIONS) -> None:
        from app.mock_embeddings import MOCK_EMBEDDING_MODEL

        self.model = MOCK_EMBEDDING_MODEL
        self.dimensions = dimensions

    def embed(self, text: str) -> list[float]:
        from app.mock_embeddings import mock_embed

        if not text.strip():
            raise ProviderError("cannot embed empty text")
        vector = mock_embed(text, dimensions=self.dimensions)
        _call_usage_log.append(EmbeddingUsage(model=self.model, dimensions=len(vector)))
        return vector


def create_embedding_provider(environ: Mapping[str, str] | None = None) -> EmbeddingProvider:
    env = os.environ if environ is None else environ
    config = _get_provider_config(env)
    if not is_real_provider_available(env):
        logger.info("no embedding provider configured, using deterministic mock embeddings")
        return MockEmbeddingProvider(dimensions=config.dimensions)
    return OpenAIEmbeddingProvider(config)


def get_provider_info(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Return current provider configuration (safe for logging, no secrets)."""
    env = os.environ if environ is None else environ
    config = _get_provider_config(env)
    return {
        "provider": config.provider,
        "model": config.model,
        "dimensions": config.dimensions,
        "base_url": config.base_url or "(default)",
        "timeout_s": config.timeout_s,
        "has_api_key": bool(config.api_key),
        "real_provider_available": is_real_provider_available(env),
    }
