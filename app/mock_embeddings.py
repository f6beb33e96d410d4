"""
Mock embeddings for local runs and end-to-end tests.

Enabled with MOCK_EMBEDDINGS_ENABLED=true, or automatically when no provider
credentials are configured. Vectors are derived from a sha256 stream of the
input text, so the same text always yields the same unit vector.
"""

from __future__ import annotations

import hashlib
import math
import os

MOCK_EMBEDDINGS_ENABLED = os.getenv("MOCK_EMBEDDINGS_ENABLED", "false").lower() == "true"
MOCK_EMBEDDING_MODEL = "mock-embedding"


def _deterministic_floats(seed: str, count: int) -> list[float]:
    values: list[float] = []
    counter = 0
    while len(values) < count:
        digest = hashlib.sha256(f"{seed}:{counter}".encode("utf-8")).digest()
        for offset in range(0, len(digest), 4):
            if len(values) >= count:
                break
            raw = int.from_bytes(digest[offset : offset + 4], "big")
            values.append(raw / 0xFFFFFFFF * 2.0 - 1.0)
        counter += 1
    return values


def mock_embed(text: str, *, dimensions: int) -> list[float]:
    """Deterministic L2-normalised vector for ``text``."""
    if dimensions <= 0:
        raise ValueError("dimensions must be positive")
    raw = _deterministic_floats(text, dimensions)
    norm = math.sqrt(sum(v * v for v in raw)) or 1.0
    return [round(v / norm, 8) for v in raw]
