"""Deterministic semantic backends for testing.

Provides SemanticBackend implementations that need no ML model: vectors
are seeded from a hash of the text, and latency or failure can be
simulated to drive the coordinator's timeout and fallback paths.
"""

from __future__ import annotations

import asyncio
import hashlib

import numpy as np


def hashed_vector(text: str, dims: int = 16) -> list[float]:
    """Stable pseudo-random unit vector for ``text``."""
    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
    rng = np.random.default_rng(seed)
    vector = rng.standard_normal(dims)
    return (vector / np.linalg.norm(vector)).tolist()


class FakeSemanticBackend:
    """Hash-seeded embeddings with optional delay and failure.

    Usage:
        backend = FakeSemanticBackend()
        backend = FakeSemanticBackend(delay=10.0)       # always times out
        backend = FakeSemanticBackend(fail=True)        # always unavailable
        backend = FakeSemanticBackend(vectors={"q": [1.0, 0.0]})
    """

    def __init__(
        self,
        *,
        dims: int = 16,
        delay: float = 0.0,
        fail: bool = False,
        vectors: dict[str, list[float]] | None = None,
        model_name: str = "fake-model",
    ) -> None:
        self.dims = dims
        self.delay = delay
        self.fail = fail
        self.vectors = vectors or {}
        self._model_name = model_name
        self.calls: list[str] = []
        self.cancelled = 0

    @property
    def model_name(self) -> str:
        return self._model_name

    def available(self) -> bool:
        return True

    async def embed(self, text: str, timeout: float) -> list[float] | None:
        self.calls.append(text)
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        if self.fail:
            return None
        if text in self.vectors:
            return list(self.vectors[text])
        return hashed_vector(text, self.dims)


class BlockingEmbeddingClient:
    """EmbeddingClientProtocol whose embed call blocks the calling thread."""

    def __init__(self, seconds: float, dims: int = 8) -> None:
        self.seconds = seconds
        self.dims = dims

    @property
    def dimension(self) -> int | None:
        return self.dims

    def available(self) -> bool:
        return True

    def embed(self, texts: list[str]) -> list[list[float]] | None:
        import time

        time.sleep(self.seconds)
        return [hashed_vector(text, self.dims) for text in texts]
