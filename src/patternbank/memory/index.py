"""Embedding index: vectors for stored patterns.

The index never generates embeddings itself; it asks the configured
SemanticBackend and stores what comes back. Query-text vectors are memoized
in a TTL cache keyed by a hash of (model, text).
"""

from __future__ import annotations

import hashlib

from patternbank.core.console import get_logger
from patternbank.core.result import (
    EmbeddingUnavailableError,
    Err,
    Ok,
    PatternBankError,
    Result,
)

from .cache import MISS, TTLCache
from .embedding import compose_embedding_text
from .models import Embedding, Pattern, SemanticBackend
from .store import PatternStore

logger = get_logger(__name__)


def text_cache_key(model: str, text: str) -> str:
    return hashlib.sha256(f"{model}\0{text}".encode()).hexdigest()


class EmbeddingIndex:
    def __init__(
        self,
        store: PatternStore,
        backend: SemanticBackend,
        cache: TTLCache[list[float]],
        *,
        timeout: float,
    ) -> None:
        self._store = store
        self._backend = backend
        self._cache = cache
        self._timeout = timeout

    @property
    def model_name(self) -> str:
        return self._backend.model_name

    def available(self) -> bool:
        return self._backend.available()

    async def embed(self, text: str) -> Result[list[float], EmbeddingUnavailableError]:
        """Vector for ``text``, or ``EmbeddingUnavailableError`` without blocking past the budget."""
        if not self._backend.available():
            return Err(
                EmbeddingUnavailableError(
                    "No embedding provider configured", context={"model": self.model_name}
                )
            )

        key = text_cache_key(self.model_name, text)
        cached = self._cache.get(key)
        if cached is not MISS:
            return Ok(cached)

        vector = await self._backend.embed(text, self._timeout)
        if not vector:
            return Err(
                EmbeddingUnavailableError(
                    "Embedding provider returned no vector", context={"model": self.model_name}
                )
            )
        self._cache.set(key, vector)
        return Ok(vector)

    async def index_pattern(self, pattern: Pattern) -> Result[Embedding, PatternBankError]:
        """Embed a pattern's key and value and attach the vector to it."""
        match await self.embed(compose_embedding_text(pattern.key, pattern.value)):
            case Err(err):
                return Err(err)
            case Ok(vector):
                pass
        result = self._store.upsert_embedding(pattern.id, vector, self.model_name)
        if isinstance(result, Ok):
            logger.debug("Indexed pattern %s (%d dims)", pattern.id, len(vector))
        return result

    def candidates(
        self, namespace: str | None, min_confidence: float = 0.0
    ) -> Result[list[tuple[Pattern, list[float]]], PatternBankError]:
        """Stored vectors for this index's model, in canonical pattern order."""
        return self._store.embedding_candidates(namespace, self.model_name, min_confidence)


__all__ = ["EmbeddingIndex", "text_cache_key"]
