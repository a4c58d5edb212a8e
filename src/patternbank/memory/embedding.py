"""Embedding providers for semantic search.

This module provides:
- EmbeddingClient: blocking client backed by a remote embedding server or a
  local SentenceTransformer model
- NullSemanticBackend / EmbeddingSemanticBackend: the two implementations of
  the SemanticBackend capability the index depends on
- build_semantic_backend(): pick one at construction time from config
"""

from __future__ import annotations

import asyncio
import functools
import importlib.util
import json
from collections.abc import Coroutine
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib import request as urllib_request

from patternbank.core.config import AppConfig
from patternbank.core.console import get_logger
from patternbank.core.runtime import get_runtime_or_none

from .lifecycle import run_in_daemon_thread
from .models import EmbeddingClientProtocol, SemanticBackend

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

logger = get_logger(__name__)
T = TypeVar("T")

NULL_MODEL = "none"


# -----------------------------------------------------------------------------
# Utility Functions
# -----------------------------------------------------------------------------


def _run_coroutine(coro: Coroutine[object, object, T]) -> T | None:
    """Run a coroutine from a worker thread that has no event loop of its own."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    logger.debug("Async loop already running; skipping coroutine execution.")
    coro.close()
    return None


def _normalize_server_url(raw: str | None) -> str | None:
    """Normalize a server URL, adding http:// if needed."""
    if not raw:
        return None
    cleaned = raw.strip()
    if not cleaned:
        return None
    if "://" not in cleaned:
        cleaned = f"http://{cleaned}"
    parsed = urllib_parse.urlparse(cleaned)
    if not parsed.netloc and parsed.path:
        parsed = urllib_parse.urlparse(f"http://{parsed.path}")
    return parsed.geturl() if parsed.netloc else None


async def _async_check_port(host: str, port: int, timeout: float = 1.0) -> bool:
    """Check if a port is reachable."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (TimeoutError, OSError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError as exc:
        logger.debug("Probe connection to %s:%d closed uncleanly: %s", host, port, exc)
    return True


def _post_json(
    url: str, payload: dict[str, object], timeout: float = 2.0
) -> dict[str, object] | None:
    """POST JSON to a URL and return the response."""
    data = json.dumps(payload, ensure_ascii=True).encode("utf-8")
    req = urllib_request.Request(url, data=data, headers={"Content-Type": "application/json"})
    try:
        with urllib_request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read()
    except (
        urllib_error.HTTPError,
        urllib_error.URLError,
        TimeoutError,
        OSError,
        ValueError,
    ) as exc:
        logger.debug("Embedding HTTP request failed: %s", exc)
        return None

    try:
        parsed = json.loads(raw.decode("utf-8"))
    except json.JSONDecodeError as exc:
        logger.debug("Embedding HTTP response parse failed: %s", exc)
        return None
    return parsed if isinstance(parsed, dict) else None


def _extract_embeddings(payload: dict[str, object]) -> list[list[float]] | None:
    """Extract embedding vectors from API response."""
    candidates: list[list[float]] = []
    if "data" in payload and isinstance(payload["data"], list):
        for item in payload["data"]:
            if isinstance(item, dict) and isinstance(item.get("embedding"), list):
                candidates.append([float(val) for val in item["embedding"]])
    if not candidates and "embeddings" in payload and isinstance(payload["embeddings"], list):
        for vector in payload["embeddings"]:
            if isinstance(vector, list):
                candidates.append([float(val) for val in vector])
    if not candidates and "embedding" in payload and isinstance(payload["embedding"], list):
        candidates.append([float(val) for val in payload["embedding"]])
    return candidates or None


def _warn_semantic_unavailable() -> None:
    """Warn about missing semantic search dependencies, once per runtime."""
    ctx = get_runtime_or_none()
    if ctx is not None:
        if ctx.warnings.semantic_unavailable:
            return
        ctx.warnings.semantic_unavailable = True
    logger.warning(
        "Semantic memory search unavailable. Install with `pip install patternbank[ai]`."
    )


def compose_embedding_text(key: str, value: str) -> str:
    """Compose text for embedding from a pattern's key and value."""
    return f"{key}\n{value}".strip()


@functools.lru_cache(maxsize=4)
def _load_sentence_transformer(model_name: str) -> tuple[SentenceTransformer | None, int | None]:
    """Load a SentenceTransformer model once per process."""
    try:
        from sentence_transformers import SentenceTransformer as STModel
    except ImportError:
        _warn_semantic_unavailable()
        return None, None

    cache_root = Path.home() / ".cache" / "patternbank" / "sentence-transformers"
    cache_root.mkdir(parents=True, exist_ok=True)

    try:
        model = STModel(model_name, cache_folder=str(cache_root))
    except Exception as exc:  # pragma: no cover - depends on model download
        logger.debug("Failed to load embedding model %s: %s", model_name, exc)
        _warn_semantic_unavailable()
        return None, None

    dimension: int | None = None
    if hasattr(model, "get_sentence_embedding_dimension"):
        dim_val = model.get_sentence_embedding_dimension()
        if dim_val is not None:
            dimension = int(dim_val)

    return model, dimension


# -----------------------------------------------------------------------------
# Embedding Client
# -----------------------------------------------------------------------------


class EmbeddingClient(EmbeddingClientProtocol):
    """Blocking embedding client.

    Prefers a remote embedding server when one is configured and reachable,
    and falls back to local SentenceTransformer weights. Intended to be called
    off the event loop thread.
    """

    def __init__(self, model_name: str, *, server_url: str | None = None, timeout: float = 2.0) -> None:
        self.model_name = model_name
        self._server_url = _normalize_server_url(server_url)
        self._timeout = timeout
        self._model: SentenceTransformer | None = None
        self._dimension: int | None = None
        self._remote_available: bool | None = None

    @property
    def dimension(self) -> int | None:
        return self._dimension

    def _server_host_port(self) -> tuple[str, int] | None:
        if not self._server_url:
            return None
        parsed = urllib_parse.urlparse(self._server_url)
        host = parsed.hostname
        port = parsed.port
        if host is None:
            return None
        if port is None:
            if parsed.scheme == "https":
                port = 443
            elif parsed.scheme == "http":
                port = 80
            else:
                return None
        return host, port

    def _check_remote_available(self) -> bool:
        if self._remote_available is not None:
            return self._remote_available
        host_port = self._server_host_port()
        if host_port is None:
            self._remote_available = False
            return False
        host, port = host_port
        self._remote_available = bool(_run_coroutine(_async_check_port(host, port, self._timeout)))
        return self._remote_available

    def available(self) -> bool:
        if self._check_remote_available():
            return True
        return self._model is not None

    def _embed_remote(self, texts: list[str]) -> list[list[float]] | None:
        if not self._server_url or not self._check_remote_available():
            return None
        payload: dict[str, object] = {"input": texts, "model": self.model_name}
        response = _post_json(self._server_url, payload, self._timeout)
        if response is None:
            self._remote_available = False
            return None
        vectors = _extract_embeddings(response)
        if vectors is None:
            logger.debug("Embedding server returned no embeddings from %s", self._server_url)
            self._remote_available = False
            return None
        if vectors and self._dimension is None and vectors[0]:
            self._dimension = len(vectors[0])
        self._remote_available = True
        return vectors

    def _get_model(self) -> SentenceTransformer | None:
        if self._model is not None:
            return self._model
        model, dimension = _load_sentence_transformer(self.model_name)
        self._model = model
        self._dimension = dimension
        return self._model

    def embed(self, texts: list[str]) -> list[list[float]] | None:
        if not texts:
            return []

        remote_vectors = self._embed_remote(texts)
        if remote_vectors is not None:
            return remote_vectors

        model = self._get_model()
        if model is None:
            return None
        vectors = model.encode(texts, show_progress_bar=False, convert_to_numpy=True)
        return [vector.tolist() for vector in vectors]


# -----------------------------------------------------------------------------
# Semantic Backends
# -----------------------------------------------------------------------------


class NullSemanticBackend:
    """Backend used when semantic search is disabled or impossible. Always unavailable."""

    def __init__(self, model_name: str = NULL_MODEL) -> None:
        self._model_name = model_name

    @property
    def model_name(self) -> str:
        return self._model_name

    def available(self) -> bool:
        return False

    async def embed(self, text: str, timeout: float) -> list[float] | None:
        return None


class EmbeddingSemanticBackend:
    """Adapts a blocking EmbeddingClientProtocol to the async SemanticBackend interface.

    Each call runs on a daemon thread and is abandoned, not awaited, once
    ``timeout`` passes.
    """

    def __init__(self, client: EmbeddingClientProtocol, model_name: str) -> None:
        self._client = client
        self._model_name = model_name

    @property
    def model_name(self) -> str:
        return self._model_name

    def available(self) -> bool:
        return True

    async def embed(self, text: str, timeout: float) -> list[float] | None:
        try:
            vectors = await asyncio.wait_for(
                run_in_daemon_thread(self._client.embed, [text]), timeout=timeout
            )
        except TimeoutError:
            logger.warning("Embedding provider exceeded its %.2fs budget", timeout)
            return None
        except Exception as exc:
            logger.warning("Embedding provider failed: %s", exc)
            return None
        if not vectors or not vectors[0]:
            return None
        return [float(val) for val in vectors[0]]


def build_semantic_backend(config: AppConfig) -> SemanticBackend:
    """Choose the semantic backend once, from configuration and installed extras."""
    settings = config.embedding
    if not settings.use_semantic_search:
        logger.debug("Semantic search disabled by configuration")
        return NullSemanticBackend()
    if settings.server_url is None and importlib.util.find_spec("sentence_transformers") is None:
        _warn_semantic_unavailable()
        return NullSemanticBackend()
    client = EmbeddingClient(settings.model, server_url=settings.server_url, timeout=settings.timeout)
    return EmbeddingSemanticBackend(client, model_name=settings.model)


__all__ = [
    "NULL_MODEL",
    "EmbeddingClient",
    "EmbeddingSemanticBackend",
    "NullSemanticBackend",
    "build_semantic_backend",
]
