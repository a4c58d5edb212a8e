"""
Per-call runtime state for patternbank.

The synchronous API wraps every call in ``runtime_context(config)`` so that
code deep in the memory subsystem can reach call-scoped state through a
context variable instead of module globals. Today that state is the
warn-once bookkeeping for an unavailable embedding provider.

Usage:
    from patternbank.core.runtime import get_runtime_or_none, runtime_context

    with runtime_context(config):
        ...

    ctx = get_runtime_or_none()
    if ctx is not None and not ctx.warnings.semantic_unavailable:
        ...
"""

from __future__ import annotations

import contextvars
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from patternbank.core.config import AppConfig


@dataclass
class WarningState:
    """Warnings already emitted in this runtime."""

    semantic_unavailable: bool = False


@dataclass
class RuntimeContext:
    config: AppConfig
    warnings: WarningState = field(default_factory=WarningState)


_runtime_ctx: contextvars.ContextVar[RuntimeContext | None] = contextvars.ContextVar(
    "pb_runtime",
    default=None,
)


def get_runtime_or_none() -> RuntimeContext | None:
    """Current runtime context, or None outside ``runtime_context``."""
    return _runtime_ctx.get()


@contextmanager
def runtime_context(config: AppConfig) -> Iterator[RuntimeContext]:
    """Establish runtime state for the duration of the block."""
    ctx = RuntimeContext(config=config)
    token = _runtime_ctx.set(ctx)
    try:
        yield ctx
    finally:
        _runtime_ctx.reset(token)


__all__ = [
    "RuntimeContext",
    "WarningState",
    "get_runtime_or_none",
    "runtime_context",
]
