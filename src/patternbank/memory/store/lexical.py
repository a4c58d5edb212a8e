"""Lexical fallback: exact case-insensitive substring search.

This is the deterministic floor every query degrades to. No tokenizing,
stemming or fuzziness: a pattern matches when the query text occurs inside
its key or value, ignoring case. No confidence filter is applied.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from patternbank.core.result import Err, Ok, PatternBankError, Result, ValidationError
from patternbank.memory.models import Pattern

if TYPE_CHECKING:
    from .sqlite import PatternStore

DEFAULT_LIMIT = 10


class LexicalFallback:
    """Synchronous, side-effect-free substring search over a PatternStore."""

    def __init__(self, store: PatternStore, default_limit: int = DEFAULT_LIMIT) -> None:
        self._store = store
        self._default_limit = default_limit

    def search(
        self,
        query: str,
        namespace: str | None = None,
        limit: int | None = None,
        *,
        without_model: str | None = None,
    ) -> Result[list[Pattern], PatternBankError]:
        """Return patterns containing ``query`` in key or value, canonical order, capped.

        ``without_model`` restricts matches to patterns not yet embedded by that model.
        """
        effective_limit = self._default_limit if limit is None else limit
        if effective_limit <= 0:
            return Err(ValidationError("Limit must be positive", context={"limit": limit}))
        match self._store.search_text(
            query, namespace, effective_limit, without_model=without_model
        ):
            case Err(err):
                return Err(err)
            case Ok(patterns):
                return Ok(patterns)


__all__ = ["DEFAULT_LIMIT", "LexicalFallback"]
