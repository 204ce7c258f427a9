"""Data models for query-time retrieval."""

from __future__ import annotations

from dataclasses import dataclass

from session_memory.ingestion.models import SessionChunk


@dataclass(frozen=True)
class SearchFilters:
    """Optional restrictions applied to both retrieval signals.

    ``after`` / ``before`` are canonical UTC timestamps (inclusive bounds);
    ``topic`` must match one of the chunk's topic tags exactly.
    """

    after: str | None = None
    before: str | None = None
    topic: str | None = None


@dataclass
class SearchResult:
    """A chunk with its fused score and the two component scores."""

    chunk: SessionChunk
    fused_score: float
    embedding_score: float = 0.0
    lexical_score: float = 0.0
