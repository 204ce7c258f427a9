"""Pipeline configuration: the immutable tuning object handed to every component."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from session_memory.config import Settings

# Upper bound on embedding batches in flight at once.
MAX_EMBEDDING_WORKERS = 10


@dataclass(frozen=True)
class MemoryConfig:
    """Immutable configuration for the session-memory pipeline.

    Defaults mirror the production behaviour: 500-token chunks with a
    50-character overlap, 2000 chunks per source, embedding batches of 10
    and RRF with ``k = 60``.
    """

    max_chunk_tokens: int = 500
    max_chunks_per_source: int = 2000
    overlap_chars: int = 50
    context_excerpt_chars: int = 1500
    embedding_batch_size: int = 10
    embedding_max_workers: int = 4
    embedding_batch_delay_seconds: float = 0.1
    rrf_k: int = 60
    search_limit: int = 5
    lexical_candidates: int = 100
    healthy_embedded_ratio: float = 0.9

    def __post_init__(self) -> None:
        if self.max_chunk_tokens <= 0:
            raise ValueError("max_chunk_tokens must be positive")
        if self.overlap_chars < 0 or self.overlap_chars * 2 >= self.max_chunk_tokens * 4:
            raise ValueError("overlap_chars must be non-negative and well under the chunk size")
        if self.embedding_batch_size <= 0:
            raise ValueError("embedding_batch_size must be positive")
        if not 1 <= self.embedding_max_workers <= MAX_EMBEDDING_WORKERS:
            raise ValueError(f"embedding_max_workers must be between 1 and {MAX_EMBEDDING_WORKERS}")

    @classmethod
    def from_settings(cls, settings: Settings) -> MemoryConfig:
        """Build a config from environment-backed settings."""
        return cls(
            max_chunk_tokens=settings.max_chunk_tokens,
            max_chunks_per_source=settings.max_chunks_per_source,
            overlap_chars=settings.chunk_overlap_chars,
            embedding_batch_size=settings.embedding_batch_size,
            embedding_max_workers=settings.embedding_max_workers,
            embedding_batch_delay_seconds=settings.embedding_batch_delay_seconds,
            rrf_k=settings.rrf_k,
            search_limit=settings.search_limit,
        )
