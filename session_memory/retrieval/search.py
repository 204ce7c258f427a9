"""Hybrid retrieval: cosine similarity + FTS5 lexical search, fused with RRF."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

import numpy as np

from session_memory.errors import NotIndexedError, StorageError
from session_memory.ingestion.embeddings import EmbeddingClient
from session_memory.ingestion.models import SessionChunk
from session_memory.ingestion.storage import SessionStore
from session_memory.pipeline_config import MemoryConfig
from session_memory.retrieval.models import SearchFilters, SearchResult

logger = logging.getLogger(__name__)

_TERM_RE = re.compile(r"\w+")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for mismatched lengths or a zero-norm vector."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def build_fts_query(query: str) -> str | None:
    """Turn free text into an FTS5 query: every term prefix-matched, AND-ed.

    ``"ship release"`` becomes ``"ship"* "release"*``. Returns None when the
    query has no searchable terms.
    """
    terms = _TERM_RE.findall(query)
    if not terms:
        return None
    return " ".join(f'"{term}"*' for term in terms)


def normalize_lexical_scores(ranks: Sequence[float]) -> list[float]:
    """Map FTS5 bm25 values (lower is better) onto 0-1, higher is better."""
    if not ranks:
        return []
    raw = [max(0.0, -rank) for rank in ranks]
    top = max(raw)
    if top <= 0.0:
        return [1.0] * len(raw)
    return [value / top for value in raw]


def reciprocal_rank_fusion(rankings: Sequence[Sequence[int]], k: int = 60) -> dict[int, float]:
    """Sum ``1 / (k + rank)`` per id across rankings (ranks are 1-based)."""
    scores: dict[int, float] = {}
    for ranking in rankings:
        for rank, item_id in enumerate(ranking, start=1):
            scores[item_id] = scores.get(item_id, 0.0) + 1.0 / (k + rank)
    return scores


class HybridSearchEngine:
    """Read-only search over the session store."""

    def __init__(
        self,
        store: SessionStore,
        embedding_client: EmbeddingClient,
        config: MemoryConfig | None = None,
    ) -> None:
        self.store = store
        self.embedding_client = embedding_client
        self.config = config or MemoryConfig()

    def search(
        self,
        query: str,
        limit: int | None = None,
        filters: SearchFilters | None = None,
    ) -> list[SearchResult]:
        """Return the top *limit* chunks for *query*.

        Args:
            query: Free-text query.
            limit: Maximum results (defaults to ``config.search_limit``).
            filters: Date range / topic restrictions applied to both signals.

        Raises:
            ValueError: If *limit* is less than 1.
            NotIndexedError: If no chunk has an embedding yet.
            ProviderError: If the query cannot be embedded.
        """
        limit = self.config.search_limit if limit is None else limit
        if limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")
        if self.store.count_embedded() == 0:
            raise NotIndexedError("No embedded chunks found; run `embed --all` first")

        query_vector = self.embedding_client.embed_query(query)

        vector_ranked = self._vector_candidates(query_vector, filters)
        lexical_ranked = self._lexical_candidates(query, filters)
        logger.info(
            "Search %r: %d vector candidates, %d lexical candidates",
            query,
            len(vector_ranked),
            len(lexical_ranked),
        )

        chunks: dict[int, SessionChunk] = {}
        embedding_scores: dict[int, float] = {}
        lexical_scores: dict[int, float] = {}
        for chunk, score in vector_ranked:
            chunks[chunk.id] = chunk
            embedding_scores[chunk.id] = score
        for chunk, score in lexical_ranked:
            chunks.setdefault(chunk.id, chunk)
            lexical_scores[chunk.id] = score

        fused = reciprocal_rank_fusion(
            [
                [chunk.id for chunk, _ in vector_ranked],
                [chunk.id for chunk, _ in lexical_ranked],
            ],
            k=self.config.rrf_k,
        )
        ordered = sorted(fused.items(), key=lambda item: (-item[1], item[0]))

        return [
            SearchResult(
                chunk=chunks[chunk_id],
                fused_score=score,
                embedding_score=embedding_scores.get(chunk_id, 0.0),
                lexical_score=lexical_scores.get(chunk_id, 0.0),
            )
            for chunk_id, score in ordered[:limit]
        ]

    def _vector_candidates(
        self, query_vector: list[float], filters: SearchFilters | None
    ) -> list[tuple[SessionChunk, float]]:
        scored = [
            (chunk, cosine_similarity(query_vector, chunk.embedding))
            for chunk in self.store.embedded_chunks(filters)
            if chunk.embedding is not None and chunk.id is not None
        ]
        scored.sort(key=lambda pair: (-pair[1], pair[0].id))
        return scored

    def _lexical_candidates(
        self, query: str, filters: SearchFilters | None
    ) -> list[tuple[SessionChunk, float]]:
        fts_query = build_fts_query(query)
        if fts_query is None:
            return []
        try:
            rows = self.store.lexical_search(fts_query, filters, limit=self.config.lexical_candidates)
        except StorageError as exc:
            logger.warning("Lexical search failed, using vector results only: %s", exc)
            return []
        scores = normalize_lexical_scores([rank for _, rank in rows])
        return [(chunk, score) for (chunk, _), score in zip(rows, scores, strict=True)]
