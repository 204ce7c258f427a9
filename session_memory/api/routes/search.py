"""Search endpoint: hybrid (cosine + lexical, RRF-fused) retrieval."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from session_memory.api.dependencies import get_config, get_embedding_client, get_store
from session_memory.api.models import SearchHit, SearchRequest, SearchResponse
from session_memory.ingestion.embeddings import EmbeddingClient
from session_memory.ingestion.parsers import normalize_timestamp
from session_memory.ingestion.storage import SessionStore
from session_memory.pipeline_config import MemoryConfig
from session_memory.retrieval.models import SearchFilters
from session_memory.retrieval.search import HybridSearchEngine

router = APIRouter()


def _bound(value: str | None, name: str) -> str | None:
    if value is None:
        return None
    normalized = normalize_timestamp(value)
    if normalized is None:
        raise HTTPException(status_code=422, detail=f"'{name}' must be an ISO date or datetime")
    return normalized


@router.post("/api/search", response_model=SearchResponse)
def search(
    request: SearchRequest,
    store: SessionStore = Depends(get_store),
    client: EmbeddingClient = Depends(get_embedding_client),
    config: MemoryConfig = Depends(get_config),
) -> SearchResponse:
    """Search indexed conversation chunks.

    Returns 409 when nothing has been embedded yet.
    """
    filters = SearchFilters(
        after=_bound(request.after, "after"),
        before=_bound(request.before, "before"),
        topic=request.topic,
    )
    results = HybridSearchEngine(store, client, config).search(
        request.query, limit=request.limit, filters=filters
    )
    return SearchResponse(
        query=request.query,
        results=[
            SearchHit(
                source_id=r.chunk.source_id,
                chunk_index=r.chunk.chunk_index,
                timestamp=r.chunk.timestamp,
                content=r.chunk.content,
                context=r.chunk.context_prefix,
                speakers=r.chunk.speakers,
                topic_tags=r.chunk.topic_tags,
                has_decision=r.chunk.has_decision,
                has_action=r.chunk.has_action,
                fused_score=r.fused_score,
                embedding_score=r.embedding_score,
                lexical_score=r.lexical_score,
            )
            for r in results
        ],
    )
