"""Status endpoints: index statistics and embedding coverage."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from session_memory.api.dependencies import get_config, get_readonly_store
from session_memory.api.models import (
    EmbeddingStatusResponse,
    FailedSource,
    SourcePending,
    StatusResponse,
)
from session_memory.health import collect_status
from session_memory.ingestion.pipeline import IngestionPipeline
from session_memory.ingestion.storage import SessionStore
from session_memory.pipeline_config import MemoryConfig

router = APIRouter()


@router.get("/api/status", response_model=StatusResponse)
def status(
    store: SessionStore = Depends(get_readonly_store),
    config: MemoryConfig = Depends(get_config),
) -> StatusResponse:
    memory = collect_status(store, config)
    stats = memory.stats
    return StatusResponse(
        health=memory.verdict,
        total_chunks=stats.total_chunks,
        total_sources=stats.total_sources,
        indexed_sources=stats.indexed_sources,
        failed_sources=stats.failed_sources,
        embedded_chunks=stats.embedded_chunks,
        context_complete=stats.context_complete,
        context_failed=stats.context_failed,
        context_pending=stats.context_pending,
        avg_tokens=round(stats.avg_tokens, 1),
        recent_chunks=stats.recent_chunks,
        last_indexed=stats.last_indexed,
        failed=[FailedSource(source_id=s.source_id, error=s.last_error) for s in memory.failed],
    )


@router.get("/api/embeddings/status", response_model=EmbeddingStatusResponse)
def embedding_status(
    store: SessionStore = Depends(get_readonly_store),
    config: MemoryConfig = Depends(get_config),
) -> EmbeddingStatusResponse:
    result = IngestionPipeline(config, store).embedding_status()
    return EmbeddingStatusResponse(
        total=result.total,
        embedded=result.embedded,
        pending=result.pending,
        percent=round(result.percent, 1),
        pending_by_source=[
            SourcePending(source_id=source_id, pending=pending)
            for source_id, pending in result.pending_by_source
        ],
    )
