"""Pydantic request/response schemas for the Session Memory API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SearchRequest(BaseModel):
    """Request body for the /api/search endpoint."""

    query: str = Field(min_length=1)
    limit: int | None = Field(default=None, ge=1, le=50)
    after: str | None = None  # ISO date or datetime, inclusive
    before: str | None = None
    topic: str | None = None


class SearchHit(BaseModel):
    """A single retrieved chunk with its fused and component scores."""

    source_id: str
    chunk_index: int
    timestamp: str | None = None
    content: str
    context: str | None = None
    speakers: list[str] = []
    topic_tags: list[str] = []
    has_decision: bool = False
    has_action: bool = False
    fused_score: float
    embedding_score: float
    lexical_score: float


class SearchResponse(BaseModel):
    """Response body for the /api/search endpoint."""

    query: str
    results: list[SearchHit]


class FailedSource(BaseModel):
    source_id: str
    error: str | None = None


class StatusResponse(BaseModel):
    """Aggregate index statistics and the health verdict."""

    health: str
    total_chunks: int
    total_sources: int
    indexed_sources: int
    failed_sources: int
    embedded_chunks: int
    context_complete: int
    context_failed: int
    context_pending: int
    avg_tokens: float
    recent_chunks: int
    last_indexed: str | None = None
    failed: list[FailedSource] = []


class HealthResponse(BaseModel):
    status: str
    level: str
    total_chunks: int
    total_sources: int
    embedded_chunks: int
    failed_sources: int


class SourcePending(BaseModel):
    source_id: str
    pending: int


class EmbeddingStatusResponse(BaseModel):
    """Response body for the /api/embeddings/status endpoint."""

    total: int
    embedded: int
    pending: int
    percent: float
    pending_by_source: list[SourcePending] = []
