"""Data models for the ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


class SourceStatus(StrEnum):
    """Lifecycle status of a transcript source in the index state table."""

    CHUNKED = "chunked"
    EMBEDDED = "embedded"
    FAILED = "failed"


class ContextStatus(StrEnum):
    """Status of a chunk's machine-generated context annotation."""

    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class TranscriptMessage:
    """A single role-tagged message extracted from a transcript record."""

    role: str
    content: str
    timestamp: str | None = None


@dataclass
class Chunk:
    """One exchange (or sub-exchange) produced by the chunker."""

    content: str
    speakers: list[str]
    timestamp: str | None
    token_count: int
    chunk_index: int = 0


@dataclass
class SessionChunk:
    """A stored, retrievable chunk of conversation."""

    source_id: str
    chunk_index: int
    timestamp: str | None
    content: str
    speakers: list[str] = field(default_factory=list)
    topic_tags: list[str] = field(default_factory=list)
    has_decision: bool = False
    has_action: bool = False
    context_content: str | None = None
    context_prefix: str | None = None
    context_status: ContextStatus = ContextStatus.PENDING
    token_count: int = 0
    embedding: list[float] | None = None
    id: int | None = None


@dataclass
class TranscriptSource:
    """Index state of one transcript source."""

    source_id: str
    file_path: str
    file_hash: str
    last_indexed: str
    chunk_count: int
    status: SourceStatus
    last_error: str | None = None


@dataclass
class ValidationResult:
    """Verdict of the transcript validator."""

    valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.valid = False
        self.errors.append(message)
