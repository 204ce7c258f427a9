"""Incremental re-indexing: decide what work a transcript source needs."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from enum import StrEnum

from session_memory.ingestion.models import SourceStatus, TranscriptMessage, TranscriptSource
from session_memory.ingestion.storage import SessionStore

logger = logging.getLogger(__name__)


def compute_content_hash(content: str) -> str:
    """SHA-256 hex digest of the full source text."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class PlanAction(StrEnum):
    SKIP = "skip"
    HASH_ONLY = "hash_only"
    INDEX = "index"


@dataclass
class IndexPlan:
    """What to do with one source.

    For ``INDEX`` plans, ``messages`` holds only the messages newer than the
    last indexed chunk and ``start_index`` is the next unused chunk index.
    """

    source_id: str
    action: PlanAction
    file_hash: str
    messages: list[TranscriptMessage] = field(default_factory=list)
    start_index: int = 0
    existing_chunks: int = 0
    previous: TranscriptSource | None = None


class IndexStateTracker:
    """Compares a source against its stored state to plan the next pass."""

    def __init__(self, store: SessionStore) -> None:
        self.store = store

    def plan(self, source_id: str, content: str, messages: list[TranscriptMessage]) -> IndexPlan:
        file_hash = compute_content_hash(content)
        previous = self.store.get_source_state(source_id)

        # A failed source is retried even when its content is unchanged.
        if (
            previous is not None
            and previous.file_hash == file_hash
            and previous.status != SourceStatus.FAILED
        ):
            logger.info("Skipping %s: content unchanged", source_id)
            return IndexPlan(source_id, PlanAction.SKIP, file_hash, previous=previous)

        existing = self.store.count_chunks(source_id)
        last_index, last_timestamp = self.store.last_chunk_position(source_id)

        if last_index < 0:
            return IndexPlan(
                source_id,
                PlanAction.INDEX,
                file_hash,
                messages=list(messages),
                start_index=0,
                existing_chunks=existing,
                previous=previous,
            )

        if last_timestamp is None:
            # No stored timestamp to compare against; treat nothing as new.
            new_messages: list[TranscriptMessage] = []
        else:
            new_messages = [m for m in messages if m.timestamp and m.timestamp > last_timestamp]
            # Chunks carry the user message's timestamp, so the reply that
            # closed the last indexed exchange still looks new here.
            while new_messages and new_messages[0].role != "user":
                new_messages.pop(0)

        if not new_messages:
            logger.info("Content of %s changed but no new messages; updating hash", source_id)
            return IndexPlan(
                source_id,
                PlanAction.HASH_ONLY,
                file_hash,
                existing_chunks=existing,
                previous=previous,
            )

        logger.info(
            "%s: %d new messages after %s, continuing from chunk %d",
            source_id,
            len(new_messages),
            last_timestamp,
            last_index + 1,
        )
        return IndexPlan(
            source_id,
            PlanAction.INDEX,
            file_hash,
            messages=new_messages,
            start_index=last_index + 1,
            existing_chunks=existing,
            previous=previous,
        )
