"""Exchange-based chunking for session transcripts."""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from session_memory.ingestion.classifiers import ChunkClassifier
from session_memory.ingestion.formatting import format_local_date, resolve_speaker_names
from session_memory.ingestion.models import Chunk, SessionChunk, TranscriptMessage
from session_memory.pipeline_config import MemoryConfig

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

# Sentence boundary (after terminal punctuation) or a line break.
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|\n+")


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass
class ChunkingResult:
    """Chunks produced for one source plus anything dropped on the way."""

    chunks: list[Chunk] = field(default_factory=list)
    dropped: int = 0
    warnings: list[str] = field(default_factory=list)


class ExchangeChunker:
    """Split a message sequence into one chunk per user/assistant exchange.

    Exchanges whose estimated size exceeds ``max_chunk_tokens`` are split on
    sentence boundaries; each sub-chunk after the first is prefixed with the
    last ``overlap_chars`` characters of the previous one.
    """

    def __init__(
        self,
        max_chunk_tokens: int = 500,
        max_chunks: int = 2000,
        overlap_chars: int = 50,
    ) -> None:
        self.max_chunk_tokens = max_chunk_tokens
        self.max_chunks = max_chunks
        self.overlap_chars = overlap_chars

    @classmethod
    def from_config(cls, config: MemoryConfig) -> ExchangeChunker:
        return cls(
            max_chunk_tokens=config.max_chunk_tokens,
            max_chunks=config.max_chunks_per_source,
            overlap_chars=config.overlap_chars,
        )

    def chunk(
        self,
        messages: list[TranscriptMessage],
        start_index: int = 0,
        max_chunks: int | None = None,
    ) -> ChunkingResult:
        """Chunk *messages*, numbering chunks from *start_index*.

        Args:
            messages: Messages in transcript order.
            start_index: First ``chunk_index`` to assign.
            max_chunks: Cap for this call (defaults to ``self.max_chunks``).
                Chunks beyond the cap are dropped and reported as a warning.

        Returns:
            A :class:`ChunkingResult`.
        """
        limit = self.max_chunks if max_chunks is None else max(0, max_chunks)
        pieces: list[tuple[str, list[str], str | None]] = []

        for text, speakers, timestamp in self._exchanges(messages):
            if estimate_tokens(text) <= self.max_chunk_tokens:
                pieces.append((text, speakers, timestamp))
            else:
                for part in self.split_exchange(text):
                    pieces.append((part, speakers, timestamp))

        result = ChunkingResult()
        if len(pieces) > limit:
            result.dropped = len(pieces) - limit
            message = f"Source produced {len(pieces)} chunks, capping at {limit}"
            logger.warning(message)
            result.warnings.append(message)
            pieces = pieces[:limit]

        for offset, (text, speakers, timestamp) in enumerate(pieces):
            result.chunks.append(
                Chunk(
                    content=text,
                    speakers=list(speakers),
                    timestamp=timestamp,
                    token_count=estimate_tokens(text),
                    chunk_index=start_index + offset,
                )
            )
        return result

    def _exchanges(
        self, messages: list[TranscriptMessage]
    ) -> list[tuple[str, list[str], str | None]]:
        """Pair each user message with the immediately following assistant reply."""
        exchanges: list[tuple[str, list[str], str | None]] = []
        i = 0
        while i < len(messages):
            user_msg = messages[i]
            if user_msg.role != "user" or not isinstance(user_msg.content, str):
                i += 1
                continue

            text = f"User: {user_msg.content.strip()}"
            speakers = ["user"]

            reply = messages[i + 1] if i + 1 < len(messages) else None
            if (
                reply is not None
                and reply.role == "assistant"
                and isinstance(reply.content, str)
            ):
                text += f"\nAssistant: {reply.content.strip()}"
                speakers.append("assistant")
                i += 2
            else:
                i += 1

            exchanges.append((text, speakers, user_msg.timestamp))
        return exchanges

    def split_exchange(self, text: str) -> list[str]:
        """Split an oversized exchange into sub-chunks within the token ceiling."""
        max_chars = self.max_chunk_tokens * CHARS_PER_TOKEN
        # Room left for the overlap prefix and its separating space.
        body_limit = max_chars - self.overlap_chars - 1 if self.overlap_chars else max_chars

        sentences: list[str] = []
        for raw in _SENTENCE_SPLIT_RE.split(text):
            sentence = raw.strip()
            while len(sentence) > body_limit:
                sentences.append(sentence[:body_limit])
                sentence = sentence[body_limit:].lstrip()
            if sentence:
                sentences.append(sentence)

        bodies: list[str] = []
        current = ""
        for sentence in sentences:
            proposed = f"{current} {sentence}" if current else sentence
            if len(proposed) > body_limit and current:
                bodies.append(current)
                current = sentence
            else:
                current = proposed
        if current:
            bodies.append(current)

        parts: list[str] = []
        for i, body in enumerate(bodies):
            overlap = bodies[i - 1][-self.overlap_chars :].lstrip() if i and self.overlap_chars else ""
            parts.append(f"{overlap} {body}" if overlap else body)
        return parts


def build_context_content(
    chunk: Chunk,
    topic_tags: list[str],
    timezone: str = "UTC",
    speaker_names: Mapping[str, str] | None = None,
) -> str:
    """Build the legacy metadata header block prefixed to the chunk text."""
    lines = [
        f"[Session from {format_local_date(chunk.timestamp, timezone, with_time=True)}]",
        f"[Participants: {resolve_speaker_names(chunk.speakers, speaker_names)}]",
    ]
    if topic_tags:
        lines.append(f"[Topics: {', '.join(topic_tags)}]")
    return "\n".join(lines) + "\n\n" + chunk.content


def build_session_chunks(
    source_id: str,
    chunks: list[Chunk],
    classifier: ChunkClassifier,
    timezone: str = "UTC",
    speaker_names: Mapping[str, str] | None = None,
) -> list[SessionChunk]:
    """Attach source id, topic tags, decision/action flags and legacy context."""
    session_chunks: list[SessionChunk] = []
    for chunk in chunks:
        topic_tags = classifier.topics(chunk.content)
        session_chunks.append(
            SessionChunk(
                source_id=source_id,
                chunk_index=chunk.chunk_index,
                timestamp=chunk.timestamp,
                content=chunk.content,
                speakers=list(chunk.speakers),
                topic_tags=topic_tags,
                has_decision=classifier.has_decision(chunk.content),
                has_action=classifier.has_action(chunk.content),
                context_content=build_context_content(chunk, topic_tags, timezone, speaker_names),
                token_count=chunk.token_count,
            )
        )
    return session_chunks
