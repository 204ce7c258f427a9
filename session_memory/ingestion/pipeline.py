"""End-to-end ingestion pipeline: validate -> chunk -> context -> store -> embed."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from session_memory.errors import (
    ConfigurationError,
    SessionMemoryError,
    TranscriptValidationError,
)
from session_memory.ingestion.chunking import ExchangeChunker, build_session_chunks
from session_memory.ingestion.classifiers import ChunkClassifier, KeywordClassifier
from session_memory.ingestion.context import ContextGenerator
from session_memory.ingestion.embeddings import EmbeddingClient
from session_memory.ingestion.models import (
    ContextStatus,
    SessionChunk,
    SourceStatus,
    TranscriptSource,
    ValidationResult,
)
from session_memory.ingestion.parsers import format_timestamp, parse_transcript
from session_memory.ingestion.state import IndexStateTracker, PlanAction
from session_memory.ingestion.storage import SessionStore
from session_memory.ingestion.validation import validate_transcript_file
from session_memory.pipeline_config import MemoryConfig

logger = logging.getLogger(__name__)


@dataclass
class SourceReport:
    """Outcome of processing one transcript source."""

    source_id: str
    action: PlanAction
    new_chunks: int = 0
    total_chunks: int = 0
    dropped_chunks: int = 0
    context_complete: int = 0
    context_failed: int = 0
    warnings: list[str] = field(default_factory=list)


@dataclass
class BatchReport:
    """Succeeded / failed / skipped counts for a batch operation."""

    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    sources: list[SourceReport] = field(default_factory=list)
    interrupted: bool = False

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.skipped


@dataclass
class EmbeddingStatus:
    total: int
    embedded: int
    pending: int
    pending_by_source: list[tuple[str, int]] = field(default_factory=list)

    @property
    def percent(self) -> float:
        return 100.0 * self.embedded / self.total if self.total else 0.0


class IngestionPipeline:
    """Owns every write path into the session store.

    Network calls (context generation, embedding) run before the write
    transaction they feed is opened, so no lock is held while they are in
    flight.
    """

    def __init__(
        self,
        config: MemoryConfig,
        store: SessionStore,
        classifier: ChunkClassifier | None = None,
        context_generator: ContextGenerator | None = None,
        embedding_client: EmbeddingClient | None = None,
        timezone: str = "UTC",
        speaker_names: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.classifier = classifier or KeywordClassifier()
        self.context_generator = context_generator
        self.embedding_client = embedding_client
        self.timezone = timezone
        self.speaker_names = dict(speaker_names or {})
        self.chunker = ExchangeChunker.from_config(config)
        self.tracker = IndexStateTracker(store)

    def validate(self, path: str | Path) -> ValidationResult:
        return validate_transcript_file(path)

    # ------------------------------------------------------------------
    # Chunking
    # ------------------------------------------------------------------

    def chunk_source(
        self,
        source_id: str,
        path: str | Path,
        generate_context: bool = True,
    ) -> SourceReport:
        """Index one source incrementally.

        Any failure is recorded on the source as ``failed`` (so the next run
        retries it) and re-raised.

        Raises:
            TranscriptValidationError: If the transcript is malformed.
            StorageError: If the chunk write violates a constraint.
        """
        try:
            return self._chunk_source(source_id, Path(path), generate_context)
        except SessionMemoryError as exc:
            self._record_failure(source_id, path, str(exc))
            raise
        except Exception as exc:
            logger.exception("Unexpected error indexing %s", source_id)
            self._record_failure(source_id, path, str(exc))
            raise

    def _chunk_source(self, source_id: str, path: Path, generate_context: bool) -> SourceReport:
        validation = self.validate(path)
        for warning in validation.warnings:
            logger.warning("%s: %s", source_id, warning)
        if not validation.valid:
            raise TranscriptValidationError(source_id, validation.errors)

        content = path.read_text(encoding="utf-8")
        messages = parse_transcript(content)
        plan = self.tracker.plan(source_id, content, messages)
        report = SourceReport(source_id=source_id, action=plan.action)

        if plan.action is PlanAction.SKIP:
            report.total_chunks = plan.previous.chunk_count if plan.previous else 0
            return report

        if plan.action is PlanAction.HASH_ONLY:
            with self.store.transaction():
                if plan.previous is not None and plan.previous.status != SourceStatus.FAILED:
                    self.store.update_source_hash(source_id, plan.file_hash)
                else:
                    self._write_state(source_id, path, plan.file_hash, plan.existing_chunks)
            report.total_chunks = plan.existing_chunks
            return report

        result = self.chunker.chunk(
            plan.messages,
            start_index=plan.start_index,
            max_chunks=self.config.max_chunks_per_source - plan.existing_chunks,
        )
        report.dropped_chunks = result.dropped
        report.warnings.extend(result.warnings)

        chunks = build_session_chunks(
            source_id,
            result.chunks,
            self.classifier,
            timezone=self.timezone,
            speaker_names=self.speaker_names,
        )

        if generate_context and self.context_generator is not None:
            for chunk in chunks:
                outcome = self.context_generator.apply(chunk)
                if outcome.status is ContextStatus.COMPLETE:
                    report.context_complete += 1
                else:
                    report.context_failed += 1

        total = plan.existing_chunks + len(chunks)
        with self.store.transaction():
            self.store.insert_chunks(chunks)
            self._write_state(source_id, path, plan.file_hash, total)

        report.new_chunks = len(chunks)
        report.total_chunks = total
        logger.info("Indexed %s: %d new chunks (%d total)", source_id, len(chunks), total)
        return report

    def chunk_all(
        self,
        directory: str | Path,
        stop_event: threading.Event | None = None,
        generate_context: bool = True,
    ) -> BatchReport:
        """Index every ``*.jsonl`` file in *directory*, one source at a time.

        Setting *stop_event* stops the run before the next source starts;
        sources already processed stay committed.
        """
        directory = Path(directory)
        if not directory.is_dir():
            raise ConfigurationError(f"Sessions directory not found: {directory}")

        paths = sorted(directory.glob("*.jsonl"))
        logger.info("Found %d session files in %s", len(paths), directory)
        report = BatchReport()

        for i, path in enumerate(paths, start=1):
            if stop_event is not None and stop_event.is_set():
                logger.info("Stopping after %d of %d sources", i - 1, len(paths))
                report.interrupted = True
                break

            source_id = path.stem
            try:
                source_report = self.chunk_source(source_id, path, generate_context)
            except Exception as exc:
                report.failed += 1
                report.errors.append(f"{source_id}: {exc}")
                continue

            report.sources.append(source_report)
            if source_report.action is PlanAction.SKIP:
                report.skipped += 1
            else:
                report.succeeded += 1

        logger.info(
            "Chunking finished: %d succeeded, %d failed, %d skipped",
            report.succeeded,
            report.failed,
            report.skipped,
        )
        return report

    def _write_state(self, source_id: str, path: str | Path, file_hash: str, chunk_count: int) -> None:
        self.store.upsert_source_state(
            TranscriptSource(
                source_id=source_id,
                file_path=str(path),
                file_hash=file_hash,
                last_indexed=format_timestamp(datetime.now(UTC)),
                chunk_count=chunk_count,
                status=SourceStatus.CHUNKED,
            )
        )

    def _record_failure(self, source_id: str, path: str | Path, error: str) -> None:
        with self.store.transaction():
            self.store.mark_source_failed(source_id, str(path), error)

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    def embed_pending(self, source_id: str | None = None) -> BatchReport:
        """Embed every chunk that has no embedding yet.

        Counts are per chunk. Embeddings are written in one transaction per
        source; a source whose chunks are all embedded moves to ``embedded``.

        Raises:
            ConfigurationError: If no embedding client is configured.
        """
        if self.embedding_client is None:
            raise ConfigurationError("No embedding client configured")

        pending = self.store.chunks_pending_embedding(source_id)
        report = BatchReport()
        if not pending:
            logger.info("No chunks pending embedding")
            return report

        by_source: dict[str, list[SessionChunk]] = {}
        for chunk in pending:
            by_source.setdefault(chunk.source_id, []).append(chunk)
        logger.info("Embedding %d chunks from %d sources", len(pending), len(by_source))

        for sid, chunks in by_source.items():
            outcomes = self.embedding_client.embed_chunks(chunks)
            with self.store.transaction():
                for outcome in outcomes:
                    if outcome.ok and outcome.chunk.id is not None:
                        self.store.store_embedding(outcome.chunk.id, outcome.embedding)
                        report.succeeded += 1
                    else:
                        report.failed += 1
                        report.errors.append(
                            f"{sid}#{outcome.chunk.chunk_index}: {outcome.error or 'no embedding'}"
                        )

                state = self.store.get_source_state(sid)
                if (
                    state is not None
                    and state.status == SourceStatus.CHUNKED
                    and self.store.count_pending_embeddings(sid) == 0
                ):
                    self.store.set_source_status(sid, SourceStatus.EMBEDDED)

        logger.info("Embedding finished: %d succeeded, %d failed", report.succeeded, report.failed)
        return report

    def embedding_status(self) -> EmbeddingStatus:
        total = self.store.count_chunks()
        embedded = self.store.count_embedded()
        return EmbeddingStatus(
            total=total,
            embedded=embedded,
            pending=total - embedded,
            pending_by_source=self.store.pending_embeddings_by_source(),
        )

    # ------------------------------------------------------------------
    # Context backfill
    # ------------------------------------------------------------------

    def backfill_context(self, limit: int = 100, invalidate_embeddings: bool = True) -> BatchReport:
        """Generate context for up to *limit* chunks that have none, newest first.

        With *invalidate_embeddings*, a chunk that gains a context loses its
        stored embedding so the next ``embed_pending`` picks it up again.

        Raises:
            ConfigurationError: If no context generator is configured.
        """
        if self.context_generator is None:
            raise ConfigurationError("No context generator configured")

        chunks = self.store.chunks_missing_context(limit)
        report = BatchReport()
        logger.info("Backfilling context for %d chunks", len(chunks))
        invalidated_sources: set[str] = set()

        for i, chunk in enumerate(chunks, start=1):
            result = self.context_generator.generate(chunk)
            invalidate = (
                invalidate_embeddings
                and result.status is ContextStatus.COMPLETE
                and chunk.embedding is not None
            )
            if chunk.id is None:
                report.skipped += 1
                continue
            with self.store.transaction():
                self.store.update_context(
                    chunk.id, result.context, result.status, invalidate_embedding=invalidate
                )
            if invalidate:
                invalidated_sources.add(chunk.source_id)

            if result.status is ContextStatus.COMPLETE:
                report.succeeded += 1
            else:
                report.failed += 1
                report.errors.append(f"{chunk.source_id}#{chunk.chunk_index}: context generation failed")
            if i % 10 == 0:
                logger.info("Backfill progress: %d/%d", i, len(chunks))

        with self.store.transaction():
            for sid in sorted(invalidated_sources):
                state = self.store.get_source_state(sid)
                if state is not None and state.status == SourceStatus.EMBEDDED:
                    self.store.set_source_status(sid, SourceStatus.CHUNKED)

        logger.info(
            "Backfill finished: %d succeeded, %d failed", report.succeeded, report.failed
        )
        return report
