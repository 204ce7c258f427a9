"""Command-line interface: chunk, embed, search and inspect session memory."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

from session_memory.config import Settings, get_settings
from session_memory.errors import ConfigurationError, SessionMemoryError
from session_memory.health import HealthLevel, collect_status
from session_memory.ingestion.context import ContextGenerator, create_context_generator
from session_memory.ingestion.embeddings import EmbeddingClient, create_embedding_client
from session_memory.ingestion.parsers import normalize_timestamp
from session_memory.ingestion.pipeline import BatchReport, IngestionPipeline, SourceReport
from session_memory.ingestion.storage import SessionStore, open_store
from session_memory.pipeline_config import MemoryConfig
from session_memory.retrieval.models import SearchFilters
from session_memory.retrieval.search import HybridSearchEngine


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="session-memory",
        description="Index conversation transcripts and search them with hybrid retrieval.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("validate", help="Check a transcript file without indexing it")
    p.add_argument("file", help="Path to a .jsonl transcript")

    p = sub.add_parser("chunk", help="Chunk transcripts into the store (incremental)")
    target = p.add_mutually_exclusive_group(required=True)
    target.add_argument("--all", action="store_true", help="Process every source in --dir")
    target.add_argument("--source", help="Process one source (file stem in --dir)")
    p.add_argument("--dir", help="Sessions directory (default: SESSIONS_DIR)")
    p.add_argument("--no-context", action="store_true", help="Skip context generation")

    p = sub.add_parser("embed", help="Embed chunks that have no embedding yet")
    target = p.add_mutually_exclusive_group(required=True)
    target.add_argument("--all", action="store_true", help="Embed all pending chunks")
    target.add_argument("--source", help="Embed pending chunks of one source")
    target.add_argument("--status", action="store_true", help="Report embedding coverage")

    p = sub.add_parser("search", help="Hybrid search over embedded chunks")
    p.add_argument("query", help="Search text")
    p.add_argument("--after", help="Only chunks at or after this ISO date/time")
    p.add_argument("--before", help="Only chunks at or before this ISO date/time")
    p.add_argument("--topic", help="Only chunks tagged with this topic")
    p.add_argument("--limit", type=_positive_int, default=None, help="Number of results (default: 5)")

    p = sub.add_parser("backfill-context", help="Generate context for chunks missing one")
    p.add_argument("--batch", type=_positive_int, default=100, help="Chunks to process (default: 100)")
    p.add_argument(
        "--no-reembed",
        action="store_true",
        help="Keep existing embeddings instead of queueing them for re-embedding",
    )

    sub.add_parser("status", help="Show index statistics")
    sub.add_parser("health", help="Print a health verdict (exit 1 unless OK)")
    return parser


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------


def _pipeline(
    settings: Settings,
    config: MemoryConfig,
    store: SessionStore,
    context_generator: ContextGenerator | None = None,
    embedding_client: EmbeddingClient | None = None,
) -> IngestionPipeline:
    return IngestionPipeline(
        config,
        store,
        context_generator=context_generator,
        embedding_client=embedding_client,
        timezone=settings.context_timezone,
        speaker_names={
            "user": settings.user_display_name,
            "assistant": settings.assistant_display_name,
        },
    )


def _optional_context_generator(settings: Settings, config: MemoryConfig) -> ContextGenerator | None:
    try:
        return create_context_generator(settings, max_excerpt_chars=config.context_excerpt_chars)
    except ConfigurationError as exc:
        print(f"Warning: {exc}; chunks will be stored with context pending.")
        return None


def _print_batch(label: str, report: BatchReport) -> None:
    print(
        f"\n{label}: {report.succeeded} succeeded, {report.failed} failed, "
        f"{report.skipped} skipped"
    )
    if report.interrupted:
        print("Interrupted; remaining sources were not processed.")
    for error in report.errors:
        print(f"  ! {error}")


def _print_source(report: SourceReport) -> None:
    line = f"  {report.source_id}: {report.action}"
    if report.new_chunks:
        line += f", {report.new_chunks} new chunks"
    line += f" ({report.total_chunks} total)"
    if report.context_complete or report.context_failed:
        line += f", context {report.context_complete} ok / {report.context_failed} failed"
    print(line)
    for warning in report.warnings:
        print(f"    warning: {warning}")


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


def cmd_validate(args: argparse.Namespace, settings: Settings, config: MemoryConfig) -> int:
    with open_store(settings) as store:
        result = _pipeline(settings, config, store).validate(args.file)
    for warning in result.warnings:
        print(f"  warning: {warning}")
    for error in result.errors:
        print(f"  error: {error}")
    print("VALID" if result.valid else "INVALID")
    return 0 if result.valid else 1


def cmd_chunk(args: argparse.Namespace, settings: Settings, config: MemoryConfig) -> int:
    directory = Path(args.dir or settings.sessions_dir)
    context_generator = None if args.no_context else _optional_context_generator(settings, config)

    with open_store(settings) as store:
        pipeline = _pipeline(settings, config, store, context_generator=context_generator)

        if args.source:
            report = pipeline.chunk_source(
                args.source,
                directory / f"{args.source}.jsonl",
                generate_context=context_generator is not None,
            )
            _print_source(report)
            return 0

        stop_event = threading.Event()

        def _request_stop(signum: int, frame: object) -> None:
            if stop_event.is_set():
                raise KeyboardInterrupt
            print("\nStopping after the current source (Ctrl-C again to abort)...")
            stop_event.set()

        previous_handler = signal.signal(signal.SIGINT, _request_stop)
        try:
            batch = pipeline.chunk_all(
                directory,
                stop_event=stop_event,
                generate_context=context_generator is not None,
            )
        finally:
            signal.signal(signal.SIGINT, previous_handler)

    for source_report in batch.sources:
        _print_source(source_report)
    _print_batch("Chunking", batch)
    return 1 if batch.failed else 0


def cmd_embed(args: argparse.Namespace, settings: Settings, config: MemoryConfig) -> int:
    with open_store(settings) as store:
        if args.status:
            status = _pipeline(settings, config, store).embedding_status()
            print(f"Total chunks:   {status.total}")
            print(f"Embedded:       {status.embedded} ({status.percent:.1f}%)")
            print(f"Pending:        {status.pending}")
            for source_id, pending in status.pending_by_source[:10]:
                print(f"  {source_id}: {pending} pending")
            return 0

        client = create_embedding_client(settings, config)
        pipeline = _pipeline(settings, config, store, embedding_client=client)
        report = pipeline.embed_pending(source_id=args.source)

    _print_batch("Embedding", report)
    return 1 if report.failed else 0


def cmd_search(args: argparse.Namespace, settings: Settings, config: MemoryConfig) -> int:
    filters = SearchFilters(
        after=_parse_bound(args.after, "--after"),
        before=_parse_bound(args.before, "--before"),
        topic=args.topic,
    )
    client = create_embedding_client(settings, config)
    with open_store(settings) as store:
        results = HybridSearchEngine(store, client, config).search(
            args.query, limit=args.limit, filters=filters
        )

    if not results:
        print("No results.")
        return 0

    print(f"Results for {args.query!r} (hybrid RRF):\n")
    for rank, result in enumerate(results, start=1):
        chunk = result.chunk
        print(
            f"[{rank}] fused {result.fused_score:.4f} | cosine {result.embedding_score:.3f} | "
            f"lexical {result.lexical_score:.3f} | {chunk.timestamp or 'unknown date'}"
        )
        print(f"    {chunk.source_id}#{chunk.chunk_index}  topics: {', '.join(chunk.topic_tags) or '-'}")
        if chunk.context_prefix:
            print(f"    {chunk.context_prefix}")
        preview = chunk.content if len(chunk.content) <= 300 else chunk.content[:300] + "..."
        print(f"    {preview}\n")
    return 0


def cmd_backfill_context(args: argparse.Namespace, settings: Settings, config: MemoryConfig) -> int:
    generator = create_context_generator(settings, max_excerpt_chars=config.context_excerpt_chars)
    with open_store(settings) as store:
        pipeline = _pipeline(settings, config, store, context_generator=generator)
        report = pipeline.backfill_context(
            limit=args.batch, invalidate_embeddings=not args.no_reembed
        )
    _print_batch("Context backfill", report)
    if report.succeeded and not args.no_reembed:
        print("Re-run `session-memory embed --all` to refresh invalidated embeddings.")
    return 1 if report.failed else 0


def cmd_status(args: argparse.Namespace, settings: Settings, config: MemoryConfig) -> int:
    if not Path(settings.database_path).exists():
        print(f"Health: ERROR (no database at {settings.database_path})")
        return 1
    with open_store(settings, initialize=False) as store:
        status = collect_status(store, config)

    stats = status.stats
    print(f"Health:            {status.verdict}")
    print(f"Total chunks:      {stats.total_chunks}")
    print(f"Total sources:     {stats.total_sources}")
    print(f"Indexed sources:   {stats.indexed_sources}")
    print(f"Failed sources:    {stats.failed_sources}")
    print(f"Embedded chunks:   {stats.embedded_chunks} ({status.embedded_percent:.1f}%)")
    print(
        f"Context:           {stats.context_complete} complete, "
        f"{stats.context_failed} failed, {stats.context_pending} pending"
    )
    print(f"Avg tokens/chunk:  {stats.avg_tokens:.1f}")
    print(f"Chunks (last 24h): {stats.recent_chunks}")
    print(f"Last indexed:      {stats.last_indexed or 'never'}")
    for source in status.failed:
        print(f"  ! {source.source_id}: {source.last_error or 'unknown error'}")
    return 0


def cmd_health(args: argparse.Namespace, settings: Settings, config: MemoryConfig) -> int:
    if not Path(settings.database_path).exists():
        print(f"ERROR (no database at {settings.database_path})")
        return 1
    with open_store(settings, initialize=False) as store:
        status = collect_status(store, config)
    print(status.verdict)
    stats = status.stats
    print(
        f"chunks={stats.total_chunks} sources={stats.total_sources} "
        f"embedded={stats.embedded_chunks} failed={stats.failed_sources}"
    )
    return 0 if status.level is HealthLevel.OK else 1


def _parse_bound(value: str | None, flag: str) -> str | None:
    if value is None:
        return None
    normalized = normalize_timestamp(value)
    if normalized is None:
        raise ConfigurationError(f"{flag} expects an ISO date or datetime, got {value!r}")
    return normalized


COMMANDS = {
    "validate": cmd_validate,
    "chunk": cmd_chunk,
    "embed": cmd_embed,
    "search": cmd_search,
    "backfill-context": cmd_backfill_context,
    "status": cmd_status,
    "health": cmd_health,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = get_settings()
    try:
        config = MemoryConfig.from_settings(settings)
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    try:
        return COMMANDS[args.command](args, settings, config)
    except SessionMemoryError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
