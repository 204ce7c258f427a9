"""Tests for transcript parsing, exchange chunking and metadata classification."""

from __future__ import annotations

import json

import pytest
from conftest import conversation, message, to_jsonl

from session_memory.ingestion.chunking import (
    ExchangeChunker,
    build_context_content,
    build_session_chunks,
    estimate_tokens,
)
from session_memory.ingestion.classifiers import KeywordClassifier
from session_memory.ingestion.formatting import format_local_date, resolve_speaker_names
from session_memory.ingestion.models import Chunk, TranscriptMessage
from session_memory.ingestion.parsers import (
    extract_text_content,
    normalize_timestamp,
    parse_transcript,
)


def _messages(*pairs: tuple[str, str]) -> list[TranscriptMessage]:
    return [
        TranscriptMessage(role=role, content=text, timestamp=f"2026-10-19T10:{i:02d}:00.000+00:00")
        for i, (role, text) in enumerate(pairs)
    ]


class TestTimestamps:
    def test_iso_with_z(self) -> None:
        assert normalize_timestamp("2026-10-19T10:00:00Z") == "2026-10-19T10:00:00.000+00:00"

    def test_offset_converted_to_utc(self) -> None:
        assert normalize_timestamp("2026-10-19T12:00:00+02:00") == "2026-10-19T10:00:00.000+00:00"

    def test_epoch_seconds(self) -> None:
        assert normalize_timestamp(0) == "1970-01-01T00:00:00.000+00:00"

    def test_epoch_milliseconds(self) -> None:
        assert normalize_timestamp(1_700_000_000_000) == normalize_timestamp(1_700_000_000)

    @pytest.mark.parametrize("value", ["garbage", "", None, True])
    def test_unparseable_is_none(self, value: object) -> None:
        assert normalize_timestamp(value) is None


class TestParser:
    def test_text_blocks_joined(self) -> None:
        content = [
            {"type": "text", "text": "Hello"},
            {"type": "tool_use", "name": "search"},
            {"type": "text", "text": "world"},
        ]
        assert extract_text_content(content) == "Hello world"

    def test_non_message_records_ignored(self) -> None:
        records = [
            {"type": "summary", "summary": "ignored"},
            message("user", "Real question", "2026-10-19T10:00:00Z"),
        ]
        messages = parse_transcript(to_jsonl(records))
        assert len(messages) == 1
        assert messages[0].role == "user"
        assert messages[0].timestamp == "2026-10-19T10:00:00.000+00:00"

    def test_bad_lines_and_empty_text_dropped(self) -> None:
        text = (
            to_jsonl([message("user", "   ", "2026-10-19T10:00:00Z")])
            + "{not json\n"
            + to_jsonl([message("assistant", "kept", "2026-10-19T10:01:00Z")])
        )
        messages = parse_transcript(text)
        assert [m.content for m in messages] == ["kept"]

    def test_unicode_line_separators_kept_in_content(self) -> None:
        records = [
            message("user", "first line\u2028second line", "2026-10-19T10:00:00Z"),
            message("assistant", "next\x85line", "2026-10-19T10:01:00Z"),
        ]
        text = "\n".join(json.dumps(r, ensure_ascii=False) for r in records) + "\n"
        messages = parse_transcript(text)
        assert [m.content for m in messages] == ["first line\u2028second line", "next\x85line"]


class TestExchangeChunker:
    def test_four_alternating_messages_make_two_chunks(self) -> None:
        messages = parse_transcript(to_jsonl(conversation(4)))
        result = ExchangeChunker().chunk(messages)

        assert [c.chunk_index for c in result.chunks] == [0, 1]
        first = result.chunks[0]
        assert first.content == (
            "User: Message 0 about release planning.\nAssistant: Message 1 about release planning."
        )
        assert first.speakers == ["user", "assistant"]
        assert first.timestamp == "2026-10-19T10:00:00.000+00:00"

    def test_single_unanswered_user_message(self) -> None:
        result = ExchangeChunker().chunk(_messages(("user", "Anyone there?")))
        assert len(result.chunks) == 1
        assert result.chunks[0].content == "User: Anyone there?"
        assert result.chunks[0].speakers == ["user"]

    def test_leading_assistant_message_skipped(self) -> None:
        result = ExchangeChunker().chunk(
            _messages(("assistant", "Welcome back."), ("user", "Hi"), ("assistant", "Hello"))
        )
        assert len(result.chunks) == 1
        assert result.chunks[0].content == "User: Hi\nAssistant: Hello"

    def test_consecutive_user_messages(self) -> None:
        result = ExchangeChunker().chunk(
            _messages(("user", "First"), ("user", "Second"), ("assistant", "Answer"))
        )
        assert [c.content for c in result.chunks] == [
            "User: First",
            "User: Second\nAssistant: Answer",
        ]

    def test_start_index_continues_numbering(self) -> None:
        messages = parse_transcript(to_jsonl(conversation(4)))
        result = ExchangeChunker().chunk(messages, start_index=5)
        assert [c.chunk_index for c in result.chunks] == [5, 6]

    def test_oversized_exchange_split_within_ceiling(self) -> None:
        chunker = ExchangeChunker(max_chunk_tokens=50, overlap_chars=20)
        long_text = " ".join(f"Sentence number {i} is here." for i in range(40))
        result = chunker.chunk(_messages(("user", long_text)))

        assert len(result.chunks) > 1
        assert all(estimate_tokens(c.content) <= 50 for c in result.chunks)
        assert all(c.token_count <= 50 for c in result.chunks)
        # Each sub-chunk after the first carries the tail of its predecessor.
        assert result.chunks[0].content[-10:] in result.chunks[1].content
        assert [c.chunk_index for c in result.chunks] == list(range(len(result.chunks)))

    def test_unbroken_text_hard_split(self) -> None:
        chunker = ExchangeChunker(max_chunk_tokens=50, overlap_chars=20)
        result = chunker.chunk(_messages(("user", "x" * 5000)))
        assert len(result.chunks) > 1
        assert all(estimate_tokens(c.content) <= 50 for c in result.chunks)

    def test_cap_drops_excess_with_warning(self) -> None:
        messages = parse_transcript(to_jsonl(conversation(10)))
        result = ExchangeChunker(max_chunks=3).chunk(messages)

        assert len(result.chunks) == 3
        assert result.dropped == 2
        assert result.warnings == ["Source produced 5 chunks, capping at 3"]

    def test_per_call_cap_overrides_default(self) -> None:
        messages = parse_transcript(to_jsonl(conversation(10)))
        result = ExchangeChunker(max_chunks=100).chunk(messages, max_chunks=0)
        assert result.chunks == []
        assert result.dropped == 5


class TestKeywordClassifier:
    def test_topics_by_frequency(self) -> None:
        text = "Deploy the database migration. The database migration needs review."
        assert KeywordClassifier().topics(text) == ["database", "migration", "deploy"]

    def test_role_names_and_numbers_excluded(self) -> None:
        topics = KeywordClassifier().topics("User: 2026 2026 2026\nAssistant: caching caching")
        assert topics == ["caching"]

    def test_hyphens_become_underscores(self) -> None:
        assert KeywordClassifier().topics("follow-up follow-up meeting") == [
            "follow_up",
            "meeting",
        ]

    def test_decision_detection(self) -> None:
        classifier = KeywordClassifier()
        assert classifier.has_decision("We decided to use Postgres.")
        assert classifier.has_decision("Let's go with the second option.")
        assert not classifier.has_decision("How is the weather today?")

    def test_action_detection(self) -> None:
        classifier = KeywordClassifier()
        assert classifier.has_action("I need to fix the flaky test.")
        assert classifier.has_action("Next step: schedule the review.")
        assert not classifier.has_action("That sounds lovely.")


class TestFormatting:
    def test_local_date(self) -> None:
        assert format_local_date("2026-10-19T10:00:00.000+00:00") == "Monday, 19 October 2026"

    def test_local_date_other_timezone(self) -> None:
        assert (
            format_local_date("2026-10-19T12:00:00.000+00:00", "Pacific/Auckland")
            == "Tuesday, 20 October 2026"
        )

    def test_unknown_date(self) -> None:
        assert format_local_date(None) == "unknown date"
        assert format_local_date("not a date") == "unknown date"

    def test_with_time(self) -> None:
        assert (
            format_local_date("2026-10-19T10:05:00.000+00:00", with_time=True)
            == "Monday, 19 October 2026 10:05 UTC"
        )

    def test_speaker_names(self) -> None:
        assert resolve_speaker_names(["user", "assistant"], {"user": "Alice"}) == "Alice and Assistant"
        assert resolve_speaker_names([]) == "Unknown"


class TestSessionChunks:
    def test_legacy_context_block(self) -> None:
        chunk = Chunk(
            content="User: hi",
            speakers=["user"],
            timestamp="2026-10-19T10:00:00.000+00:00",
            token_count=2,
        )
        block = build_context_content(chunk, ["deploy"])
        assert block == (
            "[Session from Monday, 19 October 2026 10:00 UTC]\n"
            "[Participants: User]\n"
            "[Topics: deploy]\n\n"
            "User: hi"
        )

    def test_metadata_attached(self) -> None:
        messages = _messages(
            ("user", "We decided to migrate the database."),
            ("assistant", "Next step: write the migration script."),
        )
        chunks = ExchangeChunker().chunk(messages).chunks
        session_chunks = build_session_chunks("s1", chunks, KeywordClassifier())

        assert len(session_chunks) == 1
        chunk = session_chunks[0]
        assert chunk.source_id == "s1"
        assert chunk.has_decision
        assert chunk.has_action
        assert "migration" in chunk.topic_tags or "database" in chunk.topic_tags
        assert chunk.context_content is not None
        assert chunk.context_content.endswith(chunk.content)
        assert chunk.context_prefix is None
        assert chunk.embedding is None
