"""Parsers for newline-delimited JSON session transcripts."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any

from session_memory.ingestion.models import TranscriptMessage

logger = logging.getLogger(__name__)

# Epoch values above this are treated as milliseconds.
_EPOCH_MS_THRESHOLD = 1e12


def format_timestamp(moment: datetime) -> str:
    """Render a datetime as a UTC ISO-8601 string with millisecond precision.

    Every stored timestamp goes through this function so that string
    comparison in SQL matches chronological order.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="milliseconds")


def normalize_timestamp(value: Any) -> str | None:
    """Normalize an ISO string or epoch number to the canonical UTC form.

    Returns ``None`` for missing or unparseable values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > _EPOCH_MS_THRESHOLD else float(value)
        try:
            return format_timestamp(datetime.fromtimestamp(seconds, tz=UTC))
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        try:
            return format_timestamp(datetime.fromisoformat(value.strip()))
        except ValueError:
            return None
    return None


def parse_timestamp(value: str) -> datetime:
    """Parse a canonical timestamp string back into an aware datetime."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def iter_jsonl_lines(content: str) -> Iterator[tuple[int, str]]:
    r"""Yield (line_number, line) pairs split on "\n" only.

    JSON strings may hold raw U+2028, U+2029 or \x85, which
    ``str.splitlines`` would treat as line breaks.
    """
    for line_number, line in enumerate(content.split("\n"), start=1):
        yield line_number, line.removesuffix("\r")


def parse_jsonl(content: str) -> list[dict[str, Any]]:
    """Parse JSONL text into a list of record dicts.

    Blank lines are ignored. Lines that are not valid JSON objects are
    dropped (the validator is responsible for reporting them).
    """
    records: list[dict[str, Any]] = []
    for line_number, line in iter_jsonl_lines(content):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Dropping undecodable line %d", line_number)
            continue
        if isinstance(record, dict):
            records.append(record)
        else:
            logger.debug("Dropping non-object record on line %d", line_number)
    return records


def extract_text_content(content: Any) -> str:
    """Extract plain text from a message ``content`` field.

    Strings are returned as-is; lists of typed blocks contribute the text of
    their ``type == "text"`` blocks joined by a single space.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block["text"]
            for block in content
            if isinstance(block, dict)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
        ]
        return " ".join(parts)
    return ""


def extract_messages(records: list[dict[str, Any]]) -> list[TranscriptMessage]:
    """Extract role-tagged messages from parsed transcript records.

    Only ``type == "message"`` records are considered. Records without a
    role, or whose text is empty, are skipped.
    """
    messages: list[TranscriptMessage] = []
    for record in records:
        if record.get("type") != "message":
            continue
        message = record.get("message")
        if not isinstance(message, dict):
            continue
        role = message.get("role")
        if not isinstance(role, str) or not role:
            continue
        text = extract_text_content(message.get("content"))
        if not text.strip():
            continue
        messages.append(
            TranscriptMessage(
                role=role,
                content=text,
                timestamp=normalize_timestamp(record.get("timestamp")),
            )
        )
    return messages


def parse_transcript(content: str) -> list[TranscriptMessage]:
    """Parse raw JSONL transcript text straight into messages."""
    return extract_messages(parse_jsonl(content))
