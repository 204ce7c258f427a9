"""Transcript validator: checks well-formedness without touching any state."""

from __future__ import annotations

import json
from pathlib import Path

from session_memory.ingestion.models import ValidationResult
from session_memory.ingestion.parsers import iter_jsonl_lines


def validate_transcript(content: str) -> ValidationResult:
    """Validate JSONL transcript text.

    Fatal errors: undecodable JSON lines and records that are not objects
    (or ``message`` records whose ``message`` field is not an object).
    Warnings: message records missing a role, content, or timestamp.
    """
    result = ValidationResult()

    for line_number, line in iter_jsonl_lines(content):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:
            result.add_error(f"Line {line_number}: Invalid JSON - {exc.msg}")
            continue

        if not isinstance(record, dict):
            result.add_error(f"Line {line_number}: Malformed record - expected a JSON object")
            continue

        if record.get("type") != "message":
            continue

        message = record.get("message")
        if message is None:
            result.warnings.append(f"Line {line_number}: Missing role in message")
            result.warnings.append(f"Line {line_number}: Missing content in message")
        elif not isinstance(message, dict):
            result.add_error(f"Line {line_number}: Malformed record - message is not an object")
            continue
        else:
            if not message.get("role"):
                result.warnings.append(f"Line {line_number}: Missing role in message")
            if not message.get("content"):
                result.warnings.append(f"Line {line_number}: Missing content in message")
        if not record.get("timestamp"):
            result.warnings.append(f"Line {line_number}: Missing timestamp")

    return result


def validate_transcript_file(path: str | Path) -> ValidationResult:
    """Validate a transcript file on disk.

    Missing files, non-file paths and unreadable files are fatal errors.
    """
    file_path = Path(path)
    if not file_path.exists():
        result = ValidationResult()
        result.add_error(f"File does not exist: {file_path}")
        return result
    if not file_path.is_file():
        result = ValidationResult()
        result.add_error(f"Path is not a file: {file_path}")
        return result

    try:
        content = file_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        result = ValidationResult()
        result.add_error(f"Error reading file: {exc}")
        return result

    return validate_transcript(content)
