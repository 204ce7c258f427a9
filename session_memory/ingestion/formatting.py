"""Human-readable rendering of chunk metadata (dates, participants)."""

from __future__ import annotations

from collections.abc import Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from session_memory.ingestion.parsers import parse_timestamp

UNKNOWN_DATE = "unknown date"


def format_local_date(timestamp: str | None, timezone: str = "UTC", with_time: bool = False) -> str:
    """Render a canonical timestamp as e.g. ``Monday, 19 October 2026``.

    Falls back to ``"unknown date"`` for missing or unparseable values and
    to UTC for unknown timezone names.
    """
    if not timestamp:
        return UNKNOWN_DATE
    try:
        moment = parse_timestamp(timestamp)
    except ValueError:
        return UNKNOWN_DATE
    try:
        zone = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        zone = ZoneInfo("UTC")
    local = moment.astimezone(zone)
    # %d is zero-padded on every platform; strip it by hand.
    text = f"{local:%A}, {local.day} {local:%B %Y}"
    if with_time:
        text += f" {local:%H:%M} {local.tzname()}"
    return text


def resolve_speaker_names(speakers: list[str], names: Mapping[str, str] | None = None) -> str:
    """Map role names to display names, joined with ``" and "``."""
    names = names or {}
    resolved = [names.get(s, s.capitalize()) for s in speakers]
    return " and ".join(resolved) if resolved else "Unknown"
