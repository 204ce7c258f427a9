"""Aggregate status and health verdict for the session store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum

from session_memory.ingestion.models import TranscriptSource
from session_memory.ingestion.storage import SessionStore, StoreStats
from session_memory.pipeline_config import MemoryConfig

logger = logging.getLogger(__name__)


class HealthLevel(StrEnum):
    OK = "OK"
    DEGRADED = "DEGRADED"
    ERROR = "ERROR"


@dataclass
class MemoryStatus:
    """Counts plus a health verdict; ``reasons`` explains anything but a bare OK."""

    level: HealthLevel
    stats: StoreStats = field(default_factory=StoreStats)
    reasons: list[str] = field(default_factory=list)
    failed: list[TranscriptSource] = field(default_factory=list)

    @property
    def verdict(self) -> str:
        if not self.reasons:
            return str(self.level)
        return f"{self.level} ({'; '.join(self.reasons)})"

    @property
    def embedded_percent(self) -> float:
        total = self.stats.total_chunks
        return 100.0 * self.stats.embedded_chunks / total if total else 0.0


def collect_status(store: SessionStore, config: MemoryConfig | None = None) -> MemoryStatus:
    """Read aggregate counts from *store* and judge its health.

    - ERROR when the required tables are missing.
    - OK with a note when nothing has been indexed yet.
    - DEGRADED when any source failed, or when fewer than
      ``healthy_embedded_ratio`` of chunks have embeddings.
    """
    config = config or MemoryConfig()

    if not store.tables_present():
        return MemoryStatus(level=HealthLevel.ERROR, reasons=["required tables missing"])

    stats = store.stats()
    if stats.total_chunks == 0 and stats.indexed_sources == 0:
        return MemoryStatus(level=HealthLevel.OK, stats=stats, reasons=["no sources indexed yet"])

    status = MemoryStatus(level=HealthLevel.OK, stats=stats)
    if stats.failed_sources:
        status.failed = store.failed_sources()
        status.reasons.append(f"{stats.failed_sources} failed sources")
    if stats.total_chunks and stats.embedded_chunks < config.healthy_embedded_ratio * stats.total_chunks:
        status.reasons.append(
            f"embedded {stats.embedded_chunks}/{stats.total_chunks} chunks, "
            f"below {config.healthy_embedded_ratio:.0%}"
        )
    if status.reasons:
        status.level = HealthLevel.DEGRADED
        logger.warning("Session memory degraded: %s", "; ".join(status.reasons))
    return status
