"""Shared fixtures: temporary store, fake providers and transcript writers."""

from __future__ import annotations

import json
import zlib
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from session_memory.errors import ProviderError
from session_memory.ingestion.context import Completion, ContextGenerator, TokenUsage
from session_memory.ingestion.embeddings import EmbeddingClient
from session_memory.ingestion.storage import SessionStore
from session_memory.pipeline_config import MemoryConfig

DIMENSIONS = 8


def fake_vector(text: str, dimensions: int = DIMENSIONS) -> list[float]:
    """Deterministic bag-of-words vector: each word bumps one bucket."""
    vector = [0.0] * dimensions
    for word in text.lower().split():
        vector[zlib.crc32(word.strip(".,!?:").encode()) % dimensions] += 1.0
    return vector


class FakeEmbeddingProvider:
    """In-process embedding provider.

    Any request containing a text with ``fail_marker`` raises, so a batch
    with one poisoned item fails as a whole and the per-item retry isolates it.
    """

    def __init__(self, dimensions: int = DIMENSIONS, fail_marker: str | None = None) -> None:
        self.dimensions = dimensions
        self.fail_marker = fail_marker
        self.calls: list[list[str]] = []

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail_marker and any(self.fail_marker in t for t in texts):
            raise ProviderError("simulated embedding failure")
        return [fake_vector(t, self.dimensions) for t in texts]


class FakeContextProvider:
    def __init__(self, text: str = "The user asks about deployment.", fail: bool = False) -> None:
        self.text = text
        self.fail = fail
        self.prompts: list[str] = []

    def complete(self, prompt: str) -> Completion:
        self.prompts.append(prompt)
        if self.fail:
            raise ProviderError("simulated context failure")
        return Completion(text=self.text, usage=TokenUsage("fake-model", 120, 18))


def message(role: str, content: Any, timestamp: str | None) -> dict[str, Any]:
    record: dict[str, Any] = {"type": "message", "message": {"role": role, "content": content}}
    if timestamp is not None:
        record["timestamp"] = timestamp
    return record


def conversation(n_messages: int, start_minute: int = 0) -> list[dict[str, Any]]:
    """Alternating user/assistant messages one minute apart."""
    records = []
    for i in range(start_minute, start_minute + n_messages):
        role = "user" if i % 2 == 0 else "assistant"
        records.append(
            message(role, f"Message {i} about release planning.", f"2026-10-19T10:{i:02d}:00Z")
        )
    return records


def to_jsonl(records: list[dict[str, Any]]) -> str:
    return "\n".join(json.dumps(r) for r in records) + "\n"


@pytest.fixture
def config() -> MemoryConfig:
    return MemoryConfig(embedding_batch_delay_seconds=0.0)


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SessionStore]:
    db = SessionStore(tmp_path / "memory.db", embedding_dimensions=DIMENSIONS, use_vector_index=False)
    yield db
    db.close()


@pytest.fixture
def sessions_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "sessions"
    directory.mkdir()
    return directory


@pytest.fixture
def write_transcript(sessions_dir: Path) -> Callable[[str, list[dict[str, Any]]], Path]:
    def _write(source_id: str, records: list[dict[str, Any]]) -> Path:
        path = sessions_dir / f"{source_id}.jsonl"
        path.write_text(to_jsonl(records), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def embedding_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def embedding_client(embedding_provider: FakeEmbeddingProvider) -> EmbeddingClient:
    return EmbeddingClient(embedding_provider, dimensions=DIMENSIONS, batch_size=10, batch_delay=0.0)


@pytest.fixture
def context_provider() -> FakeContextProvider:
    return FakeContextProvider()


@pytest.fixture
def context_generator(context_provider: FakeContextProvider) -> ContextGenerator:
    return ContextGenerator(context_provider, usage_hook=None)
