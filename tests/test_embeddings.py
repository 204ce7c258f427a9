"""Tests for vector encoding and the batching embedding client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from conftest import DIMENSIONS, FakeEmbeddingProvider
from openai import OpenAIError

from session_memory.config import Settings
from session_memory.errors import ConfigurationError, ProviderError
from session_memory.ingestion.embeddings import (
    EmbeddingClient,
    OpenAIEmbeddingProvider,
    create_embedding_client,
    decode_embedding,
    embedding_input,
    encode_embedding,
)
from session_memory.ingestion.models import SessionChunk
from session_memory.pipeline_config import MemoryConfig


def _chunks(n: int, poison: int | None = None) -> list[SessionChunk]:
    return [
        SessionChunk(
            source_id="s1",
            chunk_index=i,
            timestamp=None,
            content=f"chunk {i} {'POISON' if i == poison else 'text'}",
            id=i + 1,
        )
        for i in range(n)
    ]


class TestEncoding:
    def test_round_trip(self) -> None:
        values = [0.1, -2.5, 3.14159, 0.0, 1e-3]
        blob = encode_embedding(values)
        assert len(blob) == 4 * len(values)
        assert decode_embedding(blob) == pytest.approx(values, rel=1e-6)

    def test_little_endian_float32(self) -> None:
        assert encode_embedding([1.0]) == b"\x00\x00\x80\x3f"


class TestEmbeddingInput:
    def test_prefers_context_prefix(self) -> None:
        chunk = SessionChunk("s", 0, None, "raw", context_content="legacy", context_prefix="[Context: x]")
        assert embedding_input(chunk) == "[Context: x]\n\nraw"

    def test_falls_back_to_legacy_context(self) -> None:
        chunk = SessionChunk("s", 0, None, "raw", context_content="legacy")
        assert embedding_input(chunk) == "legacy"

    def test_falls_back_to_raw_content(self) -> None:
        assert embedding_input(SessionChunk("s", 0, None, "raw")) == "raw"


class TestEmbeddingClient:
    def test_failure_isolated_to_one_chunk(self) -> None:
        provider = FakeEmbeddingProvider(fail_marker="POISON")
        client = EmbeddingClient(provider, dimensions=DIMENSIONS, batch_size=10, batch_delay=0.0)

        outcomes = client.embed_chunks(_chunks(10, poison=6))

        assert len(outcomes) == 10
        assert [o.ok for o in outcomes] == [i != 6 for i in range(10)]
        assert outcomes[6].error == "simulated embedding failure"
        # One failed batch call, then one call per item.
        assert len(provider.calls) == 11

    def test_order_preserved_across_concurrent_batches(self) -> None:
        provider = FakeEmbeddingProvider()
        client = EmbeddingClient(
            provider, dimensions=DIMENSIONS, batch_size=3, max_workers=4, batch_delay=0.0
        )
        chunks = _chunks(20)

        outcomes = client.embed_chunks(chunks)

        assert [o.chunk.chunk_index for o in outcomes] == list(range(20))
        assert all(o.ok for o in outcomes)

    def test_wrong_dimension_is_a_failure(self) -> None:
        provider = FakeEmbeddingProvider(dimensions=DIMENSIONS + 1)
        client = EmbeddingClient(provider, dimensions=DIMENSIONS, batch_delay=0.0)

        outcomes = client.embed_chunks(_chunks(2))

        assert not any(o.ok for o in outcomes)
        assert "dimensions" in (outcomes[0].error or "")

    def test_embed_query(self) -> None:
        client = EmbeddingClient(FakeEmbeddingProvider(), dimensions=DIMENSIONS)
        assert len(client.embed_query("hello world")) == DIMENSIONS

    def test_embed_query_propagates_failure(self) -> None:
        client = EmbeddingClient(FakeEmbeddingProvider(fail_marker="bad"), dimensions=DIMENSIONS)
        with pytest.raises(ProviderError):
            client.embed_query("bad query")

    def test_from_config(self) -> None:
        config = MemoryConfig(embedding_batch_size=7, embedding_max_workers=2)
        client = EmbeddingClient.from_config(FakeEmbeddingProvider(), DIMENSIONS, config)
        assert client.batch_size == 7
        assert client.max_workers == 2


class TestOpenAIEmbeddingProvider:
    @patch("session_memory.ingestion.embeddings.OpenAI")
    def test_results_sorted_by_index(self, mock_openai: MagicMock) -> None:
        mock_client = mock_openai.return_value
        mock_client.embeddings.create.return_value.data = [
            MagicMock(index=1, embedding=[2.0]),
            MagicMock(index=0, embedding=[1.0]),
        ]
        provider = OpenAIEmbeddingProvider(api_key="sk-test", dimensions=1)

        assert provider.embed(["a", "b"]) == [[1.0], [2.0]]
        mock_client.embeddings.create.assert_called_once_with(
            input=["a", "b"], model="text-embedding-3-small", dimensions=1
        )

    @patch("session_memory.ingestion.embeddings.OpenAI")
    def test_sdk_error_wrapped(self, mock_openai: MagicMock) -> None:
        mock_openai.return_value.embeddings.create.side_effect = OpenAIError("rate limited")
        provider = OpenAIEmbeddingProvider(api_key="sk-test")

        with pytest.raises(ProviderError, match="rate limited"):
            provider.embed(["a"])


class TestCreateEmbeddingClient:
    def test_missing_key_is_configuration_error(self) -> None:
        settings = Settings(openai_api_key="", _env_file=None)  # type: ignore[call-arg]
        with pytest.raises(ConfigurationError):
            create_embedding_client(settings, MemoryConfig())

    @patch("session_memory.ingestion.embeddings.OpenAI")
    def test_builds_client_from_settings(self, mock_openai: MagicMock) -> None:
        settings = Settings(openai_api_key="sk-test", _env_file=None)  # type: ignore[call-arg]
        client = create_embedding_client(settings, MemoryConfig())
        assert client.dimensions == 1536
        mock_openai.assert_called_once()
