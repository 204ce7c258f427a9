"""Embedding helpers using OpenAI text-embedding-3-small."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Protocol

import numpy as np
from openai import OpenAI, OpenAIError

from session_memory.config import Settings
from session_memory.errors import ConfigurationError, ProviderError
from session_memory.ingestion.models import SessionChunk
from session_memory.pipeline_config import MemoryConfig

logger = logging.getLogger(__name__)

# Little-endian float32: 4 bytes per dimension.
EMBEDDING_DTYPE = np.dtype("<f4")


def encode_embedding(embedding: Sequence[float]) -> bytes:
    """Serialize a vector to its fixed-width binary form."""
    return np.asarray(embedding, dtype=EMBEDDING_DTYPE).tobytes()


def decode_embedding(blob: bytes) -> list[float]:
    """Deserialize a vector produced by :func:`encode_embedding`."""
    return np.frombuffer(blob, dtype=EMBEDDING_DTYPE).astype(float).tolist()


def embedding_input(chunk: SessionChunk) -> str:
    """Pick the text to embed for *chunk*.

    Preference order: generated context prefix + content, then the legacy
    metadata block, then the raw content.
    """
    if chunk.context_prefix:
        return f"{chunk.context_prefix}\n\n{chunk.content}"
    if chunk.context_content:
        return chunk.context_content
    return chunk.content


class EmbeddingProvider(Protocol):
    """Anything that maps a batch of texts to one vector per text."""

    def embed(self, texts: list[str]) -> list[list[float]]: ...


class OpenAIEmbeddingProvider:
    """Embedding provider backed by the OpenAI embeddings API."""

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        timeout: float = 30.0,
    ) -> None:
        self.client = OpenAI(api_key=api_key, timeout=timeout, max_retries=1)
        self.model = model
        self.dimensions = dimensions

    def embed(self, texts: list[str]) -> list[list[float]]:
        try:
            response = self.client.embeddings.create(
                input=texts,
                model=self.model,
                dimensions=self.dimensions,
            )
        except OpenAIError as exc:
            raise ProviderError(f"OpenAI embeddings request failed: {exc}") from exc
        # Response items carry their input position; don't rely on list order.
        ordered = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in ordered]


@dataclass
class EmbeddingOutcome:
    """Result of embedding one chunk: a vector or an error message."""

    chunk: SessionChunk
    embedding: list[float] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.embedding is not None


class EmbeddingClient:
    """Batching, failure-isolating wrapper around an embedding provider.

    Batches of ``batch_size`` texts are sent in waves of up to
    ``max_workers`` concurrent requests. A failed batch is retried item by
    item so one bad input only fails itself. Outcomes are always returned
    in input order.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        dimensions: int,
        batch_size: int = 10,
        max_workers: int = 4,
        batch_delay: float = 0.1,
    ) -> None:
        self.provider = provider
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.batch_delay = batch_delay

    @classmethod
    def from_config(
        cls, provider: EmbeddingProvider, dimensions: int, config: MemoryConfig
    ) -> EmbeddingClient:
        return cls(
            provider,
            dimensions=dimensions,
            batch_size=config.embedding_batch_size,
            max_workers=config.embedding_max_workers,
            batch_delay=config.embedding_batch_delay_seconds,
        )

    def embed_query(self, text: str) -> list[float]:
        """Embed a single query string.

        Raises:
            ProviderError: If the provider fails or returns a malformed vector.
        """
        vectors = self.provider.embed([text])
        if len(vectors) != 1:
            raise ProviderError(f"Expected 1 embedding, got {len(vectors)}")
        self._check_dimensions(vectors[0])
        return list(vectors[0])

    def embed_chunks(self, chunks: list[SessionChunk]) -> list[EmbeddingOutcome]:
        """Embed *chunks*, isolating failures per item.

        Args:
            chunks: Chunks to embed (text chosen by :func:`embedding_input`).

        Returns:
            One :class:`EmbeddingOutcome` per chunk, in input order.
        """
        batches = [chunks[i : i + self.batch_size] for i in range(0, len(chunks), self.batch_size)]
        outcomes: list[EmbeddingOutcome] = []

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            for wave_start in range(0, len(batches), self.max_workers):
                wave = batches[wave_start : wave_start + self.max_workers]
                # map() yields in submission order regardless of completion order.
                for batch_outcomes in pool.map(self._embed_batch, wave):
                    outcomes.extend(batch_outcomes)

                done = min(wave_start + len(wave), len(batches))
                logger.info("Embedded batch %d/%d", done, len(batches))
                if done < len(batches) and self.batch_delay > 0:
                    time.sleep(self.batch_delay)

        return outcomes

    def _embed_batch(self, batch: list[SessionChunk]) -> list[EmbeddingOutcome]:
        texts = [embedding_input(chunk) for chunk in batch]
        try:
            vectors = self.provider.embed(texts)
            if len(vectors) != len(batch):
                raise ProviderError(f"Expected {len(batch)} embeddings, got {len(vectors)}")
        except ProviderError as exc:
            if len(batch) == 1:
                return [self._failure(batch[0], exc)]
            logger.warning("Batch of %d failed (%s); retrying items individually", len(batch), exc)
            return [self._embed_single(chunk, text) for chunk, text in zip(batch, texts, strict=True)]

        outcomes: list[EmbeddingOutcome] = []
        for chunk, vector in zip(batch, vectors, strict=True):
            try:
                self._check_dimensions(vector)
            except ProviderError as exc:
                outcomes.append(self._failure(chunk, exc))
            else:
                outcomes.append(EmbeddingOutcome(chunk=chunk, embedding=list(vector)))
        return outcomes

    def _embed_single(self, chunk: SessionChunk, text: str) -> EmbeddingOutcome:
        try:
            vectors = self.provider.embed([text])
            if len(vectors) != 1:
                raise ProviderError(f"Expected 1 embedding, got {len(vectors)}")
            self._check_dimensions(vectors[0])
        except ProviderError as exc:
            return self._failure(chunk, exc)
        return EmbeddingOutcome(chunk=chunk, embedding=list(vectors[0]))

    def _check_dimensions(self, vector: Sequence[float]) -> None:
        if len(vector) != self.dimensions:
            raise ProviderError(
                f"Embedding has {len(vector)} dimensions, expected {self.dimensions}"
            )

    @staticmethod
    def _failure(chunk: SessionChunk, exc: Exception) -> EmbeddingOutcome:
        logger.warning(
            "Failed to embed chunk %s#%d: %s", chunk.source_id, chunk.chunk_index, exc
        )
        return EmbeddingOutcome(chunk=chunk, error=str(exc))


def create_embedding_client(settings: Settings, config: MemoryConfig) -> EmbeddingClient:
    """Build an OpenAI-backed embedding client from settings.

    Raises:
        ConfigurationError: If no OpenAI API key is configured.
    """
    if not settings.openai_api_key:
        raise ConfigurationError("OPENAI_API_KEY is not configured; embeddings unavailable")
    provider = OpenAIEmbeddingProvider(
        api_key=settings.openai_api_key,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        timeout=settings.request_timeout_seconds,
    )
    return EmbeddingClient.from_config(provider, settings.embedding_dimensions, config)
