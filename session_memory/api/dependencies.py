"""FastAPI dependencies: settings, config, store and embedding client per request."""

from __future__ import annotations

from collections.abc import Iterator

from fastapi import Depends

from session_memory.config import Settings, get_settings
from session_memory.ingestion.embeddings import EmbeddingClient, create_embedding_client
from session_memory.ingestion.storage import SessionStore, open_store
from session_memory.pipeline_config import MemoryConfig


def get_config(settings: Settings = Depends(get_settings)) -> MemoryConfig:
    return MemoryConfig.from_settings(settings)


def get_store(settings: Settings = Depends(get_settings)) -> Iterator[SessionStore]:
    store = open_store(settings)
    try:
        yield store
    finally:
        store.close()


def get_embedding_client(
    settings: Settings = Depends(get_settings),
    config: MemoryConfig = Depends(get_config),
) -> EmbeddingClient:
    # Raises ConfigurationError (-> 503) when OPENAI_API_KEY is missing.
    return create_embedding_client(settings, config)


def get_readonly_store(settings: Settings = Depends(get_settings)) -> Iterator[SessionStore]:
    """Open the store without creating its schema, so health can report missing tables."""
    store = open_store(settings, initialize=False)
    try:
        yield store
    finally:
        store.close()
