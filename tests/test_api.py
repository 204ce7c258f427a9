"""Tests for API endpoints (fake providers, temporary database; no API keys)."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from conftest import DIMENSIONS, FakeEmbeddingProvider, fake_vector
from fastapi.testclient import TestClient

from session_memory.api.dependencies import get_embedding_client, get_readonly_store, get_store
from session_memory.api.main import app
from session_memory.config import Settings, get_settings
from session_memory.ingestion.embeddings import EmbeddingClient
from session_memory.ingestion.models import SessionChunk
from session_memory.ingestion.storage import SessionStore


@pytest.fixture
def client(store: SessionStore, embedding_client: EmbeddingClient) -> Iterator[TestClient]:
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_readonly_store] = lambda: store
    app.dependency_overrides[get_embedding_client] = lambda: embedding_client
    yield TestClient(app)
    app.dependency_overrides.clear()


def _index(store: SessionStore, embed: bool = True) -> None:
    chunks = [
        SessionChunk("s1", 0, "2026-10-19T10:00:00.000+00:00", "User: ship the release\nAssistant: ok",
                     topic_tags=["release"]),
        SessionChunk("s1", 1, "2026-10-19T10:05:00.000+00:00", "User: lunch?\nAssistant: sure",
                     topic_tags=["lunch"]),
    ]
    with store.transaction():
        store.insert_chunks(chunks)
        if embed:
            for chunk in chunks:
                store.store_embedding(chunk.id, fake_vector(chunk.content))


class TestHealth:
    def test_empty_store(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "OK (no sources indexed yet)"
        assert body["level"] == "OK"

    def test_degraded_when_unembedded(self, client: TestClient, store: SessionStore) -> None:
        _index(store, embed=False)
        body = client.get("/health").json()
        assert body["level"] == "DEGRADED"
        assert body["total_chunks"] == 2
        assert body["embedded_chunks"] == 0

    def test_missing_tables_reported_not_created(self, tmp_path: Path) -> None:
        db_path = tmp_path / "fresh.db"
        app.dependency_overrides[get_settings] = lambda: Settings(  # type: ignore[call-arg]
            _env_file=None, database_path=str(db_path), use_vector_index=False
        )
        try:
            response = TestClient(app).get("/health")
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 200
        body = response.json()
        assert body["level"] == "ERROR"
        assert body["status"] == "ERROR (required tables missing)"
        with SessionStore(db_path, use_vector_index=False, initialize=False) as store:
            assert not store.tables_present()


class TestSearchEndpoint:
    def test_validation(self, client: TestClient) -> None:
        assert client.post("/api/search", json={}).status_code == 422
        assert client.post("/api/search", json={"query": ""}).status_code == 422
        assert client.post("/api/search", json={"query": "x", "limit": 0}).status_code == 422

    def test_bad_date_bound(self, client: TestClient, store: SessionStore) -> None:
        _index(store)
        response = client.post("/api/search", json={"query": "release", "after": "yesterday"})
        assert response.status_code == 422

    def test_not_indexed_is_409(self, client: TestClient) -> None:
        response = client.post("/api/search", json={"query": "release"})
        assert response.status_code == 409
        assert "embed" in response.json()["detail"]

    def test_results(self, client: TestClient, store: SessionStore) -> None:
        _index(store)
        response = client.post("/api/search", json={"query": "ship release", "limit": 1})

        assert response.status_code == 200
        body = response.json()
        assert body["query"] == "ship release"
        [hit] = body["results"]
        assert hit["source_id"] == "s1"
        assert hit["chunk_index"] == 0
        assert hit["lexical_score"] == 1.0
        assert hit["fused_score"] > 0
        assert hit["topic_tags"] == ["release"]

    def test_topic_filter(self, client: TestClient, store: SessionStore) -> None:
        _index(store)
        body = client.post("/api/search", json={"query": "release", "topic": "lunch"}).json()
        assert [hit["chunk_index"] for hit in body["results"]] == [1]

    def test_provider_failure_is_502(self, store: SessionStore) -> None:
        _index(store)
        failing = EmbeddingClient(FakeEmbeddingProvider(fail_marker="release"), dimensions=DIMENSIONS)
        app.dependency_overrides[get_store] = lambda: store
        app.dependency_overrides[get_embedding_client] = lambda: failing
        try:
            response = TestClient(app).post("/api/search", json={"query": "release"})
        finally:
            app.dependency_overrides.clear()
        assert response.status_code == 502

    def test_missing_key_is_503(self, store: SessionStore) -> None:
        app.dependency_overrides[get_store] = lambda: store
        app.dependency_overrides[get_settings] = lambda: Settings(
            openai_api_key="", _env_file=None  # type: ignore[call-arg]
        )
        try:
            response = TestClient(app).post("/api/search", json={"query": "release"})
        finally:
            app.dependency_overrides.clear()
        assert response.status_code == 503
        assert "OPENAI_API_KEY" in response.json()["detail"]


class TestStatusEndpoints:
    def test_status(self, client: TestClient, store: SessionStore) -> None:
        _index(store)
        body = client.get("/api/status").json()
        assert body["total_chunks"] == 2
        assert body["embedded_chunks"] == 2
        assert body["context_pending"] == 2
        assert body["failed"] == []

    def test_status_lists_failed_sources(self, client: TestClient, store: SessionStore) -> None:
        _index(store)
        with store.transaction():
            store.mark_source_failed("bad", "bad.jsonl", "Line 1: Invalid JSON")
        body = client.get("/api/status").json()
        assert body["health"].startswith("DEGRADED")
        assert body["failed"] == [{"source_id": "bad", "error": "Line 1: Invalid JSON"}]

    def test_embedding_status(self, client: TestClient, store: SessionStore) -> None:
        _index(store, embed=False)
        body = client.get("/api/embeddings/status").json()
        assert body == {
            "total": 2,
            "embedded": 0,
            "pending": 2,
            "percent": 0.0,
            "pending_by_source": [{"source_id": "s1", "pending": 2}],
        }
