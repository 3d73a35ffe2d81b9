"""
Shared pytest fixtures for vy_memory tests.

This module provides:
- In-memory document store double and deterministic embeddings
- Memory stores and services wired from them
- Mock external services (OpenAI embeddings, Chroma)
- Sample data and config fixtures
"""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tests.fixtures import (
    FakeDocumentClient,
    KeywordEmbeddingService,
    make_conversation_memory,
    make_embedding_response,
    make_memories,
    make_memory,
)


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path(tmp_path) -> str:
    """Provide a temporary SQLite database path."""
    return str(tmp_path / "test_failures.db")


@pytest.fixture
def doc_client() -> FakeDocumentClient:
    """Provide an empty in-memory document store."""
    return FakeDocumentClient()


@pytest.fixture
def embedder() -> KeywordEmbeddingService:
    """Provide deterministic keyword embeddings."""
    return KeywordEmbeddingService()


@pytest.fixture
def memory_store(doc_client, embedder):
    """Provide a MemoryStore over the in-memory document store."""
    from vy_memory.memory.memory_store import MemoryStore

    return MemoryStore(client=doc_client, embedding_service=embedder, collection_name="test_memories")


@pytest.fixture
def limits():
    """Provide LimitsConfig with the documented defaults."""
    from vy_memory.config import LimitsConfig

    return LimitsConfig(
        max_conversation_length=50000,
        max_search_results=20,
        max_context_memories=10,
        default_min_relevance=0.7,
        context_min_relevance=0.6,
        broad_min_relevance=0.3,
        max_retries=3,
    )


@pytest.fixture
def memory_service(memory_store, limits):
    """Provide a MemoryService over the in-memory store."""
    from vy_memory.service.memory_service import MemoryService

    return MemoryService(store=memory_store, limits=limits)


# =============================================================================
# Sample Data Fixtures
# =============================================================================


@pytest.fixture
def sample_memory():
    """Provide a single sample memory without an id."""
    return make_memory()


@pytest.fixture
def conversation_memory():
    """Provide a conversation memory with a full payload."""
    return make_conversation_memory(id="conv-1")


@pytest.fixture
def sample_memories():
    """Provide a list of memories with distinct content."""
    return make_memories(count=5)


@pytest.fixture
def sample_config_yaml(tmp_path) -> Path:
    """Create a sample config.yaml file."""
    config_path = tmp_path / "config.yaml"
    config_content = """
chroma:
  mode: http
  host: chroma.internal
  port: 8100
  collection_name: team_memories

embedding:
  model: text-embedding-3-large
  dimensions: 1024

limits:
  max_search_results: 15

failure_tracking:
  backend: sqlite

logging:
  level: DEBUG
"""
    config_path.write_text(config_content)
    return config_path


# =============================================================================
# Mock External Services
# =============================================================================


@pytest.fixture
def mock_openai():
    """Mock AsyncOpenAI for embedding tests."""
    # Patch at the module where it's imported, not where it's defined
    with patch("vy_memory.memory.embeddings.AsyncOpenAI") as mock_client_class:
        mock_client = MagicMock()

        async def create(model, input, **kwargs):
            dim = kwargs.get("dimensions", 1536)
            return make_embedding_response([[0.1] * dim for _ in input])

        mock_client.embeddings.create = AsyncMock(side_effect=create)
        mock_client_class.return_value = mock_client
        yield mock_client_class


@pytest.fixture
def mock_chroma_collection():
    """Mock Chroma collection with empty results."""
    collection = MagicMock()
    collection.count.return_value = 0
    collection.get.return_value = {"ids": [], "metadatas": [], "documents": [], "embeddings": []}
    collection.query.return_value = {"ids": [[]], "distances": [[]], "metadatas": [[]], "documents": [[]]}
    return collection


@pytest.fixture
def chroma_client(mock_chroma_collection):
    """ChromaDocumentClient with a mocked chromadb client already connected."""
    from vy_memory.memory.chroma_client import ChromaDocumentClient

    client = ChromaDocumentClient(mode="persistent", path="./unused", placeholder_dimension=4)
    client._client = MagicMock()
    client._client.get_or_create_collection.return_value = mock_chroma_collection
    client._client.get_collection.return_value = mock_chroma_collection
    return client


# =============================================================================
# Config Fixtures
# =============================================================================


@pytest.fixture
def mock_env_vars(monkeypatch):
    """Set mock environment variables for testing."""
    monkeypatch.setenv("VY_OPENAI_API_KEY", "test-openai-key")
    monkeypatch.setenv("VY_CHROMA_API_KEY", "test-chroma-key")
