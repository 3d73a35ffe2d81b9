"""
Test fixtures and sample data for vy_memory tests.
"""

import math
from datetime import datetime
from types import SimpleNamespace
from typing import Any, Optional

from vy_memory.errors import ProviderError, StoreError
from vy_memory.memory.chroma_client import DocumentStoreClient, QueryResult, StoreDocument
from vy_memory.memory.embeddings import EmbeddingService
from vy_memory.memory.models import ConversationPayload, Memory


def make_memory(
    content: str = "We discussed retry policies for the ingestion worker.",
    type: str = "conversation",
    id: str = "",
    timestamp: datetime = None,
    metadata: dict = None,
    payload=None,
) -> Memory:
    """Create a sample Memory for testing."""
    return Memory(
        content=content,
        type=type,
        id=id,
        timestamp=timestamp or datetime(2024, 6, 1, 12, 0, 0),
        metadata=metadata if metadata is not None else {"source": "test"},
        payload=payload,
    )


def make_conversation_memory(id: str = "", **kwargs) -> Memory:
    """Create a conversation memory with a full payload."""
    return make_memory(
        id=id,
        payload=ConversationPayload(
            participants=["user", "assistant"],
            message_count=4,
            summary="Retry policy discussion",
            tags=["retries", "workers"],
        ),
        **kwargs,
    )


def make_memories(count: int = 5) -> list[Memory]:
    """Create memories with distinct content and ascending timestamps."""
    topics = ["python", "databases", "caching", "testing", "deployment", "logging", "queues"]
    return [
        make_memory(
            content=f"Notes about {topics[i % len(topics)]} number {i}",
            id=f"mem-{i}",
            timestamp=datetime(2024, 6, 1 + i, 9, 0, 0),
        )
        for i in range(count)
    ]


class KeywordEmbeddingService(EmbeddingService):
    """
    Deterministic bag-of-words embeddings.

    Identical texts map to identical vectors (cosine distance 0). Set
    `fail_with` to make every call raise.
    """

    def __init__(self, dimension: int = 16):
        self._dim = dimension
        self.fail_with: Optional[Exception] = None
        self.calls: list[list[str]] = []

    @property
    def dimension(self) -> int:
        return self._dim

    @property
    def model_name(self) -> str:
        return "keyword-test"

    @property
    def max_tokens(self) -> int:
        return 8192

    @property
    def batch_size(self) -> int:
        return 100

    def embed(self, text: str) -> list[float]:
        vector = [0.0] * self._dim
        for word in text.lower().split():
            vector[sum(ord(c) for c in word) % self._dim] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector

    async def generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail_with is not None:
            raise self.fail_with
        return [self.embed(text) for text in texts]


def make_embedding_response(vectors, indices=None):
    """Build an object shaped like an OpenAI embeddings response."""
    indices = indices if indices is not None else range(len(vectors))
    return SimpleNamespace(
        data=[SimpleNamespace(index=i, embedding=v) for i, v in zip(indices, vectors)]
    )


def provider_down() -> ProviderError:
    return ProviderError("OpenAI rate limit exceeded", kind="rate_limit")


def _cosine_distance(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 1.0
    return 1.0 - dot / norm


def _matches(metadata: dict[str, Any], where: Optional[dict[str, Any]]) -> bool:
    if not where:
        return True
    for key, condition in where.items():
        if key == "$and":
            if not all(_matches(metadata, sub) for sub in condition):
                return False
        elif isinstance(condition, dict) and "$in" in condition:
            if metadata.get(key) not in condition["$in"]:
                return False
        elif metadata.get(key) != condition:
            return False
    return True


class FakeDocumentClient(DocumentStoreClient):
    """
    In-memory document store double with cosine distance.

    Documents with an empty embedding are stored but never returned by
    queries. Names in `fail_on` (e.g. "add_documents") raise StoreError.
    """

    def __init__(self):
        self.collections: dict[str, dict[str, StoreDocument]] = {}
        self.calls: list[str] = []
        self.fail_on: set[str] = set()

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail_on:
            raise StoreError(f"Failed to {operation}: connection refused")

    def _docs(self, collection: str) -> dict[str, StoreDocument]:
        return self.collections.setdefault(collection, {})

    @staticmethod
    def _copy(doc: StoreDocument) -> StoreDocument:
        return StoreDocument(
            id=doc.id,
            embedding=list(doc.embedding),
            metadata=dict(doc.metadata),
            document=doc.document,
        )

    async def connect(self) -> None:
        self._record("connect")

    async def get_or_create_collection(self, name: str) -> None:
        self._record("get_or_create_collection")
        self._docs(name)

    async def add_documents(self, collection: str, documents: list[StoreDocument]) -> None:
        self._record("add_documents")
        for doc in documents:
            self._docs(collection)[doc.id] = self._copy(doc)

    async def update_documents(self, collection: str, documents: list[StoreDocument]) -> None:
        self._record("update_documents")
        for doc in documents:
            self._docs(collection)[doc.id] = self._copy(doc)

    async def delete_documents(self, collection: str, ids: list[str]) -> None:
        self._record("delete_documents")
        for doc_id in ids:
            self._docs(collection).pop(doc_id, None)

    async def get_documents(self, collection, ids=None, where=None, limit=None) -> list[StoreDocument]:
        self._record("get_documents")
        docs = self._docs(collection)
        if ids is not None:
            found = [self._copy(docs[i]) for i in ids if i in docs]
        else:
            found = [self._copy(d) for d in docs.values() if _matches(d.metadata, where)]
        return found[:limit] if limit is not None else found

    async def query_collection(self, collection, embeddings, k, where=None) -> QueryResult:
        self._record("query_collection")
        candidates = [
            d for d in self._docs(collection).values()
            if d.embedding and _matches(d.metadata, where)
        ]
        result = QueryResult()
        for embedding in embeddings:
            ranked = sorted(
                ((_cosine_distance(embedding, d.embedding), d) for d in candidates),
                key=lambda pair: pair[0],
            )[:k]
            result.ids.append([d.id for _, d in ranked])
            result.distances.append([dist for dist, _ in ranked])
            result.metadatas.append([dict(d.metadata) for _, d in ranked])
            result.documents.append([d.document for _, d in ranked])
        return result

    async def get_collection_count(self, collection: str) -> int:
        self._record("get_collection_count")
        return len(self._docs(collection))

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        self._record("close")
