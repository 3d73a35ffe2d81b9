"""
Vector memory storage.

Memories are persisted in a vector-indexed document store and retrieved by
semantic similarity. Writes survive embedding failures; the failures are
tracked and can be reprocessed later.
"""

from .models import (
    Memory,
    MemoryType,
    MEMORY_TYPES,
    ConversationPayload,
    InsightPayload,
    LearningPayload,
    FactPayload,
    ActionItemPayload,
    SearchQuery,
    SearchResult,
    TimeRange,
    BatchOperationResult,
    FailedEmbeddingRecord,
    MemoryStoreStats,
)
from .embeddings import EmbeddingService, OpenAIEmbeddingService, create_embedding_service
from .chroma_client import DocumentStoreClient, ChromaDocumentClient, StoreDocument, QueryResult
from .failure_table import FailedEmbeddingTable, InMemoryFailureTable, SqliteFailureTable, create_failure_table
from .memory_store import MemoryStore, create_memory_store, generate_snippet

__all__ = [
    "Memory",
    "MemoryType",
    "MEMORY_TYPES",
    "ConversationPayload",
    "InsightPayload",
    "LearningPayload",
    "FactPayload",
    "ActionItemPayload",
    "SearchQuery",
    "SearchResult",
    "TimeRange",
    "BatchOperationResult",
    "FailedEmbeddingRecord",
    "MemoryStoreStats",
    "EmbeddingService",
    "OpenAIEmbeddingService",
    "create_embedding_service",
    "DocumentStoreClient",
    "ChromaDocumentClient",
    "StoreDocument",
    "QueryResult",
    "FailedEmbeddingTable",
    "InMemoryFailureTable",
    "SqliteFailureTable",
    "create_failure_table",
    "MemoryStore",
    "create_memory_store",
    "generate_snippet",
]
