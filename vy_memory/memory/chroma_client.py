"""
Document store client.

The memory store only talks to the document store through
DocumentStoreClient: collection-scoped CRUD plus nearest-neighbor query.
ChromaDocumentClient implements it over ChromaDB, either as a local
persistent store or against a Chroma server over HTTP.

Collections use cosine distance. Relevance scores derived by the memory
store assume that metric.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Literal, Optional

from ..errors import ConfigurationError, StoreError

logger = logging.getLogger("vy_memory.memory.chroma")

# Metadata flag marking documents written without a real embedding
EMBEDDED_FLAG = "vy_embedded"


@dataclass
class StoreDocument:
    """A document as held by the document store."""
    id: str
    embedding: list[float]
    metadata: dict[str, Any]
    document: str


@dataclass
class QueryResult:
    """Nearest-neighbor results: parallel arrays, one row per query embedding."""
    ids: list[list[str]] = field(default_factory=list)
    distances: list[list[float]] = field(default_factory=list)
    metadatas: list[list[dict[str, Any]]] = field(default_factory=list)
    documents: list[list[str]] = field(default_factory=list)


class DocumentStoreClient(ABC):
    """Abstract interface for a vector-indexed document store."""

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def get_or_create_collection(self, name: str) -> None:
        pass

    @abstractmethod
    async def add_documents(self, collection: str, documents: list[StoreDocument]) -> None:
        pass

    @abstractmethod
    async def update_documents(self, collection: str, documents: list[StoreDocument]) -> None:
        pass

    @abstractmethod
    async def delete_documents(self, collection: str, ids: list[str]) -> None:
        pass

    @abstractmethod
    async def get_documents(
        self,
        collection: str,
        ids: Optional[list[str]] = None,
        where: Optional[dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> list[StoreDocument]:
        """
        Fetch documents by id (returned in id order, missing ids skipped)
        or by metadata filter.
        """
        pass

    @abstractmethod
    async def query_collection(
        self,
        collection: str,
        embeddings: list[list[float]],
        k: int,
        where: Optional[dict[str, Any]] = None,
    ) -> QueryResult:
        """Nearest-neighbor query, distance ascending per query embedding."""
        pass

    @abstractmethod
    async def get_collection_count(self, collection: str) -> int:
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class ChromaDocumentClient(DocumentStoreClient):
    """
    ChromaDB implementation of the document store client.

    Chroma rejects empty embeddings, so documents stored without one get a
    placeholder unit vector and EMBEDDED_FLAG=False in their metadata. The
    flag is stripped on read and such documents never match a query.
    """

    def __init__(
        self,
        mode: Literal["persistent", "http"] = "persistent",
        path: str = "./memory_store",
        host: str = "localhost",
        port: int = 8000,
        ssl: bool = False,
        api_key: str = "",
        placeholder_dimension: int = 1536,
    ):
        self.mode = mode
        self.path = Path(path)
        self.host = host
        self.port = port
        self.ssl = ssl
        self.api_key = api_key
        self.placeholder_dimension = placeholder_dimension
        self._client = None
        self._collections: dict[str, Any] = {}
        target = path if mode == "persistent" else f"{host}:{port}"
        logger.info(f"ChromaDocumentClient configured ({mode}): {target}")

    async def connect(self) -> None:
        """Create the ChromaDB client."""
        if self._client is not None:
            return

        try:
            import chromadb
            from chromadb.config import Settings
        except ImportError:
            raise ConfigurationError(
                "chromadb not installed. Install with: pip install chromadb"
            )

        settings = Settings(anonymized_telemetry=False, allow_reset=True)

        try:
            if self.mode == "http":
                headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
                self._client = chromadb.HttpClient(
                    host=self.host,
                    port=self.port,
                    ssl=self.ssl,
                    headers=headers,
                    settings=settings,
                )
                self._client.heartbeat()
            else:
                # Create persist directory if needed
                self.path.mkdir(parents=True, exist_ok=True)
                self._client = chromadb.PersistentClient(path=str(self.path), settings=settings)
        except Exception as e:
            self._client = None
            raise StoreError(f"Failed to connect to ChromaDB: {e}") from e

        logger.info("ChromaDB client connected")

    def _ensure_connected(self) -> None:
        if self._client is None:
            raise StoreError("ChromaDB client is not connected. Call connect() first.")

    def _call(self, operation: str, collection: str, fn: Callable, *args, **kwargs):
        """Run a Chroma call, converting any failure into StoreError."""
        try:
            return fn(*args, **kwargs)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(
                f"Failed to {operation} in collection '{collection}': {e}",
                {"operation": operation, "collection": collection},
            ) from e

    def _get_collection(self, name: str):
        self._ensure_connected()
        if name not in self._collections:
            self._collections[name] = self._call(
                "open collection", name, self._client.get_collection, name=name
            )
        return self._collections[name]

    async def get_or_create_collection(self, name: str) -> None:
        """Get or create a collection using cosine distance (idempotent)."""
        self._ensure_connected()
        collection = self._call(
            "get or create collection",
            name,
            self._client.get_or_create_collection,
            name=name,
            metadata={"hnsw:space": "cosine", "description": "Vy semantic memory store"},
        )
        self._collections[name] = collection
        count = self._call("count documents", name, collection.count)
        logger.info(f"Collection '{name}' ready with {count} existing documents")

    def _placeholder_embedding(self) -> list[float]:
        return [1.0] + [0.0] * (self.placeholder_dimension - 1)

    def _to_chroma(self, documents: list[StoreDocument]) -> dict[str, list]:
        """Split documents into Chroma's parallel arrays."""
        embeddings, metadatas = [], []
        for doc in documents:
            embedded = bool(doc.embedding)
            embeddings.append(list(doc.embedding) if embedded else self._placeholder_embedding())
            metadatas.append({**doc.metadata, EMBEDDED_FLAG: embedded})
        return {
            "ids": [doc.id for doc in documents],
            "embeddings": embeddings,
            "metadatas": metadatas,
            "documents": [doc.document for doc in documents],
        }

    @staticmethod
    def _strip_flag(metadata: Optional[dict]) -> tuple[dict, bool]:
        metadata = dict(metadata or {})
        embedded = metadata.pop(EMBEDDED_FLAG, True)
        return metadata, bool(embedded)

    async def add_documents(self, collection: str, documents: list[StoreDocument]) -> None:
        """Add documents to a collection."""
        if not documents:
            return
        target = self._get_collection(collection)
        self._call("add documents", collection, target.add, **self._to_chroma(documents))
        logger.debug(f"Added {len(documents)} documents to '{collection}'")

    async def update_documents(self, collection: str, documents: list[StoreDocument]) -> None:
        """Update documents in a collection."""
        if not documents:
            return
        target = self._get_collection(collection)
        self._call("update documents", collection, target.update, **self._to_chroma(documents))
        logger.debug(f"Updated {len(documents)} documents in '{collection}'")

    async def delete_documents(self, collection: str, ids: list[str]) -> None:
        """Delete documents from a collection."""
        if not ids:
            return
        target = self._get_collection(collection)
        self._call("delete documents", collection, target.delete, ids=ids)
        logger.debug(f"Deleted {len(ids)} documents from '{collection}'")

    async def get_documents(
        self,
        collection: str,
        ids: Optional[list[str]] = None,
        where: Optional[dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> list[StoreDocument]:
        """Get documents by id (in id order) or by metadata filter."""
        if ids is not None and not ids:
            return []

        target = self._get_collection(collection)
        results = self._call(
            "get documents",
            collection,
            target.get,
            ids=ids,
            where=where,
            limit=limit,
            include=["documents", "metadatas", "embeddings"],
        )

        result_ids = results.get("ids") or []
        metadatas = results.get("metadatas")
        documents = results.get("documents")
        embeddings = results.get("embeddings")

        by_id: dict[str, StoreDocument] = {}
        for i, doc_id in enumerate(result_ids):
            metadata, embedded = self._strip_flag(metadatas[i] if metadatas is not None else None)
            vector = embeddings[i] if embeddings is not None and embedded else None
            by_id[doc_id] = StoreDocument(
                id=doc_id,
                embedding=[float(x) for x in vector] if vector is not None else [],
                metadata=metadata,
                document=(documents[i] if documents is not None else None) or "",
            )

        if ids is None:
            return list(by_id.values())
        return [by_id[doc_id] for doc_id in ids if doc_id in by_id]

    async def query_collection(
        self,
        collection: str,
        embeddings: list[list[float]],
        k: int,
        where: Optional[dict[str, Any]] = None,
    ) -> QueryResult:
        """Query the collection for nearest neighbors of each embedding."""
        target = self._get_collection(collection)

        count = self._call("count documents", collection, target.count)
        if count == 0 or k <= 0:
            return QueryResult(
                ids=[[] for _ in embeddings],
                distances=[[] for _ in embeddings],
                metadatas=[[] for _ in embeddings],
                documents=[[] for _ in embeddings],
            )

        # Never match documents stored without a real embedding
        embedded_only = {EMBEDDED_FLAG: True}
        combined_where = {"$and": [where, embedded_only]} if where else embedded_only

        results = self._call(
            "query documents",
            collection,
            target.query,
            query_embeddings=embeddings,
            n_results=min(k, count),
            where=combined_where,
            include=["documents", "metadatas", "distances"],
        )

        query_result = QueryResult()
        for row, row_ids in enumerate(results.get("ids") or []):
            row_metadatas = (results.get("metadatas") or [[]])[row] or []
            row_documents = (results.get("documents") or [[]])[row] or []
            row_distances = (results.get("distances") or [[]])[row] or []
            query_result.ids.append(list(row_ids))
            query_result.distances.append([float(d) for d in row_distances])
            query_result.metadatas.append([self._strip_flag(m)[0] for m in row_metadatas])
            query_result.documents.append([d or "" for d in row_documents])
        return query_result

    async def get_collection_count(self, collection: str) -> int:
        """Get total number of documents in a collection."""
        target = self._get_collection(collection)
        return self._call("count documents", collection, target.count)

    async def health_check(self) -> bool:
        """Ping ChromaDB."""
        if self._client is None:
            return False
        try:
            self._client.heartbeat()
            return True
        except Exception as e:
            logger.warning(f"ChromaDB health check failed: {e}")
            return False

    async def close(self) -> None:
        """Clean up resources."""
        # ChromaDB clients handle cleanup automatically
        self._client = None
        self._collections = {}
        logger.info("ChromaDB connection closed")
