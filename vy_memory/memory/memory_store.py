"""
Memory Store - failure-tolerant persistence and similarity search.

Orchestrates the document store client and the embedding service:
- Converts Memory objects to and from store documents
- Writes memories even when embedding generation fails, and tracks
  those failures for later reprocessing
- Runs similarity search and converts distances to relevance scores

Relevance is 1 - cosine distance, clamped to [0, 1]. Cosine distance lies
in [0, 2], so anything pointing away from the query scores 0.
"""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Optional

from ..errors import NotFoundError, ValidationError
from .chroma_client import ChromaDocumentClient, DocumentStoreClient, StoreDocument
from .embeddings import EmbeddingService, create_embedding_service
from .failure_table import FailedEmbeddingTable, InMemoryFailureTable, create_failure_table
from .models import (
    MEMORY_TYPES,
    BatchFailure,
    BatchOperationResult,
    FailedEmbeddingRecord,
    Memory,
    MemoryStoreStats,
    SearchQuery,
    SearchResult,
    payload_from_metadata,
    payload_to_metadata,
    to_local_naive,
)

logger = logging.getLogger("vy_memory.memory.store")

DEFAULT_SEARCH_LIMIT = 10
DEFAULT_LIST_LIMIT = 50
SNIPPET_LENGTH = 200
SNIPPET_LEAD = 50

# Metadata key listing which user metadata values were JSON-encoded
JSON_KEYS_FIELD = "vy_json_keys"
# Document metadata namespaces; unprefixed keys belong to the store
USER_KEY_PREFIX = "m_"
PAYLOAD_KEY_PREFIX = "p_"
UPDATABLE_FIELDS = frozenset({"content", "type", "timestamp", "metadata", "payload"})


def distance_to_relevance(distance: float) -> float:
    """Convert a cosine distance (lower is closer) to a 0-1 relevance score."""
    return max(0.0, min(1.0, 1.0 - distance))


def generate_snippet(content: str, query: str, max_length: int = SNIPPET_LENGTH) -> str:
    """
    Excerpt of content around the first query term it contains.

    The window starts ~50 characters before the match; truncated edges are
    marked with ellipses. Without a match the content is prefix-truncated.
    """
    if len(content) <= max_length:
        return content

    lowered = content.lower()
    for term in query.lower().split():
        index = lowered.find(term)
        if index != -1:
            start = max(0, min(index - SNIPPET_LEAD, len(content) - max_length))
            end = start + max_length
            prefix = "..." if start > 0 else ""
            suffix = "..." if end < len(content) else ""
            return f"{prefix}{content[start:end]}{suffix}"

    return content[:max_length] + "..."


def _generate_memory_id() -> str:
    return str(uuid.uuid4())


class MemoryStore:
    """
    High-level memory store over a document store and an embedding service.

    Embedding failures during store/update never fail the call: the
    memory is written without a vector and recorded in the failure table.
    Document store failures propagate as StoreError.
    """

    def __init__(
        self,
        client: DocumentStoreClient,
        embedding_service: EmbeddingService,
        collection_name: str = "vy_memories",
        failure_table: Optional[FailedEmbeddingTable] = None,
    ):
        self.client = client
        self.embedding_service = embedding_service
        self.collection_name = collection_name
        self.failures = failure_table if failure_table is not None else InMemoryFailureTable()
        # memory id -> [lock, holders and waiters]
        self._locks: dict[str, list] = {}
        logger.info(f"MemoryStore created for collection '{collection_name}'")

    async def initialize(self) -> None:
        """Ensure the backing collection exists."""
        await self.client.get_or_create_collection(self.collection_name)
        logger.info(f"MemoryStore initialized ({len(self.failures)} tracked embedding failures)")

    @asynccontextmanager
    async def _memory_lock(self, memory_id: str):
        """
        Hold the per-memory lock serializing embedding state transitions.

        Locks are shared by every holder and waiter of the same id and are
        dropped once the last of them leaves, so the map only holds ids
        with an operation in flight.
        """
        entry = self._locks.get(memory_id)
        if entry is None:
            entry = self._locks[memory_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[memory_id]

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def _memory_to_document(self, memory: Memory, embedding: Optional[list[float]]) -> StoreDocument:
        """Convert a Memory to a store document with scalar-only metadata."""
        metadata: dict[str, Any] = {}
        json_keys = []
        for key, value in memory.metadata.items():
            if value is None:
                continue
            if isinstance(value, (str, int, float, bool)):
                metadata[USER_KEY_PREFIX + key] = value
            else:
                metadata[USER_KEY_PREFIX + key] = json.dumps(value, default=str)
                json_keys.append(key)

        metadata[JSON_KEYS_FIELD] = json.dumps(json_keys)
        metadata["type"] = memory.type
        metadata["timestamp"] = memory.timestamp.isoformat()
        if memory.payload is not None:
            for key, value in payload_to_metadata(memory.payload).items():
                metadata[PAYLOAD_KEY_PREFIX + key] = value

        return StoreDocument(
            id=memory.id,
            embedding=list(embedding) if embedding else [],
            metadata=metadata,
            document=memory.content,
        )

    def _document_to_memory(
        self,
        doc_id: str,
        document: str,
        metadata: Optional[dict[str, Any]],
        embedding: Optional[list[float]] = None,
    ) -> Memory:
        """Reconstruct a Memory from document text and metadata."""
        metadata = dict(metadata or {})

        memory_type = metadata.pop("type", "conversation")
        if memory_type not in MEMORY_TYPES:
            logger.warning(f"Memory {doc_id} has unknown type '{memory_type}', reading as conversation")
            memory_type = "conversation"

        raw_timestamp = metadata.pop("timestamp", None)
        timestamp = datetime.fromisoformat(raw_timestamp) if raw_timestamp else datetime.now()

        json_keys = json.loads(metadata.pop(JSON_KEYS_FIELD, None) or "[]")

        user_metadata: dict[str, Any] = {}
        payload_fields: dict[str, Any] = {}
        for key, value in metadata.items():
            if key.startswith(USER_KEY_PREFIX):
                user_metadata[key[len(USER_KEY_PREFIX):]] = value
            elif key.startswith(PAYLOAD_KEY_PREFIX):
                payload_fields[key[len(PAYLOAD_KEY_PREFIX):]] = value

        payload = payload_from_metadata(memory_type, payload_fields)
        for key in json_keys:
            if isinstance(user_metadata.get(key), str):
                user_metadata[key] = json.loads(user_metadata[key])

        return Memory(
            id=doc_id,
            type=memory_type,
            content=document,
            timestamp=timestamp,
            metadata=user_metadata,
            embedding=list(embedding) if embedding else None,
            payload=payload,
        )

    def _doc_to_memory(self, doc: StoreDocument) -> Memory:
        return self._document_to_memory(doc.id, doc.document, doc.metadata, doc.embedding)

    @staticmethod
    def _type_filter(types: Optional[list[str]]) -> Optional[dict[str, Any]]:
        if not types:
            return None
        unknown = [t for t in types if t not in MEMORY_TYPES]
        if unknown:
            raise ValidationError(
                f"Unknown memory type(s): {', '.join(unknown)}",
                {"valid_types": list(MEMORY_TYPES)},
            )
        if len(types) == 1:
            return {"type": types[0]}
        return {"type": {"$in": list(types)}}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _try_embed(self, content: str) -> tuple[list[float], Optional[str]]:
        """Embed content, returning (embedding, None) or ([], error)."""
        try:
            return await self.embedding_service.generate_embedding(content), None
        except Exception as e:
            return [], str(e)

    async def _write(self, document: StoreDocument) -> None:
        """Add the document, or update it if the id is already stored."""
        existing = await self.client.get_documents(self.collection_name, ids=[document.id])
        if existing:
            await self.client.update_documents(self.collection_name, [document])
        else:
            await self.client.add_documents(self.collection_name, [document])

    async def store_memory(self, memory: Memory) -> str:
        """
        Store a memory, embedding its content when possible.

        Assigns an id if the memory has none. If embedding fails the memory
        is stored without a vector and tracked for reprocessing.

        Returns:
            The ID of the stored memory

        Raises:
            StoreError: If the document store write fails.
        """
        if not memory.id:
            memory.id = _generate_memory_id()

        async with self._memory_lock(memory.id):
            embedding, error = await self._try_embed(memory.content)
            await self._write(self._memory_to_document(memory, embedding))

            if error is None:
                self.failures.resolve(memory.id)
                logger.info(f"Stored memory {memory.id} with {len(embedding)}-dim embedding")
            else:
                self.failures.record_failure(memory.id, memory.content, error, reset=True)
                logger.warning(
                    f"Failed to generate embedding for memory {memory.id}, "
                    f"stored without embedding: {error}"
                )

        return memory.id

    async def store_memories(self, memories: list[Memory]) -> BatchOperationResult:
        """
        Store memories independently; one failure never aborts the rest.

        Items whose embedding failed but whose write succeeded count as
        successful (and are tracked for reprocessing).
        """
        result = BatchOperationResult(total_processed=len(memories))

        for memory in memories:
            try:
                result.successful.append(await self.store_memory(memory))
            except Exception as e:
                logger.error(f"Failed to store memory {memory.id or 'unknown'}: {e}")
                result.failed.append(BatchFailure(id=memory.id or "unknown", error=str(e)))

        logger.info(
            f"Batch store: {len(result.successful)} stored, {len(result.failed)} failed "
            f"of {result.total_processed}"
        )
        return result

    async def update_memory(self, memory_id: str, updates: dict[str, Any]) -> Memory:
        """
        Merge updates into an existing memory.

        A content change regenerates the embedding with the same
        failure-tolerant policy as store_memory.

        Args:
            memory_id: ID of the memory to update
            updates: Fields to replace (content, type, timestamp, metadata, payload)

        Returns:
            The updated memory

        Raises:
            ValidationError: If updates name unknown or immutable fields.
            NotFoundError: If no memory has this id.
        """
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Cannot update field(s): {', '.join(sorted(unknown))}",
                {"updatable_fields": sorted(UPDATABLE_FIELDS)},
            )

        async with self._memory_lock(memory_id):
            existing = await self.get_memory(memory_id)
            if existing is None:
                raise NotFoundError(memory_id)

            updated = replace(existing, **updates)
            content_changed = "content" in updates and updated.content != existing.content

            embedding = existing.embedding or []
            error = None
            if content_changed:
                embedding, error = await self._try_embed(updated.content)

            await self.client.update_documents(
                self.collection_name, [self._memory_to_document(updated, embedding)]
            )

            if content_changed:
                if error is None:
                    self.failures.resolve(memory_id)
                else:
                    record = self.failures.record_failure(
                        memory_id, updated.content, error, reset=False
                    )
                    logger.warning(
                        f"Failed to update embedding for memory {memory_id} "
                        f"(retry count {record.retry_count}): {error}"
                    )

        logger.info(f"Updated memory {memory_id}")
        return replace(updated, embedding=list(embedding) if embedding else None)

    async def delete_memory(self, memory_id: str) -> None:
        """Delete a memory and forget any embedding failure recorded for it."""
        async with self._memory_lock(memory_id):
            await self.client.delete_documents(self.collection_name, [memory_id])
            self.failures.resolve(memory_id)
        logger.info(f"Deleted memory {memory_id}")

    async def delete_memories(self, memory_ids: list[str]) -> BatchOperationResult:
        """Delete memories independently; one failure never aborts the rest."""
        result = BatchOperationResult(total_processed=len(memory_ids))

        for memory_id in memory_ids:
            try:
                await self.delete_memory(memory_id)
                result.successful.append(memory_id)
            except Exception as e:
                logger.error(f"Failed to delete memory {memory_id}: {e}")
                result.failed.append(BatchFailure(id=memory_id, error=str(e)))

        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_memory(self, memory_id: str) -> Optional[Memory]:
        """Get a memory by ID, or None if it does not exist."""
        documents = await self.client.get_documents(self.collection_name, ids=[memory_id])
        return self._doc_to_memory(documents[0]) if documents else None

    async def get_memories(self, memory_ids: list[str]) -> list[Optional[Memory]]:
        """Get memories by ID, in the order requested; missing ids give None."""
        if not memory_ids:
            return []

        documents = await self.client.get_documents(self.collection_name, ids=memory_ids)
        by_id = {doc.id: doc for doc in documents}
        return [
            self._doc_to_memory(by_id[memory_id]) if memory_id in by_id else None
            for memory_id in memory_ids
        ]

    async def search_memories(self, query: SearchQuery) -> list[SearchResult]:
        """
        Semantic search over stored memories.

        A semantic query is required: without query text this returns []
        without calling the embedding service. Results keep the store's
        ranking (distance ascending).
        """
        if not query.query or not query.query.strip():
            return []

        where = self._type_filter(query.types)
        query_embedding = await self.embedding_service.generate_embedding(query.query)

        limit = query.limit if query.limit is not None else DEFAULT_SEARCH_LIMIT
        results = await self.client.query_collection(
            self.collection_name,
            [query_embedding],
            k=limit,
            where=where,
        )

        search_results = []

        if results.ids and results.ids[0]:
            for i, doc_id in enumerate(results.ids[0]):
                distances = results.distances[0] if results.distances else []
                distance = distances[i] if i < len(distances) else 1.0
                relevance = distance_to_relevance(distance)

                if query.min_relevance_score is not None and relevance < query.min_relevance_score:
                    continue

                document = results.documents[0][i] if results.documents else ""
                metadata = results.metadatas[0][i] if results.metadatas else {}
                memory = self._document_to_memory(doc_id, document, metadata)

                if query.time_range is not None and not query.time_range.contains(memory.timestamp):
                    continue

                search_results.append(SearchResult(
                    id=doc_id,
                    memory=memory,
                    relevance_score=relevance,
                    distance=distance,
                    snippet=generate_snippet(memory.content, query.query),
                ))

        logger.debug(f"Search returned {len(search_results)} of {len(results.ids[0]) if results.ids else 0} candidates")
        return search_results

    async def find_similar_memories(self, memory_id: str, limit: int = DEFAULT_SEARCH_LIMIT) -> list[SearchResult]:
        """
        Find memories similar to an existing one, using its content as the query.

        The source memory itself is left out of the results.
        """
        memory = await self.get_memory(memory_id)
        if memory is None:
            raise NotFoundError(memory_id)

        results = await self.search_memories(SearchQuery(query=memory.content, limit=limit + 1))
        return [r for r in results if r.id != memory_id][:limit]

    async def get_memories_by_type(self, memory_type: str, limit: int = DEFAULT_LIST_LIMIT) -> list[Memory]:
        """Get memories of one type (metadata filter, no similarity ranking)."""
        where = self._type_filter([memory_type])
        documents = await self.client.get_documents(self.collection_name, where=where, limit=limit)
        return [self._doc_to_memory(doc) for doc in documents]

    async def get_recent_memories(
        self,
        limit: int = DEFAULT_LIST_LIMIT,
        max_age: Optional[timedelta] = None,
        types: Optional[list[str]] = None,
    ) -> list[Memory]:
        """
        Get the most recent memories, newest first.

        Recency is a client-side sort over every candidate; fine at moderate
        scale, not index-accelerated.
        """
        where = self._type_filter(types)
        documents = await self.client.get_documents(self.collection_name, where=where)
        memories = [self._doc_to_memory(doc) for doc in documents]

        if max_age is not None:
            cutoff = datetime.now() - max_age
            memories = [m for m in memories if to_local_naive(m.timestamp) >= cutoff]

        memories.sort(key=lambda m: to_local_naive(m.timestamp), reverse=True)
        return memories[:limit]

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_memory_count(self) -> int:
        """Get total number of stored memories."""
        return await self.client.get_collection_count(self.collection_name)

    async def get_memory_count_by_type(self) -> dict[str, int]:
        """Count stored memories per type."""
        documents = await self.client.get_documents(self.collection_name)
        counts = {memory_type: 0 for memory_type in MEMORY_TYPES}
        for doc in documents:
            memory_type = doc.metadata.get("type")
            if memory_type in counts:
                counts[memory_type] += 1
        return counts

    async def get_storage_stats(self) -> MemoryStoreStats:
        """Summarize what is stored."""
        documents = await self.client.get_documents(self.collection_name)
        memories = [self._doc_to_memory(doc) for doc in documents]

        counts = {memory_type: 0 for memory_type in MEMORY_TYPES}
        for memory in memories:
            counts[memory.type] += 1

        timestamps = sorted(to_local_naive(m.timestamp) for m in memories)
        average_size = sum(len(m.content) for m in memories) / len(memories) if memories else 0.0

        return MemoryStoreStats(
            total_memories=len(memories),
            memories_by_type=counts,
            oldest_memory=timestamps[0] if timestamps else None,
            newest_memory=timestamps[-1] if timestamps else None,
            average_memory_size=average_size,
            failed_embeddings=len(self.failures),
        )

    # ------------------------------------------------------------------
    # Failed embeddings
    # ------------------------------------------------------------------

    async def reprocess_failed_embeddings(self, max_retries: int = 3) -> BatchOperationResult:
        """
        Retry embedding generation for tracked failures.

        Entries already at max_retries are reported failed without a retry.
        Each retry either clears its entry (success) or bumps its retry count.
        """
        records = self.failures.snapshot()
        result = BatchOperationResult(total_processed=len(records))

        for record in records:
            memory_id = record.memory_id

            if record.retry_count >= max_retries:
                result.failed.append(BatchFailure(
                    id=memory_id,
                    error=f"Max retries ({max_retries}) exceeded",
                ))
                continue

            async with self._memory_lock(memory_id):
                # Another call may have resolved this entry since the snapshot
                current = self.failures.get(memory_id)
                if current is None:
                    result.successful.append(memory_id)
                    continue

                try:
                    embedding = await self.embedding_service.generate_embedding(current.content)

                    memory = await self.get_memory(memory_id)
                    if memory is None:
                        self.failures.resolve(memory_id)
                        result.failed.append(BatchFailure(id=memory_id, error="Memory no longer exists"))
                        continue

                    await self.client.update_documents(
                        self.collection_name, [self._memory_to_document(memory, embedding)]
                    )
                    self.failures.resolve(memory_id)
                    result.successful.append(memory_id)
                    logger.info(f"Reprocessed embedding for memory {memory_id}")

                except Exception as e:
                    updated = self.failures.record_failure(memory_id, current.content, str(e), reset=False)
                    result.failed.append(BatchFailure(id=memory_id, error=str(e)))
                    logger.warning(
                        f"Embedding retry {updated.retry_count} failed for memory {memory_id}: {e}"
                    )

        logger.info(
            f"Reprocessed failed embeddings: {len(result.successful)} succeeded, "
            f"{len(result.failed)} failed"
        )
        return result

    def get_failed_embeddings(self) -> list[FailedEmbeddingRecord]:
        """Read-only snapshot of tracked embedding failures."""
        return self.failures.snapshot()

    def clear_failed_embeddings(self, memory_ids: Optional[list[str]] = None) -> int:
        """Operator reset: forget the given failures, or all of them."""
        removed = self.failures.clear(memory_ids)
        logger.info(f"Cleared {removed} failed embedding records")
        return removed

    async def close(self) -> None:
        """Clean up resources."""
        await self.client.close()
        logger.info("MemoryStore closed")


async def create_memory_store(cfg=None) -> MemoryStore:
    """
    Factory function to create a configured, initialized MemoryStore.

    Args:
        cfg: Config instance (defaults to the global config)

    Returns:
        Initialized MemoryStore
    """
    if cfg is None:
        from ..config import config as cfg

    embedding_service = create_embedding_service(
        api_key=cfg.embedding.api_key,
        model=cfg.embedding.model,
        dimensions=cfg.embedding.dimensions,
        max_tokens=cfg.embedding.max_tokens,
        batch_size=cfg.embedding.batch_size,
    )

    client = ChromaDocumentClient(
        mode=cfg.chroma.mode,
        path=cfg.chroma.path,
        host=cfg.chroma.host,
        port=cfg.chroma.port,
        ssl=cfg.chroma.ssl,
        api_key=cfg.chroma.api_key,
        placeholder_dimension=embedding_service.dimension,
    )
    await client.connect()

    failure_table = create_failure_table(
        backend=cfg.failure_tracking.backend,
        db_path=cfg.failure_tracking.db_path,
    )

    store = MemoryStore(
        client=client,
        embedding_service=embedding_service,
        collection_name=cfg.chroma.collection_name,
        failure_table=failure_table,
    )
    await store.initialize()
    return store
