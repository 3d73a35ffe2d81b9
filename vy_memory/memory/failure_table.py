"""
Failed embedding tracking.

Memories whose embedding could not be generated are still written to the
document store; this table remembers them so they can be re-embedded later.
Two backings share one interface: an in-process dict (default) and a small
SQLite table that survives restarts.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from .models import FailedEmbeddingRecord

logger = logging.getLogger("vy_memory.memory.failures")


class FailedEmbeddingTable(ABC):
    """
    Keyed by memory id. Every transition is atomic per key.
    """

    @abstractmethod
    def get(self, memory_id: str) -> Optional[FailedEmbeddingRecord]:
        pass

    @abstractmethod
    def record_failure(
        self,
        memory_id: str,
        content: str,
        error: str,
        reset: bool = True,
    ) -> FailedEmbeddingRecord:
        """
        Insert or update the record for memory_id.

        With reset=True the retry count is set to 0. With reset=False a new
        record starts at 0 and an existing one is incremented.
        """
        pass

    @abstractmethod
    def resolve(self, memory_id: str) -> bool:
        """Drop the record for memory_id. Returns whether one existed."""
        pass

    @abstractmethod
    def snapshot(self) -> list[FailedEmbeddingRecord]:
        """Copy of every record, oldest first."""
        pass

    @abstractmethod
    def clear(self, memory_ids: Optional[list[str]] = None) -> int:
        """Remove the given records, or all of them. Returns the count removed."""
        pass

    @abstractmethod
    def __len__(self) -> int:
        pass


class InMemoryFailureTable(FailedEmbeddingTable):
    """Process-scoped table guarded by a lock."""

    def __init__(self):
        self._records: dict[str, FailedEmbeddingRecord] = {}
        self._lock = threading.Lock()

    def get(self, memory_id: str) -> Optional[FailedEmbeddingRecord]:
        with self._lock:
            record = self._records.get(memory_id)
            return _copy(record) if record else None

    def record_failure(
        self,
        memory_id: str,
        content: str,
        error: str,
        reset: bool = True,
    ) -> FailedEmbeddingRecord:
        with self._lock:
            existing = self._records.get(memory_id)
            retry_count = 0 if reset or existing is None else existing.retry_count + 1
            record = FailedEmbeddingRecord(
                memory_id=memory_id,
                content=content,
                timestamp=datetime.now(),
                error=error,
                retry_count=retry_count,
            )
            self._records[memory_id] = record
            return _copy(record)

    def resolve(self, memory_id: str) -> bool:
        with self._lock:
            return self._records.pop(memory_id, None) is not None

    def snapshot(self) -> list[FailedEmbeddingRecord]:
        with self._lock:
            return [_copy(r) for r in self._records.values()]

    def clear(self, memory_ids: Optional[list[str]] = None) -> int:
        with self._lock:
            if memory_ids is None:
                removed = len(self._records)
                self._records.clear()
                return removed
            return sum(1 for mid in memory_ids if self._records.pop(mid, None) is not None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class SqliteFailureTable(FailedEmbeddingTable):
    """
    SQLite-backed failure table.

    Each transition runs in its own transaction, so a retry-count increment
    is a single read-modify-write.
    """

    def __init__(self, db_path: str = "failed_embeddings.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._init_db()
        logger.info(f"SqliteFailureTable initialized with database: {db_path}")

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS failed_embeddings (
                    memory_id TEXT PRIMARY KEY,
                    content TEXT NOT NULL,
                    failed_at TIMESTAMP NOT NULL,
                    error TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.commit()

    @staticmethod
    def _row_to_record(row: tuple) -> FailedEmbeddingRecord:
        return FailedEmbeddingRecord(
            memory_id=row[0],
            content=row[1],
            timestamp=datetime.fromisoformat(row[2]),
            error=row[3],
            retry_count=row[4],
        )

    def get(self, memory_id: str) -> Optional[FailedEmbeddingRecord]:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT memory_id, content, failed_at, error, retry_count
                FROM failed_embeddings WHERE memory_id = ?
                """,
                (memory_id,),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def record_failure(
        self,
        memory_id: str,
        content: str,
        error: str,
        reset: bool = True,
    ) -> FailedEmbeddingRecord:
        now = datetime.now().isoformat()
        with self._lock, sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT retry_count FROM failed_embeddings WHERE memory_id = ?",
                (memory_id,),
            ).fetchone()
            retry_count = 0 if reset or row is None else row[0] + 1
            conn.execute(
                """
                INSERT OR REPLACE INTO failed_embeddings
                (memory_id, content, failed_at, error, retry_count)
                VALUES (?, ?, ?, ?, ?)
                """,
                (memory_id, content, now, error, retry_count),
            )
            conn.commit()

        return FailedEmbeddingRecord(
            memory_id=memory_id,
            content=content,
            timestamp=datetime.fromisoformat(now),
            error=error,
            retry_count=retry_count,
        )

    def resolve(self, memory_id: str) -> bool:
        with self._lock, sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM failed_embeddings WHERE memory_id = ?",
                (memory_id,),
            )
            conn.commit()
            return cursor.rowcount > 0

    def snapshot(self) -> list[FailedEmbeddingRecord]:
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT memory_id, content, failed_at, error, retry_count
                FROM failed_embeddings ORDER BY failed_at
                """
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def clear(self, memory_ids: Optional[list[str]] = None) -> int:
        with self._lock, sqlite3.connect(self.db_path) as conn:
            if memory_ids is None:
                cursor = conn.execute("DELETE FROM failed_embeddings")
            else:
                cursor = conn.executemany(
                    "DELETE FROM failed_embeddings WHERE memory_id = ?",
                    [(mid,) for mid in memory_ids],
                )
            conn.commit()
            return cursor.rowcount

    def __len__(self) -> int:
        with sqlite3.connect(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM failed_embeddings").fetchone()[0]


def _copy(record: FailedEmbeddingRecord) -> FailedEmbeddingRecord:
    return FailedEmbeddingRecord(
        memory_id=record.memory_id,
        content=record.content,
        timestamp=record.timestamp,
        error=record.error,
        retry_count=record.retry_count,
    )


def create_failure_table(backend: str = "memory", db_path: str = "failed_embeddings.db") -> FailedEmbeddingTable:
    """Factory for the configured failure table backing."""
    if backend == "memory":
        return InMemoryFailureTable()
    elif backend == "sqlite":
        return SqliteFailureTable(db_path=db_path)
    else:
        raise ValueError(f"Unknown failure tracking backend: {backend}")
