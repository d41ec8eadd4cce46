"""Knowledge, settings and query-log store implementations."""

import asyncio
import json
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from .base import BaseKnowledgeStore, BaseProcessingQueue, BaseQueryLog, BaseSettingsStore
from .embeddings import cosine_similarity
from .models import (
    KnowledgeDocument,
    KnowledgeSettings,
    ProcessingQueueItem,
    QueryLogRecord,
    QueueStatus,
    SearchResultChunk,
    StoredChunk,
    utcnow,
)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MemoryKnowledgeStore(BaseKnowledgeStore):
    """In-memory document and chunk store with exact cosine search.

    Suitable for tests and small datasets; every search scans all of the
    tenant's chunks.
    """

    def __init__(self):
        self._documents: dict[str, KnowledgeDocument] = {}
        self._chunks: dict[str, StoredChunk] = {}

    async def search(
        self,
        query_embedding: list[float],
        tenant_id: str,
        similarity_threshold: float,
        max_results: int,
    ) -> list[SearchResultChunk]:
        scored = []
        for chunk in self._chunks.values():
            if chunk.tenant_id != tenant_id:
                continue
            score = cosine_similarity(query_embedding, chunk.embedding)
            if score >= similarity_threshold:
                scored.append((score, chunk))

        scored.sort(key=lambda x: x[0], reverse=True)

        results = []
        for score, chunk in scored[:max_results]:
            document = self._documents.get(chunk.document_id)
            results.append(
                SearchResultChunk(
                    chunk_id=chunk.id,
                    document_id=chunk.document_id,
                    document_title=document.title if document else "Untitled",
                    content=chunk.content,
                    similarity=score,
                    metadata=chunk.metadata,
                )
            )
        return results

    async def document_ids_with_tags(self, tenant_id: str, tags: list[str]) -> set[str]:
        wanted = set(tags)
        return {
            doc.id
            for doc in self._documents.values()
            if doc.tenant_id == tenant_id and wanted.intersection(doc.tags)
        }

    async def get_chunk_embedding(self, document_id: str) -> Optional[list[float]]:
        chunks = [c for c in self._chunks.values() if c.document_id == document_id]
        if not chunks:
            return None
        return min(chunks, key=lambda c: c.chunk_index).embedding

    async def list_documents(self, tenant_id: str) -> list[KnowledgeDocument]:
        return [doc for doc in self._documents.values() if doc.tenant_id == tenant_id]

    async def count_chunks(self, tenant_id: str) -> int:
        return sum(1 for c in self._chunks.values() if c.tenant_id == tenant_id)

    async def get_document(self, document_id: str) -> Optional[KnowledgeDocument]:
        return self._documents.get(document_id)

    async def save_document(self, document: KnowledgeDocument) -> None:
        self._documents[document.id] = document

    async def find_document_by_hash(
        self,
        tenant_id: str,
        content_hash: str,
        exclude_id: Optional[str] = None,
    ) -> Optional[KnowledgeDocument]:
        for doc in self._documents.values():
            if doc.id == exclude_id:
                continue
            if doc.tenant_id == tenant_id and doc.content_hash == content_hash:
                return doc
        return None

    async def add_chunks(self, chunks: list[StoredChunk]) -> list[str]:
        ids = []
        for chunk in chunks:
            self._chunks[chunk.id] = chunk
            ids.append(chunk.id)
        return ids

    async def delete_chunks(self, document_id: str) -> int:
        doomed = [cid for cid, c in self._chunks.items() if c.document_id == document_id]
        for cid in doomed:
            del self._chunks[cid]
        return len(doomed)


class MemorySettingsStore(BaseSettingsStore):
    """Dict-backed settings store keyed by tenant."""

    def __init__(self):
        self._rows: dict[str, KnowledgeSettings] = {}

    async def get(self, tenant_id: str) -> Optional[KnowledgeSettings]:
        return self._rows.get(tenant_id)

    async def upsert(self, settings: KnowledgeSettings) -> KnowledgeSettings:
        existing = self._rows.get(settings.tenant_id)
        created_at = settings.created_at or (existing.created_at if existing else None) or utcnow()
        row = settings.model_copy(update={"created_at": created_at})
        self._rows[settings.tenant_id] = row
        return row


class MemoryQueryLog(BaseQueryLog):
    """List-backed query log."""

    def __init__(self):
        self.records: list[QueryLogRecord] = []

    async def record(self, record: QueryLogRecord) -> None:
        self.records.append(record)

    async def count_since(self, tenant_id: str, since: datetime) -> int:
        since = _as_utc(since)
        return sum(
            1 for r in self.records if r.tenant_id == tenant_id and _as_utc(r.created_at) >= since
        )

    async def recent_top_scores(self, tenant_id: str, limit: int = 100) -> list[float]:
        scored = [
            r for r in self.records if r.tenant_id == tenant_id and r.top_similarity_score is not None
        ]
        scored.sort(key=lambda r: _as_utc(r.created_at), reverse=True)
        return [r.top_similarity_score for r in scored[:limit]]


class MemoryProcessingQueue(BaseProcessingQueue):
    """List-backed processing queue.

    Entries with equal priority and creation time keep insertion order.
    """

    def __init__(self):
        self.items: list[ProcessingQueueItem] = []

    async def enqueue(self, item: ProcessingQueueItem) -> ProcessingQueueItem:
        self.items.append(item)
        return item

    async def claim_next(self) -> Optional[ProcessingQueueItem]:
        pending = [
            (position, item)
            for position, item in enumerate(self.items)
            if item.status == QueueStatus.PENDING
        ]
        if not pending:
            return None

        position, item = min(
            pending,
            key=lambda entry: (entry[1].priority, _as_utc(entry[1].created_at), entry[0]),
        )
        claimed = item.model_copy(
            update={
                "status": QueueStatus.PROCESSING,
                "attempts": item.attempts + 1,
                "started_at": utcnow(),
            }
        )
        self.items[position] = claimed
        return claimed

    async def finish(
        self,
        item_id: str,
        success: bool,
        error_message: Optional[str] = None,
    ) -> Optional[ProcessingQueueItem]:
        for position, item in enumerate(self.items):
            if item.id == item_id:
                finished = item.model_copy(
                    update={
                        "status": QueueStatus.COMPLETED if success else QueueStatus.FAILED,
                        "completed_at": utcnow(),
                        "error_message": None if success else error_message,
                    }
                )
                self.items[position] = finished
                return finished
        return None

    async def get(self, item_id: str) -> Optional[ProcessingQueueItem]:
        return next((item for item in self.items if item.id == item_id), None)


class _SQLiteStore(ABC):
    """Connection handling shared by the SQLite stores.

    Each call opens its own connection and runs in the default executor.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @abstractmethod
    def _ensure_table(self, conn: sqlite3.Connection) -> None:
        """Create the store's tables if they do not exist."""
        pass

    async def _run(self, func, *args):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, func, *args)


class SQLiteSettingsStore(_SQLiteStore, BaseSettingsStore):
    """SQLite-backed settings store.

    Writes are a single ``INSERT ... ON CONFLICT DO UPDATE`` keyed by tenant.
    """

    def __init__(self, db_path: str = "knowledge.db"):
        """Initialize SQLite settings store.

        Args:
            db_path: Path to SQLite database file
        """
        super().__init__(db_path)

    def _ensure_table(self, conn: sqlite3.Connection) -> None:
        """Ensure the knowledge_settings table exists."""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS knowledge_settings (
                tenant_id TEXT PRIMARY KEY,
                similarity_threshold REAL NOT NULL,
                max_chunks_per_query INTEGER NOT NULL,
                ai_model TEXT NOT NULL,
                ai_temperature REAL NOT NULL,
                ai_max_tokens INTEGER NOT NULL,
                include_citations INTEGER NOT NULL,
                chunk_size_tokens INTEGER NOT NULL,
                chunk_overlap_tokens INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()

    @staticmethod
    def _row_to_settings(row: sqlite3.Row) -> KnowledgeSettings:
        return KnowledgeSettings(
            tenant_id=row["tenant_id"],
            similarity_threshold=row["similarity_threshold"],
            max_chunks_per_query=row["max_chunks_per_query"],
            ai_model=row["ai_model"],
            ai_temperature=row["ai_temperature"],
            ai_max_tokens=row["ai_max_tokens"],
            include_citations=bool(row["include_citations"]),
            chunk_size_tokens=row["chunk_size_tokens"],
            chunk_overlap_tokens=row["chunk_overlap_tokens"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def get(self, tenant_id: str) -> Optional[KnowledgeSettings]:
        return await self._run(self._get_sync, tenant_id)

    def _get_sync(self, tenant_id: str) -> Optional[KnowledgeSettings]:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            row = conn.execute(
                "SELECT * FROM knowledge_settings WHERE tenant_id = ?",
                (tenant_id,),
            ).fetchone()
            return self._row_to_settings(row) if row else None
        finally:
            conn.close()

    async def upsert(self, settings: KnowledgeSettings) -> KnowledgeSettings:
        return await self._run(self._upsert_sync, settings)

    def _upsert_sync(self, settings: KnowledgeSettings) -> KnowledgeSettings:
        now = utcnow()
        created_at = settings.created_at or now
        updated_at = settings.updated_at or now

        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            conn.execute(
                """
                INSERT INTO knowledge_settings (
                    tenant_id, similarity_threshold, max_chunks_per_query,
                    ai_model, ai_temperature, ai_max_tokens, include_citations,
                    chunk_size_tokens, chunk_overlap_tokens, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id) DO UPDATE SET
                    similarity_threshold = excluded.similarity_threshold,
                    max_chunks_per_query = excluded.max_chunks_per_query,
                    ai_model = excluded.ai_model,
                    ai_temperature = excluded.ai_temperature,
                    ai_max_tokens = excluded.ai_max_tokens,
                    include_citations = excluded.include_citations,
                    chunk_size_tokens = excluded.chunk_size_tokens,
                    chunk_overlap_tokens = excluded.chunk_overlap_tokens,
                    updated_at = excluded.updated_at
                """,
                (
                    settings.tenant_id,
                    settings.similarity_threshold,
                    settings.max_chunks_per_query,
                    settings.ai_model,
                    settings.ai_temperature,
                    settings.ai_max_tokens,
                    int(settings.include_citations),
                    settings.chunk_size_tokens,
                    settings.chunk_overlap_tokens,
                    _as_utc(created_at).isoformat(timespec="microseconds"),
                    _as_utc(updated_at).isoformat(timespec="microseconds"),
                ),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM knowledge_settings WHERE tenant_id = ?",
                (settings.tenant_id,),
            ).fetchone()
            return self._row_to_settings(row)
        finally:
            conn.close()


class SQLiteQueryLog(_SQLiteStore, BaseQueryLog):
    """SQLite-backed append-only query log."""

    def __init__(self, db_path: str = "knowledge.db"):
        """Initialize SQLite query log.

        Args:
            db_path: Path to SQLite database file
        """
        super().__init__(db_path)

    def _ensure_table(self, conn: sqlite3.Connection) -> None:
        """Ensure the knowledge_queries table exists."""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS knowledge_queries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                query_text TEXT NOT NULL,
                query_embedding TEXT,
                chunks_retrieved INTEGER NOT NULL,
                top_similarity_score REAL,
                context_tokens INTEGER NOT NULL,
                ai_response TEXT,
                ai_model TEXT,
                search_latency_ms INTEGER NOT NULL,
                generation_latency_ms INTEGER,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_queries_tenant
            ON knowledge_queries(tenant_id, created_at DESC)
        """)
        conn.commit()

    async def record(self, record: QueryLogRecord) -> None:
        await self._run(self._record_sync, record)

    def _record_sync(self, record: QueryLogRecord) -> None:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            conn.execute(
                """
                INSERT INTO knowledge_queries (
                    tenant_id, query_text, query_embedding, chunks_retrieved,
                    top_similarity_score, context_tokens, ai_response, ai_model,
                    search_latency_ms, generation_latency_ms, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.tenant_id,
                    record.query_text,
                    json.dumps(record.query_embedding) if record.query_embedding is not None else None,
                    record.chunks_retrieved,
                    record.top_similarity_score,
                    record.context_tokens,
                    record.ai_response,
                    record.ai_model,
                    record.search_latency_ms,
                    record.generation_latency_ms,
                    _as_utc(record.created_at).isoformat(timespec="microseconds"),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    async def count_since(self, tenant_id: str, since: datetime) -> int:
        return await self._run(self._count_since_sync, tenant_id, since)

    def _count_since_sync(self, tenant_id: str, since: datetime) -> int:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            row = conn.execute(
                "SELECT COUNT(*) FROM knowledge_queries WHERE tenant_id = ? AND created_at >= ?",
                (tenant_id, _as_utc(since).isoformat(timespec="microseconds")),
            ).fetchone()
            return row[0]
        finally:
            conn.close()

    async def recent_top_scores(self, tenant_id: str, limit: int = 100) -> list[float]:
        return await self._run(self._recent_top_scores_sync, tenant_id, limit)

    def _recent_top_scores_sync(self, tenant_id: str, limit: int) -> list[float]:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            rows = conn.execute(
                """
                SELECT top_similarity_score FROM knowledge_queries
                WHERE tenant_id = ? AND top_similarity_score IS NOT NULL
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (tenant_id, limit),
            ).fetchall()
            return [row["top_similarity_score"] for row in rows]
        finally:
            conn.close()
