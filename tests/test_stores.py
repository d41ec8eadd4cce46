"""Tests for the knowledge, settings and query-log stores."""

from datetime import timedelta

import pytest

from pyknowledge.rag import (
    DimensionMismatchError,
    KnowledgeSettings,
    MemoryKnowledgeStore,
    MemoryProcessingQueue,
    MemoryQueryLog,
    MemorySettingsStore,
    SQLiteQueryLog,
    SQLiteSettingsStore,
)
from pyknowledge.rag.models import ProcessingQueueItem, QueryLogRecord, QueueStatus, utcnow

from conftest import add_document


class TestMemoryKnowledgeStore:
    @pytest.mark.asyncio
    async def test_search_threshold_and_order(self):
        store = MemoryKnowledgeStore()
        await add_document(store, "doc", [("near", [1.0, 0.1]), ("far", [0.0, 1.0]), ("nearest", [1.0, 0.0])])

        results = await store.search([1.0, 0.0], "acme", similarity_threshold=0.5, max_results=10)

        assert [r.content for r in results] == ["nearest", "near"]
        assert results[0].similarity == pytest.approx(1.0)
        assert results[0].document_title == "doc"

    @pytest.mark.asyncio
    async def test_search_limit(self):
        store = MemoryKnowledgeStore()
        await add_document(store, "doc", [(f"c{i}", [1.0, 0.0]) for i in range(5)])
        results = await store.search([1.0, 0.0], "acme", 0.0, 2)
        assert len(results) == 2

    @pytest.mark.asyncio
    async def test_search_dimension_mismatch(self):
        store = MemoryKnowledgeStore()
        await add_document(store, "doc", [("text", [1.0, 0.0, 0.0])])
        with pytest.raises(DimensionMismatchError):
            await store.search([1.0, 0.0], "acme", 0.0, 5)

    @pytest.mark.asyncio
    async def test_first_chunk_embedding(self):
        store = MemoryKnowledgeStore()
        await add_document(store, "doc", [("first", [1.0, 0.0]), ("second", [0.0, 1.0])])
        assert await store.get_chunk_embedding("doc") == [1.0, 0.0]
        assert await store.get_chunk_embedding("missing") is None

    @pytest.mark.asyncio
    async def test_find_by_hash(self):
        store = MemoryKnowledgeStore()
        await add_document(store, "doc", [], content_hash="abc")

        assert (await store.find_document_by_hash("acme", "abc")).id == "doc"
        assert await store.find_document_by_hash("acme", "abc", exclude_id="doc") is None
        assert await store.find_document_by_hash("globex", "abc") is None

    @pytest.mark.asyncio
    async def test_delete_chunks(self):
        store = MemoryKnowledgeStore()
        await add_document(store, "doc", [("a", [1.0]), ("b", [1.0])])
        await add_document(store, "keep", [("c", [1.0])])

        assert await store.delete_chunks("doc") == 2
        assert await store.count_chunks("acme") == 1


class TestMemorySettingsStore:
    @pytest.mark.asyncio
    async def test_upsert_keeps_created_at(self):
        store = MemorySettingsStore()
        first = await store.upsert(KnowledgeSettings(tenant_id="acme"))
        second = await store.upsert(KnowledgeSettings(tenant_id="acme", ai_max_tokens=200))

        assert first.created_at is not None
        assert second.created_at == first.created_at
        assert (await store.get("acme")).ai_max_tokens == 200


class TestSQLiteSettingsStore:
    @pytest.mark.asyncio
    async def test_missing_row(self, tmp_path):
        store = SQLiteSettingsStore(str(tmp_path / "knowledge.db"))
        assert await store.get("acme") is None

    @pytest.mark.asyncio
    async def test_upsert_and_get(self, tmp_path):
        store = SQLiteSettingsStore(str(tmp_path / "knowledge.db"))

        stored = await store.upsert(KnowledgeSettings(
            tenant_id="acme", similarity_threshold=0.6, include_citations=False,
        ))
        loaded = await store.get("acme")

        assert loaded == stored
        assert loaded.similarity_threshold == 0.6
        assert loaded.include_citations is False
        assert loaded.created_at is not None

    @pytest.mark.asyncio
    async def test_upsert_replaces_row(self, tmp_path):
        store = SQLiteSettingsStore(str(tmp_path / "knowledge.db"))
        first = await store.upsert(KnowledgeSettings(tenant_id="acme"))

        later = first.updated_at + timedelta(minutes=5)
        second = await store.upsert(first.model_copy(update={"max_chunks_per_query": 9, "updated_at": later}))

        assert second.max_chunks_per_query == 9
        assert second.created_at == first.created_at
        assert second.updated_at == later

    @pytest.mark.asyncio
    async def test_works_with_service(self, tmp_path, embedding_client, knowledge_store, chat_provider):
        from pyknowledge.rag import KnowledgeService

        service = KnowledgeService(
            embedding_client, knowledge_store, chat_provider,
            SQLiteSettingsStore(str(tmp_path / "knowledge.db")),
        )
        await service.update_settings("acme", {"ai_model": "gpt-4o"})

        assert (await service.get_settings("acme")).ai_model == "gpt-4o"


class TestQueryLogs:
    @pytest.fixture(params=["memory", "sqlite"])
    def log(self, request, tmp_path):
        if request.param == "memory":
            return MemoryQueryLog()
        return SQLiteQueryLog(str(tmp_path / "knowledge.db"))

    @pytest.mark.asyncio
    async def test_count_since(self, log):
        now = utcnow()
        await log.record(QueryLogRecord(tenant_id="acme", query_text="new"))
        await log.record(QueryLogRecord(tenant_id="acme", query_text="old", created_at=now - timedelta(days=2)))
        await log.record(QueryLogRecord(tenant_id="globex", query_text="other"))

        assert await log.count_since("acme", now - timedelta(days=1)) == 1
        assert await log.count_since("acme", now - timedelta(days=3)) == 2

    @pytest.mark.asyncio
    async def test_recent_top_scores(self, log):
        now = utcnow()
        for i in range(5):
            await log.record(QueryLogRecord(
                tenant_id="acme",
                query_text=f"q{i}",
                top_similarity_score=0.5 + i * 0.1,
                query_embedding=[0.1, 0.2],
                created_at=now - timedelta(minutes=10 - i),
            ))
        await log.record(QueryLogRecord(tenant_id="acme", query_text="no score"))

        scores = await log.recent_top_scores("acme", limit=3)

        assert scores == pytest.approx([0.9, 0.8, 0.7])


class TestMemoryProcessingQueue:
    @pytest.mark.asyncio
    async def test_claim_order(self):
        queue = MemoryProcessingQueue()
        now = utcnow()
        await queue.enqueue(ProcessingQueueItem(document_id="b", tenant_id="acme", created_at=now))
        await queue.enqueue(ProcessingQueueItem(document_id="old", tenant_id="acme", created_at=now - timedelta(hours=1)))
        await queue.enqueue(ProcessingQueueItem(document_id="c", tenant_id="acme", created_at=now))
        await queue.enqueue(ProcessingQueueItem(document_id="first", tenant_id="acme", priority=0, created_at=now))

        claimed = [(await queue.claim_next()).document_id for _ in range(4)]

        assert claimed == ["first", "old", "b", "c"]
        assert await queue.claim_next() is None

    @pytest.mark.asyncio
    async def test_claim_and_finish(self):
        queue = MemoryProcessingQueue()
        item = await queue.enqueue(ProcessingQueueItem(document_id="doc", tenant_id="acme"))

        claimed = await queue.claim_next()
        assert claimed.id == item.id
        assert claimed.status == QueueStatus.PROCESSING
        assert claimed.attempts == 1

        failed = await queue.finish(item.id, False, "boom")
        assert failed.status == QueueStatus.FAILED
        assert failed.error_message == "boom"
        assert (await queue.get(item.id)) == failed

    @pytest.mark.asyncio
    async def test_finish_unknown(self):
        assert await MemoryProcessingQueue().finish("missing", True) is None


class TestSQLiteStoreBase:
    def test_table_hook_is_abstract(self, tmp_path):
        from pyknowledge.rag.stores import _SQLiteStore

        assert "_ensure_table" in _SQLiteStore.__abstractmethods__
        with pytest.raises(TypeError):
            _SQLiteStore(str(tmp_path / "knowledge.db"))

    def test_subclass_without_tables_rejected(self, tmp_path):
        from pyknowledge.rag.stores import _SQLiteStore

        class NoTables(_SQLiteStore):
            pass

        with pytest.raises(TypeError):
            NoTables(str(tmp_path / "knowledge.db"))
