"""Knowledge search and answer generation service."""

import time
from datetime import datetime, time as dt_time, timedelta, timezone
from typing import Any, Optional

from pydantic import ValidationError

from pyknowledge.utils.logging import get_logger

from .base import BaseGenerationProvider, BaseKnowledgeStore, BaseQueryLog, BaseSettingsStore
from .context import assemble_context, build_citations
from .embeddings import DEFAULT_EMBEDDING_MODEL, EmbeddingClient
from .exceptions import SettingsError
from .generation import generate_answer
from .models import (
    EmbeddingRequest,
    GenerationRequest,
    GenerationResponse,
    KnowledgeSettings,
    KnowledgeStats,
    QueryLogRecord,
    RAGContext,
    SearchRequest,
    SearchResponse,
    SimilarDocument,
    utcnow,
)
from .tokens import estimate_token_count

logger = get_logger(__name__)

SIMILAR_DOCUMENTS_THRESHOLD = 0.5
SIMILAR_DOCUMENTS_FANOUT = 3
STATS_SCORE_WINDOW = 100


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class KnowledgeService:
    """Retrieval-augmented question answering over a tenant's knowledge base.

    Each query runs embed, vector search, optional tag filter, context
    assembly, optional generation and a best-effort analytics write, one
    after another.

    Example:
        ```python
        service = KnowledgeService(
            embeddings=EmbeddingClient(),
            store=store,
            generator=OpenAIChatProvider(),
            settings_store=MemorySettingsStore(),
        )
        response = await service.search("acme", SearchRequest(query="How do refunds work?"))
        print(response.ai_response)
        ```
    """

    def __init__(
        self,
        embeddings: EmbeddingClient,
        store: BaseKnowledgeStore,
        generator: BaseGenerationProvider,
        settings_store: BaseSettingsStore,
        query_log: Optional[BaseQueryLog] = None,
        embedding_model: str = DEFAULT_EMBEDDING_MODEL,
        max_context_tokens: int = 4000,
        query_max_retries: int = 2,
    ):
        """Initialize the service.

        Args:
            embeddings: Client used to embed queries
            store: Knowledge store that owns similarity search
            generator: Chat-completion provider for answers
            settings_store: Per-tenant settings rows
            query_log: Analytics sink (queries are not logged if None)
            embedding_model: Model used for query embeddings
            max_context_tokens: Token budget for generation context
            query_max_retries: Retries for the query embedding call
        """
        self.embeddings = embeddings
        self.store = store
        self.generator = generator
        self.settings_store = settings_store
        self.query_log = query_log
        self.embedding_model = embedding_model
        self.max_context_tokens = max_context_tokens
        self.query_max_retries = query_max_retries

    async def search(self, tenant_id: str, request: SearchRequest) -> SearchResponse:
        """Search the tenant's knowledge base and optionally answer the query.

        Failures never raise; they come back as ``success=False`` with the
        error message and no chunks. A search with no chunk above the
        threshold is a successful response without an answer.

        Args:
            tenant_id: Tenant whose documents are searched
            request: Query and per-request overrides

        Returns:
            Retrieved chunks, and the answer with citations when requested
        """
        start = time.perf_counter()

        try:
            settings = await self.get_settings(tenant_id)
            threshold = (
                request.similarity_threshold
                if request.similarity_threshold is not None
                else settings.similarity_threshold
            )
            limit = request.limit if request.limit is not None else settings.max_chunks_per_query

            embedded = await self.embeddings.embed_with_retry(
                EmbeddingRequest(texts=[request.query], model=self.embedding_model),
                self.query_max_retries,
            )
            query_embedding = embedded.embeddings[0].values

            chunks = await self.store.search(query_embedding, tenant_id, threshold, limit)
            search_latency = _elapsed_ms(start)

            if request.tags_filter:
                tagged = await self.store.document_ids_with_tags(tenant_id, request.tags_filter)
                chunks = [c for c in chunks if c.document_id in tagged]

            response = SearchResponse(
                success=True,
                query=request.query,
                chunks=chunks,
                search_latency_ms=search_latency,
            )

            if request.include_response and chunks:
                generation_start = time.perf_counter()
                generated = await self.generate_response(
                    RAGContext(
                        query=request.query,
                        chunks=chunks,
                        settings=settings,
                        max_context_tokens=self.max_context_tokens,
                    )
                )
                response.ai_response = generated.response
                response.citations = generated.citations
                response.tokens_used = generated.tokens_used
                response.finish_reason = generated.finish_reason
                response.generation_latency_ms = _elapsed_ms(generation_start)

        except Exception as e:
            logger.error(f"Knowledge search failed for tenant {tenant_id}: {e}")
            return SearchResponse(
                success=False,
                query=request.query,
                error=str(e) or "Search failed",
                search_latency_ms=_elapsed_ms(start),
            )

        logger.info(
            f"Search for tenant {tenant_id}: {len(response.chunks)} chunks "
            f"in {response.search_latency_ms}ms"
        )
        await self._log_query(tenant_id, request, response, query_embedding, settings)
        return response

    async def generate_response(self, context: RAGContext) -> GenerationResponse:
        """Answer a query from retrieved chunks.

        Args:
            context: Query, retrieved chunks, tenant settings and token budget

        Returns:
            Answer text with citations for the chunks that fit in the context

        Raises:
            GenerationError: The provider failed or returned a malformed payload
        """
        settings = context.settings
        assembled = assemble_context(context.chunks, context.max_context_tokens)

        result = await generate_answer(
            self.generator,
            GenerationRequest(
                query=context.query,
                context=assembled.text,
                model=settings.ai_model,
                temperature=settings.ai_temperature,
                max_tokens=settings.ai_max_tokens,
                include_citations=settings.include_citations,
            ),
        )

        return GenerationResponse(
            response=result.content,
            citations=build_citations(assembled.chunks, settings.include_citations),
            tokens_used=result.tokens_used,
            finish_reason=result.finish_reason,
            context_tokens=assembled.token_count,
        )

    async def find_similar_documents(
        self,
        tenant_id: str,
        document_id: str,
        max_results: int = 5,
    ) -> list[SimilarDocument]:
        """Rank other documents by mean chunk similarity to a source document.

        The source document's first chunk embedding stands in for the whole
        document.
        """
        source_embedding = await self.store.get_chunk_embedding(document_id)
        if source_embedding is None:
            return []

        results = await self.store.search(
            source_embedding,
            tenant_id,
            SIMILAR_DOCUMENTS_THRESHOLD,
            max_results * SIMILAR_DOCUMENTS_FANOUT,
        )

        grouped: dict[str, tuple[str, list[float]]] = {}
        for result in results:
            if result.document_id == document_id:
                continue
            title, scores = grouped.setdefault(result.document_id, (result.document_title, []))
            scores.append(result.similarity)

        similar = [
            SimilarDocument(
                document_id=doc_id,
                title=title,
                similarity=sum(scores) / len(scores),
                matched_chunks=len(scores),
            )
            for doc_id, (title, scores) in grouped.items()
        ]
        similar.sort(key=lambda d: d.similarity, reverse=True)
        return similar[:max_results]

    async def get_settings(self, tenant_id: str) -> KnowledgeSettings:
        """Get a tenant's settings, falling back to defaults.

        A tenant without a row, or a store that cannot be read, gets the
        default settings.
        """
        try:
            settings = await self.settings_store.get(tenant_id)
        except Exception as e:
            logger.warning(f"Failed to read settings for tenant {tenant_id}, using defaults: {e}")
            settings = None

        if settings is None:
            now = utcnow()
            return KnowledgeSettings(tenant_id=tenant_id, created_at=now, updated_at=now)
        return settings

    async def update_settings(self, tenant_id: str, updates: dict[str, Any]) -> KnowledgeSettings:
        """Merge ``updates`` onto the tenant's settings and write the full row.

        Args:
            tenant_id: Tenant to update
            updates: Field values to change

        Returns:
            The stored settings

        Raises:
            SettingsError: Unknown field, invalid value or store failure;
                nothing is written in that case
        """
        try:
            current = await self.settings_store.get(tenant_id)
        except Exception as e:
            raise SettingsError(f"Failed to update settings: {e}") from e

        base = current or KnowledgeSettings(tenant_id=tenant_id)
        merged = {**base.model_dump(), **updates, "tenant_id": tenant_id, "updated_at": utcnow()}

        try:
            settings = KnowledgeSettings.model_validate(merged)
        except ValidationError as e:
            raise SettingsError(f"Invalid settings: {e}") from e

        try:
            stored = await self.settings_store.upsert(settings)
        except Exception as e:
            raise SettingsError(f"Failed to update settings: {e}") from e

        logger.info(f"Updated settings for tenant {tenant_id}: {sorted(updates)}")
        return stored

    async def get_stats(self, tenant_id: str) -> KnowledgeStats:
        """Aggregate document, chunk and query statistics for a tenant."""
        documents = await self.store.list_documents(tenant_id)
        total_chunks = await self.store.count_chunks(tenant_id)

        by_type: dict[str, int] = {}
        by_status: dict[str, int] = {}
        for doc in documents:
            by_type[doc.source_type.value] = by_type.get(doc.source_type.value, 0) + 1
            by_status[doc.status.value] = by_status.get(doc.status.value, 0) + 1

        stats = KnowledgeStats(
            total_documents=len(documents),
            total_chunks=total_chunks,
            total_storage_bytes=sum(doc.file_size_bytes for doc in documents),
            documents_by_type=by_type,
            documents_by_status=by_status,
        )

        if self.query_log is None:
            return stats

        today = datetime.combine(utcnow().date(), dt_time.min, tzinfo=timezone.utc)
        stats.queries_today = await self.query_log.count_since(tenant_id, today)
        stats.queries_this_week = await self.query_log.count_since(tenant_id, today - timedelta(days=7))

        scores = await self.query_log.recent_top_scores(tenant_id, STATS_SCORE_WINDOW)
        if scores:
            stats.avg_similarity_score = sum(scores) / len(scores)
        return stats

    async def _log_query(
        self,
        tenant_id: str,
        request: SearchRequest,
        response: SearchResponse,
        query_embedding: list[float],
        settings: KnowledgeSettings,
    ) -> None:
        """Record the query for analytics. Failures are logged and dropped."""
        if self.query_log is None:
            return

        try:
            await self.query_log.record(
                QueryLogRecord(
                    tenant_id=tenant_id,
                    query_text=request.query,
                    query_embedding=query_embedding,
                    chunks_retrieved=len(response.chunks),
                    top_similarity_score=response.chunks[0].similarity if response.chunks else None,
                    context_tokens=sum(estimate_token_count(c.content) for c in response.chunks),
                    ai_response=response.ai_response,
                    ai_model=settings.ai_model if response.ai_response else None,
                    search_latency_ms=response.search_latency_ms,
                    generation_latency_ms=response.generation_latency_ms,
                )
            )
        except Exception as e:
            logger.warning(f"Failed to log query for tenant {tenant_id}: {e}")
