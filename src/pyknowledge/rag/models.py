"""Data structures for the knowledge pipeline."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class ChunkingStrategy(str, Enum):
    """How a document is split into chunks."""

    SENTENCES = "sentences"
    PARAGRAPHS = "paragraphs"
    TOKENS = "tokens"
    MARKDOWN = "markdown"
    AUTO = "auto"


class ChunkingOptions(BaseModel):
    """Immutable sizing options passed to every chunking call.

    Attributes:
        chunk_size_tokens: Target maximum tokens per chunk
        chunk_overlap_tokens: Trailing tokens repeated at the start of the next chunk
        min_chunk_size: Smallest final fragment emitted as its own chunk
    """

    model_config = ConfigDict(frozen=True)

    chunk_size_tokens: int = Field(default=500, ge=1)
    chunk_overlap_tokens: int = Field(default=50, ge=0)
    min_chunk_size: int = Field(default=50, ge=0)

    @model_validator(mode="after")
    def _check_sizes(self) -> "ChunkingOptions":
        if self.chunk_overlap_tokens >= self.chunk_size_tokens:
            raise ValueError("chunk_overlap_tokens must be less than chunk_size_tokens")
        if self.min_chunk_size > self.chunk_size_tokens:
            raise ValueError("min_chunk_size must not exceed chunk_size_tokens")
        return self


class Chunk(BaseModel):
    """A chunk of a document.

    Offsets refer to the normalized document text. ``token_count`` is an
    estimate (about four characters per token), not a tokenizer count.

    Attributes:
        content: The text content of the chunk
        chunk_index: Zero-based position in the document's chunk list
        token_count: Estimated token count of ``content`` (plus the
            separator after it when produced by ``chunk_document``)
        start_char: Start character offset in the normalized document
        end_char: End character offset (exclusive)
        metadata: Chunk-specific metadata (strategy, markdown header)
    """

    content: str
    chunk_index: int = 0
    token_count: int = 0
    start_char: int = 0
    end_char: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_offsets(self) -> "Chunk":
        if self.start_char > self.end_char:
            raise ValueError("start_char must not exceed end_char")
        return self

    def __repr__(self) -> str:
        content_preview = self.content[:30] + "..." if len(self.content) > 30 else self.content
        return f"Chunk(index={self.chunk_index}, chars={self.start_char}-{self.end_char}, content={content_preview!r})"


class EmbeddingVector(BaseModel):
    """A single embedding returned by the provider."""

    values: list[float]
    dimensions: int
    model: str


class EmbeddingUsage(BaseModel):
    """Token usage reported by the embedding provider."""

    prompt_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "EmbeddingUsage") -> "EmbeddingUsage":
        return EmbeddingUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class EmbeddingBatchResult(BaseModel):
    """Embeddings for a batch, in input order."""

    embeddings: list[EmbeddingVector]
    model: str
    usage: EmbeddingUsage = Field(default_factory=EmbeddingUsage)


class EmbeddingRequest(BaseModel):
    """Arguments of one embedding call, kept together for retries."""

    texts: list[str]
    model: Optional[str] = None


class EmbeddingCostEstimate(BaseModel):
    """Offline pre-flight estimate. Not billing truth."""

    model: str
    token_count: int
    estimated_cost_usd: float


class SearchResultChunk(BaseModel):
    """A stored chunk joined with its document and a similarity score."""

    chunk_id: str
    document_id: str
    document_title: str
    content: str
    similarity: float
    metadata: dict[str, Any] = Field(default_factory=dict)

    def __repr__(self) -> str:
        return f"SearchResultChunk(chunk_id={self.chunk_id!r}, similarity={self.similarity:.4f})"


class Citation(BaseModel):
    """Reference to a chunk that went into the generation context."""

    document_id: str
    document_title: str
    chunk_content: str
    similarity: float


class KnowledgeSettings(BaseModel):
    """Per-tenant retrieval and generation settings.

    A tenant without a stored row gets these defaults.
    """

    model_config = ConfigDict(extra="forbid")

    tenant_id: str
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_chunks_per_query: int = Field(default=5, ge=1, le=50)
    ai_model: str = "gpt-4-turbo-preview"
    ai_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    ai_max_tokens: int = Field(default=1000, ge=1)
    include_citations: bool = True
    chunk_size_tokens: int = Field(default=500, ge=1)
    chunk_overlap_tokens: int = Field(default=50, ge=0)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_chunking(self) -> "KnowledgeSettings":
        if self.chunk_overlap_tokens >= self.chunk_size_tokens:
            raise ValueError("chunk_overlap_tokens must be less than chunk_size_tokens")
        return self

    def chunking_options(self, min_chunk_size: int = 50) -> ChunkingOptions:
        """Chunking options for documents ingested under these settings."""
        return ChunkingOptions(
            chunk_size_tokens=self.chunk_size_tokens,
            chunk_overlap_tokens=self.chunk_overlap_tokens,
            min_chunk_size=min(min_chunk_size, self.chunk_size_tokens),
        )


class SearchRequest(BaseModel):
    """A knowledge search, optionally answered by the generation provider."""

    query: str = Field(min_length=1)
    similarity_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    limit: Optional[int] = Field(default=None, ge=1)
    tags_filter: Optional[list[str]] = None
    include_response: bool = True


class SearchResponse(BaseModel):
    """Result of a knowledge search."""

    success: bool
    query: str
    chunks: list[SearchResultChunk] = Field(default_factory=list)
    ai_response: Optional[str] = None
    citations: list[Citation] = Field(default_factory=list)
    tokens_used: Optional[int] = None
    finish_reason: Optional[str] = None
    search_latency_ms: int = 0
    generation_latency_ms: Optional[int] = None
    error: Optional[str] = None


class RAGContext(BaseModel):
    """Inputs for generating one answer."""

    query: str
    chunks: list[SearchResultChunk]
    settings: KnowledgeSettings
    max_context_tokens: int = Field(default=4000, ge=1)


class AssembledContext(BaseModel):
    """Token-bounded context text and the chunks that made it in."""

    text: str
    chunks: list[SearchResultChunk] = Field(default_factory=list)
    token_count: int = 0


class GenerationRequest(BaseModel):
    """A prompt-ready generation call."""

    query: str
    context: str
    model: str
    temperature: float
    max_tokens: int
    include_citations: bool = True


class GenerationResult(BaseModel):
    """What the generation provider returned."""

    content: str
    tokens_used: int = 0
    finish_reason: str = "stop"


class GenerationResponse(BaseModel):
    """A generated answer with its citations."""

    response: str
    citations: list[Citation] = Field(default_factory=list)
    tokens_used: int = 0
    finish_reason: str = "stop"
    context_tokens: int = 0


class SimilarDocument(BaseModel):
    """A document ranked by mean similarity to a source document."""

    document_id: str
    title: str
    similarity: float
    matched_chunks: int = 1


class DocumentSourceType(str, Enum):
    """Where a document's content comes from."""

    TEXT = "text"
    URL = "url"
    FILE = "file"


class DocumentStatus(str, Enum):
    """Processing state of a document."""

    PENDING = "pending"
    PROCESSING = "processing"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    COMPLETED = "completed"
    FAILED = "failed"


class KnowledgeDocument(BaseModel):
    """A stored knowledge document row."""

    id: str
    tenant_id: str
    title: str
    source_type: DocumentSourceType = DocumentSourceType.TEXT
    status: DocumentStatus = DocumentStatus.PENDING
    tags: list[str] = Field(default_factory=list)
    raw_content: Optional[str] = None
    source_url: Optional[str] = None
    file_path: Optional[str] = None
    content_hash: Optional[str] = None
    word_count: int = 0
    chunks_count: int = 0
    file_size_bytes: int = 0
    embedding_model: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None

    def __repr__(self) -> str:
        return f"KnowledgeDocument(id={self.id!r}, title={self.title!r}, status={self.status.value!r})"


class StoredChunk(BaseModel):
    """A persisted chunk row with its embedding."""

    id: str
    document_id: str
    tenant_id: str
    content: str
    chunk_index: int
    token_count: int
    start_char: int = 0
    end_char: int = 0
    embedding: list[float]
    metadata: dict[str, Any] = Field(default_factory=dict)


class QueueStatus(str, Enum):
    """State of a processing queue entry."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingQueueItem(BaseModel):
    """A document waiting for, or done with, background processing.

    Lower ``priority`` values are processed first; ties go to the oldest
    entry.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    document_id: str
    tenant_id: str
    priority: int = 5
    status: QueueStatus = QueueStatus.PENDING
    attempts: int = 0
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class QueryLogRecord(BaseModel):
    """Analytics record for one knowledge query."""

    tenant_id: str
    query_text: str
    query_embedding: Optional[list[float]] = None
    chunks_retrieved: int = 0
    top_similarity_score: Optional[float] = None
    context_tokens: int = 0
    ai_response: Optional[str] = None
    ai_model: Optional[str] = None
    search_latency_ms: int = 0
    generation_latency_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)


class KnowledgeStats(BaseModel):
    """Aggregated knowledge base statistics for a tenant."""

    total_documents: int = 0
    total_chunks: int = 0
    total_storage_bytes: int = 0
    documents_by_type: dict[str, int] = Field(default_factory=dict)
    documents_by_status: dict[str, int] = Field(default_factory=dict)
    queries_today: int = 0
    queries_this_week: int = 0
    avg_similarity_score: float = 0.0
