"""Knowledge retrieval pipeline: chunking, embeddings, search and answers.

Example:
    ```python
    store = MemoryKnowledgeStore()
    embeddings = EmbeddingClient(OpenAIEmbeddingProvider())

    processor = DocumentProcessor(embeddings, store)
    await processor.process(
        ProcessingJob(document_id="faq", tenant_id="acme", source_type="text", raw_content=text)
    )

    service = KnowledgeService(embeddings, store, OpenAIChatProvider(), MemorySettingsStore())
    response = await service.search("acme", SearchRequest(query="How do refunds work?"))
    ```
"""

from .base import (
    BaseBoundaryDetector,
    BaseChunker,
    BaseEmbeddingProvider,
    BaseGenerationProvider,
    BaseKnowledgeStore,
    BaseProcessingQueue,
    BaseQueryLog,
    BaseSettingsStore,
)
from .boundaries import RegexBoundaryDetector, TextSpan
from .chunking import (
    MarkdownChunker,
    ParagraphChunker,
    SentenceChunker,
    TokenChunker,
    chunk_document,
    extract_document_metadata,
)
from .context import assemble_context, build_citations
from .embeddings import (
    EMBEDDING_MODELS,
    EmbeddingClient,
    OpenAIEmbeddingProvider,
    RetryPolicy,
    compute_retry_delay,
    cosine_similarity,
    estimate_cost,
)
from .exceptions import (
    ApiError,
    BatchTooLargeError,
    DimensionMismatchError,
    DocumentProcessingError,
    EmbeddingError,
    EmptyInputError,
    GenerationError,
    InvalidModelError,
    KnowledgeError,
    MissingCredentialsError,
    NetworkError,
    RateLimitedError,
    SettingsError,
    UnsafeURLError,
)
from .factory import create_document_processor, create_embedding_client, create_knowledge_service
from .generation import OpenAIChatProvider, generate_answer
from .models import (
    Chunk,
    ChunkingOptions,
    ChunkingStrategy,
    Citation,
    DocumentSourceType,
    DocumentStatus,
    EmbeddingBatchResult,
    EmbeddingRequest,
    KnowledgeDocument,
    KnowledgeSettings,
    KnowledgeStats,
    ProcessingQueueItem,
    QueueStatus,
    RAGContext,
    SearchRequest,
    SearchResponse,
    SearchResultChunk,
)
from .processor import (
    DocumentProcessor,
    ProcessingJob,
    ProcessingProgress,
    ProcessingResult,
    URLFetcher,
    extract_text_from_html,
    is_url_safe,
    read_file_content,
)
from .service import KnowledgeService
from .stores import (
    MemoryKnowledgeStore,
    MemoryProcessingQueue,
    MemoryQueryLog,
    MemorySettingsStore,
    SQLiteQueryLog,
    SQLiteSettingsStore,
)
from .tokens import estimate_token_count, truncate_to_token_limit

__all__ = [
    "BaseBoundaryDetector", "BaseChunker", "BaseEmbeddingProvider", "BaseGenerationProvider",
    "BaseKnowledgeStore", "BaseProcessingQueue", "BaseQueryLog", "BaseSettingsStore",
    "RegexBoundaryDetector", "TextSpan",
    "MarkdownChunker", "ParagraphChunker", "SentenceChunker", "TokenChunker",
    "chunk_document", "extract_document_metadata",
    "assemble_context", "build_citations",
    "EMBEDDING_MODELS", "EmbeddingClient", "OpenAIEmbeddingProvider", "RetryPolicy",
    "compute_retry_delay", "cosine_similarity", "estimate_cost",
    "ApiError", "BatchTooLargeError", "DimensionMismatchError", "DocumentProcessingError",
    "EmbeddingError", "EmptyInputError", "GenerationError", "InvalidModelError",
    "KnowledgeError", "MissingCredentialsError", "NetworkError", "RateLimitedError",
    "SettingsError", "UnsafeURLError",
    "create_document_processor", "create_embedding_client", "create_knowledge_service",
    "OpenAIChatProvider", "generate_answer",
    "Chunk", "ChunkingOptions", "ChunkingStrategy", "Citation", "DocumentSourceType",
    "DocumentStatus", "EmbeddingBatchResult", "EmbeddingRequest", "KnowledgeDocument",
    "KnowledgeSettings", "KnowledgeStats", "ProcessingQueueItem", "QueueStatus", "RAGContext",
    "SearchRequest", "SearchResponse", "SearchResultChunk",
    "DocumentProcessor", "ProcessingJob", "ProcessingProgress", "ProcessingResult",
    "URLFetcher", "extract_text_from_html", "is_url_safe", "read_file_content",
    "KnowledgeService",
    "MemoryKnowledgeStore", "MemoryProcessingQueue", "MemoryQueryLog", "MemorySettingsStore",
    "SQLiteQueryLog", "SQLiteSettingsStore",
    "estimate_token_count", "truncate_to_token_limit",
]
