"""
PyKnowledge - Document chunking, embeddings and retrieval-augmented answers.
"""

from pyknowledge.rag import (
    # Chunking
    Chunk,
    ChunkingOptions,
    ChunkingStrategy,
    chunk_document,
    # Embeddings
    EmbeddingClient,
    OpenAIEmbeddingProvider,
    cosine_similarity,
    estimate_cost,
    # Generation
    OpenAIChatProvider,
    # Service
    KnowledgeService,
    KnowledgeSettings,
    SearchRequest,
    SearchResponse,
    # Ingestion
    DocumentProcessor,
    ProcessingJob,
    # Stores
    MemoryKnowledgeStore,
    MemoryQueryLog,
    MemorySettingsStore,
    SQLiteQueryLog,
    SQLiteSettingsStore,
    # Errors
    KnowledgeError,
)
from pyknowledge.utils import KnowledgeConfig, load_config

__version__ = "0.1.0"
__all__ = [
    # Chunking
    "Chunk",
    "ChunkingOptions",
    "ChunkingStrategy",
    "chunk_document",
    # Embeddings
    "EmbeddingClient",
    "OpenAIEmbeddingProvider",
    "cosine_similarity",
    "estimate_cost",
    # Generation
    "OpenAIChatProvider",
    # Service
    "KnowledgeService",
    "KnowledgeSettings",
    "SearchRequest",
    "SearchResponse",
    # Ingestion
    "DocumentProcessor",
    "ProcessingJob",
    # Stores
    "MemoryKnowledgeStore",
    "MemoryQueryLog",
    "MemorySettingsStore",
    "SQLiteQueryLog",
    "SQLiteSettingsStore",
    # Errors
    "KnowledgeError",
    # Config
    "KnowledgeConfig",
    "load_config",
]
