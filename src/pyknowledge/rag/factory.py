"""
Build pipeline components from a :class:`KnowledgeConfig`.
"""

from typing import Optional

from pyknowledge.utils.config import KnowledgeConfig

from .base import BaseKnowledgeStore, BaseQueryLog
from .embeddings import EmbeddingClient, OpenAIEmbeddingProvider
from .generation import OpenAIChatProvider
from .processor import DocumentProcessor
from .service import KnowledgeService
from .stores import MemoryQueryLog, MemorySettingsStore, SQLiteQueryLog, SQLiteSettingsStore


def create_embedding_client(config: KnowledgeConfig) -> EmbeddingClient:
    """Create an embedding client backed by OpenAI."""
    provider = OpenAIEmbeddingProvider(
        api_key=config.openai_api_key,
        base_url=config.openai_base_url,
    )
    return EmbeddingClient(
        provider,
        model=config.embedding_model,
        timeout=config.embedding_timeout,
        batch_delay=config.embedding_batch_delay,
        max_retries=config.embedding_max_retries,
    )


def create_document_processor(
    config: KnowledgeConfig,
    store: BaseKnowledgeStore,
    embeddings: Optional[EmbeddingClient] = None,
) -> DocumentProcessor:
    """Create a document processor for ``store``."""
    return DocumentProcessor(
        embeddings or create_embedding_client(config),
        store,
        embedding_model=config.embedding_model,
        batch_size=config.embedding_batch_size,
    )


def create_knowledge_service(
    config: KnowledgeConfig,
    store: BaseKnowledgeStore,
    embeddings: Optional[EmbeddingClient] = None,
    query_log: Optional[BaseQueryLog] = None,
) -> KnowledgeService:
    """
    Create a knowledge service.

    Settings and query logs go to SQLite when ``settings_db_path`` is set
    and stay in memory otherwise. An explicit ``query_log`` wins.
    """
    if config.settings_db_path:
        settings_store = SQLiteSettingsStore(config.settings_db_path)
        query_log = query_log or SQLiteQueryLog(config.settings_db_path)
    else:
        settings_store = MemorySettingsStore()
        query_log = query_log or MemoryQueryLog()

    return KnowledgeService(
        embeddings=embeddings or create_embedding_client(config),
        store=store,
        generator=OpenAIChatProvider(api_key=config.openai_api_key, base_url=config.openai_base_url),
        settings_store=settings_store,
        query_log=query_log,
        embedding_model=config.embedding_model,
        max_context_tokens=config.max_context_tokens,
    )
