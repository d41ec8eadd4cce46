"""Base classes and abstract interfaces for knowledge pipeline components."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .boundaries import TextSpan
    from .models import (
        Chunk,
        KnowledgeDocument,
        KnowledgeSettings,
        ProcessingQueueItem,
        QueryLogRecord,
        SearchResultChunk,
        StoredChunk,
    )


class BaseBoundaryDetector(ABC):
    """Abstract base class for sentence and paragraph boundary detection.

    Detectors return spans with offsets into the text they were given, so
    chunkers never have to search for a piece of text to locate it.
    """

    @abstractmethod
    def sentences(self, text: str) -> list["TextSpan"]:
        """Split text into sentence spans.

        Args:
            text: Text to split

        Returns:
            Non-empty, stripped spans in document order
        """
        pass

    @abstractmethod
    def paragraphs(self, text: str) -> list["TextSpan"]:
        """Split text into paragraph spans.

        Args:
            text: Text to split

        Returns:
            Non-empty, stripped spans in document order
        """
        pass


class BaseChunker(ABC):
    """Abstract base class for document chunkers.

    Chunkers split normalized text into chunks for embedding.
    """

    @abstractmethod
    def chunk(self, text: str) -> list["Chunk"]:
        """Split text into chunks.

        Args:
            text: Normalized document text

        Returns:
            List of chunks in document order
        """
        pass


class BaseEmbeddingProvider(ABC):
    """Abstract base class for remote embedding providers.

    Providers return the raw response payload; the embedding client
    validates it.
    """

    @abstractmethod
    async def create_embeddings(self, model: str, inputs: list[str]) -> dict[str, Any]:
        """Call the provider once.

        Args:
            model: Embedding model name
            inputs: Texts to embed

        Returns:
            Payload shaped like ``{data: [{index, embedding}], model, usage}``
        """
        pass


class BaseGenerationProvider(ABC):
    """Abstract base class for chat-completion providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 1000,
    ) -> dict[str, Any]:
        """Get a completion.

        Args:
            messages: Messages in API format
            model: Model identifier
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate

        Returns:
            Payload shaped like ``{choices: [{message, finish_reason}], usage}``
        """
        pass


class BaseKnowledgeStore(ABC):
    """Abstract base class for the document/chunk store.

    The store owns nearest-neighbour search; the pipeline only orchestrates it.
    """

    @abstractmethod
    async def search(
        self,
        query_embedding: list[float],
        tenant_id: str,
        similarity_threshold: float,
        max_results: int,
    ) -> list["SearchResultChunk"]:
        """Find the chunks most similar to a query vector.

        Args:
            query_embedding: Query vector
            tenant_id: Tenant whose chunks are searched
            similarity_threshold: Minimum similarity to return
            max_results: Maximum number of results

        Returns:
            Results sorted by descending similarity
        """
        pass

    @abstractmethod
    async def document_ids_with_tags(self, tenant_id: str, tags: list[str]) -> set[str]:
        """Return IDs of the tenant's documents carrying any of ``tags``."""
        pass

    @abstractmethod
    async def get_chunk_embedding(self, document_id: str) -> Optional[list[float]]:
        """Return the embedding of one chunk of a document, if any."""
        pass

    @abstractmethod
    async def list_documents(self, tenant_id: str) -> list["KnowledgeDocument"]:
        """Return all documents of a tenant."""
        pass

    @abstractmethod
    async def count_chunks(self, tenant_id: str) -> int:
        """Return the number of stored chunks of a tenant."""
        pass

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional["KnowledgeDocument"]:
        """Get a document by its ID."""
        pass

    @abstractmethod
    async def save_document(self, document: "KnowledgeDocument") -> None:
        """Insert or replace a document row."""
        pass

    @abstractmethod
    async def find_document_by_hash(
        self,
        tenant_id: str,
        content_hash: str,
        exclude_id: Optional[str] = None,
    ) -> Optional["KnowledgeDocument"]:
        """Find a tenant document with the given content hash."""
        pass

    @abstractmethod
    async def add_chunks(self, chunks: list["StoredChunk"]) -> list[str]:
        """Store chunk rows and return their IDs."""
        pass

    @abstractmethod
    async def delete_chunks(self, document_id: str) -> int:
        """Delete a document's chunks and return how many were removed."""
        pass


class BaseSettingsStore(ABC):
    """Abstract base class for per-tenant settings storage."""

    @abstractmethod
    async def get(self, tenant_id: str) -> Optional["KnowledgeSettings"]:
        """Get a tenant's settings row, or None when there is none."""
        pass

    @abstractmethod
    async def upsert(self, settings: "KnowledgeSettings") -> "KnowledgeSettings":
        """Write the full settings row keyed by tenant and return it."""
        pass


class BaseQueryLog(ABC):
    """Abstract base class for the append-only query analytics log."""

    @abstractmethod
    async def record(self, record: "QueryLogRecord") -> None:
        """Append a query record."""
        pass

    @abstractmethod
    async def count_since(self, tenant_id: str, since: datetime) -> int:
        """Count a tenant's queries logged at or after ``since``."""
        pass

    @abstractmethod
    async def recent_top_scores(self, tenant_id: str, limit: int = 100) -> list[float]:
        """Return top similarity scores of the most recent scored queries."""
        pass


class BaseProcessingQueue(ABC):
    """Abstract base class for the background document processing queue."""

    @abstractmethod
    async def enqueue(self, item: "ProcessingQueueItem") -> "ProcessingQueueItem":
        """Add a pending entry and return it."""
        pass

    @abstractmethod
    async def claim_next(self) -> Optional["ProcessingQueueItem"]:
        """Take the next pending entry and mark it processing.

        Entries are ordered by ascending priority, then creation time.
        Returns None when nothing is pending.
        """
        pass

    @abstractmethod
    async def finish(
        self,
        item_id: str,
        success: bool,
        error_message: Optional[str] = None,
    ) -> Optional["ProcessingQueueItem"]:
        """Mark an entry completed or failed and return it (None if unknown)."""
        pass

    @abstractmethod
    async def get(self, item_id: str) -> Optional["ProcessingQueueItem"]:
        """Get an entry by ID."""
        pass
