"""
Test configuration and fixtures.
"""

import hashlib
from typing import Any, Optional

import pytest

from pyknowledge.rag import (
    BaseEmbeddingProvider,
    BaseGenerationProvider,
    EmbeddingClient,
    KnowledgeDocument,
    KnowledgeService,
    MemoryKnowledgeStore,
    MemoryQueryLog,
    MemorySettingsStore,
)
from pyknowledge.rag.models import StoredChunk


class FakeEmbeddingProvider(BaseEmbeddingProvider):
    """Embedding provider that answers from a lookup table.

    Texts missing from ``vectors`` get a deterministic vector derived from
    their hash. ``failures`` are raised, in order, before any call succeeds.
    """

    def __init__(
        self,
        vectors: Optional[dict[str, list[float]]] = None,
        dimension: int = 8,
        failures: Optional[list[Exception]] = None,
        reverse: bool = False,
    ):
        self.vectors = vectors or {}
        self.dimension = dimension
        self.failures = list(failures or [])
        self.reverse = reverse
        self.calls: list[list[str]] = []

    def _hash_vector(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode()).digest()
        return [digest[i % len(digest)] / 255.0 + 0.01 for i in range(self.dimension)]

    async def create_embeddings(self, model: str, inputs: list[str]) -> dict[str, Any]:
        self.calls.append(list(inputs))
        if self.failures:
            raise self.failures.pop(0)

        data = [
            {"index": i, "embedding": self.vectors.get(text) or self._hash_vector(text)}
            for i, text in enumerate(inputs)
        ]
        if self.reverse:
            data.reverse()

        tokens = sum(len(text) // 4 + 1 for text in inputs)
        return {
            "data": data,
            "model": model,
            "usage": {"prompt_tokens": tokens, "total_tokens": tokens},
        }


class FakeChatProvider(BaseGenerationProvider):
    """Chat provider that returns a fixed answer and records prompts."""

    def __init__(
        self,
        content: str = "Refunds are processed within 5 days [Refund Policy].",
        total_tokens: int = 42,
        finish_reason: str = "stop",
        error: Optional[Exception] = None,
    ):
        self.content = content
        self.total_tokens = total_tokens
        self.finish_reason = finish_reason
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 1000,
    ) -> dict[str, Any]:
        self.calls.append(
            {"messages": messages, "model": model, "temperature": temperature, "max_tokens": max_tokens}
        )
        if self.error:
            raise self.error
        return {
            "choices": [{"message": {"content": self.content}, "finish_reason": self.finish_reason}],
            "usage": {"total_tokens": self.total_tokens},
        }


async def no_sleep(delay: float) -> None:
    return None


class RecordingSleep:
    """Awaitable sleep stand-in that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def add_document(
    store: MemoryKnowledgeStore,
    document_id: str,
    chunks: list[tuple[str, list[float]]],
    tenant_id: str = "acme",
    title: Optional[str] = None,
    tags: Optional[list[str]] = None,
    **fields: Any,
) -> KnowledgeDocument:
    """Put a document and its pre-embedded chunks into a memory store."""
    document = KnowledgeDocument(
        id=document_id,
        tenant_id=tenant_id,
        title=title or document_id,
        tags=tags or [],
        chunks_count=len(chunks),
        **fields,
    )
    await store.save_document(document)
    await store.add_chunks(
        [
            StoredChunk(
                id=f"{document_id}-{i}",
                document_id=document_id,
                tenant_id=tenant_id,
                content=content,
                chunk_index=i,
                token_count=len(content) // 4 + 1,
                embedding=embedding,
            )
            for i, (content, embedding) in enumerate(chunks)
        ]
    )
    return document


@pytest.fixture
def embedding_provider():
    """Fake embedding provider with a 2-d query vector."""
    return FakeEmbeddingProvider(
        vectors={"How do refunds work?": [1.0, 0.0]},
        dimension=2,
    )


@pytest.fixture
def embedding_client(embedding_provider):
    """Embedding client over the fake provider that never really sleeps."""
    return EmbeddingClient(embedding_provider, sleep=no_sleep, random_func=lambda: 0.0)


@pytest.fixture
def chat_provider():
    return FakeChatProvider()


@pytest.fixture
def knowledge_store():
    return MemoryKnowledgeStore()


@pytest.fixture
def settings_store():
    return MemorySettingsStore()


@pytest.fixture
def query_log():
    return MemoryQueryLog()


@pytest.fixture
def service(embedding_client, knowledge_store, chat_provider, settings_store, query_log):
    """Knowledge service wired to fakes and in-memory stores."""
    return KnowledgeService(
        embeddings=embedding_client,
        store=knowledge_store,
        generator=chat_provider,
        settings_store=settings_store,
        query_log=query_log,
    )


@pytest.fixture
def sample_markdown():
    """Markdown document with two long sections."""
    paragraph = (
        "This paragraph explains one part of the refund process in enough detail "
        "to take up a fair amount of room in a chunk of text."
    )
    first = "\n\n".join(f"{paragraph} Step {i} of the first section." for i in range(4))
    second = "\n\n".join(f"{paragraph} Step {i} of the second section." for i in range(4))
    return f"# Refunds\n\n{first}\n\n# Shipping\n\n{second}"
