"""Embedding client and providers."""

import asyncio
import math
import os
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from pyknowledge.utils.logging import get_logger

from .base import BaseEmbeddingProvider
from .exceptions import (
    ApiError,
    BatchTooLargeError,
    DimensionMismatchError,
    EmbeddingError,
    EmptyInputError,
    InvalidModelError,
    MissingCredentialsError,
    NetworkError,
    RateLimitedError,
)
from .models import (
    EmbeddingBatchResult,
    EmbeddingCostEstimate,
    EmbeddingRequest,
    EmbeddingUsage,
    EmbeddingVector,
)
from .tokens import estimate_token_count

logger = get_logger(__name__)

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"

# Provider hard limit on inputs per request
MAX_BATCH_SIZE = 2048

DEFAULT_TIMEOUT = 30.0
DEFAULT_BATCH_SIZE = 20
DEFAULT_BATCH_DELAY = 0.1


@dataclass(frozen=True)
class EmbeddingModelInfo:
    """Static facts about an embedding model."""

    dimensions: int
    price_per_million_tokens: float


EMBEDDING_MODELS: dict[str, EmbeddingModelInfo] = {
    "text-embedding-3-small": EmbeddingModelInfo(1536, 0.02),
    "text-embedding-3-large": EmbeddingModelInfo(3072, 0.13),
    "text-embedding-ada-002": EmbeddingModelInfo(1536, 0.10),
}


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for :meth:`EmbeddingClient.embed_with_retry`."""

    base_delay: float = 1.0
    max_delay: float = 10.0
    max_jitter: float = 1.0


def compute_retry_delay(
    attempt: int,
    error: Exception,
    policy: RetryPolicy = RetryPolicy(),
    random_func: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait before retrying after ``error`` on ``attempt`` (0-based).

    A provider rate-limit hint is used exactly. Otherwise the delay is
    exponential, capped at ``policy.max_delay``, plus up to
    ``policy.max_jitter`` seconds of jitter.
    """
    if isinstance(error, RateLimitedError) and error.retry_after is not None:
        return error.retry_after

    delay = min(policy.base_delay * (2 ** attempt), policy.max_delay)
    return delay + random_func() * policy.max_jitter


def parse_retry_after(headers: Optional[Mapping[str, str]]) -> Optional[float]:
    """Read a retry hint in seconds from response headers.

    Understands ``retry-after-ms`` and ``retry-after`` given either as
    seconds or as an HTTP date.
    """
    if not headers:
        return None

    value = headers.get("retry-after-ms")
    if value:
        try:
            return max(float(value) / 1000.0, 0.0)
        except ValueError:
            pass

    value = headers.get("retry-after")
    if not value:
        return None

    try:
        return max(float(value), 0.0)
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Calculate cosine similarity between two vectors.

    Returns 0.0 when either vector has zero norm.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(len(a), len(b))

    dot_product = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return dot_product / (norm_a * norm_b)


def estimate_cost(texts: list[str], model: str = DEFAULT_EMBEDDING_MODEL) -> EmbeddingCostEstimate:
    """Estimate tokens and USD cost of embedding ``texts`` without calling out."""
    info = EMBEDDING_MODELS.get(model)
    if info is None:
        raise InvalidModelError(model)

    tokens = sum(estimate_token_count(text) for text in texts)
    return EmbeddingCostEstimate(
        model=model,
        token_count=tokens,
        estimated_cost_usd=tokens / 1_000_000 * info.price_per_million_tokens,
    )


class _EmbeddingItem(BaseModel):
    index: int = Field(ge=0)
    embedding: list[float]


class EmbeddingResponse(BaseModel):
    """Expected shape of an embedding provider response."""

    data: list[_EmbeddingItem]
    model: str
    usage: EmbeddingUsage = Field(default_factory=EmbeddingUsage)


class OpenAIEmbeddingProvider(BaseEmbeddingProvider):
    """OpenAI embedding API provider.

    The SDK's own retries are disabled; :class:`EmbeddingClient` owns the
    retry policy.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        """Initialize the OpenAI embedding provider.

        Args:
            api_key: OpenAI API key (uses OPENAI_API_KEY if not provided)
            base_url: Optional base URL for API
        """
        self.api_key = api_key
        self.base_url = base_url
        self._client = None

    def _get_client(self):
        """Get or create the OpenAI client."""
        if self._client is None:
            api_key = self.api_key or os.environ.get("OPENAI_API_KEY")
            if not api_key:
                raise MissingCredentialsError()

            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=api_key, base_url=self.base_url, max_retries=0)
        return self._client

    async def create_embeddings(self, model: str, inputs: list[str]) -> dict[str, Any]:
        import openai

        client = self._get_client()

        try:
            response = await client.embeddings.create(
                model=model,
                input=inputs,
                encoding_format="float",
            )
        except openai.RateLimitError as e:
            raise RateLimitedError(
                f"Rate limited by provider: {e.message}",
                retry_after=parse_retry_after(e.response.headers),
            ) from e
        except openai.APIStatusError as e:
            raise ApiError(f"Embedding API error: {e.message}", status_code=e.status_code) from e
        except openai.APIConnectionError as e:
            raise NetworkError(f"Embedding request failed: {e}") from e

        return response.model_dump()


class EmbeddingClient:
    """Client for generating embeddings with validation, batching and retries.

    Example:
        ```python
        client = EmbeddingClient(OpenAIEmbeddingProvider())
        result = await client.embed(["What is RAG?"])
        vector = result.embeddings[0].values
        ```
    """

    def __init__(
        self,
        provider: Optional[BaseEmbeddingProvider] = None,
        model: str = DEFAULT_EMBEDDING_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        max_retries: int = 3,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        random_func: Callable[[], float] = random.random,
    ):
        """Initialize the embedding client.

        Args:
            provider: Remote provider (OpenAI if None)
            model: Default embedding model
            timeout: Seconds allowed for one provider call
            batch_delay: Seconds to wait between batches in ``embed_batched``
            max_retries: Default retry budget for ``embed_batched``
            retry_policy: Backoff parameters
            sleep: Awaitable sleep, replaceable in tests
            random_func: Jitter source, replaceable in tests
        """
        self.provider = provider or OpenAIEmbeddingProvider()
        self.model = model
        self.timeout = timeout
        self.batch_delay = batch_delay
        self.max_retries = max_retries
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._random = random_func

    @property
    def dimension(self) -> int:
        return EMBEDDING_MODELS[self.model].dimensions

    def _validate(self, texts: list[str], model: str) -> list[str]:
        if model not in EMBEDDING_MODELS:
            raise InvalidModelError(model)

        filtered = [text for text in texts if text and text.strip()]
        if not filtered:
            raise EmptyInputError()
        if len(filtered) > MAX_BATCH_SIZE:
            raise BatchTooLargeError(len(filtered), MAX_BATCH_SIZE)

        return filtered

    async def embed(self, texts: list[str], model: Optional[str] = None) -> EmbeddingBatchResult:
        """Embed a batch of texts with one provider call.

        Blank texts are dropped before the call; the result follows the
        order of the remaining texts.

        Args:
            texts: Texts to embed
            model: Embedding model (client default if None)

        Returns:
            Embeddings in input order with token usage

        Raises:
            InvalidModelError: Model is not recognized
            EmptyInputError: No non-blank text was given
            BatchTooLargeError: More texts than the provider accepts
            NetworkError: Timeout or connection failure
            RateLimitedError: Provider rate limit, with its retry hint
            ApiError: Provider error status or malformed response
        """
        model = model or self.model
        inputs = self._validate(texts, model)

        try:
            raw = await asyncio.wait_for(
                self.provider.create_embeddings(model, inputs),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Embedding request timed out after {self.timeout}s") from e

        return self._parse_response(raw, model, len(inputs))

    def _parse_response(self, raw: Any, model: str, expected: int) -> EmbeddingBatchResult:
        try:
            response = EmbeddingResponse.model_validate(raw)
        except ValidationError as e:
            raise ApiError(f"Malformed embedding response: {e}") from e

        if len(response.data) != expected:
            raise ApiError(f"Expected {expected} embeddings, received {len(response.data)}")

        # The provider does not guarantee ordering
        items = sorted(response.data, key=lambda item: item.index)
        if [item.index for item in items] != list(range(expected)):
            raise ApiError("Embedding response indices do not match the request")

        dimensions = {len(item.embedding) for item in items}
        if len(dimensions) != 1:
            raise ApiError(f"Inconsistent embedding dimensions in batch: {sorted(dimensions)}")

        result_model = response.model or model
        return EmbeddingBatchResult(
            embeddings=[
                EmbeddingVector(values=item.embedding, dimensions=len(item.embedding), model=result_model)
                for item in items
            ],
            model=result_model,
            usage=response.usage,
        )

    async def embed_one(self, text: str, model: Optional[str] = None) -> EmbeddingVector:
        """Embed a single text."""
        result = await self.embed([text], model)
        return result.embeddings[0]

    async def embed_batched(
        self,
        texts: list[str],
        batch_size: int = DEFAULT_BATCH_SIZE,
        progress_callback: Optional[Callable[[int, int], Any]] = None,
        model: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> EmbeddingBatchResult:
        """Embed many texts in sequential batches.

        Batches run one after another with ``batch_delay`` between them to
        stay under provider rate limits. Each batch goes through
        :meth:`embed_with_retry`.

        Args:
            texts: Texts to embed
            batch_size: Texts per provider call
            progress_callback: Called with ``(processed, total)`` after each batch
            model: Embedding model (client default if None)
            max_retries: Retry budget per batch (client default if None)

        Returns:
            All embeddings in input order with aggregated usage
        """
        model = model or self.model
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if batch_size > MAX_BATCH_SIZE:
            raise BatchTooLargeError(batch_size, MAX_BATCH_SIZE)
        if model not in EMBEDDING_MODELS:
            raise InvalidModelError(model)

        inputs = [text for text in texts if text and text.strip()]
        if not inputs:
            raise EmptyInputError()

        retries = self.max_retries if max_retries is None else max_retries
        embeddings: list[EmbeddingVector] = []
        usage = EmbeddingUsage()
        result_model = model
        total = len(inputs)

        for start in range(0, total, batch_size):
            if start > 0 and self.batch_delay > 0:
                await self._sleep(self.batch_delay)

            batch = inputs[start : start + batch_size]
            result = await self.embed_with_retry(EmbeddingRequest(texts=batch, model=model), retries)

            embeddings.extend(result.embeddings)
            usage = usage + result.usage
            result_model = result.model

            processed = min(start + batch_size, total)
            logger.debug(f"Embedded {processed}/{total} texts")
            if progress_callback:
                progress_callback(processed, total)

        return EmbeddingBatchResult(embeddings=embeddings, model=result_model, usage=usage)

    async def embed_with_retry(
        self,
        request: EmbeddingRequest,
        max_retries: int = 3,
    ) -> EmbeddingBatchResult:
        """Embed with retries on transient failures.

        Only network errors, rate limits and provider 5xx responses are
        retried; everything else propagates immediately.

        Args:
            request: Texts and model to embed
            max_retries: Retries after the first attempt

        Returns:
            The first successful result

        Raises:
            ValueError: ``max_retries`` is negative
            EmbeddingError: The last error once retries are exhausted
        """
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")

        last_error: Optional[EmbeddingError] = None

        for attempt in range(max_retries + 1):
            try:
                return await self.embed(request.texts, request.model)
            except EmbeddingError as e:
                if not e.retryable:
                    raise
                last_error = e
                if attempt >= max_retries:
                    logger.error(f"Embedding failed after {max_retries + 1} attempts: {e}")
                    break

                delay = compute_retry_delay(attempt, e, self.retry_policy, self._random)
                logger.warning(
                    f"Embedding failed (attempt {attempt + 1}/{max_retries + 1}): {e}. "
                    f"Retrying in {delay:.2f}s..."
                )
                await self._sleep(delay)

        assert last_error is not None
        raise last_error
