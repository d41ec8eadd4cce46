"""Tests for the embedding client."""

import asyncio
import math

import httpx
import openai
import pytest

from pyknowledge.rag import (
    ApiError,
    BatchTooLargeError,
    DimensionMismatchError,
    EmbeddingClient,
    EmbeddingRequest,
    EmptyInputError,
    InvalidModelError,
    MissingCredentialsError,
    NetworkError,
    OpenAIEmbeddingProvider,
    RateLimitedError,
    RetryPolicy,
    compute_retry_delay,
    cosine_similarity,
    estimate_cost,
)
from pyknowledge.rag.base import BaseEmbeddingProvider
from pyknowledge.rag.embeddings import MAX_BATCH_SIZE, parse_retry_after

from conftest import FakeEmbeddingProvider, RecordingSleep, no_sleep


def make_client(provider, **kwargs):
    kwargs.setdefault("sleep", no_sleep)
    kwargs.setdefault("random_func", lambda: 0.0)
    return EmbeddingClient(provider, **kwargs)


class TestCosineSimilarity:
    def test_identical_vectors(self):
        vec = [1.0, 2.0, 3.0]
        assert abs(cosine_similarity(vec, vec) - 1.0) < 1e-9

    def test_symmetric(self):
        a, b = [1.0, 2.0, 0.5], [0.3, -1.0, 2.0]
        assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))

    def test_orthogonal_vectors(self):
        assert abs(cosine_similarity([1.0, 0.0], [0.0, 1.0])) < 1e-9

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(DimensionMismatchError):
            cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0])

    def test_dimension_mismatch_is_value_error(self):
        with pytest.raises(ValueError):
            cosine_similarity([1.0], [1.0, 2.0])


class TestRetryDelay:
    def test_exponential_backoff(self):
        policy = RetryPolicy()
        error = NetworkError("boom")
        assert compute_retry_delay(0, error, policy, lambda: 0.0) == 1.0
        assert compute_retry_delay(1, error, policy, lambda: 0.0) == 2.0
        assert compute_retry_delay(2, error, policy, lambda: 0.0) == 4.0

    def test_backoff_is_capped(self):
        assert compute_retry_delay(10, NetworkError("boom"), RetryPolicy(), lambda: 0.0) == 10.0

    def test_jitter_added(self):
        assert compute_retry_delay(0, NetworkError("boom"), RetryPolicy(), lambda: 0.5) == 1.5

    def test_rate_limit_hint_used_exactly(self):
        error = RateLimitedError(retry_after=30.0)
        assert compute_retry_delay(0, error, RetryPolicy(), lambda: 0.9) == 30.0

    def test_rate_limit_without_hint_backs_off(self):
        error = RateLimitedError()
        assert compute_retry_delay(1, error, RetryPolicy(), lambda: 0.0) == 2.0


class TestParseRetryAfter:
    def test_seconds(self):
        assert parse_retry_after({"retry-after": "30"}) == 30.0

    def test_milliseconds_preferred(self):
        assert parse_retry_after({"retry-after-ms": "1500", "retry-after": "30"}) == 1.5

    def test_http_date_in_past(self):
        assert parse_retry_after({"retry-after": "Wed, 21 Oct 2015 07:28:00 GMT"}) == 0.0

    def test_missing_or_garbage(self):
        assert parse_retry_after({}) is None
        assert parse_retry_after(None) is None
        assert parse_retry_after({"retry-after": "soon"}) is None


class TestValidation:
    @pytest.mark.asyncio
    async def test_blank_inputs_rejected_before_call(self):
        provider = FakeEmbeddingProvider()
        client = make_client(provider)

        with pytest.raises(EmptyInputError):
            await client.embed(["   ", ""])

        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_unknown_model(self):
        provider = FakeEmbeddingProvider()
        client = make_client(provider)

        with pytest.raises(InvalidModelError):
            await client.embed(["text"], model="not-a-model")

        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_model_checked_before_empty_input(self):
        client = make_client(FakeEmbeddingProvider())
        with pytest.raises(InvalidModelError):
            await client.embed([""], model="not-a-model")

    @pytest.mark.asyncio
    async def test_batch_too_large(self):
        provider = FakeEmbeddingProvider()
        client = make_client(provider)

        with pytest.raises(BatchTooLargeError) as exc_info:
            await client.embed(["x"] * (MAX_BATCH_SIZE + 1))

        assert exc_info.value.code == "BATCH_TOO_LARGE"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_blank_texts_dropped(self):
        provider = FakeEmbeddingProvider(dimension=4)
        client = make_client(provider)

        result = await client.embed(["first", "  ", "second"])

        assert provider.calls == [["first", "second"]]
        assert len(result.embeddings) == 2


class TestEmbed:
    @pytest.mark.asyncio
    async def test_results_sorted_by_index(self):
        provider = FakeEmbeddingProvider(
            vectors={"a": [1.0, 0.0], "b": [0.0, 1.0], "c": [1.0, 1.0]},
            dimension=2,
            reverse=True,
        )
        client = make_client(provider)

        result = await client.embed(["a", "b", "c"])

        assert [e.values for e in result.embeddings] == [[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]]
        assert all(e.dimensions == 2 for e in result.embeddings)
        assert result.model == "text-embedding-3-small"
        assert result.usage.total_tokens > 0

    @pytest.mark.asyncio
    async def test_embed_one(self):
        provider = FakeEmbeddingProvider(vectors={"hello": [0.5, 0.5]}, dimension=2)
        vector = await make_client(provider).embed_one("hello")
        assert vector.values == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_malformed_response(self):
        class BrokenProvider(BaseEmbeddingProvider):
            async def create_embeddings(self, model, inputs):
                return {"data": [{"embedding": "nope"}], "model": model}

        with pytest.raises(ApiError):
            await make_client(BrokenProvider()).embed(["text"])

    @pytest.mark.asyncio
    async def test_wrong_count(self):
        class ShortProvider(BaseEmbeddingProvider):
            async def create_embeddings(self, model, inputs):
                return {"data": [{"index": 0, "embedding": [1.0]}], "model": model}

        with pytest.raises(ApiError):
            await make_client(ShortProvider()).embed(["one", "two"])

    @pytest.mark.asyncio
    async def test_timeout_is_network_error(self):
        class SlowProvider(BaseEmbeddingProvider):
            async def create_embeddings(self, model, inputs):
                await asyncio.sleep(5)
                return {}

        client = make_client(SlowProvider(), timeout=0.01)
        with pytest.raises(NetworkError):
            await client.embed(["text"])

    def test_dimension_of_model(self):
        assert EmbeddingClient(FakeEmbeddingProvider(), model="text-embedding-3-large").dimension == 3072


class TestEmbedWithRetry:
    @pytest.mark.asyncio
    async def test_rate_limit_hint_schedules_retry(self):
        """A retry-after of 30s is honored instead of the backoff value."""
        sleep = RecordingSleep()
        provider = FakeEmbeddingProvider(failures=[RateLimitedError(retry_after=30.0)])
        client = make_client(provider, sleep=sleep)

        result = await client.embed_with_retry(EmbeddingRequest(texts=["text"]), max_retries=3)

        assert len(result.embeddings) == 1
        assert sleep.delays == [30.0]
        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_backoff_between_attempts(self):
        sleep = RecordingSleep()
        provider = FakeEmbeddingProvider(failures=[NetworkError("reset"), ApiError("oops", status_code=503)])
        client = make_client(provider, sleep=sleep)

        await client.embed_with_retry(EmbeddingRequest(texts=["text"]), max_retries=3)

        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        sleep = RecordingSleep()
        provider = FakeEmbeddingProvider(failures=[NetworkError("a"), NetworkError("b"), NetworkError("c")])
        client = make_client(provider, sleep=sleep)

        with pytest.raises(NetworkError, match="b"):
            await client.embed_with_retry(EmbeddingRequest(texts=["text"]), max_retries=1)

        assert len(provider.calls) == 2
        assert sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_client_errors_not_retried(self):
        sleep = RecordingSleep()
        provider = FakeEmbeddingProvider(failures=[ApiError("bad request", status_code=400)])
        client = make_client(provider, sleep=sleep)

        with pytest.raises(ApiError):
            await client.embed_with_retry(EmbeddingRequest(texts=["text"]), max_retries=3)

        assert len(provider.calls) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_validation_errors_not_retried(self):
        provider = FakeEmbeddingProvider()
        client = make_client(provider)

        with pytest.raises(EmptyInputError):
            await client.embed_with_retry(EmbeddingRequest(texts=[" "]), max_retries=3)

        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_negative_retries_rejected(self):
        provider = FakeEmbeddingProvider()
        client = make_client(provider)

        with pytest.raises(ValueError, match="max_retries"):
            await client.embed_with_retry(EmbeddingRequest(texts=["text"]), max_retries=-1)

        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_zero_retries_tries_once(self):
        provider = FakeEmbeddingProvider(failures=[NetworkError("down")])
        client = make_client(provider)

        with pytest.raises(NetworkError, match="down"):
            await client.embed_with_retry(EmbeddingRequest(texts=["text"]), max_retries=0)

        assert len(provider.calls) == 1


class TestEmbedBatched:
    @pytest.mark.asyncio
    async def test_order_preserved_across_batches(self):
        texts = [f"text number {i}" for i in range(7)]
        vectors = {text: [float(i), 1.0] for i, text in enumerate(texts)}
        provider = FakeEmbeddingProvider(vectors=vectors, dimension=2, reverse=True)
        client = make_client(provider)

        result = await client.embed_batched(texts, batch_size=3)

        assert [e.values for e in result.embeddings] == [vectors[t] for t in texts]
        assert [len(call) for call in provider.calls] == [3, 3, 1]

    @pytest.mark.asyncio
    async def test_progress_and_usage(self):
        texts = [f"text {i}" for i in range(5)]
        provider = FakeEmbeddingProvider(dimension=3)
        sleep = RecordingSleep()
        client = make_client(provider, sleep=sleep, batch_delay=0.1)
        progress = []

        result = await client.embed_batched(
            texts,
            batch_size=2,
            progress_callback=lambda done, total: progress.append((done, total)),
        )

        assert progress == [(2, 5), (4, 5), (5, 5)]
        assert sleep.delays == [0.1, 0.1]
        expected_tokens = sum(len(t) // 4 + 1 for t in texts)
        assert result.usage.total_tokens == expected_tokens

    @pytest.mark.asyncio
    async def test_batch_retries(self):
        provider = FakeEmbeddingProvider(dimension=2, failures=[NetworkError("blip")])
        client = make_client(provider)

        result = await client.embed_batched(["a", "b", "c"], batch_size=2)

        assert len(result.embeddings) == 3
        assert len(provider.calls) == 3

    @pytest.mark.asyncio
    async def test_batch_size_limit(self):
        with pytest.raises(BatchTooLargeError):
            await make_client(FakeEmbeddingProvider()).embed_batched(["a"], batch_size=MAX_BATCH_SIZE + 1)


class TestCostEstimate:
    def test_estimate(self):
        estimate = estimate_cost(["abcd" * 250, "abcd" * 250])
        assert estimate.token_count == 500
        assert math.isclose(estimate.estimated_cost_usd, 500 / 1_000_000 * 0.02)

    def test_large_model_price(self):
        estimate = estimate_cost(["abcd" * 1000], model="text-embedding-3-large")
        assert math.isclose(estimate.estimated_cost_usd, 1000 / 1_000_000 * 0.13)

    def test_unknown_model(self):
        with pytest.raises(InvalidModelError):
            estimate_cost(["text"], model="unknown")


class _FakeEmbeddingsAPI:
    def __init__(self, error):
        self.error = error

    async def create(self, **kwargs):
        raise self.error


class _FakeOpenAIClient:
    def __init__(self, error):
        self.embeddings = _FakeEmbeddingsAPI(error)


class TestOpenAIEmbeddingProvider:
    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(MissingCredentialsError):
            OpenAIEmbeddingProvider()._get_client()

    def test_client_retries_disabled(self):
        client = OpenAIEmbeddingProvider(api_key="sk-test")._get_client()
        assert client.max_retries == 0

    @pytest.mark.asyncio
    async def test_rate_limit_mapped_with_hint(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
        response = httpx.Response(429, headers={"retry-after": "30"}, request=request)
        provider = OpenAIEmbeddingProvider(api_key="sk-test")
        provider._client = _FakeOpenAIClient(openai.RateLimitError("slow down", response=response, body=None))

        with pytest.raises(RateLimitedError) as exc_info:
            await provider.create_embeddings("text-embedding-3-small", ["text"])

        assert exc_info.value.retry_after == 30.0
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_server_error_mapped(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
        response = httpx.Response(502, request=request)
        provider = OpenAIEmbeddingProvider(api_key="sk-test")
        provider._client = _FakeOpenAIClient(
            openai.InternalServerError("bad gateway", response=response, body=None)
        )

        with pytest.raises(ApiError) as exc_info:
            await provider.create_embeddings("text-embedding-3-small", ["text"])

        assert exc_info.value.status_code == 502
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_connection_error_mapped(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
        provider = OpenAIEmbeddingProvider(api_key="sk-test")
        provider._client = _FakeOpenAIClient(openai.APIConnectionError(request=request))

        with pytest.raises(NetworkError):
            await provider.create_embeddings("text-embedding-3-small", ["text"])
