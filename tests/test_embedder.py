# =============================================================================
# Unit Tests — Embedder (batching, retries, cache)
# =============================================================================
#
# Uses a fake embeddings client that raises real openai exception types,
# so the tenacity retry predicates are exercised as in production. Sleeps
# are recorded instead of awaited.
# =============================================================================

import pytest

from tests.fakes import (
    FakeEmbeddingsClient,
    FakeRedis,
    _run,
    bad_request_error,
    connection_error,
    no_sleep,
    rate_limit_error,
)
from wholesale_rag.services.cache import RAGCache
from wholesale_rag.services.embedder import (
    Embedder,
    content_hash,
    is_transient,
    retry_after_seconds,
)
from wholesale_rag.services.errors import (
    ProviderRateLimited,
    ProviderUnavailable,
    QueryValidationError,
)


class _SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _embedder(client, **kwargs) -> Embedder:
    kwargs.setdefault("sleep", no_sleep)
    return Embedder(client, **kwargs)


class TestErrorClassification:
    def test_rate_limit_is_transient(self):
        assert is_transient(rate_limit_error())

    def test_connection_error_is_transient(self):
        assert is_transient(connection_error())

    def test_bad_request_is_not_transient(self):
        assert not is_transient(bad_request_error())

    def test_content_hash_is_stable(self):
        assert content_hash("abc") == content_hash("abc")
        assert content_hash("abc") != content_hash("abd")


class TestEmbed:
    """Single-text embedding (query path)."""

    def test_returns_vector_and_tokens(self):
        client = FakeEmbeddingsClient()
        result = _run(_embedder(client).embed("what is arv"))
        assert result.vector == [11.0, 1.0, 0.0]
        assert result.tokens_used == 3

    def test_empty_text_rejected_without_calling_provider(self):
        client = FakeEmbeddingsClient()
        with pytest.raises(QueryValidationError):
            _run(_embedder(client).embed("   "))
        assert client.calls == []

    def test_retries_transient_failure_then_succeeds(self):
        client = FakeEmbeddingsClient(errors=[connection_error()])
        result = _run(_embedder(client, max_retries=3).embed("comps"))
        assert result.vector
        assert len(client.calls) == 2

    def test_rate_limit_backoff_is_exponential_and_capped(self):
        sleep = _SleepRecorder()
        client = FakeEmbeddingsClient(errors=[rate_limit_error()] * 3)
        embedder = _embedder(
            client, max_retries=4, retry_delay=1.0, backoff_cap=3.0, sleep=sleep,
        )
        _run(embedder.embed("comps"))
        assert sleep.delays == [1.0, 2.0, 3.0]

    def test_connection_errors_use_fixed_delay(self):
        sleep = _SleepRecorder()
        client = FakeEmbeddingsClient(errors=[connection_error(), connection_error()])
        _run(_embedder(client, max_retries=3, retry_delay=0.5, sleep=sleep).embed("comps"))
        assert sleep.delays == [0.5, 0.5]

    def test_exhausted_rate_limit_raises_provider_rate_limited(self):
        client = FakeEmbeddingsClient(errors=[rate_limit_error()] * 3)
        with pytest.raises(ProviderRateLimited) as exc_info:
            _run(_embedder(client, max_retries=3).embed("comps"))
        assert len(client.calls) == 3
        assert exc_info.value.__cause__ is not None
        assert exc_info.value.retry_after is None

    def test_rate_limit_carries_retry_after_header(self):
        client = FakeEmbeddingsClient(errors=[rate_limit_error(retry_after="7")])
        with pytest.raises(ProviderRateLimited) as exc_info:
            _run(_embedder(client, max_retries=1).embed("comps"))
        assert exc_info.value.retry_after == 7.0

    def test_retry_after_http_date_is_ignored(self):
        error = rate_limit_error(retry_after="Wed, 21 Oct 2026 07:28:00 GMT")
        assert retry_after_seconds(error) is None
        assert retry_after_seconds(RuntimeError("no response")) is None

    def test_non_transient_error_is_not_retried(self):
        client = FakeEmbeddingsClient(errors=[bad_request_error()])
        with pytest.raises(ProviderUnavailable):
            _run(_embedder(client, max_retries=3).embed("comps"))
        assert len(client.calls) == 1

    def test_cache_hit_skips_provider(self):
        redis = FakeRedis()
        cache = RAGCache(redis)
        client = FakeEmbeddingsClient()
        embedder = _embedder(client, cache=cache)

        first = _run(embedder.embed("motivated seller"))
        second = _run(embedder.embed("motivated seller"))

        assert second.vector == first.vector
        assert second.tokens_used == 0
        assert len(client.calls) == 1


class TestEmbedBatch:
    """Batch embedding (ingestion path)."""

    def test_empty_input(self):
        result = _run(_embedder(FakeEmbeddingsClient()).embed_batch([]))
        assert result.vectors == []
        assert result.failure_count == 0

    def test_preserves_order_across_batches(self):
        client = FakeEmbeddingsClient(reverse=True)
        texts = ["a", "bb", "ccc", "dddd", "eeeee"]
        result = _run(_embedder(client, batch_size=2).embed_batch(texts))
        assert [v[0] for v in result.vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]
        assert result.success_count == 5
        assert len(client.calls) == 3

    def test_blank_texts_leave_empty_slots(self):
        client = FakeEmbeddingsClient()
        result = _run(_embedder(client).embed_batch(["abc", "  ", "de"]))
        assert result.vectors[1] == []
        assert result.vectors[0] and result.vectors[2]
        assert result.failure_count == 1
        assert client.calls == [["abc", "de"]]

    def test_failed_batch_is_counted_not_raised(self):
        # Batch 1 fails every attempt; batch 2 succeeds.
        client = FakeEmbeddingsClient(errors=[bad_request_error()])
        result = _run(_embedder(client, batch_size=2).embed_batch(["a", "b", "c"]))
        assert result.vectors[0] == [] and result.vectors[1] == []
        assert result.vectors[2] == [1.0, 1.0, 0.0]
        assert result.failure_count == 2
        assert result.success_count == 1

    def test_pauses_between_batches(self):
        sleep = _SleepRecorder()
        client = FakeEmbeddingsClient()
        embedder = _embedder(client, batch_size=1, batch_delay=0.1, sleep=sleep)
        _run(embedder.embed_batch(["a", "b", "c"]))
        assert sleep.delays == [0.1, 0.1]
