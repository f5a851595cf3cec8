# =============================================================================
# Embedding Service — Batched Vectors with Retry/Backoff
# =============================================================================
#
# Generates vector embeddings through any OpenAI-compatible embeddings API.
#
# RETRY POLICY (tenacity):
#   - HTTP 429 (rate limited): exponential backoff
#       retry_delay * 2**(attempt-1), capped at backoff_cap
#   - connection errors, timeouts, HTTP 5xx: fixed retry_delay
#   - anything else (bad request, auth): not retried
# Attempts are capped at max_retries.
#
# FAILURE SEMANTICS:
#   - embed(): raises ProviderRateLimited / ProviderUnavailable once retries
#     are exhausted, chained to the provider error.
#   - embed_batch(): never raises for provider failures. A failed batch
#     leaves empty vectors in its slots and is counted in failure_count,
#     so ingestion can skip those chunks and carry on.
#
# Batches are processed sequentially, with a short pause between them, to
# stay under provider rate limits.
# =============================================================================

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import openai
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from wholesale_rag.services.errors import (
    ProviderRateLimited,
    ProviderUnavailable,
    QueryValidationError,
)

if TYPE_CHECKING:
    from wholesale_rag.services.cache import RAGCache

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingResult:
    vector: list[float]
    tokens_used: int = 0


@dataclass
class BatchEmbeddingResult:
    """
    Output of embed_batch(). ``vectors`` has exactly one slot per input;
    slots whose batch failed hold an empty list.
    """

    vectors: list[list[float]] = field(default_factory=list)
    total_tokens: int = 0
    success_count: int = 0
    failure_count: int = 0


# ---------------------------------------------------------------------------
# Error Classification
# ---------------------------------------------------------------------------


def is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, openai.RateLimitError) or (
        getattr(exc, "status_code", None) == 429
    )


def is_transient(exc: BaseException) -> bool:
    """Errors worth retrying: rate limits, network failures, 5xx."""
    if is_rate_limited(exc):
        return True
    if isinstance(
        exc, (openai.APIConnectionError, ConnectionError, asyncio.TimeoutError)
    ):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


def retry_after_seconds(exc: BaseException) -> float | None:
    """Seconds from a 429 response's Retry-After header, if it gave a number."""
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    value = headers.get("retry-after") if headers is not None else None
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        # HTTP-date form; callers fall back to their own backoff
        return None


def content_hash(text: str) -> str:
    """SHA-256 hex digest of ``text``, used to detect changed documents."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Embedder
# ---------------------------------------------------------------------------


class Embedder:
    """
    Async embedding client with batching, retries and an optional cache.

    Args:
        client: An ``openai.AsyncOpenAI``-compatible client.
        model: Embedding model name.
        dimensions: Requested vector size.
        batch_size: Texts per provider call in embed_batch().
        max_retries: Total attempts per provider call.
        retry_delay: Base delay in seconds.
        backoff_cap: Upper bound for rate-limit backoff.
        batch_delay: Pause between sequential batches.
        cache: Optional RAGCache consulted by embed().
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        client: Any,
        model: str = "text-embedding-3-small",
        dimensions: int | None = 1536,
        batch_size: int = 20,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        backoff_cap: float = 30.0,
        batch_delay: float = 0.1,
        cache: RAGCache | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self.model = model
        self.dimensions = dimensions
        self.batch_size = max(batch_size, 1)
        self.max_retries = max(max_retries, 1)
        self.retry_delay = retry_delay
        self.backoff_cap = backoff_cap
        self.batch_delay = batch_delay
        self._cache = cache
        self._sleep = sleep

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def embed(self, text: str) -> EmbeddingResult:
        """
        Embed a single text (typically a user query).

        Raises:
            QueryValidationError: If ``text`` is empty.
            ProviderRateLimited: Still rate limited after all attempts.
            ProviderUnavailable: Provider failed after all attempts.
        """
        if not text or not text.strip():
            raise QueryValidationError("Cannot embed empty text")

        if self._cache is not None:
            cached = await self._cache.get_embedding(text)
            if cached is not None:
                return EmbeddingResult(vector=cached, tokens_used=0)

        try:
            response = await self._create([text])
        except openai.OpenAIError as exc:
            raise self._to_provider_error(exc) from exc
        except (ConnectionError, asyncio.TimeoutError) as exc:
            raise ProviderUnavailable(f"Embedding request failed: {exc}") from exc

        vector = list(response.data[0].embedding)
        tokens = response.usage.total_tokens if response.usage else 0

        if self._cache is not None:
            await self._cache.set_embedding(text, vector)

        return EmbeddingResult(vector=vector, tokens_used=tokens)

    async def embed_batch(self, texts: Sequence[str]) -> BatchEmbeddingResult:
        """
        Embed many texts (ingestion path), preserving input order.

        Never raises for provider failures; see BatchEmbeddingResult.
        """
        result = BatchEmbeddingResult(vectors=[[] for _ in texts])
        if not texts:
            return result

        for start in range(0, len(texts), self.batch_size):
            if start > 0 and self.batch_delay > 0:
                await self._sleep(self.batch_delay)

            batch = list(texts[start:start + self.batch_size])
            positions = [i for i, t in enumerate(batch) if t and t.strip()]
            result.failure_count += len(batch) - len(positions)
            if not positions:
                continue

            logger.info(
                "Embedding batch %d–%d of %d texts (model=%s)",
                start + 1, start + len(batch), len(texts), self.model,
            )
            try:
                response = await self._create([batch[i] for i in positions])
            except (openai.OpenAIError, ConnectionError, asyncio.TimeoutError) as exc:
                logger.error(
                    "Embedding batch starting at %d failed after retries: %s",
                    start, exc,
                )
                result.failure_count += len(positions)
                continue

            # Order by response index, not arrival order
            for item in sorted(response.data, key=lambda x: x.index):
                result.vectors[start + positions[item.index]] = list(item.embedding)
                result.success_count += 1
            if response.usage:
                result.total_tokens += response.usage.total_tokens

        logger.info(
            "Generated %d/%d embeddings (model=%s, tokens=%d)",
            result.success_count, len(texts), self.model, result.total_tokens,
        )
        return result

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    def _wait(self, retry_state: RetryCallState) -> float:
        """Exponential backoff for 429, fixed delay for other transients."""
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if exc is not None and is_rate_limited(exc):
            delay = self.retry_delay * (2 ** (retry_state.attempt_number - 1))
            return min(delay, self.backoff_cap)
        return self.retry_delay

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Embedding attempt %d failed (%s), retrying",
            retry_state.attempt_number, exc,
        )

    async def _create(self, inputs: list[str]):
        kwargs: dict = {"model": self.model, "input": inputs}
        if self.dimensions:
            kwargs["dimensions"] = self.dimensions

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=self._wait,
            retry=retry_if_exception(is_transient),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                response = await self._client.embeddings.create(**kwargs)
        return response

    @staticmethod
    def _to_provider_error(exc: BaseException) -> Exception:
        if is_rate_limited(exc):
            return ProviderRateLimited(
                f"Embedding provider rate limited: {exc}", retry_after=retry_after_seconds(exc),
            )
        return ProviderUnavailable(f"Embedding provider failed: {exc}")
