# =============================================================================
# Error Taxonomy
# =============================================================================
#
# Only three places in the pipeline may raise to the caller: VectorSearch,
# single-text embedding and the primary generation call. Everything else
# (cache, conversation state, dynamic retrieval, classification) degrades
# and logs instead.
#
# Parse failures of LLM JSON and partial batch-embedding failures are NOT
# exceptions; they surface as result variants (a keyword-fallback
# classification, empty vector slots with a failure count).
#
# HTTP mapping (see api/ask.py):
#   QueryValidationError → 400
#   ProviderRateLimited  → 429
#   ProviderUnavailable  → 502
# =============================================================================

from __future__ import annotations


class RAGError(Exception):
    """Base class for errors raised by the retrieval pipeline."""


class QueryValidationError(RAGError, ValueError):
    """Empty or malformed query. Rejected immediately, never retried."""


class DocumentParseError(RAGError, ValueError):
    """A knowledge-base document is missing required front matter."""


class ProviderRateLimited(RAGError):
    """A provider kept returning 429 after all retry attempts."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderUnavailable(RAGError):
    """A provider call failed with a transient error after all retries."""


class GenerationError(ProviderUnavailable):
    """The primary answer-generation call failed.

    The provider's exception is preserved as ``__cause__``.
    """
