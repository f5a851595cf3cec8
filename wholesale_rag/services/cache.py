# =============================================================================
# RAG Cache — Redis Response + Embedding Cache
# =============================================================================
#
# Two key families, both SHA-256 based:
#   rag:query:<16 hex>      full answers keyed by the NORMALISED query
#                           (lowercase, trimmed, whitespace collapsed)
#   rag:embedding:<16 hex>  embedding vectors keyed by the exact text
#
# The knowledge base is static between ingestions, so answers live for an
# hour and embeddings (deterministic per model) for a day. Ingestion
# invalidates the response family when documents change.
#
# DESIGN DECISION: Graceful degradation. Every operation catches Redis
# errors, logs them and returns a miss / False / 0.
# =============================================================================

from __future__ import annotations

import hashlib
import json
import logging
import re
import time
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from wholesale_rag.models.rag import QueryClassification, Source

logger = logging.getLogger(__name__)

QUERY_PREFIX = "rag:query:"
EMBEDDING_PREFIX = "rag:embedding:"

_WHITESPACE_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


class CachedResponse(BaseModel):
    response: str
    sources: list[Source] = Field(default_factory=list)
    classification: QueryClassification | None = None
    cached_at: float = Field(default_factory=time.time)


class CacheStats(BaseModel):
    query_count: int = 0
    embedding_count: int = 0


# ---------------------------------------------------------------------------
# Key Derivation
# ---------------------------------------------------------------------------


def normalize_query(query: str) -> str:
    return _WHITESPACE_RE.sub(" ", query.lower().strip())


def query_cache_key(query: str) -> str:
    digest = hashlib.sha256(normalize_query(query).encode("utf-8")).hexdigest()
    return f"{QUERY_PREFIX}{digest[:16]}"


def embedding_cache_key(text: str) -> str:
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"{EMBEDDING_PREFIX}{digest[:16]}"


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class RAGCache:
    """
    Best-effort cache over an async Redis client (``decode_responses=True``).

    Args:
        redis: ``redis.asyncio.Redis`` or compatible client.
        response_ttl: Seconds to keep cached answers.
        embedding_ttl: Seconds to keep cached embeddings.
    """

    def __init__(self, redis: Any, response_ttl: int = 3600, embedding_ttl: int = 86400):
        self._redis = redis
        self.response_ttl = response_ttl
        self.embedding_ttl = embedding_ttl

    async def get_response(self, query: str) -> CachedResponse | None:
        key = query_cache_key(query)
        try:
            raw = await self._redis.get(key)
        except Exception as e:
            logger.warning("Cache read failed for %s: %s", key, e)
            return None

        if raw is None:
            logger.debug("Cache MISS for %s", key)
            return None
        try:
            cached = CachedResponse.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Discarding malformed cache entry %s: %s", key, e)
            return None
        logger.info("Cache HIT for %s", key)
        return cached

    async def set_response(self, query: str, entry: CachedResponse) -> bool:
        key = query_cache_key(query)
        try:
            await self._redis.set(key, entry.model_dump_json(), ex=self.response_ttl)
        except Exception as e:
            logger.warning("Cache write failed for %s: %s", key, e)
            return False
        return True

    async def get_embedding(self, text: str) -> list[float] | None:
        key = embedding_cache_key(text)
        try:
            raw = await self._redis.get(key)
        except Exception as e:
            logger.warning("Embedding cache read failed: %s", e)
            return None
        if raw is None:
            return None
        try:
            vector = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return vector if isinstance(vector, list) else None

    async def set_embedding(self, text: str, vector: list[float]) -> bool:
        try:
            await self._redis.set(
                embedding_cache_key(text), json.dumps(vector), ex=self.embedding_ttl
            )
        except Exception as e:
            logger.warning("Embedding cache write failed: %s", e)
            return False
        return True

    async def invalidate_all_responses(self) -> int:
        """Delete every cached answer. Returns the number of keys removed."""
        try:
            keys = [key async for key in self._redis.scan_iter(match=f"{QUERY_PREFIX}*")]
            if not keys:
                return 0
            await self._redis.delete(*keys)
        except Exception as e:
            logger.warning("Cache invalidation failed: %s", e)
            return 0
        logger.info("Invalidated %d cached responses", len(keys))
        return len(keys)

    async def get_stats(self) -> CacheStats:
        try:
            query_count = await self._count(QUERY_PREFIX)
            embedding_count = await self._count(EMBEDDING_PREFIX)
        except Exception as e:
            logger.warning("Cache stats unavailable: %s", e)
            return CacheStats()
        return CacheStats(query_count=query_count, embedding_count=embedding_count)

    async def _count(self, prefix: str) -> int:
        return len([key async for key in self._redis.scan_iter(match=f"{prefix}*")])
