# =============================================================================
# Admin API — Health & Cache Management
# =============================================================================
#
#   GET    /rag/health       liveness + Redis reachability
#   GET    /rag/cache/stats  number of cached answers / embeddings
#   DELETE /rag/cache        drop every cached answer (embeddings are kept:
#                            they only change with the embedding model)
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from wholesale_rag.api.deps import get_components
from wholesale_rag.bootstrap import RAGComponents
from wholesale_rag.models.responses import (
    CacheClearedResponse,
    CacheStatsResponse,
    HealthResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rag", tags=["Admin"])


@router.get("/health", response_model=HealthResponse, summary="Service health")
async def health(components: RAGComponents = Depends(get_components)) -> HealthResponse:
    cfg = components.settings
    redis_status = "ok"
    try:
        await components.redis.ping()
    except Exception as e:
        logger.warning("Health check: Redis unreachable: %s", e)
        redis_status = "unavailable"

    return HealthResponse(
        status="ok" if redis_status == "ok" else "degraded",
        version=cfg.app_version,
        service=cfg.app_name,
        vectorstore=cfg.vectorstore_type,
        redis=redis_status,
    )


@router.get("/cache/stats", response_model=CacheStatsResponse, summary="Cache statistics")
async def cache_stats(components: RAGComponents = Depends(get_components)) -> CacheStatsResponse:
    stats = await components.cache.get_stats()
    return CacheStatsResponse(
        query_count=stats.query_count, embedding_count=stats.embedding_count,
    )


@router.delete("/cache", response_model=CacheClearedResponse, summary="Clear cached answers")
async def clear_cache(components: RAGComponents = Depends(get_components)) -> CacheClearedResponse:
    removed = await components.cache.invalidate_all_responses()
    logger.info("Cache cleared via API: %d entries", removed)
    return CacheClearedResponse(removed=removed)
