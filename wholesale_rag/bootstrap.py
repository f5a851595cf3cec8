# =============================================================================
# Bootstrap — Explicit Component Assembly
# =============================================================================
#
# Builds every collaborator of the RAG pipeline from Settings and wires
# them together. Nothing here is a module-level singleton: the API
# lifespan, the Celery worker and tests each assemble their own set, and
# tests pass fakes for the outer clients (Redis, embeddings, LLMs, store).
#
#   redis ──▶ RAGCache, ConversationContext, RateLimiter
#   openai ─▶ Embedder (uses RAGCache for query embeddings)
#   store + embedder ─▶ VectorSearch ─▶ DynamicRetrievalAnalyzer
#   fast LLM ─▶ QueryClassifier, QueryReformulator
#   everything ─▶ RetrievalPipeline ─▶ ResponseGenerator
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from wholesale_rag.agents.classifier import QueryClassifier
from wholesale_rag.agents.conversation import ConversationContext
from wholesale_rag.agents.dynamic_retrieval import DynamicRetrievalAnalyzer
from wholesale_rag.agents.generator import ResponseGenerator
from wholesale_rag.agents.orchestrator import RetrievalPipeline
from wholesale_rag.agents.reformulator import QueryReformulator
from wholesale_rag.agents.search import VectorSearch
from wholesale_rag.config import Settings
from wholesale_rag.services.cache import RAGCache
from wholesale_rag.services.chunker import Chunker
from wholesale_rag.services.embedder import Embedder
from wholesale_rag.services.ingestion import KnowledgeBaseIngestor
from wholesale_rag.services.llm import LLMProvider, create_llm_provider
from wholesale_rag.services.metrics import MetricsSink
from wholesale_rag.services.rate_limiter import RateLimiter
from wholesale_rag.services.vectorstore import VectorStore, create_vector_store

logger = logging.getLogger(__name__)


@dataclass
class RAGComponents:
    settings: Settings
    redis: Any
    cache: RAGCache
    embedder: Embedder
    store: VectorStore
    search: VectorSearch
    conversation: ConversationContext
    dynamic: DynamicRetrievalAnalyzer
    pipeline: RetrievalPipeline
    generator: ResponseGenerator
    rate_limiter: RateLimiter
    ingestor: KnowledgeBaseIngestor

    async def close(self) -> None:
        """Drain background cache writes and release the Redis pool."""
        await self.generator.wait_for_background_tasks()
        close = getattr(self.redis, "aclose", None) or getattr(self.redis, "close", None)
        if close is not None:
            await close()


def build_components(
    cfg: Settings,
    *,
    redis: Any | None = None,
    embeddings_client: Any | None = None,
    llm: LLMProvider | None = None,
    fast_llm: LLMProvider | None = None,
    store: VectorStore | None = None,
    session_factory: Any | None = None,
    metrics: MetricsSink | None = None,
) -> RAGComponents:
    """
    Assemble the pipeline. Any client passed in is used as-is; missing ones
    are created from ``cfg``.
    """
    redis = redis if redis is not None else create_redis(cfg)
    embeddings_client = (
        embeddings_client if embeddings_client is not None else create_embeddings_client(cfg)
    )

    if llm is None:
        llm = create_llm_provider(cfg)
    if fast_llm is None:
        fast_llm = create_llm_provider(
            cfg, model=cfg.llm_fast_model, temperature=0.0,
            max_tokens=cfg.classification_max_tokens,
        )

    store = store if store is not None else _default_store(cfg, session_factory)
    cache = RAGCache(redis, cfg.cache_response_ttl, cfg.cache_embedding_ttl)
    embedder = _embedder(cfg, embeddings_client, cache)
    search = VectorSearch(
        store, embedder,
        default_limit=cfg.retrieval_top_k,
        default_threshold=cfg.retrieval_similarity_threshold,
    )
    conversation = ConversationContext(
        redis,
        ttl_seconds=cfg.session_ttl_seconds,
        max_doc_ids=cfg.session_max_doc_ids,
        max_concepts=cfg.session_max_concepts,
    )
    dynamic = DynamicRetrievalAnalyzer(
        search, limit=cfg.dynamic_retrieval_limit, threshold=cfg.dynamic_retrieval_threshold,
    )
    pipeline = RetrievalPipeline(
        search=search,
        classifier=QueryClassifier(fast_llm, max_tokens=cfg.classification_max_tokens),
        reformulator=QueryReformulator(
            fast_llm,
            timeout=cfg.reformulation_timeout,
            max_tokens=cfg.reformulation_max_tokens,
        ),
        cache=cache,
        conversation=conversation,
        default_limit=cfg.retrieval_top_k,
        default_threshold=cfg.retrieval_similarity_threshold,
        simple_limit=cfg.simple_query_limit,
        complex_limit=cfg.complex_query_limit,
        context_max_tokens=cfg.context_max_tokens,
    )
    generator = ResponseGenerator(
        pipeline,
        llm,
        cache=cache,
        conversation=conversation,
        dynamic=dynamic,
        metrics=metrics,
        stream_flush_interval_ms=cfg.stream_flush_interval_ms,
        stream_min_chunk_size=cfg.stream_min_chunk_size,
    )
    ingestor = _ingestor(cfg, store, embedder, cache)

    logger.info(
        "RAG components ready: store=%s llm=%s fast_llm=%s",
        cfg.vectorstore_type, cfg.llm_model, cfg.llm_fast_model,
    )
    return RAGComponents(
        settings=cfg,
        redis=redis,
        cache=cache,
        embedder=embedder,
        store=store,
        search=search,
        conversation=conversation,
        dynamic=dynamic,
        pipeline=pipeline,
        generator=generator,
        rate_limiter=RateLimiter(
            redis, limit=cfg.rate_limit_requests, window_seconds=cfg.rate_limit_window_seconds,
        ),
        ingestor=ingestor,
    )


def build_ingestor(
    cfg: Settings,
    *,
    redis: Any | None = None,
    embeddings_client: Any | None = None,
    store: VectorStore | None = None,
    session_factory: Any | None = None,
) -> KnowledgeBaseIngestor:
    """Ingestion-only assembly (no LLM clients), used by the Celery worker."""
    redis = redis if redis is not None else create_redis(cfg)
    embeddings_client = (
        embeddings_client if embeddings_client is not None else create_embeddings_client(cfg)
    )
    store = store if store is not None else _default_store(cfg, session_factory)
    cache = RAGCache(redis, cfg.cache_response_ttl, cfg.cache_embedding_ttl)
    return _ingestor(cfg, store, _embedder(cfg, embeddings_client, None), cache)


# ---------------------------------------------------------------------------
# Client Factories
# ---------------------------------------------------------------------------


def create_redis(cfg: Settings) -> Any:
    import redis.asyncio as aioredis

    return aioredis.from_url(cfg.redis_url, decode_responses=True)


def create_embeddings_client(cfg: Settings) -> Any:
    from openai import AsyncOpenAI

    # Retries are handled by the Embedder (tenacity), not the SDK.
    return AsyncOpenAI(
        api_key=cfg.openai_api_key, timeout=cfg.embedding_timeout, max_retries=0,
    )


def _default_store(cfg: Settings, session_factory: Any | None) -> VectorStore:
    if session_factory is None and cfg.vectorstore_type != "chroma":
        from wholesale_rag.db.engine import async_session_factory

        session_factory = async_session_factory
    return create_vector_store(cfg, session_factory)


def _embedder(cfg: Settings, client: Any, cache: RAGCache | None) -> Embedder:
    return Embedder(
        client,
        model=cfg.embedding_model,
        dimensions=cfg.embedding_dimensions,
        batch_size=cfg.embedding_batch_size,
        max_retries=cfg.embedding_max_retries,
        retry_delay=cfg.embedding_retry_delay,
        backoff_cap=cfg.embedding_backoff_cap,
        batch_delay=cfg.embedding_batch_delay,
        cache=cache,
    )


def _ingestor(
    cfg: Settings, store: VectorStore, embedder: Embedder, cache: RAGCache | None,
) -> KnowledgeBaseIngestor:
    return KnowledgeBaseIngestor(
        store,
        embedder,
        Chunker(cfg.chunk_max_tokens, cfg.chunk_min_tokens, cfg.chunk_overlap_tokens),
        cache=cache,
    )
