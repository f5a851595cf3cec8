# =============================================================================
# LangGraph Orchestrator — Retrieval Pipeline
# =============================================================================
#
# The retrieval half of every answer (blocking or streaming) runs through
# one LangGraph StateGraph. Generation happens outside the graph so the
# streaming path can forward tokens as they arrive.
#
# GRAPH TOPOLOGY:
#
#   START ──▶ cache_lookup ──┬── hit ──▶ END
#                            └── miss ─▶ prepare ──▶ search ──▶ build_context ──▶ END
#
# prepare runs three independent steps concurrently (asyncio.gather):
#   - reformulation  (action query → knowledge query, may call the fast LLM)
#   - classification (intent/topics/complexity, fast LLM, skippable)
#   - conversation   (session state load + per-turn summary, Redis only)
#
# search scopes the query with the union of classifier, predicted-tool,
# reformulator and conversation categories and excludes documents the
# session already saw (unless the topic changed). Complexity adjusts the
# result limit.
#
# DESIGN DECISION: Graph built per pipeline instance, not at module level.
# Nodes close over injected collaborators (cache, LLM-backed agents, search)
# so tests and the API can assemble pipelines from different clients.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from wholesale_rag.agents.classifier import QueryClassifier, search_limit_for
from wholesale_rag.agents.context_builder import RAGContext, build_context
from wholesale_rag.agents.conversation import (
    ContextAwareQuery,
    ConversationContext,
    ConversationState,
    ConversationSummary,
)
from wholesale_rag.agents.reformulator import QueryReformulator, ReformulatedQuery
from wholesale_rag.agents.search import VectorSearch
from wholesale_rag.models.rag import QueryClassification
from wholesale_rag.services import taxonomy
from wholesale_rag.services.cache import CachedResponse, RAGCache
from wholesale_rag.services.vectorstore import ChunkMatch

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Options & State
# ---------------------------------------------------------------------------


@dataclass
class GenerationOptions:
    """Per-request knobs. None means "use the configured default"."""

    max_tokens: int | None = None
    temperature: float | None = None
    search_limit: int | None = None
    search_threshold: float | None = None
    skip_classification: bool = False
    buffer_streaming: bool = True
    skip_cache: bool = False


class RetrievalState(TypedDict, total=False):
    """
    State flowing through the retrieval graph.

    total=False so each node returns only the keys it sets. Values are
    plain Python objects; the graph has no checkpointer, so nothing here
    needs to be serialisable.
    """

    # --- Input ---
    query: str
    session_id: str | None
    messages: list[dict[str, Any]]
    options: GenerationOptions

    # --- cache_lookup ---
    cached: CachedResponse | None

    # --- prepare ---
    reformulation: ReformulatedQuery
    classification: QueryClassification | None
    classification_source: str | None
    classification_ms: int | None
    conversation_state: ConversationState | None
    conversation_summary: ConversationSummary | None
    context_query: ContextAwareQuery | None

    # --- search ---
    search_query: str
    categories: list[str]
    results: list[ChunkMatch]
    search_ms: int

    # --- build_context ---
    context: RAGContext


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class RetrievalPipeline:
    """
    Cache → (reformulate ‖ classify ‖ conversation) → search → context.

    Args:
        search: Category-aware vector search.
        classifier: Fast-tier query classifier.
        reformulator: Action → knowledge query rewriter.
        cache: Response cache; lookups skipped when None.
        conversation: Session context; sessions ignored when None.
        default_limit: Search limit before complexity adjustment.
        default_threshold: Minimum similarity.
        simple_limit / complex_limit: Complexity-adjusted limits.
        context_max_tokens: Prompt context budget.
    """

    def __init__(
        self,
        search: VectorSearch,
        classifier: QueryClassifier,
        reformulator: QueryReformulator,
        cache: RAGCache | None = None,
        conversation: ConversationContext | None = None,
        default_limit: int = 5,
        default_threshold: float = 0.5,
        simple_limit: int = 3,
        complex_limit: int = 8,
        context_max_tokens: int = 4000,
    ) -> None:
        self._search = search
        self._classifier = classifier
        self._reformulator = reformulator
        self._cache = cache
        self._conversation = conversation
        self.default_limit = default_limit
        self.default_threshold = default_threshold
        self.simple_limit = simple_limit
        self.complex_limit = complex_limit
        self.context_max_tokens = context_max_tokens
        self.graph = self._build_graph()

    def _build_graph(self):
        builder = StateGraph(RetrievalState)
        builder.add_node("cache_lookup", self.cache_lookup_node)
        builder.add_node("prepare", self.prepare_node)
        builder.add_node("search", self.search_node)
        builder.add_node("build_context", self.build_context_node)

        builder.add_edge(START, "cache_lookup")
        builder.add_conditional_edges(
            "cache_lookup", _route_after_cache, {"hit": END, "miss": "prepare"},
        )
        builder.add_edge("prepare", "search")
        builder.add_edge("search", "build_context")
        builder.add_edge("build_context", END)
        return builder.compile()

    async def run(
        self,
        query: str,
        options: GenerationOptions | None = None,
        session_id: str | None = None,
        messages: list[dict[str, Any]] | None = None,
    ) -> RetrievalState:
        """
        Run retrieval for one query.

        Returns the final state: either ``cached`` is set, or
        ``results`` and ``context`` are. Search / embedding errors
        propagate.
        """
        initial: RetrievalState = {
            "query": query,
            "session_id": session_id,
            "messages": list(messages or []),
            "options": options or GenerationOptions(),
        }
        logger.info(
            "Retrieval start: query='%s' session=%s", query[:80], session_id or "-",
        )
        return await self.graph.ainvoke(initial)

    # -----------------------------------------------------------------------
    # Nodes
    # -----------------------------------------------------------------------

    async def cache_lookup_node(self, state: RetrievalState) -> dict:
        if self._cache is None or state["options"].skip_cache:
            return {"cached": None}
        return {"cached": await self._cache.get_response(state["query"])}

    async def prepare_node(self, state: RetrievalState) -> dict:
        """Reformulation, classification and conversation context in parallel."""
        query = state["query"]
        reformulation, (classification, source, classify_ms), conversation = (
            await asyncio.gather(
                self._reformulator.reformulate(query),
                self._classify(query, state["options"]),
                self._load_conversation(state),
            )
        )
        conversation_state, summary, context_query = conversation

        logger.info(
            "Prepared query: reformulation=%s classification=%s topic_changed=%s",
            reformulation.source, source or "skipped",
            context_query.topic_changed if context_query else None,
        )
        return {
            "reformulation": reformulation,
            "classification": classification,
            "classification_source": source,
            "classification_ms": classify_ms,
            "conversation_state": conversation_state,
            "conversation_summary": summary,
            "context_query": context_query,
        }

    async def search_node(self, state: RetrievalState) -> dict:
        options = state["options"]
        reformulation = state["reformulation"]
        classification = state.get("classification")
        context_query = state.get("context_query")

        limit = options.search_limit or self.default_limit
        if classification is not None:
            limit = search_limit_for(
                classification.complexity, limit, self.simple_limit, self.complex_limit,
            )

        categories = taxonomy.merge_categories(
            taxonomy.tool_aware_categories(state["query"], classification),
            reformulation.categories,
            context_query.categories if context_query else (),
        )

        search_query = reformulation.knowledge_query
        if context_query:
            boosts = [c for c in context_query.boost_concepts if c.lower() not in search_query.lower()]
            if boosts:
                search_query = f"{search_query} {' '.join(boosts)}"

        start = time.perf_counter()
        results = await self._search.search(
            search_query,
            limit=limit,
            threshold=(
                self.default_threshold
                if options.search_threshold is None
                else options.search_threshold
            ),
            categories=categories,
            exclude_doc_ids=context_query.exclude_doc_ids if context_query else (),
        )
        return {
            "search_query": search_query,
            "categories": categories,
            "results": results,
            "search_ms": _elapsed_ms(start),
        }

    async def build_context_node(self, state: RetrievalState) -> dict:
        return {"context": build_context(state["results"], self.context_max_tokens)}

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    async def _classify(
        self, query: str, options: GenerationOptions,
    ) -> tuple[QueryClassification | None, str | None, int | None]:
        if options.skip_classification:
            return None, None, None
        start = time.perf_counter()
        result = await self._classifier.classify(query)
        return result.classification, result.source, _elapsed_ms(start)

    async def _load_conversation(
        self, state: RetrievalState,
    ) -> tuple[ConversationState | None, ConversationSummary | None, ContextAwareQuery | None]:
        session_id = state.get("session_id")
        if self._conversation is None or not session_id:
            return None, None, None

        conversation_state = await self._conversation.get_state(session_id)
        turns = [*state.get("messages", []), {"role": "user", "content": state["query"]}]
        summary = self._conversation.summarize(turns, conversation_state)
        context_query = self._conversation.build_query(state["query"], summary, conversation_state)
        return conversation_state, summary, context_query


def _route_after_cache(state: RetrievalState) -> str:
    return "hit" if state.get("cached") is not None else "miss"
