# =============================================================================
# Response Generator — Blocking & Streaming Answers
# =============================================================================
#
# Entry point for answering a question:
#
#   generate()            → GenerationResult (one LLM call, full text)
#   generate_streaming()  → async iterator of StreamChunk:
#                            classification? → sources → text* → done
#                           or, on a cache hit:
#                            classification? → sources → cached → done
#
# Both share RetrievalPipeline (cache → prepare → search → context).
#
# After an answer:
#   - the response cache write runs as a tracked background task
#     (wait_for_background_tasks() drains them, e.g. at shutdown); answers
#     shaped by chat history, session exclusions or extra context are
#     never cached
#   - the session records the categories, documents and concepts it saw
#   - one RAGMetrics record goes to the metrics sink
#
# FAILURES: search and embedding errors propagate unchanged; a failed
# generation call is raised as GenerationError chained to the provider
# error. Cache, conversation and metrics problems are logged only.
#
# CANCELLATION: the provider stream is wrapped in contextlib.aclosing, so
# a consumer calling aclose() (or a cancelled request task) closes the
# upstream HTTP stream. Text already yielded is not retracted.
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, Literal

from wholesale_rag.agents.context_builder import format_prompt
from wholesale_rag.agents.conversation import ConversationContext
from wholesale_rag.agents.dynamic_retrieval import (
    DynamicRetrievalAnalyzer,
    DynamicRetrievalResult,
    ToolResultAnalysis,
)
from wholesale_rag.agents.orchestrator import GenerationOptions, RetrievalPipeline, RetrievalState
from wholesale_rag.agents.stream_buffer import StreamBuffer
from wholesale_rag.models.rag import QueryClassification, Source
from wholesale_rag.services.cache import CachedResponse, RAGCache
from wholesale_rag.services.errors import GenerationError, QueryValidationError
from wholesale_rag.services.llm import LLMProvider
from wholesale_rag.services.metrics import LoggingMetricsSink, MetricsSink, RAGMetrics
from wholesale_rag.services.vectorstore import ChunkMatch

logger = logging.getLogger(__name__)

__all__ = [
    "GenerationOptions",
    "GenerationResult",
    "ResponseGenerator",
    "StreamChunk",
    "ToolResultAugmentation",
]

ChunkType = Literal["classification", "sources", "text", "cached", "done"]


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class GenerationResult:
    response: str
    sources: list[Source] = field(default_factory=list)
    search_results: list[ChunkMatch] = field(default_factory=list)
    classification: QueryClassification | None = None
    cached: bool = False
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class StreamChunk:
    type: ChunkType
    content: Any = ""

    def as_dict(self) -> dict[str, Any]:
        """JSON-ready form used for server-sent events."""
        content = self.content
        if isinstance(content, QueryClassification):
            content = content.model_dump()
        elif isinstance(content, list):
            content = [s.model_dump() if isinstance(s, Source) else s for s in content]
        return {"type": self.type, "content": content}


@dataclass
class ToolResultAugmentation:
    tool_name: str
    analysis: ToolResultAnalysis
    retrieval: DynamicRetrievalResult


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class ResponseGenerator:
    """
    Answers questions from the knowledge base.

    Args:
        pipeline: Retrieval graph.
        llm: Generation-tier provider.
        cache: Response cache for write-back; None disables caching.
        conversation: Session context; None disables session tracking.
        dynamic: Tool-result analyzer for augment_with_tool_result().
        metrics: Sink for per-request metrics (default: log line).
        stream_flush_interval_ms / stream_min_chunk_size: StreamBuffer knobs.
        clock: Monotonic clock for the stream buffer.
    """

    def __init__(
        self,
        pipeline: RetrievalPipeline,
        llm: LLMProvider,
        cache: RAGCache | None = None,
        conversation: ConversationContext | None = None,
        dynamic: DynamicRetrievalAnalyzer | None = None,
        metrics: MetricsSink | None = None,
        stream_flush_interval_ms: int = 100,
        stream_min_chunk_size: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pipeline = pipeline
        self._llm = llm
        self._cache = cache
        self._conversation = conversation
        self._dynamic = dynamic
        self._metrics = metrics or LoggingMetricsSink()
        self.stream_flush_interval_ms = stream_flush_interval_ms
        self.stream_min_chunk_size = stream_min_chunk_size
        self._clock = clock
        self._background: set[asyncio.Task] = set()

    # -----------------------------------------------------------------------
    # Blocking
    # -----------------------------------------------------------------------

    async def generate(
        self,
        query: str,
        options: GenerationOptions | None = None,
        session_id: str | None = None,
        messages: list[dict[str, Any]] | None = None,
        additional_context: str = "",
    ) -> GenerationResult:
        options = options or GenerationOptions()
        _validate(query)
        start = time.perf_counter()

        state = await self._pipeline.run(query, options, session_id, messages)

        cached = state.get("cached")
        if cached is not None:
            self._record_metrics(state, start, cached=True)
            return GenerationResult(
                response=cached.response,
                sources=cached.sources,
                classification=cached.classification,
                cached=True,
            )

        context = state["context"]
        prompt = format_prompt(context, query, additional_context)
        generation_start = time.perf_counter()
        try:
            response = await self._llm.complete(
                messages=_llm_messages(messages, prompt),
                system=context.system_prompt,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
            )
        except Exception as exc:
            raise GenerationError(f"Answer generation failed: {exc}") from exc
        generation_ms = int((time.perf_counter() - generation_start) * 1000)

        classification = state.get("classification")
        if response.content and _cacheable(state, options, additional_context):
            self._schedule_cache_write(query, response.content, context.sources, classification)
        await self._record_session(state)
        self._record_metrics(state, start, generation_ms=generation_ms)

        return GenerationResult(
            response=response.content,
            sources=context.sources,
            search_results=state["results"],
            classification=classification,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        )

    # -----------------------------------------------------------------------
    # Streaming
    # -----------------------------------------------------------------------

    async def generate_streaming(
        self,
        query: str,
        options: GenerationOptions | None = None,
        session_id: str | None = None,
        messages: list[dict[str, Any]] | None = None,
        additional_context: str = "",
    ) -> AsyncIterator[StreamChunk]:
        options = options or GenerationOptions()
        _validate(query)
        start = time.perf_counter()

        state = await self._pipeline.run(query, options, session_id, messages)

        cached = state.get("cached")
        if cached is not None:
            if cached.classification is not None:
                yield StreamChunk("classification", cached.classification)
            yield StreamChunk("sources", cached.sources)
            yield StreamChunk("cached", cached.response)
            self._record_metrics(state, start, cached=True)
            yield StreamChunk("done", "")
            return

        classification = state.get("classification")
        if classification is not None:
            yield StreamChunk("classification", classification)

        context = state["context"]
        yield StreamChunk("sources", context.sources)

        prompt = format_prompt(context, query, additional_context)
        buffer = (
            StreamBuffer(self.stream_flush_interval_ms, self.stream_min_chunk_size, self._clock)
            if options.buffer_streaming
            else None
        )
        parts: list[str] = []
        generation_start = time.perf_counter()

        events = self._llm.stream(
            messages=_llm_messages(messages, prompt),
            system=context.system_prompt,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
        )
        try:
            async with contextlib.aclosing(events):
                async for event in events:
                    if event.done:
                        logger.debug(
                            "Stream finished: reason=%s tokens=%d/%d",
                            event.finish_reason, event.input_tokens, event.output_tokens,
                        )
                        continue
                    if not event.text:
                        continue
                    parts.append(event.text)
                    if buffer is None:
                        yield StreamChunk("text", event.text)
                        continue
                    ready = buffer.add(event.text)
                    if ready:
                        yield StreamChunk("text", ready)
        except (GeneratorExit, asyncio.CancelledError):
            logger.info("Stream cancelled by consumer after %d fragments", len(parts))
            raise
        except Exception as exc:
            raise GenerationError(f"Streaming generation failed: {exc}") from exc

        if buffer is not None and buffer.has_content():
            yield StreamChunk("text", buffer.flush())

        generation_ms = int((time.perf_counter() - generation_start) * 1000)
        full_response = "".join(parts)
        if full_response and _cacheable(state, options, additional_context):
            self._schedule_cache_write(query, full_response, context.sources, classification)
        await self._record_session(state)
        self._record_metrics(state, start, generation_ms=generation_ms)

        yield StreamChunk("done", "")

    # -----------------------------------------------------------------------
    # Tool results
    # -----------------------------------------------------------------------

    async def augment_with_tool_result(
        self,
        session_id: str | None,
        tool_name: str,
        tool_output: Any,
    ) -> ToolResultAugmentation:
        """
        Fetch knowledge explaining terms that surfaced in a tool's output.

        Uses the session's fetched categories/documents to avoid repeats
        and records whatever was retrieved. Never raises.
        """
        if self._dynamic is None:
            return ToolResultAugmentation(tool_name, ToolResultAnalysis(), DynamicRetrievalResult())

        state = None
        if self._conversation is not None and session_id:
            state = await self._conversation.get_state(session_id)

        analysis = self._dynamic.analyze(
            tool_output, state.fetched_categories if state else (),
        )
        if not analysis.should_retrieve:
            return ToolResultAugmentation(tool_name, analysis, DynamicRetrievalResult())

        retrieval = await self._dynamic.retrieve(
            analysis, exclude_doc_ids=state.fetched_doc_ids if state else (),
        )
        logger.info(
            "Tool %s: urgency=%s groups=%s retrieved=%d sources",
            tool_name, analysis.urgency, analysis.trigger_groups, len(retrieval.sources),
        )
        if retrieval.sources and self._conversation is not None and session_id:
            await self._conversation.record_retrieval(
                session_id,
                categories=retrieval.retrieved_categories,
                doc_ids=retrieval.document_ids,
                concepts=analysis.matched_terms,
            )
        return ToolResultAugmentation(tool_name, analysis, retrieval)

    # -----------------------------------------------------------------------
    # Background work
    # -----------------------------------------------------------------------

    async def wait_for_background_tasks(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _schedule_cache_write(
        self,
        query: str,
        response: str,
        sources: list[Source],
        classification: QueryClassification | None,
    ) -> None:
        if self._cache is None:
            return
        entry = CachedResponse(response=response, sources=sources, classification=classification)
        self._spawn(self._write_cache(query, entry))

    async def _write_cache(self, query: str, entry: CachedResponse) -> None:
        try:
            if not await self._cache.set_response(query, entry):
                logger.warning("Response not cached for query '%s'", query[:80])
        except Exception as e:
            logger.warning("Background cache write failed: %s", e)

    # -----------------------------------------------------------------------
    # Bookkeeping
    # -----------------------------------------------------------------------

    async def _record_session(self, state: RetrievalState) -> None:
        session_id = state.get("session_id")
        if self._conversation is None or not session_id:
            return
        results = state.get("results", [])
        reformulation = state.get("reformulation")
        classification = state.get("classification")
        summary = state.get("conversation_summary")
        concepts = [
            *(reformulation.concepts if reformulation else ()),
            *(classification.topics if classification else ()),
            *(summary.current_topics if summary else ()),
        ]
        await self._conversation.record_retrieval(
            session_id,
            categories=list(dict.fromkeys(m.category for m in results)),
            doc_ids=list(dict.fromkeys(m.document_id for m in results)),
            concepts=concepts,
        )

    def _record_metrics(
        self,
        state: RetrievalState,
        start: float,
        generation_ms: int | None = None,
        cached: bool = False,
    ) -> None:
        classification = state.get("classification")
        metrics = RAGMetrics(
            query_length=len(state["query"]),
            total_ms=int((time.perf_counter() - start) * 1000),
            classification_ms=state.get("classification_ms"),
            search_ms=state.get("search_ms"),
            generation_ms=generation_ms,
            results_found=len(state.get("results", [])),
            categories=list(state.get("categories", [])),
            complexity=classification.complexity if classification else None,
            cached=cached,
        )
        try:
            self._metrics.record(metrics)
        except Exception as e:
            logger.warning("Metrics sink failed: %s", e)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _validate(query: str) -> None:
    if not query or not query.strip():
        raise QueryValidationError("Query must not be empty")


def _cacheable(state: RetrievalState, options: GenerationOptions, additional_context: str) -> bool:
    """
    Only answers any caller could have received go into the shared cache.

    History, session exclusions and injected tool knowledge all shape an
    answer for one conversation; the cache key is the bare query.
    """
    if options.skip_cache or additional_context or state.get("messages"):
        return False
    context_query = state.get("context_query")
    return not (context_query and context_query.exclude_doc_ids)


def _llm_messages(history: list[dict[str, Any]] | None, prompt: str) -> list[dict[str, str]]:
    """Prior user/assistant turns followed by the context-laden prompt."""
    messages = [
        {"role": m["role"], "content": m["content"]}
        for m in history or []
        if m.get("role") in ("user", "assistant") and isinstance(m.get("content"), str)
    ]
    messages.append({"role": "user", "content": prompt})
    return messages
