# =============================================================================
# Unit Tests — Retrieval Pipeline & Response Generator
# =============================================================================
#
# End-to-end through the LangGraph retrieval graph with in-memory fakes for
# Redis, the embeddings API, both LLM tiers and the vector store. Each test
# runs inside one event loop so background cache writes can be drained with
# wait_for_background_tasks().
# =============================================================================

import pytest

from tests.fakes import (
    FailingRedis,
    FakeEmbeddingsClient,
    FakeLLM,
    FakeRedis,
    FakeStore,
    ListMetricsSink,
    _run,
    fast_llm_reply,
    make_match,
    no_sleep,
)
from wholesale_rag.agents.classifier import QueryClassifier
from wholesale_rag.agents.context_builder import SYSTEM_PROMPT
from wholesale_rag.agents.conversation import ConversationContext
from wholesale_rag.agents.dynamic_retrieval import DynamicRetrievalAnalyzer
from wholesale_rag.agents.generator import ResponseGenerator, StreamChunk
from wholesale_rag.agents.orchestrator import GenerationOptions, RetrievalPipeline
from wholesale_rag.agents.reformulator import QueryReformulator
from wholesale_rag.agents.search import VectorSearch
from wholesale_rag.models.rag import QueryClassification, Source
from wholesale_rag.services import taxonomy
from wholesale_rag.services.cache import RAGCache, query_cache_key
from wholesale_rag.services.embedder import Embedder
from wholesale_rag.services.errors import GenerationError, QueryValidationError

SIMPLE_70_RULE = {"intent": "question", "topics": ["70% rule"], "complexity": "simple"}
ANSWER_FRAGMENTS = [
    "The 70% rule ",
    "says to pay no more ",
    "than 70% of ARV minus repairs. ",
    "It protects your margin",
]


def _store() -> FakeStore:
    return FakeStore([
        make_match("c1", "d1", 0.91, taxonomy.FUNDAMENTALS, title="The 70% Rule",
                   content="Max offer = ARV x 0.7 - repairs."),
        make_match("c2", "d2", 0.84, taxonomy.FUNDAMENTALS, title="Calculating ARV"),
        make_match("c3", "d3", 0.72, taxonomy.FUNDAMENTALS, title="Repair Estimates"),
        make_match("c4", "d4", 0.66, taxonomy.NEGOTIATIONS, title="Anchoring"),
        make_match("c5", "d5", 0.88, taxonomy.LEGAL_COMPLIANCE, title="Probate Deals",
                   content="Probate sales need court approval."),
    ])


class _Harness:
    """Wires a ResponseGenerator the way bootstrap does, with fakes."""

    def __init__(
        self,
        store: FakeStore | None = None,
        llm: FakeLLM | None = None,
        classification: dict | str | None = None,
        redis=None,
    ):
        self.redis = redis if redis is not None else FakeRedis()
        self.store = store or _store()
        self.llm = llm or FakeLLM(reply="".join(ANSWER_FRAGMENTS), fragments=ANSWER_FRAGMENTS)
        self.fast_llm = FakeLLM(reply=fast_llm_reply(classification=classification or SIMPLE_70_RULE))
        self.metrics = ListMetricsSink()

        cache = RAGCache(self.redis)
        search = VectorSearch(self.store, Embedder(FakeEmbeddingsClient(), cache=cache, sleep=no_sleep))
        self.conversation = ConversationContext(self.redis)
        pipeline = RetrievalPipeline(
            search,
            QueryClassifier(self.fast_llm),
            QueryReformulator(self.fast_llm),
            cache=cache,
            conversation=self.conversation,
        )
        self.generator = ResponseGenerator(
            pipeline,
            self.llm,
            cache=cache,
            conversation=self.conversation,
            dynamic=DynamicRetrievalAnalyzer(search),
            metrics=self.metrics,
            clock=lambda: 0.0,
        )

    async def collect(self, query: str, **kwargs) -> list[StreamChunk]:
        return [chunk async for chunk in self.generator.generate_streaming(query, **kwargs)]


# ---------------------------------------------------------------------------
# Test: Blocking generation
# ---------------------------------------------------------------------------


class TestGenerate:
    def test_answer_with_sources_and_classification(self):
        h = _Harness()
        result = _run(h.generator.generate("What is the 70% rule?"))

        assert result.response == "".join(ANSWER_FRAGMENTS)
        assert result.cached is False
        assert result.classification.complexity == "simple"
        assert [s.slug for s in result.sources] == ["doc-d1", "doc-d2", "doc-d3"]
        assert result.input_tokens == 11 and result.output_tokens == 7

        call = h.llm.calls[0]
        assert call["system"] == SYSTEM_PROMPT
        assert "User Question: What is the 70% rule?" in call["messages"][-1]["content"]
        assert "Max offer = ARV x 0.7 - repairs." in call["messages"][-1]["content"]

    def test_search_scoped_to_fundamentals_and_cached_repeat(self):
        h = _Harness()

        async def scenario():
            first = await h.generator.generate("What is the 70% rule?")
            await h.generator.wait_for_background_tasks()
            queries_after_first = len(h.store.queries)
            second = await h.generator.generate("  what IS the 70%   RULE? ")
            return first, second, queries_after_first

        first, second, queries_after_first = _run(scenario())

        scoped = [q["category"] for q in h.store.queries if q["category"] is not None]
        assert scoped == [taxonomy.FUNDAMENTALS]
        assert second.cached is True
        assert second.response == first.response
        assert [s.slug for s in second.sources] == [s.slug for s in first.sources]
        assert len(h.store.queries) == queries_after_first
        assert len(h.llm.calls) == 1
        assert h.metrics.records[-1].cached is True

    def test_simple_query_narrows_search(self):
        h = _Harness()
        result = _run(h.generator.generate("What is the 70% rule?"))
        assert len(result.search_results) == 3

    def test_complex_query_widens_search(self):
        h = _Harness(classification={"intent": "comparison", "topics": [], "complexity": "complex"})
        _run(h.generator.generate("Compare double close vs assignment"))
        fallback = [q for q in h.store.queries if q["category"] is None]
        assert fallback[0]["limit"] == 8

    def test_predicted_tools_widen_search_categories(self):
        h = _Harness()
        _run(h.generator.generate("What's a fair MAO if the ARV is 200k?"))
        scoped = {q["category"] for q in h.store.queries if q["category"] is not None}
        assert {taxonomy.FUNDAMENTALS, taxonomy.DEAL_ANALYSIS, taxonomy.DATA_SOURCES} <= scoped
        assert taxonomy.DATA_SOURCES in h.metrics.records[0].categories

    def test_skip_cache_forces_fresh_answers(self):
        h = _Harness()
        options = GenerationOptions(skip_cache=True)

        async def scenario():
            await h.generator.generate("What is the 70% rule?", options)
            await h.generator.wait_for_background_tasks()
            return await h.generator.generate("What is the 70% rule?", options)

        second = _run(scenario())
        assert second.cached is False
        assert len(h.llm.calls) == 2
        assert query_cache_key("What is the 70% rule?") not in h.redis.data

    def test_skip_classification(self):
        h = _Harness()
        result = _run(h.generator.generate(
            "What is the 70% rule?", GenerationOptions(skip_classification=True),
        ))
        assert result.classification is None
        assert h.fast_llm.calls == []

    def test_additional_context_is_used_but_not_cached(self):
        h = _Harness()

        async def scenario():
            await h.generator.generate(
                "What is the 70% rule?", additional_context="### Probate\nCourt approval.",
            )
            await h.generator.wait_for_background_tasks()

        _run(scenario())
        assert "Additional relevant knowledge" in h.llm.calls[0]["messages"][-1]["content"]
        assert query_cache_key("What is the 70% rule?") not in h.redis.data

    def test_history_is_forwarded(self):
        h = _Harness()
        history = [
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello! Ask me about wholesaling."},
        ]
        _run(h.generator.generate("What is the 70% rule?", messages=history))
        messages = h.llm.calls[0]["messages"]
        assert messages[:2] == history
        assert messages[-1]["role"] == "user"

    def test_empty_query_rejected(self):
        h = _Harness()
        with pytest.raises(QueryValidationError):
            _run(h.generator.generate("   "))
        assert h.store.queries == []

    def test_llm_failure_raises_generation_error_with_cause(self):
        cause = RuntimeError("provider exploded")
        h = _Harness(llm=FakeLLM(error=cause))
        with pytest.raises(GenerationError) as exc_info:
            _run(h.generator.generate("What is the 70% rule?"))
        assert exc_info.value.__cause__ is cause

    def test_search_failure_propagates(self):
        h = _Harness(store=FakeStore(error=RuntimeError("db down")))
        with pytest.raises(RuntimeError, match="db down"):
            _run(h.generator.generate("What is the 70% rule?"))

    def test_redis_outage_degrades_gracefully(self):
        h = _Harness(redis=FailingRedis())

        async def scenario():
            result = await h.generator.generate("What is the 70% rule?", session_id="s1")
            await h.generator.wait_for_background_tasks()
            return result

        result = _run(scenario())
        assert result.response
        assert result.cached is False

    def test_metrics_recorded(self):
        h = _Harness()
        _run(h.generator.generate("What is the 70% rule?"))
        record = h.metrics.records[0]
        assert record.query_length == len("What is the 70% rule?")
        assert record.results_found == 3
        assert record.complexity == "simple"
        assert record.categories == [taxonomy.FUNDAMENTALS]
        assert record.cached is False


# ---------------------------------------------------------------------------
# Test: Streaming
# ---------------------------------------------------------------------------


class TestGenerateStreaming:
    def test_event_order_and_text(self):
        h = _Harness()
        chunks = _run(h.collect("What is the 70% rule?"))
        types = [c.type for c in chunks]

        assert types[0] == "classification"
        assert types[1] == "sources"
        assert types[-1] == "done"
        assert set(types[2:-1]) == {"text"}
        assert "".join(c.content for c in chunks if c.type == "text") == "".join(ANSWER_FRAGMENTS)
        assert isinstance(chunks[0].content, QueryClassification)
        assert all(isinstance(s, Source) for s in chunks[1].content)

    def test_buffering_avoids_sub_word_chunks(self):
        fragments = ["Th", "e 7", "0% ru", "le caps ", "the offer ", "at seventy ", "percent."]
        h = _Harness(llm=FakeLLM(fragments=fragments))
        chunks = _run(h.collect("What is the 70% rule?"))
        texts = [c.content for c in chunks if c.type == "text"]
        assert len(texts) < len(fragments)
        assert all(t.endswith((" ", ".")) for t in texts)
        assert "".join(texts) == "".join(fragments)

    def test_unbuffered_stream_forwards_raw_fragments(self):
        h = _Harness()
        chunks = _run(h.collect("What is the 70% rule?", options=GenerationOptions(buffer_streaming=False)))
        assert [c.content for c in chunks if c.type == "text"] == ANSWER_FRAGMENTS

    def test_cache_hit_streams_cached_chunk(self):
        h = _Harness()

        async def scenario():
            await h.collect("What is the 70% rule?")
            await h.generator.wait_for_background_tasks()
            return await h.collect("what is the 70% rule?")

        chunks = _run(scenario())
        assert [c.type for c in chunks] == ["classification", "sources", "cached", "done"]
        assert chunks[2].content == "".join(ANSWER_FRAGMENTS)
        assert len(h.llm.calls) == 1

    def test_skip_classification_omits_classification_event(self):
        h = _Harness()
        chunks = _run(h.collect(
            "What is the 70% rule?", options=GenerationOptions(skip_classification=True),
        ))
        assert chunks[0].type == "sources"

    def test_stream_failure_raises_generation_error(self):
        cause = ConnectionError("stream dropped")
        h = _Harness(llm=FakeLLM(fragments=["The 70% rule "], stream_error=cause))

        async def scenario():
            seen = []
            with pytest.raises(GenerationError) as exc_info:
                async for chunk in h.generator.generate_streaming(
                    "What is the 70% rule?", GenerationOptions(buffer_streaming=False),
                ):
                    seen.append(chunk.type)
            await h.generator.wait_for_background_tasks()
            return seen, exc_info.value

        seen, error = _run(scenario())
        assert seen == ["classification", "sources", "text"]
        assert error.__cause__ is cause
        assert query_cache_key("What is the 70% rule?") not in h.redis.data

    def test_consumer_close_closes_provider_stream(self):
        h = _Harness()

        async def scenario():
            stream = h.generator.generate_streaming(
                "What is the 70% rule?", GenerationOptions(buffer_streaming=False),
            )
            async for chunk in stream:
                if chunk.type == "text":
                    break
            await stream.aclose()
            await h.generator.wait_for_background_tasks()

        _run(scenario())
        assert h.llm.stream_closed is True
        assert query_cache_key("What is the 70% rule?") not in h.redis.data

    def test_as_dict_is_json_ready(self):
        chunk = StreamChunk("sources", [Source(title="T", slug="t", category="Fundamentals", relevance=0.5)])
        assert chunk.as_dict() == {
            "type": "sources",
            "content": [{"title": "T", "slug": "t", "category": "Fundamentals", "relevance": 0.5}],
        }


# ---------------------------------------------------------------------------
# Test: Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_follow_up_does_not_repeat_documents(self):
        h = _Harness()
        options = GenerationOptions(search_limit=1)

        async def scenario():
            first = await h.generator.generate(
                "What is the 70% rule?", options, session_id="s1",
            )
            history = [
                {"role": "user", "content": "What is the 70% rule?"},
                {"role": "assistant", "content": first.response},
            ]
            second = await h.generator.generate(
                "How does the 70% rule handle repairs?", options,
                session_id="s1", messages=history,
            )
            state = await h.conversation.get_state("s1")
            return first, second, state

        first, second, state = _run(scenario())
        assert [m.document_id for m in first.search_results] == ["d1"]
        assert [m.document_id for m in second.search_results] == ["d2"]
        assert state.fetched_doc_ids == ["d1", "d2"]
        assert state.message_count == 2
        assert "70% rule" in state.accumulated_concepts

    def test_session_answers_stay_out_of_shared_cache(self):
        h = _Harness()
        options = GenerationOptions(search_limit=1)
        follow_up = "How does the 70% rule handle repairs?"

        async def scenario():
            first = await h.generator.generate("What is the 70% rule?", options, session_id="s1")
            history = [
                {"role": "user", "content": "What is the 70% rule?"},
                {"role": "assistant", "content": first.response},
            ]
            await h.generator.generate(follow_up, options, session_id="s1", messages=history)
            await h.generator.wait_for_background_tasks()
            cached_after_session = query_cache_key(follow_up) in h.redis.data
            stranger = await h.generator.generate(follow_up, options)
            return cached_after_session, stranger

        cached_after_session, stranger = _run(scenario())
        assert query_cache_key("What is the 70% rule?") in h.redis.data
        assert cached_after_session is False
        assert stranger.cached is False
        assert [m.document_id for m in stranger.search_results] == ["d1"]

    def test_streamed_answer_with_history_is_not_cached(self):
        h = _Harness()

        async def scenario():
            await h.collect(
                "What is the 70% rule?",
                session_id="s1",
                messages=[{"role": "user", "content": "Hi"}],
            )
            await h.generator.wait_for_background_tasks()

        _run(scenario())
        assert query_cache_key("What is the 70% rule?") not in h.redis.data

    def test_topic_change_allows_seen_documents(self):
        h = _Harness(classification={"intent": "question", "topics": [], "complexity": "moderate"})

        async def scenario():
            await h.conversation.record_retrieval(
                "s1", [taxonomy.FUNDAMENTALS], ["d1", "d2", "d3"], ["arv"],
            )
            return await h.generator.generate(
                "Who is a good cash buyer for a flip?",
                session_id="s1",
                messages=[{"role": "user", "content": "What is ARV?"}],
            )

        result = _run(scenario())
        assert "d1" in {m.document_id for m in result.search_results}


# ---------------------------------------------------------------------------
# Test: Tool-result augmentation
# ---------------------------------------------------------------------------


class TestToolResults:
    def test_probate_output_retrieves_legal_knowledge(self):
        h = _Harness()

        async def scenario():
            augmentation = await h.generator.augment_with_tool_result(
                "s1", "property_lookup", {"status": "Pending probate sale"},
            )
            state = await h.conversation.get_state("s1")
            return augmentation, state

        augmentation, state = _run(scenario())
        assert augmentation.analysis.should_retrieve is True
        assert taxonomy.LEGAL_COMPLIANCE in augmentation.analysis.suggested_categories
        assert "Probate sales need court approval." in augmentation.retrieval.additional_context
        assert "doc-d5" in [s.slug for s in augmentation.retrieval.sources]
        assert taxonomy.LEGAL_COMPLIANCE in state.fetched_categories
        assert "d5" in state.fetched_doc_ids

    def test_no_retrieval_once_categories_fetched(self):
        h = _Harness()

        async def scenario():
            await h.conversation.record_retrieval(
                "s1", [taxonomy.LEGAL_COMPLIANCE, taxonomy.RISK_FACTORS], ["d9"],
            )
            return await h.generator.augment_with_tool_result(
                "s1", "property_lookup", "pending probate sale",
            )

        augmentation = _run(scenario())
        assert augmentation.analysis.should_retrieve is False
        assert augmentation.retrieval.sources == []
        assert h.store.queries == []

    def test_without_session(self):
        h = _Harness()
        augmentation = _run(h.generator.augment_with_tool_result(None, "t", "tax lien found"))
        assert augmentation.analysis.should_retrieve is True
        assert augmentation.tool_name == "t"
