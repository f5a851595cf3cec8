# =============================================================================
# Unit Tests — Query Classifier & Reformulator
# =============================================================================
#
# Both agents return tagged results: an "llm" variant when the fast-tier
# model answered with valid JSON, and a keyword variant otherwise. Neither
# ever raises.
# =============================================================================

import asyncio
import json

from tests.fakes import FakeLLM, _run
from wholesale_rag.agents.classifier import (
    QueryClassifier,
    keyword_classification,
    parse_json_payload,
    search_limit_for,
    _ClassificationPayload,
)
from wholesale_rag.agents.reformulator import (
    QueryReformulator,
    is_action_query,
    is_knowledge_seeking,
)
from wholesale_rag.services import taxonomy


class _SlowLLM:
    def __init__(self, delay: float):
        self.delay = delay

    async def complete(self, messages, system=None, temperature=None, max_tokens=None):
        await asyncio.sleep(self.delay)
        raise AssertionError("should have timed out")


# ---------------------------------------------------------------------------
# Test: JSON payload parsing
# ---------------------------------------------------------------------------


class TestParseJsonPayload:
    def test_plain_json(self):
        payload = parse_json_payload(
            '{"intent": "how-to", "topics": ["offer"], "complexity": "simple"}',
            _ClassificationPayload,
        )
        assert payload.intent == "how-to"
        assert payload.topics == ["offer"]

    def test_code_fenced_json(self):
        text = '```json\n{"intent": "calculation", "topics": [], "complexity": "complex"}\n```'
        payload = parse_json_payload(text, _ClassificationPayload)
        assert payload.intent == "calculation"
        assert payload.complexity == "complex"

    def test_prose_around_json(self):
        text = 'Sure! {"intent": "question"} Hope that helps.'
        assert parse_json_payload(text, _ClassificationPayload).intent == "question"

    def test_not_json_returns_none(self):
        assert parse_json_payload("I cannot classify that.", _ClassificationPayload) is None

    def test_unknown_labels_fall_back_to_defaults(self):
        payload = parse_json_payload(
            '{"intent": "gossip", "topics": "arv", "complexity": "epic"}',
            _ClassificationPayload,
        )
        assert payload.intent == "general"
        assert payload.complexity == "moderate"
        assert payload.topics == []


# ---------------------------------------------------------------------------
# Test: Classifier
# ---------------------------------------------------------------------------


class TestQueryClassifier:
    def test_llm_classification_maps_topics_to_categories(self):
        llm = FakeLLM(reply=json.dumps(
            {"intent": "question", "topics": ["70% rule"], "complexity": "simple"}
        ))
        result = _run(QueryClassifier(llm).classify("What is the 70% rule?"))

        assert result.source == "llm"
        assert result.classification.intent == "question"
        assert result.classification.complexity == "simple"
        assert result.classification.categories == [taxonomy.FUNDAMENTALS]
        assert llm.calls[0]["temperature"] == 0.0

    def test_query_keywords_add_categories(self):
        llm = FakeLLM(reply=json.dumps(
            {"intent": "how-to", "topics": ["offer"], "complexity": "moderate"}
        ))
        result = _run(QueryClassifier(llm).classify("How do I handle a probate seller objection?"))
        categories = result.classification.categories
        assert taxonomy.NEGOTIATIONS in categories
        assert taxonomy.FILTER_SYSTEM in categories

    def test_unparseable_reply_uses_keyword_fallback(self):
        llm = FakeLLM(reply="not json at all")
        result = _run(QueryClassifier(llm).classify("What is the 70% rule?"))
        assert result.source == "keyword_fallback"
        assert result.confidence == 0.5
        assert result.classification.categories == [taxonomy.FUNDAMENTALS]

    def test_provider_error_uses_keyword_fallback(self):
        llm = FakeLLM(error=RuntimeError("provider down"))
        result = _run(QueryClassifier(llm).classify("cash buyer list"))
        assert result.source == "keyword_fallback"
        assert taxonomy.BUYER_INTELLIGENCE in result.classification.categories

    def test_timeout_uses_keyword_fallback(self):
        result = _run(QueryClassifier(_SlowLLM(1.0), timeout=0.01).classify("arv"))
        assert result.source == "keyword_fallback"

    def test_keyword_classification_defaults(self):
        classification = keyword_classification("anything at all")
        assert classification.intent == "general"
        assert classification.complexity == "moderate"
        assert classification.topics == []


class TestSearchLimitFor:
    def test_simple_narrows(self):
        assert search_limit_for("simple", 5) == 3

    def test_simple_never_widens(self):
        assert search_limit_for("simple", 2) == 2

    def test_complex_widens(self):
        assert search_limit_for("complex", 5) == 8

    def test_moderate_keeps_base(self):
        assert search_limit_for("moderate", 5) == 5


# ---------------------------------------------------------------------------
# Test: Reformulator
# ---------------------------------------------------------------------------


class TestQueryShape:
    def test_knowledge_seeking(self):
        assert is_knowledge_seeking("What is the 70% rule?")
        assert is_knowledge_seeking("explain double closing")
        assert not is_knowledge_seeking("Find deals in Miami")

    def test_action(self):
        assert is_action_query("Find deals in Miami under $200,000")
        assert is_action_query("analyze 123 Main St")
        assert not is_action_query("probate leads")


class TestQueryReformulator:
    def test_knowledge_query_passes_through_without_llm(self):
        llm = FakeLLM(reply="{}")
        result = _run(QueryReformulator(llm).reformulate("What is the 70% rule?"))

        assert result.source == "passthrough"
        assert result.knowledge_query == "What is the 70% rule?"
        assert result.confidence == 0.9
        assert result.categories == [taxonomy.FUNDAMENTALS]
        assert llm.calls == []

    def test_action_query_rewritten_by_llm(self):
        llm = FakeLLM(reply=json.dumps({
            "knowledgeQuery": "deal analysis property search price filtering Miami market",
            "concepts": ["deal_analysis", "property_search", "price_filtering", "market_analysis"],
        }))
        query = "Find deals in Miami under $200,000"
        result = _run(QueryReformulator(llm).reformulate(query))

        assert result.source == "llm"
        assert result.is_action_query is True
        assert result.confidence == 0.85
        assert result.knowledge_query != query
        assert "deal analysis" in result.knowledge_query
        assert taxonomy.MARKET_ANALYSIS in result.categories
        assert taxonomy.FILTER_SYSTEM in result.categories

    def test_action_query_falls_back_to_keywords_on_timeout(self):
        query = "Find deals in Miami under $200,000"
        result = _run(QueryReformulator(_SlowLLM(1.0), timeout=0.01).reformulate(query))

        assert result.source == "keyword_fallback"
        assert result.is_action_query is True
        assert result.confidence == 0.7
        assert result.knowledge_query.startswith(query)
        assert "price" in result.concepts and "market" in result.concepts
        assert taxonomy.MARKET_ANALYSIS in result.categories
        assert taxonomy.FILTER_SYSTEM in result.categories

    def test_unparseable_llm_reply_falls_back(self):
        llm = FakeLLM(reply="Sorry, I can't help with that.")
        result = _run(QueryReformulator(llm).reformulate("Score this seller's motivation"))
        assert result.source == "keyword_fallback"
        assert "motivation" in result.concepts

    def test_other_queries_use_keywords_without_llm(self):
        llm = FakeLLM(reply="{}")
        result = _run(QueryReformulator(llm).reformulate("probate leads near me"))
        assert result.source == "keyword_fallback"
        assert result.is_action_query is False
        assert llm.calls == []

    def test_no_concepts_gives_low_confidence(self):
        result = _run(QueryReformulator(FakeLLM()).reformulate("hello there"))
        assert result.knowledge_query == "hello there"
        assert result.confidence == 0.5
        assert result.concepts == []
