# =============================================================================
# Unit Tests — Concept Taxonomy & Tool Hints
# =============================================================================

from wholesale_rag.models.rag import QueryClassification
from wholesale_rag.services import taxonomy


class TestConcepts:
    def test_keywords_match_at_word_start(self):
        concepts = taxonomy.extract_concepts("Negotiating with a motivated seller")
        assert "negotiat" in concepts
        assert "motivated seller" in concepts
        assert "arv" not in taxonomy.extract_concepts("Harvest season")

    def test_price_and_location_cues(self):
        concepts = taxonomy.extract_concepts("Find deals in Miami under $200,000")
        assert "price" in concepts
        assert "market" in concepts

    def test_merge_categories_keeps_first_seen_order(self):
        merged = taxonomy.merge_categories(
            [taxonomy.FUNDAMENTALS, taxonomy.NEGOTIATIONS],
            [taxonomy.NEGOTIATIONS, taxonomy.RISK_FACTORS],
        )
        assert merged == [taxonomy.FUNDAMENTALS, taxonomy.NEGOTIATIONS, taxonomy.RISK_FACTORS]


class TestToolHints:
    def test_every_hint_uses_known_categories(self):
        for tool_id, hint in taxonomy.TOOL_HINTS.items():
            assert set(hint.categories) <= set(taxonomy.CATEGORIES), tool_id
            assert hint.priority in ("low", "medium", "high"), tool_id

    def test_predict_likely_tools(self):
        tools = taxonomy.predict_likely_tools("What's the MAO if the ARV is 200k?")
        assert tools == [
            "deal_analysis.calculate_mao",
            "property.valuation",
            "property.comps",
        ]

    def test_patterns_start_at_word_boundary(self):
        assert taxonomy.predict_likely_tools("Tell me about the harvest festival") == []
        assert taxonomy.predict_likely_tools("What is the 70% rule?") == []

    def test_multiple_patterns_union(self):
        tools = taxonomy.predict_likely_tools("Is there a lien? Also how do I negotiate?")
        assert tools == ["property.issues", "deal.generate_offer_strategy"]

    def test_hints_for_tools_ignores_unknown_ids(self):
        categories, keywords = taxonomy.hints_for_tools(["property.issues", "nope.unknown"])
        assert categories == [taxonomy.RISK_FACTORS, taxonomy.LEGAL_COMPLIANCE]
        assert "lien" in keywords

    def test_tool_aware_categories_merges_classification(self):
        classification = QueryClassification(categories=[taxonomy.OUTREACH])
        categories = taxonomy.tool_aware_categories("Find a cash buyer for this flip", classification)
        assert categories == [
            taxonomy.OUTREACH,
            taxonomy.BUYER_INTELLIGENCE,
            taxonomy.AI_TOOLS,
        ]

    def test_tool_aware_categories_without_classification(self):
        assert taxonomy.tool_aware_categories("What is the 70% rule?") == []
        assert taxonomy.tool_aware_categories("Any red flags here?", None) == [
            taxonomy.RISK_FACTORS, taxonomy.LEGAL_COMPLIANCE,
        ]

    def test_high_priority_tools(self):
        high = taxonomy.high_priority_tools()
        assert "deal_analysis.calculate_mao" in high
        assert "property.issues" in high
        assert "notification.send_sms" not in high
