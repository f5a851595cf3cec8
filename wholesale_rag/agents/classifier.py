# =============================================================================
# Query Classifier — Intent, Topics, Complexity
# =============================================================================
#
# One fast-tier LLM call (temperature 0, compact JSON) labels the query:
#   intent:     question | how-to | calculation | comparison | general
#   topics:     2-4 domain terms
#   complexity: simple | moderate | complex
# Topics and the raw query are mapped to knowledge-base categories through
# the shared taxonomy, which scopes the vector search. Complexity sets
# search breadth (simple → fewer chunks, complex → more).
#
# The result is a tagged value: source="llm" when the model answered with
# valid JSON, source="keyword_fallback" when it failed, timed out or
# returned junk. classify() never raises.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Literal, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from wholesale_rag.models.rag import QueryClassification
from wholesale_rag.services import taxonomy
from wholesale_rag.services.llm import LLMProvider

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_INTENTS = {"question", "how-to", "calculation", "comparison", "general"}
_COMPLEXITIES = {"simple", "moderate", "complex"}
_MAX_TOPICS = 6

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


class _ClassificationPayload(BaseModel):
    """Shape the LLM is asked to return. Unknown labels fall back to defaults."""

    model_config = ConfigDict(extra="ignore")

    intent: str = "general"
    topics: list[str] = []
    complexity: str = "moderate"

    @field_validator("intent", mode="before")
    @classmethod
    def _known_intent(cls, value: object) -> str:
        value = str(value or "").strip().lower()
        return value if value in _INTENTS else "general"

    @field_validator("complexity", mode="before")
    @classmethod
    def _known_complexity(cls, value: object) -> str:
        value = str(value or "").strip().lower()
        return value if value in _COMPLEXITIES else "moderate"

    @field_validator("topics", mode="before")
    @classmethod
    def _topic_strings(cls, value: object) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(t).strip() for t in value if str(t).strip()][:_MAX_TOPICS]


@dataclass
class ClassificationResult:
    classification: QueryClassification
    source: Literal["llm", "keyword_fallback"]
    confidence: float


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

_CLASSIFY_PROMPT = """Classify this real estate wholesaling query. Respond with JSON only, no markdown.

Query: "{query}"

Output format: {{"intent": "<type>", "topics": ["<topic1>", "<topic2>"], "complexity": "<level>"}}

Intent types: question, how-to, calculation, comparison, general

Topics - extract 2-4 specific terms from this list that match the query:
- Formulas & Core Concepts: 70% rule, ARV, MAO, repair estimates, comps, closing costs, wholesale fee
- Filters & Leads: absentee owner, probate, foreclosure, tax lien, vacant, distress, expired listing, high equity, list stacking
- Buyers: cash buyer, investor, buyer list, buyer criteria, proof of funds, fix and flip, BRRRR
- Market: neighborhood, days on market, absorption rate, competition, market trends
- Deals: deal analysis, property condition, due diligence, rehab scope, walkthrough
- Negotiations: offer, counter-offer, objection handling, closing techniques, rapport
- Outreach: cold calling, direct mail, SMS, scripts, follow-up, marketing campaign
- Risk: red flags, liens, title issues, fraud, deal killers, mistakes
- Legal: contracts, disclosure, assignment, double close, earnest money, contingencies, LLC
- Examples: case study, success story, step by step, real deal

Complexity: simple (1 topic), moderate (2-3 topics), complex (4+ topics or cross-category)"""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_json_payload(text: str, model: type[ModelT]) -> ModelT | None:
    """
    Parse an LLM reply into ``model``; None if it is not valid JSON of that shape.

    Tolerates markdown code fences and prose around a single JSON object.
    """
    cleaned = _CODE_FENCE_RE.sub("", text.strip())
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return model.model_validate(json.loads(cleaned[start:end + 1]))
    except (json.JSONDecodeError, ValidationError):
        return None


def keyword_classification(query: str) -> QueryClassification:
    """Fallback classification from taxonomy keywords alone."""
    return QueryClassification(
        intent="general",
        topics=[],
        complexity="moderate",
        categories=taxonomy.categories_for_query(query),
    )


class QueryClassifier:
    """
    Fast-tier LLM classifier with a keyword fallback.

    Args:
        llm: Fast-tier provider.
        max_tokens: Output budget for the JSON reply.
        timeout: Optional bound on the LLM call, in seconds.
    """

    def __init__(
        self,
        llm: LLMProvider,
        max_tokens: int = 200,
        timeout: float | None = None,
    ) -> None:
        self._llm = llm
        self.max_tokens = max_tokens
        self.timeout = timeout

    async def classify(self, query: str) -> ClassificationResult:
        try:
            response = await asyncio.wait_for(
                self._llm.complete(
                    messages=[{"role": "user", "content": _CLASSIFY_PROMPT.format(query=query)}],
                    temperature=0.0,
                    max_tokens=self.max_tokens,
                ),
                timeout=self.timeout,
            )
        except Exception as e:
            logger.warning("Classification call failed, using keywords: %s", e)
            return self._fallback(query)

        payload = parse_json_payload(response.content, _ClassificationPayload)
        if payload is None:
            logger.warning("Unparseable classification reply, using keywords")
            return self._fallback(query)

        classification = QueryClassification(
            intent=payload.intent,
            topics=payload.topics,
            complexity=payload.complexity,
            categories=taxonomy.merge_categories(
                taxonomy.categories_for_concepts(payload.topics),
                taxonomy.categories_for_query(query),
            ),
        )
        logger.debug(
            "Classified query: intent=%s complexity=%s categories=%s",
            classification.intent, classification.complexity, classification.categories,
        )
        return ClassificationResult(classification, source="llm", confidence=0.9)

    @staticmethod
    def _fallback(query: str) -> ClassificationResult:
        return ClassificationResult(
            keyword_classification(query), source="keyword_fallback", confidence=0.5,
        )


def search_limit_for(complexity: str, base_limit: int, simple_limit: int = 3, complex_limit: int = 8) -> int:
    """Search breadth for a complexity level."""
    if complexity == "simple":
        return min(base_limit, simple_limit)
    if complexity == "complex":
        return max(base_limit, complex_limit)
    return base_limit
