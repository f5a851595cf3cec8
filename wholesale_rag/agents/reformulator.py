# =============================================================================
# Query Reformulator — Action Queries → Knowledge Queries
# =============================================================================
#
# Users often phrase requests as actions ("Find deals in Miami under
# $200k"). Embedding that literal imperative retrieves poorly, because the
# knowledge base explains concepts rather than performing searches. The
# reformulator rewrites such queries into domain-concept terms:
#
#   "Find deals in Miami under 200k"
#     → "deal analysis property search price filtering wholesale
#        opportunities Miami market affordable properties"
#
# DECISION TREE:
# 1. Knowledge-seeking ("what is", "how do", "explain", ...) → pass through
#    unchanged (confidence 0.9, no LLM call)
# 2. Action verb ("find", "analyze", "score", ...) → fast-tier LLM rewrite,
#    bounded by asyncio.wait_for (confidence 0.85)
# 3. Otherwise, or when the LLM times out / fails / returns junk → keyword
#    concepts appended to the query (confidence 0.7, or 0.5 with no concepts)
#
# reformulate() never raises.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from wholesale_rag.agents.classifier import parse_json_payload
from wholesale_rag.services import taxonomy
from wholesale_rag.services.llm import LLMProvider

logger = logging.getLogger(__name__)

_KNOWLEDGE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^what (is|are)\b",
        r"^how (do|does|can|should)\b",
        r"^why (do|does|is|are)\b",
        r"^explain\b",
        r"^define\b",
        r"^tell me about\b",
        r"^describe\b",
        r"\bmeaning of\b",
        r"\bdifference between\b",
        r"^when (do|should|can)\b",
    )
]

_ACTION_PATTERN = re.compile(
    r"^(find|search|get|show|list|analy[sz]e|calculate|score|match|create|"
    r"generate|run|check|look up|pull)\b",
    re.IGNORECASE,
)

_REFORMULATE_PROMPT = """Convert this real estate action query into domain concepts for knowledge retrieval.

Action Query: "{query}"

Extract the key domain concepts that would help retrieve relevant knowledge. Return JSON only:
{{"knowledgeQuery": "<space-separated domain terms and concepts>", "concepts": ["concept1", "concept2", ...]}}

Examples:
- "Find deals in Miami under 200k" -> {{"knowledgeQuery": "deal analysis property search price filtering wholesale opportunities Miami market affordable properties", "concepts": ["deal_analysis", "property_search", "price_filtering", "market_analysis"]}}
- "Score this seller's motivation" -> {{"knowledgeQuery": "seller motivation scoring distress signals equity analysis ownership patterns absentee owner indicators", "concepts": ["motivation_scoring", "seller_analysis", "distress_signals"]}}
- "Match buyers to 123 Main St" -> {{"knowledgeQuery": "buyer matching property criteria cash buyer preferences investor requirements deal assignment", "concepts": ["buyer_matching", "property_criteria", "deal_assignment"]}}"""


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


class _ReformulationPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    knowledge_query: str = Field(
        default="", validation_alias=AliasChoices("knowledgeQuery", "knowledge_query"),
    )
    concepts: list[str] = []

    @field_validator("concepts", mode="before")
    @classmethod
    def _concept_strings(cls, value: object) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(c).strip() for c in value if str(c).strip()]


@dataclass
class ReformulatedQuery:
    original_query: str
    knowledge_query: str
    concepts: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    confidence: float = 0.5
    is_action_query: bool = False
    source: Literal["passthrough", "llm", "keyword_fallback"] = "keyword_fallback"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def is_knowledge_seeking(query: str) -> bool:
    stripped = query.strip()
    return any(p.search(stripped) for p in _KNOWLEDGE_PATTERNS)


def is_action_query(query: str) -> bool:
    return _ACTION_PATTERN.search(query.strip()) is not None


class QueryReformulator:
    """
    Rewrites action queries into knowledge-seeking ones.

    Args:
        llm: Fast-tier provider.
        timeout: Seconds to wait for the LLM before using keywords.
        max_concepts: Cap on returned concepts.
        max_tokens: Output budget for the JSON reply.
    """

    def __init__(
        self,
        llm: LLMProvider,
        timeout: float = 1.5,
        max_concepts: int = 6,
        max_tokens: int = 200,
    ) -> None:
        self._llm = llm
        self.timeout = timeout
        self.max_concepts = max_concepts
        self.max_tokens = max_tokens

    async def reformulate(self, query: str) -> ReformulatedQuery:
        if is_knowledge_seeking(query):
            concepts = taxonomy.extract_concepts(query)
            return ReformulatedQuery(
                original_query=query,
                knowledge_query=query,
                concepts=concepts[:self.max_concepts],
                categories=taxonomy.categories_for_concepts(concepts),
                confidence=0.9,
                is_action_query=False,
                source="passthrough",
            )

        action = is_action_query(query)
        if action:
            payload = await self._rewrite_with_llm(query)
            if payload is not None:
                return ReformulatedQuery(
                    original_query=query,
                    knowledge_query=payload.knowledge_query or query,
                    concepts=payload.concepts[:self.max_concepts],
                    categories=taxonomy.merge_categories(
                        taxonomy.categories_for_concepts(payload.concepts),
                        taxonomy.categories_for_query(query),
                    ),
                    confidence=0.85,
                    is_action_query=True,
                    source="llm",
                )

        return self._keyword_fallback(query, action)

    async def _rewrite_with_llm(self, query: str) -> _ReformulationPayload | None:
        try:
            response = await asyncio.wait_for(
                self._llm.complete(
                    messages=[{"role": "user", "content": _REFORMULATE_PROMPT.format(query=query)}],
                    temperature=0.0,
                    max_tokens=self.max_tokens,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.info("Reformulation timed out after %.1fs, using keywords", self.timeout)
            return None
        except Exception as e:
            logger.warning("Reformulation call failed, using keywords: %s", e)
            return None

        payload = parse_json_payload(response.content, _ReformulationPayload)
        if payload is None:
            logger.warning("Unparseable reformulation reply, using keywords")
        return payload

    def _keyword_fallback(self, query: str, action: bool) -> ReformulatedQuery:
        concepts = taxonomy.extract_concepts(query)
        knowledge_query = f"{query} {' '.join(concepts)}" if concepts else query
        return ReformulatedQuery(
            original_query=query,
            knowledge_query=knowledge_query,
            concepts=concepts[:self.max_concepts],
            categories=taxonomy.categories_for_concepts(concepts),
            confidence=0.7 if concepts else 0.5,
            is_action_query=action,
            source="keyword_fallback",
        )
