# =============================================================================
# Dynamic Retrieval — Knowledge Lookups Triggered by Tool Output
# =============================================================================
#
# When a tool returns data mentioning something the session has not
# retrieved knowledge for ("pending probate sale", "mechanic lien"), the
# analyzer spots it and runs one small, category-scoped search so the next
# answer can explain it.
#
#   analyze()   keyword scan over the stringified tool output
#   retrieve()  bounded search (default 3 chunks) over the suggested
#               categories, excluding documents the session already saw
#
# retrieve() is best-effort: any failure is logged and yields an empty
# result so a tool call never fails because of it.
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from wholesale_rag.agents.search import VectorSearch
from wholesale_rag.models.rag import Source
from wholesale_rag.services import taxonomy

logger = logging.getLogger(__name__)

HIGH_PRIORITY_TERMS = (
    "probate", "lien", "bankruptcy", "foreclosure", "fraud",
    "red flag", "title issue", "code violation", "condemned",
)


@dataclass
class ToolResultAnalysis:
    matched_terms: list[str] = field(default_factory=list)
    suggested_categories: list[str] = field(default_factory=list)
    urgency: str = "none"
    should_retrieve: bool = False
    trigger_groups: list[str] = field(default_factory=list)


@dataclass
class DynamicRetrievalResult:
    additional_context: str = ""
    sources: list[Source] = field(default_factory=list)
    retrieved_categories: list[str] = field(default_factory=list)
    document_ids: list[str] = field(default_factory=list)


def stringify_tool_output(tool_output: Any) -> str:
    if isinstance(tool_output, str):
        return tool_output.lower()
    return json.dumps(tool_output, default=str).lower()


class DynamicRetrievalAnalyzer:
    """
    Scans tool results for domain terms and fetches matching knowledge.

    Args:
        search: Vector search used for the bounded follow-up lookup.
        limit: Maximum chunks per retrieval.
        threshold: Minimum similarity for those chunks.
    """

    def __init__(self, search: VectorSearch, limit: int = 3, threshold: float = 0.5) -> None:
        self._search = search
        self.limit = limit
        self.threshold = threshold

    def analyze(
        self,
        tool_output: Any,
        existing_categories: Iterable[str] = (),
    ) -> ToolResultAnalysis:
        text = stringify_tool_output(tool_output)
        existing = set(existing_categories)

        matched: dict[str, None] = {}
        suggested: dict[str, None] = {}
        groups: list[str] = []
        urgency = "none"

        for name, group in taxonomy.RETRIEVAL_TRIGGERS.items():
            hits = [t for t in group.terms if taxonomy.contains_term(text, t)]
            if not hits:
                continue
            groups.append(name)
            matched.update(dict.fromkeys(hits))
            suggested.update(dict.fromkeys(c for c in group.categories if c not in existing))
            if taxonomy.URGENCY_RANK[group.urgency] > taxonomy.URGENCY_RANK[urgency]:
                urgency = group.urgency

        should_retrieve = bool(matched) and bool(suggested) and urgency != "none"
        if groups:
            logger.debug(
                "Tool output triggers=%s urgency=%s retrieve=%s",
                groups, urgency, should_retrieve,
            )

        return ToolResultAnalysis(
            matched_terms=list(matched),
            suggested_categories=list(suggested),
            urgency=urgency,
            should_retrieve=should_retrieve,
            trigger_groups=groups,
        )

    async def retrieve(
        self,
        analysis: ToolResultAnalysis,
        exclude_doc_ids: Iterable[str] = (),
    ) -> DynamicRetrievalResult:
        if not analysis.should_retrieve or not analysis.suggested_categories:
            return DynamicRetrievalResult()

        try:
            matches = await self._search.search(
                " ".join(analysis.matched_terms),
                limit=self.limit,
                threshold=self.threshold,
                categories=analysis.suggested_categories,
                exclude_doc_ids=exclude_doc_ids,
            )
        except Exception as e:
            logger.warning("Dynamic retrieval failed: %s", e)
            return DynamicRetrievalResult()

        if not matches:
            return DynamicRetrievalResult()

        sections = [f"### {m.title}\n{m.content}" for m in matches]
        sources: dict[str, Source] = {}
        for m in matches:
            sources.setdefault(
                m.slug,
                Source(title=m.title, slug=m.slug, category=m.category, relevance=m.similarity),
            )

        logger.info(
            "Dynamic retrieval added %d chunks for %s", len(matches), analysis.trigger_groups,
        )
        return DynamicRetrievalResult(
            additional_context="\n\n".join(sections),
            sources=list(sources.values()),
            retrieved_categories=list(dict.fromkeys(m.category for m in matches)),
            document_ids=list(dict.fromkeys(m.document_id for m in matches)),
        )


def might_need_re_retrieval(tool_output: Any) -> bool:
    """Cheap pre-filter: does the output mention any high-priority term?"""
    text = stringify_tool_output(tool_output)
    return any(term in text for term in HIGH_PRIORITY_TERMS)


def trigger_terms_by_urgency(urgency: str) -> list[str]:
    terms: dict[str, None] = {}
    for group in taxonomy.RETRIEVAL_TRIGGERS.values():
        if group.urgency == urgency:
            terms.update(dict.fromkeys(group.terms))
    return list(terms)
