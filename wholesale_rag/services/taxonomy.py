# =============================================================================
# Concept Taxonomy — Shared Domain Vocabulary
# =============================================================================
#
# One vocabulary feeds every keyword-driven decision in the pipeline:
#   - QueryClassifier: LLM topics + raw query keywords → categories
#   - QueryReformulator: keyword concept extraction (fallback path)
#   - ConversationContext: per-turn topic detection and topic → categories
#   - DynamicRetrievalAnalyzer: tool-result trigger vocabulary
#   - RetrievalPipeline: query phrasing → likely tools → their categories
#
# MATCHING:
# Keywords match at the START of a word (`\b` + keyword), so "negotiat"
# matches "negotiating" and "arv" does not match "harvest". Multi-word
# keywords match as phrases. Underscores in LLM-produced concept names
# ("market_analysis") are treated as spaces.
# =============================================================================

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from wholesale_rag.models.rag import QueryClassification

# ---------------------------------------------------------------------------
# Knowledge-Base Categories
# ---------------------------------------------------------------------------

FUNDAMENTALS = "Fundamentals"
FILTER_SYSTEM = "Filter System"
BUYER_INTELLIGENCE = "Buyer Intelligence"
MARKET_ANALYSIS = "Market Analysis"
DEAL_ANALYSIS = "Deal Analysis"
NEGOTIATIONS = "Negotiations"
OUTREACH = "Outreach & Communication"
RISK_FACTORS = "Risk Factors"
LEGAL_COMPLIANCE = "Legal & Compliance"
CASE_STUDIES = "Case Studies & Examples"
# Platform documentation categories (tool guides, data source notes)
AI_TOOLS = "AI Tools"
DATA_SOURCES = "Data Sources"
PLATFORM_WORKFLOWS = "Platform Workflows"

CATEGORIES: tuple[str, ...] = (
    FUNDAMENTALS,
    FILTER_SYSTEM,
    BUYER_INTELLIGENCE,
    MARKET_ANALYSIS,
    DEAL_ANALYSIS,
    NEGOTIATIONS,
    OUTREACH,
    RISK_FACTORS,
    LEGAL_COMPLIANCE,
    CASE_STUDIES,
    AI_TOOLS,
    DATA_SOURCES,
    PLATFORM_WORKFLOWS,
)


# ---------------------------------------------------------------------------
# Concept → Category Map
# ---------------------------------------------------------------------------

CONCEPT_CATEGORIES: dict[str, tuple[str, ...]] = {
    # Fundamentals: core concepts and formulas
    "70% rule": (FUNDAMENTALS,),
    "arv": (FUNDAMENTALS, DEAL_ANALYSIS),
    "after repair value": (FUNDAMENTALS, DEAL_ANALYSIS),
    "repair": (FUNDAMENTALS, DEAL_ANALYSIS),
    "mao": (FUNDAMENTALS, DEAL_ANALYSIS),
    "maximum allowable offer": (FUNDAMENTALS, DEAL_ANALYSIS),
    "motivation": (FUNDAMENTALS,),
    "motivated": (FILTER_SYSTEM, FUNDAMENTALS),
    "motivated seller": (FUNDAMENTALS, FILTER_SYSTEM),
    "comps": (FUNDAMENTALS,),
    "comparable": (FUNDAMENTALS,),
    "closing cost": (FUNDAMENTALS,),
    "wholesale fee": (FUNDAMENTALS,),
    "assignment fee": (FUNDAMENTALS, LEGAL_COMPLIANCE),
    "profit": (FUNDAMENTALS, DEAL_ANALYSIS),
    "profit margin": (FUNDAMENTALS,),
    "formula": (FUNDAMENTALS,),
    "calculation": (FUNDAMENTALS, DEAL_ANALYSIS),
    "equity": (FILTER_SYSTEM, FUNDAMENTALS),

    # Filter System: lead generation and property filters
    "filter": (FILTER_SYSTEM,),
    "find": (FILTER_SYSTEM, AI_TOOLS),
    "search": (FILTER_SYSTEM, AI_TOOLS),
    "absentee": (FILTER_SYSTEM,),
    "probate": (FILTER_SYSTEM,),
    "foreclosure": (FILTER_SYSTEM,),
    "pre-foreclosure": (FILTER_SYSTEM,),
    "tax": (FILTER_SYSTEM, LEGAL_COMPLIANCE),
    "tax lien": (FILTER_SYSTEM,),
    "tax delinquent": (FILTER_SYSTEM,),
    "vacant": (FILTER_SYSTEM,),
    "distress": (FILTER_SYSTEM,),
    "inheritance": (FILTER_SYSTEM,),
    "divorce": (FILTER_SYSTEM,),
    "estate": (FILTER_SYSTEM,),
    "deceased": (FILTER_SYSTEM,),
    "expired listing": (FILTER_SYSTEM,),
    "cancelled listing": (FILTER_SYSTEM,),
    "failed listing": (FILTER_SYSTEM,),
    "out of state": (FILTER_SYSTEM,),
    "distant owner": (FILTER_SYSTEM,),
    "high equity": (FILTER_SYSTEM,),
    "free and clear": (FILTER_SYSTEM,),
    "accidental landlord": (FILTER_SYSTEM,),
    "tired landlord": (FILTER_SYSTEM,),
    "code violation": (FILTER_SYSTEM,),
    "lead": (FILTER_SYSTEM,),
    "list stacking": (FILTER_SYSTEM,),

    # Buyer Intelligence: cash buyers and investor management
    "buyer": (BUYER_INTELLIGENCE,),
    "cash buyer": (BUYER_INTELLIGENCE,),
    "investor": (BUYER_INTELLIGENCE,),
    "buyer list": (BUYER_INTELLIGENCE,),
    "buyer criteria": (BUYER_INTELLIGENCE,),
    "buyer qualification": (BUYER_INTELLIGENCE,),
    "buyer vetting": (BUYER_INTELLIGENCE,),
    "match": (BUYER_INTELLIGENCE, AI_TOOLS),
    "proof of funds": (BUYER_INTELLIGENCE,),
    "pof": (BUYER_INTELLIGENCE,),
    "fix and flip": (BUYER_INTELLIGENCE, DEAL_ANALYSIS),
    "brrrr": (BUYER_INTELLIGENCE,),
    "rental": (BUYER_INTELLIGENCE, MARKET_ANALYSIS),

    # Market Analysis: neighborhood and market research
    "market": (MARKET_ANALYSIS,),
    "neighborhood": (MARKET_ANALYSIS,),
    "area": (MARKET_ANALYSIS,),
    "location": (MARKET_ANALYSIS,),
    "absorption": (MARKET_ANALYSIS,),
    "days on market": (MARKET_ANALYSIS,),
    "dom": (MARKET_ANALYSIS,),
    "competition": (MARKET_ANALYSIS,),
    "supply": (MARKET_ANALYSIS,),
    "demand": (MARKET_ANALYSIS,),
    "trend": (MARKET_ANALYSIS,),
    "census": (DATA_SOURCES, MARKET_ANALYSIS),
    "price": (MARKET_ANALYSIS, DEAL_ANALYSIS),

    # Deal Analysis: property and deal evaluation
    "deal": (DEAL_ANALYSIS, FUNDAMENTALS),
    "analyze": (DEAL_ANALYSIS, AI_TOOLS),
    "evaluation": (DEAL_ANALYSIS,),
    "assessment": (DEAL_ANALYSIS,),
    "property": (DEAL_ANALYSIS, DATA_SOURCES),
    "walkthrough": (DEAL_ANALYSIS,),
    "inspection": (DEAL_ANALYSIS,),
    "condition": (DEAL_ANALYSIS,),
    "scope of work": (DEAL_ANALYSIS,),
    "rehab": (DEAL_ANALYSIS,),
    "renovation": (DEAL_ANALYSIS,),
    "checklist": (DEAL_ANALYSIS,),
    "due diligence": (DEAL_ANALYSIS, RISK_FACTORS),

    # Negotiations
    "negotiat": (NEGOTIATIONS,),
    "offer": (NEGOTIATIONS,),
    "counter": (NEGOTIATIONS,),
    "anchor": (NEGOTIATIONS,),
    "objection": (NEGOTIATIONS,),
    "closing technique": (NEGOTIATIONS,),
    "rapport": (NEGOTIATIONS,),
    "persuasion": (NEGOTIATIONS,),
    "psychology": (NEGOTIATIONS,),
    "seller conversation": (NEGOTIATIONS,),
    "price reduction": (NEGOTIATIONS,),

    # Outreach & Communication
    "outreach": (OUTREACH,),
    "script": (OUTREACH,),
    "communication": (OUTREACH,),
    "cold call": (OUTREACH,),
    "direct mail": (OUTREACH,),
    "sms": (OUTREACH,),
    "email": (OUTREACH,),
    "marketing": (OUTREACH,),
    "follow up": (OUTREACH,),
    "campaign": (OUTREACH,),
    "ringless voicemail": (OUTREACH,),
    "rvm": (OUTREACH,),

    # Risk Factors
    "risk": (RISK_FACTORS,),
    "red flag": (RISK_FACTORS,),
    "warning": (RISK_FACTORS,),
    "lien": (RISK_FACTORS, LEGAL_COMPLIANCE),
    "title issue": (RISK_FACTORS, LEGAL_COMPLIANCE),
    "encumbrance": (RISK_FACTORS,),
    "lawsuit": (RISK_FACTORS, LEGAL_COMPLIANCE),
    "judgment": (RISK_FACTORS,),
    "bankruptcy": (RISK_FACTORS,),
    "fraud": (RISK_FACTORS, LEGAL_COMPLIANCE),
    "scam": (RISK_FACTORS,),
    "deal killer": (RISK_FACTORS,),
    "mistake": (RISK_FACTORS,),

    # Legal & Compliance
    "legal": (LEGAL_COMPLIANCE,),
    "contract": (LEGAL_COMPLIANCE,),
    "disclosure": (LEGAL_COMPLIANCE,),
    "compliance": (LEGAL_COMPLIANCE,),
    "assignment": (LEGAL_COMPLIANCE,),
    "double close": (LEGAL_COMPLIANCE,),
    "title": (LEGAL_COMPLIANCE, RISK_FACTORS),
    "escrow": (LEGAL_COMPLIANCE,),
    "earnest money": (LEGAL_COMPLIANCE,),
    "contingency": (LEGAL_COMPLIANCE,),
    "clause": (LEGAL_COMPLIANCE,),
    "regulation": (LEGAL_COMPLIANCE,),
    "license": (LEGAL_COMPLIANCE,),
    "llc": (LEGAL_COMPLIANCE,),
    "state law": (LEGAL_COMPLIANCE,),
    "fair housing": (LEGAL_COMPLIANCE,),

    # Case Studies & Examples
    "case study": (CASE_STUDIES,),
    "example": (CASE_STUDIES,),
    "success story": (CASE_STUDIES,),
    "real deal": (CASE_STUDIES,),
    "step by step": (CASE_STUDIES,),

    # Platform documentation
    "data": (DATA_SOURCES,),
    "permit": (DATA_SOURCES,),
    "tool": (AI_TOOLS,),
    "batch": (AI_TOOLS,),
    "workflow": (PLATFORM_WORKFLOWS, AI_TOOLS),
    "automation": (PLATFORM_WORKFLOWS, AI_TOOLS),
}


# ---------------------------------------------------------------------------
# Conversation Topics
# ---------------------------------------------------------------------------
# Cheap per-turn topic detection. Order matters: the first topic found in
# the latest user turn becomes the conversation's "current topic".
# ---------------------------------------------------------------------------

TOPIC_CATEGORIES: dict[str, tuple[str, ...]] = {
    "deal": (DEAL_ANALYSIS, FUNDAMENTALS),
    "property": (DATA_SOURCES, DEAL_ANALYSIS),
    "buyer": (BUYER_INTELLIGENCE,),
    "seller": (FILTER_SYSTEM, NEGOTIATIONS),
    "market": (MARKET_ANALYSIS,),
    "offer": (NEGOTIATIONS, FUNDAMENTALS),
    "arv": (FUNDAMENTALS, DEAL_ANALYSIS),
    "mao": (FUNDAMENTALS,),
    "repair": (FUNDAMENTALS, DEAL_ANALYSIS),
    "motivation": (FILTER_SYSTEM, FUNDAMENTALS),
    "equity": (FILTER_SYSTEM, FUNDAMENTALS),
    "absentee": (FILTER_SYSTEM,),
    "probate": (FILTER_SYSTEM, LEGAL_COMPLIANCE),
    "foreclosure": (FILTER_SYSTEM,),
    "wholesale": (FUNDAMENTALS, LEGAL_COMPLIANCE),
    "flip": (DEAL_ANALYSIS, BUYER_INTELLIGENCE),
    "rental": (MARKET_ANALYSIS, BUYER_INTELLIGENCE),
}

TOPIC_KEYWORDS: tuple[str, ...] = tuple(TOPIC_CATEGORIES)


# ---------------------------------------------------------------------------
# Retrieval Triggers (tool-result vocabulary)
# ---------------------------------------------------------------------------

URGENCY_RANK: dict[str, int] = {"none": 0, "low": 1, "medium": 2, "high": 3}


@dataclass(frozen=True)
class TriggerGroup:
    """A family of terms that, when seen in tool output, warrant retrieval."""

    terms: tuple[str, ...]
    categories: tuple[str, ...]
    urgency: str  # "low" | "medium" | "high"


RETRIEVAL_TRIGGERS: dict[str, TriggerGroup] = {
    "legal_issues": TriggerGroup(
        terms=(
            "probate", "lien", "judgment", "bankruptcy", "title issue",
            "encumbrance", "lis pendens", "mechanic lien", "tax lien",
            "quiet title", "deed restriction", "easement",
        ),
        categories=(RISK_FACTORS, LEGAL_COMPLIANCE),
        urgency="high",
    ),
    "deal_structure": TriggerGroup(
        terms=(
            "subject-to", "seller financing", "lease option", "land contract",
            "wraparound", "novation", "assignment", "double close",
            "simultaneous close", "transactional funding",
        ),
        categories=(DEAL_ANALYSIS, LEGAL_COMPLIANCE, FUNDAMENTALS),
        urgency="medium",
    ),
    "risk_signals": TriggerGroup(
        terms=(
            "red flag", "fraud", "warning", "deal killer", "suspicious",
            "undisclosed", "unreported", "violation", "code enforcement",
            "condemned", "uninhabitable", "hazardous",
        ),
        categories=(RISK_FACTORS,),
        urgency="high",
    ),
    "motivation_indicators": TriggerGroup(
        terms=(
            "distress", "foreclosure", "pre-foreclosure", "delinquent",
            "behind on", "default", "notice of sale", "auction",
            "estate sale", "inherited", "divorce", "relocation",
        ),
        categories=(FILTER_SYSTEM, FUNDAMENTALS),
        urgency="medium",
    ),
    "valuation_terms": TriggerGroup(
        terms=(
            "below market", "above market", "appreciation", "depreciation",
            "market correction", "bubble", "overvalued", "undervalued",
            "cash flow negative", "negative equity", "underwater",
        ),
        categories=(MARKET_ANALYSIS, DEAL_ANALYSIS, FUNDAMENTALS),
        urgency="medium",
    ),
    "property_condition": TriggerGroup(
        terms=(
            "foundation issue", "structural damage", "mold", "asbestos",
            "lead paint", "termite", "pest infestation", "water damage",
            "fire damage", "unpermitted", "illegal addition",
        ),
        categories=(RISK_FACTORS, DEAL_ANALYSIS),
        urgency="medium",
    ),
    "buyer_exit": TriggerGroup(
        terms=(
            "no buyers", "buyer fell through", "assignment failed",
            "proof of funds", "hard money", "private lender",
            "inspection contingency", "appraisal contingency",
        ),
        categories=(BUYER_INTELLIGENCE, DEAL_ANALYSIS),
        urgency="low",
    ),
}


# ---------------------------------------------------------------------------
# Tool Hints
# ---------------------------------------------------------------------------
# Assistant tools and the knowledge they lean on. When a question reads
# like it will end in a tool call ("what's the MAO on this house?"), the
# tool's categories are searched up front so the answer has the domain
# background before any tool output arrives.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolHint:
    categories: tuple[str, ...]
    keywords: tuple[str, ...]
    priority: str  # "low" | "medium" | "high"


TOOL_HINTS: dict[str, ToolHint] = {
    # Deal analysis
    "deal_analysis.analyze": ToolHint(
        (FUNDAMENTALS, DEAL_ANALYSIS, AI_TOOLS),
        ("arv", "mao", "repair", "70% rule", "deal analysis"), "high",
    ),
    "deal_analysis.calculate_mao": ToolHint(
        (FUNDAMENTALS, DEAL_ANALYSIS),
        ("maximum allowable offer", "formula", "mao calculation"), "high",
    ),
    "deal_analysis.score": ToolHint(
        (DEAL_ANALYSIS, FUNDAMENTALS), ("deal scoring", "evaluation", "quality"), "medium",
    ),

    # Property search
    "property_search.search": ToolHint(
        (FILTER_SYSTEM, FUNDAMENTALS, AI_TOOLS), ("filter", "search", "property criteria"), "medium",
    ),
    "property_search.advanced": ToolHint(
        (FILTER_SYSTEM, AI_TOOLS), ("advanced filter", "list stacking", "criteria"), "medium",
    ),

    # Motivation & owners
    "motivation.score_owner": ToolHint(
        (FILTER_SYSTEM, FUNDAMENTALS, AI_TOOLS),
        ("motivation", "seller", "distress signals", "absentee"), "high",
    ),
    "motivation.batch_score": ToolHint(
        (FILTER_SYSTEM, FUNDAMENTALS), ("batch scoring", "motivation signals"), "medium",
    ),
    "owner.classify": ToolHint(
        (FILTER_SYSTEM, FUNDAMENTALS),
        ("owner type", "absentee", "investor", "classification"), "medium",
    ),
    "owner.get_portfolio": ToolHint(
        (FILTER_SYSTEM, BUYER_INTELLIGENCE),
        ("portfolio", "multiple properties", "owner analysis"), "medium",
    ),

    # Buyers
    "buyer_management.match_buyers_to_property": ToolHint(
        (BUYER_INTELLIGENCE, AI_TOOLS), ("buyer criteria", "cash buyer", "matching"), "high",
    ),
    "buyer_management.get_buyer_insights": ToolHint(
        (BUYER_INTELLIGENCE,), ("buyer analysis", "preferences", "activity"), "medium",
    ),
    "buyer_management.search_buyers": ToolHint(
        (BUYER_INTELLIGENCE,), ("buyer list", "investor search"), "medium",
    ),
    "buyer_management.analyze_buyer_activity": ToolHint(
        (BUYER_INTELLIGENCE,), ("buyer behavior", "purchase history"), "low",
    ),

    # Market
    "market.analyze": ToolHint(
        (MARKET_ANALYSIS, AI_TOOLS), ("market trends", "statistics", "area analysis"), "high",
    ),
    "market.compare": ToolHint(
        (MARKET_ANALYSIS,), ("market comparison", "submarket", "area"), "medium",
    ),
    "market.get_statistics": ToolHint(
        (MARKET_ANALYSIS, DATA_SOURCES), ("dom", "price trends", "inventory"), "medium",
    ),

    # Property details
    "property.details": ToolHint(
        (DATA_SOURCES, DEAL_ANALYSIS), ("property data", "characteristics", "features"), "medium",
    ),
    "property.valuation": ToolHint(
        (FUNDAMENTALS, DATA_SOURCES, DEAL_ANALYSIS),
        ("avm", "valuation", "arv", "comparable"), "high",
    ),
    "property.owner": ToolHint(
        (FILTER_SYSTEM, DATA_SOURCES),
        ("owner information", "ownership", "mailing address"), "medium",
    ),
    "property.issues": ToolHint(
        (RISK_FACTORS, LEGAL_COMPLIANCE), ("lien", "title", "red flags", "issues"), "high",
    ),
    "property.comps": ToolHint(
        (FUNDAMENTALS, DEAL_ANALYSIS),
        ("comparable sales", "comps", "arv calculation"), "high",
    ),

    # Permits & contractors
    "permits.get_history": ToolHint(
        (DATA_SOURCES, DEAL_ANALYSIS),
        ("permit history", "renovation", "construction"), "medium",
    ),
    "permits.analyze_activity": ToolHint(
        (DATA_SOURCES, MARKET_ANALYSIS), ("permit activity", "renovation trends"), "low",
    ),
    "contractor.search": ToolHint(
        (DATA_SOURCES,), ("contractor", "builder", "renovation"), "low",
    ),
    "contractor.details": ToolHint(
        (DATA_SOURCES,), ("contractor quality", "permit history"), "low",
    ),

    # Deal pipeline
    "deal.create": ToolHint(
        (DEAL_ANALYSIS, PLATFORM_WORKFLOWS), ("deal pipeline", "new deal", "acquisition"), "medium",
    ),
    "deal.update_stage": ToolHint(
        (PLATFORM_WORKFLOWS,), ("deal stage", "pipeline", "progress"), "low",
    ),
    "deal.generate_offer_strategy": ToolHint(
        (NEGOTIATIONS, DEAL_ANALYSIS), ("offer strategy", "negotiation", "pricing"), "high",
    ),

    # CRM & leads
    "crm.create_lead_list": ToolHint(
        (FILTER_SYSTEM, PLATFORM_WORKFLOWS),
        ("lead list", "list building", "prospecting"), "medium",
    ),
    "crm.rank_by_motivation": ToolHint(
        (FILTER_SYSTEM, FUNDAMENTALS), ("motivation ranking", "lead prioritization"), "medium",
    ),
    "crm.suggest_outreach": ToolHint(
        (OUTREACH, PLATFORM_WORKFLOWS), ("outreach", "follow-up", "communication"), "medium",
    ),

    # Communication
    "notification.send_sms": ToolHint(
        (OUTREACH,), ("sms", "text message", "marketing"), "low",
    ),
    "notification.send_email": ToolHint(
        (OUTREACH,), ("email", "communication", "marketing"), "low",
    ),
    "comms.generate_talking_points": ToolHint(
        (NEGOTIATIONS, OUTREACH), ("talking points", "script", "conversation"), "medium",
    ),

    # Documents
    "document.generate_offer_letter": ToolHint(
        (LEGAL_COMPLIANCE, NEGOTIATIONS), ("offer letter", "contract", "agreement"), "high",
    ),
    "document.generate_buyer_package": ToolHint(
        (BUYER_INTELLIGENCE, DEAL_ANALYSIS), ("buyer package", "deal presentation"), "medium",
    ),
    "document.generate_property_report": ToolHint(
        (DEAL_ANALYSIS, DATA_SOURCES), ("property report", "analysis summary"), "medium",
    ),
}

# Query phrasing → tools the assistant is likely to call. Each alternative
# must start at a word boundary, like the concept keywords.
_QUERY_TOOL_PATTERNS: tuple[tuple[re.Pattern[str], tuple[str, ...]], ...] = tuple(
    (re.compile(r"\b(?:" + pattern + r")", re.IGNORECASE), tools)
    for pattern, tools in (
        (r"analyz.*deal|deal.*analys|evaluate.*property", ("deal_analysis.analyze",)),
        (r"mao|maximum.*offer|allowable.*offer", ("deal_analysis.calculate_mao",)),
        (r"arv|after.*repair|repair.*value", ("property.valuation", "property.comps")),
        (r"find.*propert|search.*propert|look.*propert", ("property_search.search",)),
        (r"absentee|out.*state.*owner|distant.*owner", ("motivation.score_owner", "owner.classify")),
        (r"motivat|distress|willing.*sell", ("motivation.score_owner",)),
        (r"match.*buyer|find.*buyer|buyer.*for", ("buyer_management.match_buyers_to_property",)),
        (r"buyer.*list|cash.*buyer", ("buyer_management.search_buyers",)),
        (r"market.*analys|neighborhood|area.*trend", ("market.analyze",)),
        (r"compare.*market|market.*vs", ("market.compare",)),
        (r"lien|title.*issue|red.*flag|problem.*property", ("property.issues",)),
        (r"offer.*strateg|negotiat|how.*much.*offer", ("deal.generate_offer_strategy",)),
    )
)


# ---------------------------------------------------------------------------
# Price / Location Cues
# ---------------------------------------------------------------------------
# Imperative queries like "Find deals in Miami under $200,000" rarely use
# the words "price" or "market"; these cues add the implied concepts.
# ---------------------------------------------------------------------------

_PRICE_CUE = re.compile(
    r"\$\s?\d[\d,]*(?:\.\d+)?\s*[kKmM]?\b"
    r"|\b(?:under|below|over|above|less than|more than)\s+\$?\d",
    re.IGNORECASE,
)
_LOCATION_CUE = re.compile(r"\b(?:in|near|around)\s+[A-Z][a-zA-Z]+")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1024)
def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    return re.compile(r"\b" + re.escape(keyword))


def contains_term(text: str, term: str) -> bool:
    """True if ``term`` occurs in ``text`` starting at a word boundary.

    ``text`` is expected to be lowercased already.
    """
    return _keyword_pattern(term).search(text) is not None


def _normalise(text: str) -> str:
    return text.lower().replace("_", " ").strip()


def extract_concepts(query: str) -> list[str]:
    """
    Extract known domain concepts from a query by keyword matching.

    Concepts are returned in taxonomy order, de-duplicated. Price and
    location cues add "price" and "market" when the words themselves are
    absent.
    """
    lowered = _normalise(query)
    concepts = [kw for kw in CONCEPT_CATEGORIES if contains_term(lowered, kw)]

    if _PRICE_CUE.search(query) and "price" not in concepts:
        concepts.append("price")
    if _LOCATION_CUE.search(query) and "market" not in concepts:
        concepts.append("market")
    return concepts


def categories_for_concepts(concepts: Iterable[str]) -> list[str]:
    """
    Map free-form concepts (keywords or LLM topics) to KB categories.

    A concept maps to a keyword's categories when the keyword appears in
    the concept (e.g. "market_analysis" → "market") or the concept is a
    whole word/phrase inside the keyword (e.g. "tax" → "tax lien").
    """
    categories: dict[str, None] = {}
    for concept in concepts:
        lowered = _normalise(concept)
        if not lowered:
            continue
        for keyword, cats in CONCEPT_CATEGORIES.items():
            if contains_term(lowered, keyword) or (
                len(lowered) > 2
                and re.search(r"\b" + re.escape(lowered) + r"\b", keyword)
            ):
                categories.update(dict.fromkeys(cats))
    return list(categories)


def categories_for_query(query: str) -> list[str]:
    """Categories implied by the raw text of a query."""
    return categories_for_concepts(extract_concepts(query))


def extract_topics(text: str) -> list[str]:
    """Conversation topic keywords present in ``text``, in taxonomy order."""
    lowered = text.lower()
    return [t for t in TOPIC_KEYWORDS if contains_term(lowered, t)]


def categories_for_topics(topics: Iterable[str]) -> list[str]:
    categories: dict[str, None] = {}
    for topic in topics:
        categories.update(dict.fromkeys(TOPIC_CATEGORIES.get(topic, ())))
    return list(categories)


def merge_categories(*groups: Iterable[str]) -> list[str]:
    """Order-preserving union of category lists."""
    merged: dict[str, None] = {}
    for group in groups:
        merged.update(dict.fromkeys(group))
    return list(merged)


def hints_for_tools(tool_ids: Iterable[str]) -> tuple[list[str], list[str]]:
    """Union of (categories, keywords) for the given tools; unknown ids are ignored."""
    categories: dict[str, None] = {}
    keywords: dict[str, None] = {}
    for tool_id in tool_ids:
        hint = TOOL_HINTS.get(tool_id)
        if hint is not None:
            categories.update(dict.fromkeys(hint.categories))
            keywords.update(dict.fromkeys(hint.keywords))
    return list(categories), list(keywords)


def predict_likely_tools(query: str) -> list[str]:
    """Tools a question's phrasing suggests, in pattern order."""
    tools: dict[str, None] = {}
    for pattern, tool_ids in _QUERY_TOOL_PATTERNS:
        if pattern.search(query):
            tools.update(dict.fromkeys(tool_ids))
    return list(tools)


def tool_aware_categories(
    query: str, classification: QueryClassification | None = None,
) -> list[str]:
    """Classifier categories plus the categories of the tools the query predicts."""
    categories, _ = hints_for_tools(predict_likely_tools(query))
    return merge_categories(classification.categories if classification else (), categories)


def high_priority_tools() -> list[str]:
    """Tools whose calls should always be backed by knowledge-base context."""
    return [tool_id for tool_id, hint in TOOL_HINTS.items() if hint.priority == "high"]
