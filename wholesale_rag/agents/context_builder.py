# =============================================================================
# Context Builder — Search Results → Prompt Context
# =============================================================================
#
# Packs retrieved chunks into the generation prompt under a token ceiling.
#
#   1. Sort by similarity, highest first
#   2. Append each chunk as a labeled section (source title + breadcrumb,
#      category, relevance %) while it still fits the budget; the first
#      chunk that would overflow stops packing. Chunks are never truncated.
#   3. Collect one Source per document slug
#
# Each section costs its chunk's tokens plus a fixed formatting overhead.
# No results → an explicit "nothing found" context so the model says so
# instead of answering from general knowledge.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from wholesale_rag.models.rag import Source
from wholesale_rag.services.chunker import count_tokens
from wholesale_rag.services.vectorstore import ChunkMatch

logger = logging.getLogger(__name__)

SECTION_OVERHEAD_TOKENS = 20
NO_CONTEXT_TEXT = "No relevant information found in the knowledge base for this query."

SYSTEM_PROMPT = """You are an expert AI assistant for real estate wholesaling. You help users understand real estate investing concepts, analyze deals, and navigate the wholesaling process.

Your knowledge comes from a comprehensive knowledge base covering:
- Real estate fundamentals (70% rule, ARV, repair estimates)
- Property filters and search criteria
- Buyer intelligence and list building
- Market analysis techniques
- Deal analysis and evaluation
- Negotiation strategies
- Outreach and communication
- Risk factors and due diligence
- Legal compliance and contracts
- Real-world case studies

Guidelines:
1. Base your answers on the provided context from the knowledge base
2. Be specific and actionable in your advice
3. When discussing numbers or calculations, show your work
4. If the context doesn't contain enough information, say so clearly
5. Reference specific concepts or strategies from the knowledge base when relevant
6. For legal or compliance questions, recommend consulting with local professionals"""


@dataclass
class RAGContext:
    system_prompt: str
    context_text: str
    sources: list[Source] = field(default_factory=list)
    token_estimate: int = 0
    chunks_used: int = 0


def _format_section(match: ChunkMatch) -> str:
    breadcrumb = f" > {' > '.join(match.header_breadcrumb)}" if match.header_breadcrumb else ""
    return (
        "\n---\n"
        f"Source: {match.title}{breadcrumb}\n"
        f"Category: {match.category}\n"
        f"Relevance: {round(match.similarity * 100)}%\n"
        f"\n{match.content}\n"
        "---"
    )


def build_context(results: Sequence[ChunkMatch], max_tokens: int = 4000) -> RAGContext:
    sections: list[str] = []
    sources: dict[str, Source] = {}
    used = 0

    for match in sorted(results, key=lambda m: m.similarity, reverse=True):
        tokens = count_tokens(match.content)
        if used + tokens > max_tokens:
            break
        sections.append(_format_section(match))
        used += tokens + SECTION_OVERHEAD_TOKENS
        if match.slug not in sources:
            sources[match.slug] = Source(
                title=match.title,
                slug=match.slug,
                category=match.category,
                relevance=min(max(match.similarity, 0.0), 1.0),
            )

    if len(sections) < len(results):
        logger.debug("Context budget reached: %d/%d chunks used", len(sections), len(results))

    context_text = (
        "Here is relevant information from the knowledge base:\n" + "\n".join(sections)
        if sections
        else NO_CONTEXT_TEXT
    )
    return RAGContext(
        system_prompt=SYSTEM_PROMPT,
        context_text=context_text,
        sources=list(sources.values()),
        token_estimate=used,
        chunks_used=len(sections),
    )


def format_prompt(context: RAGContext, query: str, additional_context: str = "") -> str:
    """User-turn prompt: context, optional tool-triggered knowledge, question."""
    extra = f"\n\nAdditional relevant knowledge:\n{additional_context}" if additional_context else ""
    return (
        f"{context.context_text}{extra}\n\n"
        f"User Question: {query}\n\n"
        "Please provide a helpful, accurate response based on the knowledge base "
        "context above. If the context doesn't fully address the question, "
        "acknowledge what you can answer and what requires additional information."
    )
