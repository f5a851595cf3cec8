# =============================================================================
# Pipeline Models — Pydantic V2
# =============================================================================
#
# Value types that cross layer boundaries: they are produced by the agents,
# persisted as JSON in the response cache and returned by the API. Pydantic
# gives validation on the way back out of Redis, so a stale or corrupt
# cache entry is treated as a miss rather than crashing a request.
# =============================================================================

from typing import Literal

from pydantic import BaseModel, Field

Intent = Literal["question", "how-to", "calculation", "comparison", "general"]
Complexity = Literal["simple", "moderate", "complex"]


class Source(BaseModel):
    """A knowledge-base document cited by an answer."""

    title: str
    slug: str
    category: str
    relevance: float = Field(ge=0.0, le=1.0)


class QueryClassification(BaseModel):
    """Intent, topics and complexity of a user query."""

    intent: Intent = "general"
    topics: list[str] = Field(default_factory=list)
    complexity: Complexity = "moderate"
    categories: list[str] = Field(default_factory=list)
