# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data going OUT of the API. Chunk embeddings and raw search
# rows never leave the service; clients see answers, cited sources and
# classification labels.
# =============================================================================

from typing import Literal

from pydantic import BaseModel, Field

from wholesale_rag.models.rag import QueryClassification, Source


class HealthResponse(BaseModel):
    """Response for GET /rag/health."""

    status: Literal["ok", "degraded"] = "ok"
    version: str
    service: str
    vectorstore: str
    redis: Literal["ok", "unavailable"] = "ok"


class AskResponse(BaseModel):
    """Response for POST /rag/ask/complete."""

    answer: str
    sources: list[Source] = Field(default_factory=list)
    classification: QueryClassification | None = None
    cached: bool = False
    retrieval_count: int = Field(default=0, description="Chunks placed in the prompt context")
    input_tokens: int = 0
    output_tokens: int = 0
    session_id: str | None = None


class ToolResultResponse(BaseModel):
    """Response for POST /rag/sessions/{session_id}/tool-results."""

    tool_name: str
    should_retrieve: bool
    urgency: Literal["none", "low", "medium", "high"]
    matched_terms: list[str] = Field(default_factory=list)
    trigger_groups: list[str] = Field(default_factory=list)
    suggested_categories: list[str] = Field(default_factory=list)
    additional_context: str = ""
    sources: list[Source] = Field(default_factory=list)
    retrieved_categories: list[str] = Field(default_factory=list)


class SessionClearedResponse(BaseModel):
    session_id: str
    cleared: bool = True


class CacheStatsResponse(BaseModel):
    """Response for GET /rag/cache/stats."""

    query_count: int
    embedding_count: int


class CacheClearedResponse(BaseModel):
    """Response for DELETE /rag/cache."""

    removed: int


class IngestResponse(BaseModel):
    """
    Response for POST /rag/ingest — ingestion queued on the Celery worker.

    Poll GET /rag/ingest/{task_id} for the outcome.
    """

    task_id: str
    status: str = "queued"
    directory: str


class IngestStatusResponse(BaseModel):
    """Response for GET /rag/ingest/{task_id}."""

    task_id: str
    status: str = Field(description="Celery state: PENDING, STARTED, SUCCESS, FAILURE")
    result: dict | None = Field(
        default=None, description="Ingestion summary once the task has finished",
    )
    error: str | None = None
