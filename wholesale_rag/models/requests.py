# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data coming INTO the API. FastAPI validates request bodies
# against them (422 on invalid input) and renders them in /docs.
# =============================================================================

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from wholesale_rag.agents.orchestrator import GenerationOptions


class ChatMessage(BaseModel):
    """One prior turn of the conversation."""

    role: Literal["user", "assistant"]
    content: str = Field(..., max_length=20000)


class AskRequest(BaseModel):
    """
    Request body for POST /rag/ask and POST /rag/ask/complete.

    Example:
        {
            "question": "What is the 70% rule?",
            "session_id": "chat-42"
        }
    """

    question: str = Field(
        ...,
        min_length=3,
        max_length=2000,
        description="The question to answer from the wholesaling knowledge base",
        examples=["What is the 70% rule?"],
    )

    # Enables conversation-aware retrieval (no repeats, topic tracking)
    session_id: str | None = Field(
        default=None,
        max_length=128,
        description="Chat session identifier. Omit for one-off questions.",
    )
    messages: list[ChatMessage] = Field(
        default_factory=list,
        description="Earlier turns of the conversation, oldest first.",
    )
    # Typically the additional_context returned by the tool-results endpoint
    additional_context: str = Field(
        default="",
        max_length=20000,
        description="Extra knowledge to include in the prompt. Answers using it are not cached.",
    )

    # --- Per-request tuning ---
    search_limit: int | None = Field(default=None, ge=1, le=20)
    search_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    max_tokens: int | None = Field(default=None, ge=1, le=8192)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    skip_classification: bool = False
    skip_cache: bool = False
    buffer_streaming: bool = Field(
        default=True,
        description="Word/sentence buffering of streamed text. False forwards raw fragments.",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"question": "What is the 70% rule?"},
                {
                    "question": "Find deals in Miami under $200,000",
                    "session_id": "chat-42",
                },
            ]
        }
    )

    def to_options(self) -> GenerationOptions:
        return GenerationOptions(
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            search_limit=self.search_limit,
            search_threshold=self.search_threshold,
            skip_classification=self.skip_classification,
            buffer_streaming=self.buffer_streaming,
            skip_cache=self.skip_cache,
        )

    def history(self) -> list[dict[str, str]]:
        return [m.model_dump() for m in self.messages]


class ToolResultRequest(BaseModel):
    """
    Request body for POST /rag/sessions/{session_id}/tool-results.

    ``tool_output`` is whatever the tool returned (text or JSON); only its
    text is scanned.
    """

    tool_name: str = Field(..., min_length=1, max_length=200)
    tool_output: Any = Field(..., description="Raw tool output (string or JSON)")


class IngestRequest(BaseModel):
    """Request body for POST /rag/ingest."""

    directory: str | None = Field(
        default=None,
        description="Knowledge-base directory. Defaults to KNOWLEDGE_BASE_DIR.",
    )
    force: bool = Field(
        default=False,
        description="Re-embed every document even if its content is unchanged.",
    )
