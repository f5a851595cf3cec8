# =============================================================================
# Ask API — Knowledge-Base Q&A Endpoints
# =============================================================================
#
#   POST   /rag/ask                              server-sent events
#   POST   /rag/ask/complete                     blocking JSON answer
#   POST   /rag/sessions/{session_id}/tool-results  tool-triggered retrieval
#   DELETE /rag/sessions/{session_id}            reset conversation state
#
# SSE FORMAT: one `data: {"type": ..., "content": ...}\n\n` frame per
# StreamChunk. Errors after the stream has started cannot change the HTTP
# status, so they are sent in-band as {"type": "error"} frames.
#
# ERROR MAPPING (blocking endpoint and pre-stream failures):
#   QueryValidationError → 400
#   ProviderRateLimited  → 429
#   GenerationError / ProviderUnavailable → 502
#
# These handlers are thin: validation, error mapping and response shaping.
# The pipeline lives in wholesale_rag/agents.
# =============================================================================

from __future__ import annotations

import json
import math
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from wholesale_rag.api.deps import enforce_rate_limit, get_components
from wholesale_rag.bootstrap import RAGComponents
from wholesale_rag.models.requests import AskRequest, ToolResultRequest
from wholesale_rag.models.responses import AskResponse, SessionClearedResponse, ToolResultResponse
from wholesale_rag.services.errors import (
    ProviderRateLimited,
    ProviderUnavailable,
    QueryValidationError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rag", tags=["Question Answering"])


def sse_frame(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


def _to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, QueryValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ProviderRateLimited):
        headers = {"Retry-After": str(math.ceil(exc.retry_after))} if exc.retry_after else None
        return HTTPException(
            status_code=429, detail="Upstream provider is rate limiting requests", headers=headers,
        )
    return HTTPException(status_code=502, detail=f"Upstream service error: {exc}")


# ---------------------------------------------------------------------------
# POST /rag/ask — Streaming answer (SSE)
# ---------------------------------------------------------------------------


@router.post(
    "/ask",
    summary="Ask a question (streaming)",
    description=(
        "Answer a wholesaling question from the knowledge base. The response "
        "is a text/event-stream of classification, sources, text and done events."
    ),
    dependencies=[Depends(enforce_rate_limit)],
)
async def ask_stream(
    request: AskRequest,
    components: RAGComponents = Depends(get_components),
) -> StreamingResponse:
    logger.info(
        "Ask (stream): question='%s' session=%s",
        request.question[:80], request.session_id or "-",
    )
    chunks = components.generator.generate_streaming(
        request.question,
        request.to_options(),
        session_id=request.session_id,
        messages=request.history(),
        additional_context=request.additional_context,
    )
    return StreamingResponse(
        _event_stream(chunks),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


async def _event_stream(chunks: AsyncIterator) -> AsyncIterator[str]:
    try:
        async for chunk in chunks:
            yield sse_frame(chunk.as_dict())
    except QueryValidationError as e:
        yield sse_frame({"type": "error", "content": str(e)})
    except (ProviderRateLimited, ProviderUnavailable) as e:
        logger.error("Streaming answer failed: %s", e)
        yield sse_frame({"type": "error", "content": "The assistant is temporarily unavailable."})
    except Exception as e:
        logger.exception("Unexpected streaming failure: %s", e)
        yield sse_frame({"type": "error", "content": "Internal error while generating the answer."})


# ---------------------------------------------------------------------------
# POST /rag/ask/complete — Blocking answer
# ---------------------------------------------------------------------------


@router.post(
    "/ask/complete",
    response_model=AskResponse,
    summary="Ask a question (blocking)",
    dependencies=[Depends(enforce_rate_limit)],
)
async def ask_complete(
    request: AskRequest,
    components: RAGComponents = Depends(get_components),
) -> AskResponse:
    logger.info(
        "Ask (complete): question='%s' session=%s",
        request.question[:80], request.session_id or "-",
    )
    try:
        result = await components.generator.generate(
            request.question,
            request.to_options(),
            session_id=request.session_id,
            messages=request.history(),
            additional_context=request.additional_context,
        )
    except (QueryValidationError, ProviderUnavailable, ProviderRateLimited) as e:
        logger.error("Ask failed: %s", e)
        raise _to_http_error(e) from e

    return AskResponse(
        answer=result.response,
        sources=result.sources,
        classification=result.classification,
        cached=result.cached,
        retrieval_count=len(result.search_results),
        input_tokens=result.input_tokens,
        output_tokens=result.output_tokens,
        session_id=request.session_id,
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post(
    "/sessions/{session_id}/tool-results",
    response_model=ToolResultResponse,
    summary="Retrieve knowledge triggered by a tool result",
)
async def tool_result(
    session_id: str,
    request: ToolResultRequest,
    components: RAGComponents = Depends(get_components),
) -> ToolResultResponse:
    augmentation = await components.generator.augment_with_tool_result(
        session_id, request.tool_name, request.tool_output,
    )
    analysis, retrieval = augmentation.analysis, augmentation.retrieval
    return ToolResultResponse(
        tool_name=request.tool_name,
        should_retrieve=analysis.should_retrieve,
        urgency=analysis.urgency,
        matched_terms=analysis.matched_terms,
        trigger_groups=analysis.trigger_groups,
        suggested_categories=analysis.suggested_categories,
        additional_context=retrieval.additional_context,
        sources=retrieval.sources,
        retrieved_categories=retrieval.retrieved_categories,
    )


@router.delete(
    "/sessions/{session_id}",
    response_model=SessionClearedResponse,
    summary="Forget a chat session's retrieval history",
)
async def clear_session(
    session_id: str,
    components: RAGComponents = Depends(get_components),
) -> SessionClearedResponse:
    await components.conversation.clear(session_id)
    logger.info("Cleared session %s", session_id)
    return SessionClearedResponse(session_id=session_id)
