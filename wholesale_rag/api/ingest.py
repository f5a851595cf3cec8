# =============================================================================
# Ingestion API — Knowledge-Base Refresh and Status Tracking
# =============================================================================
#
# ENDPOINTS:
#   POST /rag/ingest           — dispatch a Celery ingestion run, return task_id
#   GET  /rag/ingest/{task_id} — poll the run (PENDING → SUCCESS/FAILURE)
#
# DESIGN DECISION: 202 Accepted for POST. Re-embedding the knowledge base
# takes minutes, so the request only queues the work.
#
# The directory must lie inside the configured knowledge-base root; the
# endpoint never lets a caller point the worker at arbitrary paths.
# =============================================================================

import logging
from pathlib import Path

from celery.result import AsyncResult
from fastapi import APIRouter, Depends, HTTPException

from wholesale_rag.api.deps import get_components
from wholesale_rag.bootstrap import RAGComponents
from wholesale_rag.models.requests import IngestRequest
from wholesale_rag.models.responses import IngestResponse, IngestStatusResponse
from wholesale_rag.workers.tasks import ingest_knowledge_base

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rag", tags=["Ingestion"])


def resolve_ingest_directory(root: str, requested: str | None) -> Path:
    """
    Resolve ``requested`` (relative to ``root``) and confirm it stays inside it.

    Raises:
        HTTPException 400: The path escapes the knowledge-base root.
    """
    base = Path(root).resolve()
    target = (base / requested).resolve() if requested else base
    if not target.is_relative_to(base):
        raise HTTPException(
            status_code=400,
            detail="Directory must be inside the knowledge base root.",
        )
    return target


@router.post(
    "/ingest",
    response_model=IngestResponse,
    status_code=202,
    summary="Re-ingest the knowledge base",
    description=(
        "Queue a background run that parses, chunks, embeds and stores every "
        "changed markdown article. Returns immediately with a task_id."
    ),
)
async def ingest_endpoint(
    request: IngestRequest,
    components: RAGComponents = Depends(get_components),
) -> IngestResponse:
    directory = resolve_ingest_directory(
        components.settings.knowledge_base_dir, request.directory,
    )
    task = ingest_knowledge_base.delay(directory=str(directory), force=request.force)
    logger.info(
        "Dispatched ingestion task: task_id=%s directory=%s force=%s",
        task.id, directory, request.force,
    )
    return IngestResponse(task_id=task.id, directory=str(directory))


@router.get(
    "/ingest/{task_id}",
    response_model=IngestStatusResponse,
    summary="Check ingestion status",
)
async def get_ingest_status(task_id: str) -> IngestStatusResponse:
    """
    Celery task states:
    - PENDING: not yet picked up by a worker (or unknown id)
    - STARTED / RETRY: in progress
    - SUCCESS: finished; ``result`` holds the ingestion summary
    - FAILURE: see ``error``
    """
    result = AsyncResult(task_id, app=ingest_knowledge_base.app)
    status = result.status

    summary: dict | None = None
    error: str | None = None
    if status == "SUCCESS":
        summary = result.result or {}
    elif status == "FAILURE":
        error = str(result.result) if result.result else "Unknown error"

    return IngestStatusResponse(task_id=task_id, status=status, result=summary, error=error)
