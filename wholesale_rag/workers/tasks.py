# =============================================================================
# Celery Task Definitions — Knowledge-Base Ingestion
# =============================================================================
#
# ingest_knowledge_base walks a directory of markdown articles and, for
# each one whose content hash or embedding model changed:
#   1. parse YAML front matter
#   2. chunk by headings/paragraphs (tiktoken budgets)
#   3. batch-embed the chunks (sequential batches, tenacity retries)
#   4. replace the document's chunks in the vector store
# then invalidates cached answers if anything changed.
#
# Celery workers are synchronous; the async pipeline is driven with
# asyncio.run() per task. The async engine's pool is bound to the loop
# that created its connections, so it is disposed before the loop closes.
#
# RETRY STRATEGY: transient failures (database down, provider outage)
# re-queue with a 60s delay, up to 3 times. Per-document failures do not
# fail the task; they are reported in the result's "errors" list.
# =============================================================================

import asyncio
import logging
from dataclasses import asdict

from wholesale_rag.bootstrap import build_ingestor
from wholesale_rag.config import settings
from wholesale_rag.services.ingestion import IngestionResult
from wholesale_rag.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _run_ingestion(directory: str, force: bool) -> IngestionResult:
    session_factory = None
    engine = None
    if settings.vectorstore_type != "chroma":
        from wholesale_rag.db.engine import async_engine, async_session_factory, init_db

        await init_db()
        engine, session_factory = async_engine, async_session_factory

    ingestor = build_ingestor(settings, session_factory=session_factory)
    try:
        return await ingestor.ingest_directory(directory, force=force)
    finally:
        if engine is not None:
            await engine.dispose()


@celery_app.task(
    bind=True,
    name="ingest_knowledge_base",
    max_retries=3,
    default_retry_delay=60,
)
def ingest_knowledge_base(self, directory: str | None = None, force: bool = False) -> dict:
    """
    Ingest (or refresh) the knowledge base.

    Args:
        self: Bound task instance (self.request.id for log correlation).
        directory: Root of the markdown articles (default: settings.knowledge_base_dir).
        force: Re-embed every document even if unchanged.

    Returns:
        IngestionResult as a dict, plus ``success``.
    """
    task_id = self.request.id
    directory = directory or settings.knowledge_base_dir
    logger.info(
        "[%s] Starting ingestion: directory=%s force=%s vectorstore=%s",
        task_id, directory, force, settings.vectorstore_type,
    )

    try:
        result = asyncio.run(_run_ingestion(directory, force))
    except NotADirectoryError:
        logger.error("[%s] Knowledge base directory not found: %s", task_id, directory)
        raise
    except Exception as exc:
        logger.exception("[%s] Ingestion failed: %s", task_id, exc)
        raise self.retry(exc=exc)

    summary = {**asdict(result), "success": result.success}
    logger.info("[%s] Ingestion complete: %s", task_id, summary)
    return summary
