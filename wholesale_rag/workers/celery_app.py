# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Knowledge-base ingestion (parse → chunk → embed → store) runs on a Celery
# worker: a full re-embed of the knowledge base takes minutes and must not
# tie up an API worker.
#
#   FastAPI ──▶ Redis db 0 (broker) ──▶ Celery worker ──▶ Redis db 1 (results)
#
# The RAG cache and sessions live in Redis db 2 (settings.redis_url).
# =============================================================================

from celery import Celery

from wholesale_rag.config import settings

celery_app = Celery(
    "wholesale_rag.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # JSON only: pickle can execute code during deserialisation
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Re-queue a task if the worker dies mid-run
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    # A full re-ingestion embeds every chunk; allow it time
    task_soft_time_limit=1800,
    task_time_limit=2100,

    result_expires=3600,
    include=["wholesale_rag.workers.tasks"],
)
