# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery application configuration
#   - tasks.py: ingest_knowledge_base (parse → chunk → embed → store)
#
# Ingestion re-embeds every changed article and can take minutes, so it
# runs on a worker while the API returns a task_id to poll.
# =============================================================================
