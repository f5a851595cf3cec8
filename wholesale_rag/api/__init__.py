# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter under the /rag prefix:
#   - ask.py:    streaming + blocking Q&A, session tool results / reset
#   - admin.py:  health check, cache statistics and invalidation
#   - ingest.py: queue knowledge-base ingestion, poll its status
#   - deps.py:   shared dependencies (components, rate limiting)
# =============================================================================
