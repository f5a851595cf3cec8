# =============================================================================
# Wholesale Knowledge Assistant
# =============================================================================
# Retrieval-augmented Q&A over a curated real estate wholesaling knowledge
# base: category-aware semantic search, conversation-aware de-duplication,
# reactive re-retrieval from tool results and buffered streaming answers.
#
# Package structure:
#   wholesale_rag/
#   ├── api/          → FastAPI route handlers (ask, sessions, cache admin)
#   ├── agents/       → Query understanding, retrieval graph and generation
#   ├── db/           → Async engine and ORM models (pgvector)
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → Chunking, embedding, caching, vector stores, LLMs,
#   │                    taxonomy, parsing, ingestion, rate limiting
#   └── workers/      → Celery ingestion task
# =============================================================================
