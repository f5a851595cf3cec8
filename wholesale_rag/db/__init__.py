# =============================================================================
# Database Package
# =============================================================================
# Async SQLAlchemy engine, session management and ORM models for the
# pgvector backend.
#
# Key exports:
#   - get_async_session / async_session_factory: database sessions
#   - Base: SQLAlchemy declarative base
#   - Document, Chunk: knowledge-base articles and their embedded chunks
# =============================================================================
