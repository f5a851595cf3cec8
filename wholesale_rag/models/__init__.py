# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
#   - rag.py:       pipeline value types (Source, QueryClassification)
#   - requests.py:  API request bodies
#   - responses.py: API response bodies
#
# Kept apart from the ORM models in wholesale_rag/db/models.py so the
# public contract never exposes stored embeddings.
# =============================================================================
