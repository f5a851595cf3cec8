# =============================================================================
# Services Package — Infrastructure and Shared Logic
# =============================================================================
#   - chunker.py: Markdown heading-aware token chunking with overlap
#   - embedder.py: Batched OpenAI embeddings with retry/backoff (tenacity)
#   - cache.py: Redis response + embedding cache (best-effort)
#   - vectorstore.py: Pluggable vector store protocol (pgvector, Chroma)
#   - llm.py: Multi-provider LLM abstraction with streaming
#   - taxonomy.py: Shared concept → category vocabulary
#   - parser.py: Markdown front matter parsing (PyYAML)
#   - ingestion.py: parse → chunk → embed → store
#   - rate_limiter.py: Fixed-window Redis rate limiting
#   - metrics.py: Per-request pipeline metrics sink
#   - errors.py: Error taxonomy
# =============================================================================
