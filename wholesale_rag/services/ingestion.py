# =============================================================================
# Ingestion Service — parse → chunk → embed → store
# =============================================================================
#
# Loads knowledge-base markdown into the vector store.
#
# PIPELINE (per document):
# 1. Parse YAML front matter (parser.py)
# 2. Hash the body; if the stored hash and embedding model both match,
#    skip the document entirely
# 3. Chunk (chunker.py) and batch-embed (embedder.py)
# 4. Replace the document and its chunks in the store
#
# Chunks whose embedding failed are dropped rather than stored without a
# vector. Such a document is stored with an empty content hash so the next
# run re-embeds it.
#
# After any document changes, cached answers are invalidated: they may cite
# content that no longer exists.
# =============================================================================

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from wholesale_rag.services.cache import RAGCache
from wholesale_rag.services.chunker import Chunker
from wholesale_rag.services.embedder import Embedder, content_hash
from wholesale_rag.services.parser import ParsedDocument, load_document
from wholesale_rag.services.vectorstore import StoredChunk, VectorStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class DocumentIngestion:
    slug: str
    skipped: bool = False
    chunks_created: int = 0
    embeddings_failed: int = 0


@dataclass
class IngestionError:
    file: str
    error: str


@dataclass
class IngestionResult:
    documents_processed: int = 0
    documents_skipped: int = 0
    chunks_created: int = 0
    embeddings_failed: int = 0
    errors: list[IngestionError] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return not self.errors


# ---------------------------------------------------------------------------
# Ingestor
# ---------------------------------------------------------------------------


class KnowledgeBaseIngestor:
    """
    Writes parsed documents into a VectorStore.

    Args:
        store: Target vector store.
        embedder: Batch embedder; its ``model`` is recorded per chunk.
        chunker: Markdown chunker.
        cache: Optional response cache to invalidate after changes.
    """

    def __init__(
        self,
        store: VectorStore,
        embedder: Embedder,
        chunker: Chunker,
        cache: RAGCache | None = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._chunker = chunker
        self._cache = cache

    async def ingest_document(
        self, document: ParsedDocument, force: bool = False
    ) -> DocumentIngestion:
        """Chunk, embed and store one document unless it is unchanged."""
        doc_hash = content_hash(document.content)
        model = self._embedder.model

        if not force and await self._store.get_document_hash(document.slug) == (doc_hash, model):
            logger.info("Skipping unchanged document '%s'", document.slug)
            return DocumentIngestion(slug=document.slug, skipped=True)

        chunks = self._chunker.chunk(document.content)
        batch = await self._embedder.embed_batch([c.content for c in chunks])

        stored = [
            StoredChunk(
                chunk_index=chunk.index,
                content=chunk.content,
                token_count=chunk.token_count,
                embedding=vector,
                content_hash=content_hash(chunk.content),
                header_breadcrumb=chunk.header_breadcrumb,
            )
            for chunk, vector in zip(chunks, batch.vectors, strict=True)
            if vector
        ]

        if batch.failure_count:
            logger.warning(
                "Dropped %d of %d chunks of '%s' after embedding failures",
                batch.failure_count, len(chunks), document.slug,
            )
            doc_hash = ""

        await self._store.replace_document(document, doc_hash, model, stored)
        return DocumentIngestion(
            slug=document.slug,
            chunks_created=len(stored),
            embeddings_failed=batch.failure_count,
        )

    async def ingest_directory(
        self, directory: str | Path, force: bool = False
    ) -> IngestionResult:
        """
        Ingest every ``*.md`` file under ``directory``.

        Per-file failures are recorded in the result; the run continues.

        Raises:
            NotADirectoryError: If ``directory`` is not a directory.
        """
        started = time.perf_counter()
        base = Path(directory).resolve()
        if not base.is_dir():
            raise NotADirectoryError(f"Invalid knowledge base path: {directory}")

        files = sorted(
            p for p in base.rglob("*.md")
            if p.is_file() and p.resolve().is_relative_to(base)
        )
        logger.info("Found %d documents under %s", len(files), base)

        result = IngestionResult()
        for path in files:
            name = str(path.relative_to(base))
            try:
                outcome = await self.ingest_document(load_document(path), force=force)
            except Exception as exc:
                logger.exception("Failed to ingest %s", name)
                result.errors.append(IngestionError(file=name, error=str(exc)))
                continue

            if outcome.skipped:
                result.documents_skipped += 1
            else:
                result.documents_processed += 1
                result.chunks_created += outcome.chunks_created
                result.embeddings_failed += outcome.embeddings_failed

        if result.documents_processed and self._cache is not None:
            await self._cache.invalidate_all_responses()

        result.duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Ingestion complete: %d processed, %d skipped, %d chunks, %d errors (%d ms)",
            result.documents_processed, result.documents_skipped,
            result.chunks_created, len(result.errors), result.duration_ms,
        )
        return result
