# =============================================================================
# Vector Store Abstraction — Pluggable Backend Protocol
# =============================================================================
#
# Common interface for the persistent chunk index, with implementations for
# pgvector (PostgreSQL) and ChromaDB.
#
# The query side is a single primitive:
#   match_chunks(embedding, threshold, limit, category=None)
# returning chunks with cosine similarity >= threshold, most similar first,
# optionally restricted to one knowledge-base category. Category fan-out and
# result merging live in agents/search.py, above this layer.
#
# The ingestion side stores a whole document at once (replace semantics), so
# re-ingesting a changed article never leaves stale chunks behind.
#
# DESIGN DECISION: Protocol (structural typing) over ABC, so tests can pass
# an in-memory store without inheriting from anything.
#
# ARCHITECTURE:
#   VectorStore (Protocol)
#   ├── PgVectorStore     — PostgreSQL + pgvector (async SQLAlchemy)
#   └── ChromaVectorStore — ChromaDB; sync client wrapped in asyncio.to_thread
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import chromadb
from sqlalchemy import delete, select

from wholesale_rag.config import Settings
from wholesale_rag.db.models import Chunk, Document

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from wholesale_rag.services.parser import ParsedDocument

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ChunkMatch:
    """
    A single chunk returned by similarity search, with its document's
    citation fields joined in.
    """

    chunk_id: str
    document_id: str
    content: str
    similarity: float  # cosine similarity, higher = more relevant
    title: str
    category: str
    slug: str
    header_breadcrumb: list[str] = field(default_factory=list)
    chunk_index: int = 0


@dataclass
class StoredChunk:
    """A chunk plus its embedding, ready to be written to a store."""

    chunk_index: int
    content: str
    token_count: int
    embedding: list[float]
    content_hash: str
    header_breadcrumb: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class VectorStore(Protocol):
    """Interface every chunk index backend must implement."""

    async def match_chunks(
        self,
        query_embedding: list[float],
        *,
        threshold: float,
        limit: int,
        category: str | None = None,
    ) -> list[ChunkMatch]:
        """
        Return up to ``limit`` chunks with similarity >= ``threshold``,
        ordered by similarity descending.
        """
        ...

    async def get_document_hash(self, slug: str) -> tuple[str, str] | None:
        """(content_hash, embedding_model) of a stored document, if any."""
        ...

    async def replace_document(
        self,
        document: ParsedDocument,
        content_hash: str,
        embedding_model: str,
        chunks: list[StoredChunk],
    ) -> str:
        """Upsert the document and replace all of its chunks. Returns its id."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: pgvector
# ---------------------------------------------------------------------------


class PgVectorStore:
    """
    pgvector-backed store using the async SQLAlchemy session factory.

    pgvector's cosine_distance() is in [0, 2]; similarity = 1 - distance.
    For normalised embeddings (which OpenAI returns) that is in [0, 1].
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def match_chunks(
        self,
        query_embedding: list[float],
        *,
        threshold: float,
        limit: int,
        category: str | None = None,
    ) -> list[ChunkMatch]:
        distance = Chunk.embedding.cosine_distance(query_embedding)
        stmt = (
            select(Chunk, Document, distance.label("distance"))
            .join(Document, Chunk.document_id == Document.id)
            .where(Chunk.embedding.is_not(None))
            .where(Document.is_active.is_(True))
            .where(distance <= 1.0 - threshold)
            .order_by(distance)
            .limit(limit)
        )
        if category is not None:
            stmt = stmt.where(Document.category == category)

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        logger.debug(
            "pgvector returned %d rows (limit=%d, category=%s)",
            len(rows), limit, category,
        )

        return [
            ChunkMatch(
                chunk_id=str(chunk.id),
                document_id=str(doc.id),
                content=chunk.content,
                similarity=round(1.0 - distance, 4),
                title=doc.title,
                category=doc.category,
                slug=doc.slug,
                header_breadcrumb=list(chunk.header_breadcrumb or []),
                chunk_index=chunk.chunk_index,
            )
            for chunk, doc, distance in rows
        ]

    async def get_document_hash(self, slug: str) -> tuple[str, str] | None:
        stmt = select(Document.content_hash, Document.embedding_model).where(
            Document.slug == slug
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).first()
        return (row[0], row[1]) if row else None

    async def replace_document(
        self,
        document: ParsedDocument,
        content_hash: str,
        embedding_model: str,
        chunks: list[StoredChunk],
    ) -> str:
        async with self._session_factory() as session:
            existing = (
                await session.execute(select(Document).where(Document.slug == document.slug))
            ).scalar_one_or_none()

            if existing is None:
                existing = Document(slug=document.slug)
                session.add(existing)
            else:
                await session.execute(delete(Chunk).where(Chunk.document_id == existing.id))

            existing.title = document.title
            existing.category = document.category
            existing.subcategory = document.subcategory
            existing.tags = list(document.tags)
            existing.related_docs = list(document.related_docs)
            existing.difficulty = document.difficulty
            existing.content = document.content
            existing.content_hash = content_hash
            existing.embedding_model = embedding_model
            existing.is_active = True
            await session.flush()

            session.add_all(
                Chunk(
                    document_id=existing.id,
                    chunk_index=c.chunk_index,
                    content=c.content,
                    token_count=c.token_count,
                    header_breadcrumb=list(c.header_breadcrumb),
                    embedding=c.embedding,
                    content_hash=c.content_hash,
                    model_version=embedding_model,
                )
                for c in chunks
            )
            await session.commit()
            document_id = existing.id

        logger.info(
            "Stored %d chunks for '%s' (document_id=%d) in pgvector",
            len(chunks), document.slug, document_id,
        )
        return str(document_id)


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------


class ChromaVectorStore:
    """
    ChromaDB-backed store with one collection for the whole knowledge base.

    Document metadata (slug, title, category) is denormalised onto every
    chunk so category filtering is a plain ``where`` clause. The slug doubles
    as the document id.

    ChromaDB supports both in-process and client/server modes:
    - In-process (default): no extra infra, data held in memory
    - Client/server: set CHROMA_URL
    """

    def __init__(
        self,
        client: Any | None = None,
        collection_name: str = "wholesale_knowledge",
        url: str | None = None,
    ) -> None:
        if client is None:
            client = chromadb.HttpClient(host=url) if url else chromadb.Client()
        self._client = client

        # Cosine distance to match pgvector behaviour
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    async def match_chunks(
        self,
        query_embedding: list[float],
        *,
        threshold: float,
        limit: int,
        category: str | None = None,
    ) -> list[ChunkMatch]:
        def _sync_query() -> list[ChunkMatch]:
            results = self._collection.query(
                query_embeddings=[query_embedding],
                n_results=limit,
                where={"category": category} if category is not None else None,
                include=["documents", "metadatas", "distances"],
            )

            matches: list[ChunkMatch] = []
            if not (results and results["ids"] and results["ids"][0]):
                return matches

            for i, chroma_id in enumerate(results["ids"][0]):
                similarity = round(1.0 - results["distances"][0][i], 4)
                if similarity < threshold:
                    continue
                meta = results["metadatas"][0][i] or {}
                breadcrumb = meta.get("header_breadcrumb") or ""
                matches.append(ChunkMatch(
                    chunk_id=chroma_id,
                    document_id=str(meta.get("slug", "")),
                    content=results["documents"][0][i] or "",
                    similarity=similarity,
                    title=str(meta.get("title", "")),
                    category=str(meta.get("category", "")),
                    slug=str(meta.get("slug", "")),
                    header_breadcrumb=breadcrumb.split(" > ") if breadcrumb else [],
                    chunk_index=int(meta.get("chunk_index", 0)),
                ))
            return matches

        return await asyncio.to_thread(_sync_query)

    async def get_document_hash(self, slug: str) -> tuple[str, str] | None:
        def _sync_get() -> tuple[str, str] | None:
            found = self._collection.get(where={"slug": slug}, limit=1, include=["metadatas"])
            if not found["ids"]:
                return None
            meta = found["metadatas"][0]
            return str(meta.get("document_hash", "")), str(meta.get("model_version", ""))

        return await asyncio.to_thread(_sync_get)

    async def replace_document(
        self,
        document: ParsedDocument,
        content_hash: str,
        embedding_model: str,
        chunks: list[StoredChunk],
    ) -> str:
        def _sync_replace() -> None:
            self._collection.delete(where={"slug": document.slug})
            if not chunks:
                return
            self._collection.add(
                ids=[f"{document.slug}:{c.chunk_index}" for c in chunks],
                documents=[c.content for c in chunks],
                embeddings=[c.embedding for c in chunks],
                metadatas=[
                    _sanitise_chroma_metadata({
                        "slug": document.slug,
                        "title": document.title,
                        "category": document.category,
                        "subcategory": document.subcategory,
                        "chunk_index": c.chunk_index,
                        "token_count": c.token_count,
                        "header_breadcrumb": " > ".join(c.header_breadcrumb),
                        "content_hash": c.content_hash,
                        "document_hash": content_hash,
                        "model_version": embedding_model,
                    })
                    for c in chunks
                ],
            )

        await asyncio.to_thread(_sync_replace)
        logger.info(
            "Stored %d chunks for '%s' in ChromaDB", len(chunks), document.slug,
        )
        return document.slug


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def create_vector_store(
    cfg: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> PgVectorStore | ChromaVectorStore:
    """
    Build the configured vector store backend.

    - "pgvector" → PgVectorStore (requires ``session_factory``)
    - "chroma" → ChromaVectorStore
    """
    if cfg.vectorstore_type == "chroma":
        logger.info("Using ChromaDB vector store")
        return ChromaVectorStore(
            collection_name=cfg.chroma_collection, url=cfg.chroma_url,
        )

    if session_factory is None:
        raise ValueError("PgVectorStore requires an async session factory")
    logger.info("Using pgvector vector store")
    return PgVectorStore(session_factory)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    ChromaDB metadata values must be str, int, float or bool:
    lists become comma-separated strings, None becomes "".
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised
