# =============================================================================
# Vector Search — Category-Aware Retrieval with Fallback Merge
# =============================================================================
#
# Embeds the query once, then asks the vector store for matches.
#
# WITHOUT categories: one store query for (limit + #excluded) rows, drop
# excluded documents, truncate to limit.
#
# WITH categories: one query per category (limit ceil(limit/n) + 2) PLUS
# one unscoped fallback query (limit), issued concurrently with
# asyncio.gather so latency stays at roughly one round trip however many
# categories the classifier picked. Merge order:
#   1. every distinct chunk from the category queries, in category order
#   2. fallback chunks (skipping duplicates) while below limit
#   3. sort by similarity descending, truncate to limit
# Excluded documents are filtered at every step.
#
# The fallback always runs, even when the category queries already
# satisfy the limit: a classifier that picked the wrong category still
# gets the globally best chunks, at no extra latency.
#
# Store errors propagate; this is one of the few components allowed to
# fail a request.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Iterable, Sequence

from wholesale_rag.services.embedder import Embedder
from wholesale_rag.services.errors import QueryValidationError
from wholesale_rag.services.vectorstore import ChunkMatch, VectorStore

logger = logging.getLogger(__name__)


class VectorSearch:
    """
    Semantic search over the knowledge base.

    Args:
        store: Vector store backend.
        embedder: Query embedder (cached).
        default_limit: Results returned when ``limit`` is not given.
        default_threshold: Minimum similarity when ``threshold`` is not given.
    """

    def __init__(
        self,
        store: VectorStore,
        embedder: Embedder,
        default_limit: int = 5,
        default_threshold: float = 0.5,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self.default_limit = default_limit
        self.default_threshold = default_threshold

    async def search(
        self,
        query: str,
        limit: int | None = None,
        threshold: float | None = None,
        categories: Sequence[str] = (),
        exclude_doc_ids: Iterable[str] = (),
    ) -> list[ChunkMatch]:
        """
        Find the chunks most similar to ``query``.

        Returns at most ``limit`` matches, each with similarity >=
        ``threshold`` and none from an excluded document, ordered by
        similarity descending.

        Raises:
            QueryValidationError: If ``query`` is empty.
        """
        if not query or not query.strip():
            raise QueryValidationError("Search query must not be empty")

        limit = self.default_limit if limit is None else limit
        threshold = self.default_threshold if threshold is None else threshold
        if limit <= 0:
            return []

        excluded = {str(doc_id) for doc_id in exclude_doc_ids}
        categories = list(dict.fromkeys(c for c in categories if c))

        embedding = (await self._embedder.embed(query)).vector

        if not categories:
            matches = await self._store.match_chunks(
                embedding, threshold=threshold, limit=limit + len(excluded),
            )
            results = [m for m in matches if _accept(m, threshold, excluded)][:limit]
            logger.info("Search returned %d results (unscoped)", len(results))
            return results

        per_category = math.ceil(limit / len(categories)) + 2
        scoped_calls = [
            self._store.match_chunks(
                embedding, threshold=threshold, limit=per_category, category=category,
            )
            for category in categories
        ]
        fallback_call = self._store.match_chunks(
            embedding, threshold=threshold, limit=limit,
        )
        *scoped, fallback = await asyncio.gather(*scoped_calls, fallback_call)

        merged: dict[str, ChunkMatch] = {}
        for matches in scoped:
            for match in matches:
                if match.chunk_id not in merged and _accept(match, threshold, excluded):
                    merged[match.chunk_id] = match

        for match in fallback:
            if len(merged) >= limit:
                break
            if match.chunk_id not in merged and _accept(match, threshold, excluded):
                merged[match.chunk_id] = match

        results = sorted(merged.values(), key=lambda m: m.similarity, reverse=True)[:limit]
        logger.info(
            "Search returned %d results (categories=%s)", len(results), categories,
        )
        return results


def _accept(match: ChunkMatch, threshold: float, excluded: set[str]) -> bool:
    return match.similarity >= threshold and match.document_id not in excluded
