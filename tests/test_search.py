# =============================================================================
# Unit Tests — Vector Search (category fan-out, fallback merge, exclusion)
# =============================================================================

import pytest

from tests.fakes import FakeEmbeddingsClient, FakeStore, _run, make_match, no_sleep
from wholesale_rag.agents.search import VectorSearch
from wholesale_rag.services.embedder import Embedder
from wholesale_rag.services.errors import QueryValidationError


def _search(store: FakeStore, **kwargs) -> VectorSearch:
    embedder = Embedder(FakeEmbeddingsClient(), sleep=no_sleep)
    return VectorSearch(store, embedder, **kwargs)


def _corpus():
    return [
        make_match("f1", "d1", 0.92, "Fundamentals"),
        make_match("f2", "d1", 0.81, "Fundamentals"),
        make_match("f3", "d2", 0.66, "Fundamentals"),
        make_match("m1", "d3", 0.88, "Market Analysis"),
        make_match("m2", "d4", 0.55, "Market Analysis"),
        make_match("n1", "d5", 0.95, "Negotiations"),
        make_match("low", "d6", 0.30, "Fundamentals"),
    ]


class TestUnscoped:
    def test_returns_top_matches_above_threshold(self):
        store = FakeStore(_corpus())
        results = _run(_search(store).search("arv", limit=3, threshold=0.5))
        assert [m.chunk_id for m in results] == ["n1", "f1", "m1"]
        assert len(store.queries) == 1
        assert store.queries[0]["category"] is None

    def test_over_fetches_to_cover_exclusions(self):
        store = FakeStore(_corpus())
        results = _run(_search(store).search("arv", limit=2, threshold=0.5, exclude_doc_ids=["d5"]))
        assert store.queries[0]["limit"] == 3
        assert [m.chunk_id for m in results] == ["f1", "m1"]

    def test_threshold_filters_low_similarity(self):
        store = FakeStore(_corpus())
        results = _run(_search(store).search("arv", limit=10, threshold=0.5))
        assert all(m.similarity >= 0.5 for m in results)
        assert "low" not in {m.chunk_id for m in results}

    def test_defaults_apply(self):
        store = FakeStore(_corpus())
        results = _run(_search(store, default_limit=2, default_threshold=0.9).search("arv"))
        assert [m.chunk_id for m in results] == ["n1", "f1"]


class TestCategoryScoped:
    def test_runs_one_query_per_category_plus_fallback(self):
        store = FakeStore(_corpus())
        _run(_search(store).search(
            "arv", limit=4, threshold=0.5, categories=["Fundamentals", "Market Analysis"],
        ))
        categories = [q["category"] for q in store.queries]
        assert sorted(categories, key=str) == sorted(["Fundamentals", "Market Analysis", None], key=str)
        per_category = [q["limit"] for q in store.queries if q["category"] is not None]
        assert per_category == [4, 4]  # ceil(4 / 2) + 2

    def test_fallback_runs_even_when_categories_fill_limit(self):
        store = FakeStore(_corpus())
        results = _run(_search(store).search(
            "arv", limit=2, threshold=0.5, categories=["Fundamentals"],
        ))
        assert None in [q["category"] for q in store.queries]
        assert [m.chunk_id for m in results] == ["f1", "f2"]

    def test_fallback_fills_shortfall(self):
        store = FakeStore(_corpus())
        results = _run(_search(store).search(
            "arv", limit=4, threshold=0.5, categories=["Market Analysis"],
        ))
        # Two market chunks, then the best unscoped chunks fill the rest.
        assert {m.chunk_id for m in results} == {"m1", "m2", "n1", "f1"}
        assert [m.similarity for m in results] == sorted(
            [m.similarity for m in results], reverse=True,
        )

    def test_no_duplicates_and_limit_respected(self):
        store = FakeStore(_corpus())
        results = _run(_search(store).search(
            "arv", limit=3, threshold=0.5,
            categories=["Fundamentals", "Negotiations", "Market Analysis"],
        ))
        ids = [m.chunk_id for m in results]
        assert len(ids) == len(set(ids)) == 3
        assert ids == ["n1", "f1", "m1"]

    def test_excluded_documents_never_returned(self):
        store = FakeStore(_corpus())
        results = _run(_search(store).search(
            "arv", limit=5, threshold=0.5,
            categories=["Fundamentals"], exclude_doc_ids=["d1", "d5"],
        ))
        assert all(m.document_id not in {"d1", "d5"} for m in results)
        assert results

    def test_blank_categories_are_ignored(self):
        store = FakeStore(_corpus())
        _run(_search(store).search("arv", limit=2, threshold=0.5, categories=["", ""]))
        assert len(store.queries) == 1


class TestEdgeCases:
    def test_empty_query_rejected(self):
        with pytest.raises(QueryValidationError):
            _run(_search(FakeStore()).search("  "))

    def test_zero_limit_returns_nothing_without_queries(self):
        store = FakeStore(_corpus())
        assert _run(_search(store).search("arv", limit=0)) == []
        assert store.queries == []

    def test_store_errors_propagate(self):
        store = FakeStore(error=RuntimeError("db down"))
        with pytest.raises(RuntimeError):
            _run(_search(store).search("arv"))
