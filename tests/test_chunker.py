# =============================================================================
# Unit Tests — Markdown Chunker
# =============================================================================
#
# Tests heading-aware, token-bounded chunking without external dependencies.
# tiktoken's cl100k_base encoding ships with the package; no network calls.
# =============================================================================

import pytest

from wholesale_rag.services.chunker import CONTINUATION_MARKER, Chunker, count_tokens


def _no_overlap(max_tokens: int = 800, min_tokens: int = 0) -> Chunker:
    return Chunker(max_tokens=max_tokens, min_tokens=min_tokens, overlap_tokens=0)


class TestCountTokens:
    def test_empty_string(self):
        assert count_tokens("") == 0

    def test_simple_words(self):
        assert count_tokens("hello world") == 2


class TestChunkerValidation:
    def test_rejects_non_positive_max(self):
        with pytest.raises(ValueError):
            Chunker(max_tokens=0)

    def test_rejects_min_above_max(self):
        with pytest.raises(ValueError):
            Chunker(max_tokens=100, min_tokens=200, overlap_tokens=0)

    def test_rejects_overlap_not_below_max(self):
        with pytest.raises(ValueError):
            Chunker(max_tokens=100, min_tokens=10, overlap_tokens=100)


class TestChunkStructure:
    """Section splitting and breadcrumbs."""

    def test_empty_document_returns_no_chunks(self):
        assert Chunker().chunk("") == []

    def test_whitespace_only_document_returns_no_chunks(self):
        assert Chunker().chunk("   \n\n\t\n") == []

    def test_short_section_is_one_chunk(self):
        text = "# The 70% Rule\n\nPay at most 70% of ARV minus repairs."
        chunks = _no_overlap().chunk(text)
        assert len(chunks) == 1
        assert chunks[0].index == 0
        assert chunks[0].header_breadcrumb == ["The 70% Rule"]
        assert "70% of ARV" in chunks[0].content
        assert chunks[0].is_continuation is False

    def test_breadcrumbs_follow_heading_ancestry(self):
        text = (
            "# Deal Analysis\n\nIntro.\n\n"
            "## Comps\n\nPick three sold comps.\n\n"
            "### Adjustments\n\nAdjust for square footage.\n\n"
            "## Repairs\n\nWalk the property."
        )
        chunks = _no_overlap().chunk(text)
        assert [c.header_breadcrumb for c in chunks] == [
            ["Deal Analysis"],
            ["Deal Analysis", "Comps"],
            ["Deal Analysis", "Comps", "Adjustments"],
            ["Deal Analysis", "Repairs"],
        ]

    def test_heading_without_body_joins_next_section(self):
        chunks = _no_overlap().chunk("# Guide\n## Offers\nAnchor low, then move slowly.")
        assert len(chunks) == 1
        assert chunks[0].header_breadcrumb == ["Guide", "Offers"]
        assert chunks[0].body == "# Guide\n## Offers\nAnchor low, then move slowly."

    def test_trailing_heading_is_kept(self):
        chunks = _no_overlap().chunk("# Offers\n\nAnchor low.\n\n## Next steps")
        assert [c.body for c in chunks] == ["# Offers\n\nAnchor low.", "## Next steps"]
        assert chunks[1].header_breadcrumb == ["Offers", "Next steps"]

    def test_heading_inside_code_fence_is_ignored(self):
        text = "# Script\n\n```\n# not a heading\nsay hello\n```"
        chunks = _no_overlap().chunk(text)
        assert len(chunks) == 1
        assert chunks[0].header_breadcrumb == ["Script"]
        assert "# not a heading" in chunks[0].content

    def test_chunk_indices_are_sequential(self):
        text = "\n\n".join(f"# Section {i}\n\nBody {i}." for i in range(6))
        chunks = Chunker().chunk(text)
        assert [c.index for c in chunks] == list(range(6))

    def test_chunking_is_deterministic(self):
        text = "# A\n\n" + "The buyer wants a discount. " * 80
        first = Chunker(max_tokens=60, min_tokens=10, overlap_tokens=15).chunk(text)
        second = Chunker(max_tokens=60, min_tokens=10, overlap_tokens=15).chunk(text)
        assert [c.content for c in first] == [c.content for c in second]


class TestTokenBounds:
    """Oversized sections are split without exceeding max_tokens."""

    def test_paragraphs_are_packed_under_limit(self):
        paragraph = "The seller wants to close quickly because of a probate situation."
        text = "# Motivation\n\n" + "\n\n".join([paragraph] * 40)
        chunks = _no_overlap(max_tokens=60, min_tokens=10).chunk(text)
        assert len(chunks) > 1
        for chunk in chunks:
            assert chunk.body_token_count <= 60

    def test_single_long_line_is_split_by_tokens(self):
        text = "# Notes\n\n" + "word " * 500
        chunks = _no_overlap(max_tokens=50, min_tokens=0).chunk(text)
        assert len(chunks) > 1
        for chunk in chunks:
            assert chunk.body_token_count <= 50

    def test_oversized_code_block_is_kept_whole(self):
        code = "```\n" + "\n".join(f"offer_{i} = arv_{i} * 0.7 - repairs_{i}" for i in range(60)) + "\n```"
        text = "# Calculator\n\nIntro paragraph.\n\n" + code
        chunks = _no_overlap(max_tokens=50, min_tokens=0).chunk(text)
        atomic = [c for c in chunks if c.is_atomic]
        assert len(atomic) == 1
        assert atomic[0].body == code
        assert atomic[0].body_token_count > 50

    def test_oversized_list_block_is_kept_whole(self):
        checklist = "Walkthrough checklist:\n" + "\n".join(
            f"- Check the roof, gutters and flashing on side {i}" for i in range(30)
        )
        text = "# Walkthrough\n\nIntro paragraph.\n\n" + checklist
        chunks = _no_overlap(max_tokens=50, min_tokens=0).chunk(text)
        atomic = [c for c in chunks if c.is_atomic]
        assert len(atomic) == 1
        assert atomic[0].body == checklist
        assert atomic[0].body_token_count > 50
        assert chunks[0].body == "# Walkthrough\n\nIntro paragraph."

    def test_mostly_prose_paragraph_is_split(self):
        prose = "\n".join(
            ["The seller inherited the house and lives out of state."] * 12
            + ["- call back next week"]
        )
        chunks = _no_overlap(max_tokens=50, min_tokens=0).chunk("# Notes\n\n" + prose)
        assert len(chunks) > 1
        assert not any(c.is_atomic for c in chunks)
        assert all(c.body_token_count <= 50 for c in chunks)

    def test_bodies_rebuild_document_in_order(self):
        line = "The seller wants to close quickly because of a probate situation."
        text = (
            "# Probate Deals\n## Overview\n\n"
            + "\n".join([line] * 4) + "\n\n"
            + "Court approval can take months.\n\n"
            "## Timeline\n\n- File the petition\n- Wait for the hearing\n\n"
            + "\n\n".join(f"Step {i}: {line}" for i in range(5))
            + "\n\n## Closing"
        )
        chunks = Chunker(max_tokens=40, min_tokens=5, overlap_tokens=10).chunk(text)
        assert len(chunks) > 3
        rebuilt = " ".join(c.body for c in chunks)
        assert rebuilt.split() == text.split()


class TestOverlap:
    def test_first_chunk_has_no_overlap(self):
        text = "# A\n\nFirst.\n\n# B\n\nSecond."
        chunks = Chunker(max_tokens=800, min_tokens=0, overlap_tokens=20).chunk(text)
        assert not chunks[0].content.startswith(CONTINUATION_MARKER)
        assert chunks[0].content == chunks[0].body

    def test_later_chunk_is_prefixed_with_previous_tail(self):
        text = "# A\n\nfirst section line one.\nfinal line of a.\n\n# B\n\nsecond body."
        chunks = Chunker(max_tokens=800, min_tokens=0, overlap_tokens=20).chunk(text)
        assert len(chunks) == 2
        second = chunks[1]
        assert second.is_continuation is True
        assert second.content.startswith(CONTINUATION_MARKER)
        assert "final line of a." in second.content
        assert second.body == "# B\n\nsecond body."
        assert second.content.endswith(second.body)
        assert second.token_count == count_tokens(second.content)

    def test_zero_overlap_disables_prefix(self):
        text = "# A\n\nFirst.\n\n# B\n\nSecond."
        chunks = _no_overlap().chunk(text)
        assert all(c.content == c.body for c in chunks)
