# =============================================================================
# Markdown Chunker — Heading-Aware, Token-Bounded (tiktoken)
# =============================================================================
#
# Splits knowledge-base markdown into retrieval chunks that follow the
# document's own structure. Every chunk carries the heading ancestry
# ("breadcrumb") active at its source position, so a search hit can be cited
# as "Title > Section > Subsection".
#
# Token-based sizing (cl100k_base) matches what text-embedding-3-small sees.
#
# ALGORITHM:
# 1. Split into sections at heading lines (# .. ######), ignoring anything
#    that looks like a heading inside a fenced code block. A header stack
#    tracks ancestry: pop while depth >= current level, then push. A
#    heading with no body of its own is carried into the next section,
#    so every heading line lands in some chunk.
# 2. A section that fits in max_tokens becomes one chunk. Larger sections
#    are split into blank-line paragraphs (a fenced block is one paragraph)
#    and packed greedily. Atomic paragraphs (code, mostly-list) are never
#    split; other oversized paragraphs are split by line, then by token
#    window. A trailing piece below min_tokens is folded into its
#    predecessor when the result still fits.
# 3. Overlap pass: each chunk after the first is prefixed with the tail of
#    the previous chunk's body (up to overlap_tokens, whole lines first).
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

import tiktoken

logger = logging.getLogger(__name__)

CONTINUATION_MARKER = "[...continued]"

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*+]|\d+\.)\s")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class Chunk:
    """
    A single chunk ready for embedding and storage.

    ``content`` is what gets embedded and shown to the LLM: the primary
    ``body`` optionally prefixed by overlap from the previous chunk.
    ``token_count`` is measured on ``content``; ``body_token_count`` on the
    primary body alone, which never exceeds max_tokens unless the chunk is
    an oversized atomic block.
    """

    index: int
    content: str
    token_count: int
    header_breadcrumb: list[str] = field(default_factory=list)
    body: str = ""
    body_token_count: int = 0
    is_continuation: bool = False
    is_atomic: bool = False


@dataclass
class _Section:
    breadcrumb: list[str]
    text: str


# ---------------------------------------------------------------------------
# Tiktoken Encoder — Cached Singleton
# ---------------------------------------------------------------------------

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def count_tokens(text: str) -> int:
    """Exact cl100k_base token count of ``text``."""
    return len(_get_encoder().encode(text))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class Chunker:
    """
    Heading-aware markdown chunker.

    Args:
        max_tokens: Upper bound for a chunk's primary body.
        min_tokens: Trailing pieces smaller than this are merged backwards.
        overlap_tokens: Budget for the continuation prefix.
    """

    def __init__(
        self,
        max_tokens: int = 800,
        min_tokens: int = 100,
        overlap_tokens: int = 150,
    ):
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        if not 0 <= min_tokens <= max_tokens:
            raise ValueError("min_tokens must be between 0 and max_tokens")
        if not 0 <= overlap_tokens < max_tokens:
            raise ValueError("overlap_tokens must be in [0, max_tokens)")
        self.max_tokens = max_tokens
        self.min_tokens = min_tokens
        self.overlap_tokens = overlap_tokens

    def chunk(self, text: str) -> list[Chunk]:
        """
        Split markdown ``text`` into ordered chunks.

        Deterministic: the same input always yields the same chunks.
        Empty or whitespace-only input yields an empty list.
        """
        if not text or not text.strip():
            return []

        pieces: list[tuple[str, list[str], bool]] = []
        for section in _split_sections(text):
            for body, atomic in self._split_section(section.text):
                pieces.append((body, section.breadcrumb, atomic))

        chunks: list[Chunk] = []
        for idx, (body, breadcrumb, atomic) in enumerate(pieces):
            body_tokens = count_tokens(body)
            content = body
            is_continuation = False
            if idx > 0 and self.overlap_tokens > 0:
                overlap = self._overlap_tail(pieces[idx - 1][0])
                if overlap:
                    content = f"{CONTINUATION_MARKER}\n{overlap}\n\n{body}"
                    is_continuation = True

            chunks.append(Chunk(
                index=idx,
                content=content,
                token_count=count_tokens(content),
                header_breadcrumb=list(breadcrumb),
                body=body,
                body_token_count=body_tokens,
                is_continuation=is_continuation,
                is_atomic=atomic,
            ))

        logger.info(
            "Chunked text into %d chunks (avg %d tokens/chunk)",
            len(chunks),
            sum(c.token_count for c in chunks) // max(len(chunks), 1),
        )
        return chunks

    # -----------------------------------------------------------------------
    # Section splitting
    # -----------------------------------------------------------------------

    def _split_section(self, text: str) -> list[tuple[str, bool]]:
        """Split one section into (body, is_atomic) pieces."""
        if count_tokens(text) <= self.max_tokens:
            return [(text, False)]

        pieces: list[tuple[str, bool]] = []
        buffer: list[str] = []

        def flush() -> None:
            if buffer:
                pieces.append(("\n\n".join(buffer), False))
                buffer.clear()

        for para in _split_paragraphs(text):
            if count_tokens(para) > self.max_tokens:
                flush()
                if _is_atomic(para):
                    logger.debug("Keeping oversized atomic block intact")
                    pieces.append((para, True))
                else:
                    pieces.extend((p, False) for p in self._split_oversized(para))
                continue

            if buffer and count_tokens("\n\n".join([*buffer, para])) > self.max_tokens:
                flush()
            buffer.append(para)
        flush()

        return self._merge_small_tail(pieces)

    def _merge_small_tail(
        self, pieces: list[tuple[str, bool]]
    ) -> list[tuple[str, bool]]:
        if len(pieces) < 2:
            return pieces
        (prev, prev_atomic), (last, last_atomic) = pieces[-2], pieces[-1]
        if prev_atomic or last_atomic or count_tokens(last) >= self.min_tokens:
            return pieces
        merged = f"{prev}\n\n{last}"
        if count_tokens(merged) <= self.max_tokens:
            return [*pieces[:-2], (merged, False)]
        return pieces

    def _split_oversized(self, para: str) -> list[str]:
        """Split prose larger than max_tokens at line, then token, boundaries."""
        out: list[str] = []
        current: list[str] = []

        for line in para.split("\n"):
            if count_tokens(line) > self.max_tokens:
                if current:
                    out.append("\n".join(current))
                    current = []
                out.extend(self._split_by_tokens(line))
                continue
            if current and count_tokens("\n".join([*current, line])) > self.max_tokens:
                out.append("\n".join(current))
                current = []
            current.append(line)

        if current:
            out.append("\n".join(current))
        return [p for p in out if p.strip()]

    def _split_by_tokens(self, line: str) -> list[str]:
        encoder = _get_encoder()
        tokens = encoder.encode(line)
        out: list[str] = []
        start = 0
        while start < len(tokens):
            window = self.max_tokens
            piece = encoder.decode(tokens[start:start + window])
            # A decoded slice can re-encode slightly longer at byte seams.
            while window > 1 and count_tokens(piece) > self.max_tokens:
                window -= 1
                piece = encoder.decode(tokens[start:start + window])
            out.append(piece)
            start += window
        return out

    # -----------------------------------------------------------------------
    # Overlap
    # -----------------------------------------------------------------------

    def _overlap_tail(self, previous_body: str) -> str:
        """Tail of the previous body within the overlap budget."""
        selected: list[str] = []
        for line in reversed(previous_body.split("\n")):
            candidate = "\n".join([line, *selected])
            if count_tokens(candidate) > self.overlap_tokens:
                break
            selected.insert(0, line)

        tail = "\n".join(selected).strip()
        if tail:
            return tail

        # Last line alone exceeds the budget: fall back to its token tail.
        encoder = _get_encoder()
        tokens = encoder.encode(previous_body.rstrip())
        return encoder.decode(tokens[-self.overlap_tokens:]).strip()


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _split_sections(text: str) -> list[_Section]:
    """Split markdown into sections at headings outside fenced code."""
    sections: list[_Section] = []
    stack: list[tuple[int, str]] = []
    lines: list[str] = []
    has_body = False
    in_fence = False

    def flush() -> None:
        body = "\n".join(lines).strip("\n")
        if body.strip():
            sections.append(_Section([title for _, title in stack], body))

    for line in text.splitlines():
        if _FENCE_RE.match(line):
            in_fence = not in_fence
        elif not in_fence:
            match = _HEADING_RE.match(line)
            if match:
                # A heading with no body of its own joins the next section.
                if has_body:
                    flush()
                    lines = []
                    has_body = False
                level = len(match.group(1))
                while stack and stack[-1][0] >= level:
                    stack.pop()
                stack.append((level, match.group(2).strip()))
                lines.append(line)
                continue

        lines.append(line)
        if line.strip():
            has_body = True

    flush()
    return sections


def _split_paragraphs(text: str) -> list[str]:
    """Blank-line delimited paragraphs; fenced blocks stay whole."""
    paragraphs: list[str] = []
    current: list[str] = []
    in_fence = False

    for line in text.split("\n"):
        if _FENCE_RE.match(line):
            in_fence = not in_fence
        if not in_fence and not line.strip():
            if current:
                paragraphs.append("\n".join(current))
                current = []
            continue
        current.append(line)

    if current:
        paragraphs.append("\n".join(current))
    return paragraphs


def _is_atomic(para: str) -> bool:
    """Code blocks and mostly-list paragraphs are never split."""
    if _FENCE_RE.match(para) or para.startswith(("    ", "\t")):
        return True
    lines = [ln for ln in para.split("\n") if ln.strip()]
    if not lines:
        return False
    list_lines = sum(1 for ln in lines if _LIST_ITEM_RE.match(ln))
    return list_lines / len(lines) > 0.5
