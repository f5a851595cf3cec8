# =============================================================================
# Markdown Parser — YAML Front Matter (PyYAML)
# =============================================================================
#
# Knowledge-base articles are markdown files with a YAML front matter block:
#
#   ---
#   slug: seventy-percent-rule
#   title: The 70% Rule
#   category: Fundamentals
#   tags: [mao, arv]
#   difficulty_level: beginner
#   ---
#   # The 70% Rule
#   ...
#
# slug, title and category are required. Tags and related docs accept a
# YAML list or a comma-separated string. Unknown difficulty levels fall back
# to "intermediate".
#
# DESIGN DECISION: Own dataclass (ParsedDocument) rather than passing raw
# YAML dicts downstream, so the chunker, ingestion and vector stores only
# see normalised fields.
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from wholesale_rag.services.errors import DocumentParseError

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("slug", "title", "category")
DIFFICULTY_LEVELS = ("beginner", "intermediate", "advanced")

_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\n(.*?)\n---[ \t]*(?:\n|\Z)", re.DOTALL)
_CATEGORY_DIR_RE = re.compile(r"^\d{2}-")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ParsedDocument:
    """A knowledge-base article with normalised front matter."""

    slug: str
    title: str
    category: str
    content: str
    subcategory: str | None = None
    tags: list[str] = field(default_factory=list)
    related_docs: list[str] = field(default_factory=list)
    difficulty: str = "intermediate"
    source: str = ""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_document(text: str, source: str = "") -> ParsedDocument:
    """
    Parse a markdown document with YAML front matter.

    Args:
        text: Raw file contents.
        source: File path, used in error messages and as fallback category
            source (``01-fundamentals/`` → "Fundamentals").

    Raises:
        DocumentParseError: Front matter is malformed or missing required fields.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    match = _FRONT_MATTER_RE.match(text)
    if match:
        try:
            meta = yaml.safe_load(match.group(1)) or {}
        except yaml.YAMLError as exc:
            raise DocumentParseError(f"{source or '<document>'}: invalid front matter: {exc}") from exc
        if not isinstance(meta, dict):
            raise DocumentParseError(f"{source or '<document>'}: front matter must be a mapping")
        body = text[match.end():]
    else:
        meta, body = {}, text

    if not meta.get("category") and source:
        meta["category"] = category_from_path(source)

    missing = [name for name in REQUIRED_FIELDS if not meta.get(name)]
    if missing:
        raise DocumentParseError(
            f"{source or '<document>'}: missing required fields: {', '.join(missing)}"
        )

    subcategory = meta.get("subcategory")
    return ParsedDocument(
        slug=str(meta["slug"]).strip(),
        title=str(meta["title"]).strip(),
        category=str(meta["category"]).strip(),
        content=_clean_markdown(body),
        subcategory=str(subcategory).strip() if subcategory else None,
        tags=_normalise_list(meta.get("tags")),
        related_docs=_normalise_list(meta.get("related_docs")),
        difficulty=_normalise_difficulty(meta.get("difficulty_level")),
        source=source,
    )


def load_document(path: str | Path) -> ParsedDocument:
    """Read and parse a markdown file from disk."""
    path = Path(path)
    return parse_document(path.read_text(encoding="utf-8"), source=str(path))


def category_from_path(path: str) -> str | None:
    """``knowledge-base/04-market-analysis/x.md`` → "Market Analysis"."""
    for part in Path(path).parts:
        if _CATEGORY_DIR_RE.match(part):
            words = _CATEGORY_DIR_RE.sub("", part).split("-")
            return " ".join(w.capitalize() for w in words if w)
    return None


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _normalise_list(value: object) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        return []
    return [str(item).strip() for item in items if str(item).strip()]


def _normalise_difficulty(value: object) -> str:
    normalised = str(value or "intermediate").strip().lower()
    return normalised if normalised in DIFFICULTY_LEVELS else "intermediate"


def _clean_markdown(content: str) -> str:
    return re.sub(r"\n{3,}", "\n\n", content).strip()
