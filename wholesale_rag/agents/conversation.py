# =============================================================================
# Conversation Context — Per-Session Retrieval State
# =============================================================================
#
# Tracks what a chat session has already retrieved so follow-up questions
# don't re-surface the same documents verbatim.
#
# STATE (Redis JSON, key rag:session:<id>, TTL = inactivity timeout):
#   fetched_categories    de-duplicated
#   fetched_doc_ids       ring of the last 50
#   accumulated_concepts  ring of the last 30
#   last_query_time, message_count
#
# PER TURN (regex/keyword only, no LLM call):
#   - entities from the last user turns: addresses, zip codes, currency
#     amounts, property ids
#   - topics from the shared taxonomy
#   - topic change: the latest turn has topics and none of them were seen
#     in earlier turns. A changed topic means a fresh retrieval (no
#     exclusion); otherwise the session's fetched documents are excluded.
#
# Updates are read-then-write (last write wins) and every operation is
# best-effort: store errors are logged, never raised.
# =============================================================================

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from wholesale_rag.services import taxonomy

logger = logging.getLogger(__name__)

SESSION_PREFIX = "rag:session:"
RECENT_USER_TURNS = 3
MAX_ENTITIES = 10

_ENTITY_PATTERNS = (
    # street address
    re.compile(
        r"\b\d+\s+(?:[A-Za-z0-9]+\s+){0,4}?"
        r"(?:st|street|ave|avenue|rd|road|dr|drive|ln|lane|blvd|boulevard|"
        r"ct|court|way|pl|place)\b\.?",
        re.IGNORECASE,
    ),
    # zip code
    re.compile(r"\b\d{5}(?:-\d{4})?\b"),
    # currency amount
    re.compile(
        r"\$[\d,]+(?:\.\d+)?[kKmM]?\b|\b\d+(?:,\d{3})*\s*(?:thousand|million|k|m)\b",
        re.IGNORECASE,
    ),
    # property id
    re.compile(r"\bproperty[_\s-]?id[:\s#]*[\w-]+", re.IGNORECASE),
)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


class ConversationState(BaseModel):
    session_id: str
    fetched_categories: list[str] = Field(default_factory=list)
    fetched_doc_ids: list[str] = Field(default_factory=list)
    accumulated_concepts: list[str] = Field(default_factory=list)
    last_query_time: float = 0.0
    message_count: int = 0


@dataclass
class ConversationSummary:
    current_topic: str = "general"
    current_topics: list[str] = field(default_factory=list)
    key_entities: list[str] = field(default_factory=list)
    concepts_needed: list[str] = field(default_factory=list)
    previous_topics: list[str] = field(default_factory=list)

    @property
    def topic_changed(self) -> bool:
        return bool(
            self.current_topics
            and self.previous_topics
            and set(self.current_topics).isdisjoint(self.previous_topics)
        )


@dataclass
class ContextAwareQuery:
    query: str
    categories: list[str] = field(default_factory=list)
    exclude_doc_ids: list[str] = field(default_factory=list)
    boost_concepts: list[str] = field(default_factory=list)
    topic_changed: bool = False


# ---------------------------------------------------------------------------
# Extraction Helpers
# ---------------------------------------------------------------------------


def _user_turns(messages: Sequence[dict[str, Any]]) -> list[str]:
    return [
        m["content"]
        for m in messages
        if m.get("role") == "user" and isinstance(m.get("content"), str) and m["content"]
    ]


def extract_entities(texts: Iterable[str]) -> list[str]:
    """Addresses, zip codes, amounts and property ids, de-duplicated, max 10."""
    entities: dict[str, None] = {}
    for text in texts:
        for pattern in _ENTITY_PATTERNS:
            for match in pattern.finditer(text):
                entities[match.group(0).strip()] = None
    return list(entities)[:MAX_ENTITIES]


# ---------------------------------------------------------------------------
# Conversation Context
# ---------------------------------------------------------------------------


class ConversationContext:
    """
    Session state store plus per-turn summarisation.

    Args:
        redis: ``redis.asyncio.Redis`` or compatible client.
        ttl_seconds: Inactivity timeout; also the Redis key TTL.
        max_doc_ids: Ring size for fetched document ids.
        max_concepts: Ring size for accumulated concepts.
        clock: Wall-clock source, injectable for tests.
    """

    def __init__(
        self,
        redis: Any,
        ttl_seconds: int = 1800,
        max_doc_ids: int = 50,
        max_concepts: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self.ttl_seconds = ttl_seconds
        self.max_doc_ids = max_doc_ids
        self.max_concepts = max_concepts
        self._clock = clock

    # -----------------------------------------------------------------------
    # State persistence
    # -----------------------------------------------------------------------

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{SESSION_PREFIX}{session_id}"

    async def get_state(self, session_id: str) -> ConversationState | None:
        try:
            raw = await self._redis.get(self._key(session_id))
        except Exception as e:
            logger.warning("Could not load session %s: %s", session_id, e)
            return None
        if raw is None:
            return None
        try:
            return ConversationState.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Discarding malformed session %s: %s", session_id, e)
            return None

    async def save_state(self, state: ConversationState) -> None:
        state.fetched_doc_ids = state.fetched_doc_ids[-self.max_doc_ids:]
        state.accumulated_concepts = state.accumulated_concepts[-self.max_concepts:]
        state.fetched_categories = list(dict.fromkeys(state.fetched_categories))
        try:
            await self._redis.set(
                self._key(state.session_id), state.model_dump_json(), ex=self.ttl_seconds,
            )
        except Exception as e:
            logger.warning("Could not save session %s: %s", state.session_id, e)

    async def update_state(
        self,
        session_id: str,
        *,
        fetched_categories: list[str] | None = None,
        fetched_doc_ids: list[str] | None = None,
        accumulated_concepts: list[str] | None = None,
        message_increment: int = 0,
    ) -> ConversationState:
        """Replace the given fields, bump the timestamp, trim and save."""
        existing = await self.get_state(session_id)
        state = existing or ConversationState(session_id=session_id)
        if fetched_categories is not None:
            state.fetched_categories = list(fetched_categories)
        if fetched_doc_ids is not None:
            state.fetched_doc_ids = list(fetched_doc_ids)
        if accumulated_concepts is not None:
            state.accumulated_concepts = list(accumulated_concepts)
        state.message_count += message_increment
        state.last_query_time = self._clock()
        await self.save_state(state)
        return state

    async def record_retrieval(
        self,
        session_id: str,
        categories: Iterable[str] = (),
        doc_ids: Iterable[str] = (),
        concepts: Iterable[str] = (),
    ) -> ConversationState:
        """Append what one turn retrieved to the session (append-and-trim)."""
        existing = await self.get_state(session_id)
        state = existing or ConversationState(session_id=session_id)

        new_doc_ids = [str(d) for d in doc_ids]
        doc_ids_merged = [d for d in state.fetched_doc_ids if d not in new_doc_ids]
        concepts_merged = list(dict.fromkeys([*state.accumulated_concepts, *concepts]))

        return await self.update_state(
            session_id,
            fetched_categories=[*state.fetched_categories, *categories],
            fetched_doc_ids=[*doc_ids_merged, *new_doc_ids],
            accumulated_concepts=concepts_merged,
            message_increment=1,
        )

    async def clear(self, session_id: str) -> None:
        try:
            await self._redis.delete(self._key(session_id))
        except Exception as e:
            logger.warning("Could not clear session %s: %s", session_id, e)

    async def is_active(self, session_id: str) -> bool:
        state = await self.get_state(session_id)
        if state is None:
            return False
        return self._clock() - state.last_query_time < self.ttl_seconds

    # -----------------------------------------------------------------------
    # Per-turn analysis
    # -----------------------------------------------------------------------

    def summarize(
        self,
        messages: Sequence[dict[str, Any]],
        state: ConversationState | None,
    ) -> ConversationSummary:
        user_turns = _user_turns(messages)
        recent = user_turns[-RECENT_USER_TURNS:]
        latest = recent[-1] if recent else ""

        current_topics = taxonomy.extract_topics(latest)

        previous: dict[str, None] = {}
        for turn in user_turns[:-1]:
            previous.update(dict.fromkeys(taxonomy.extract_topics(turn)))
        if state is not None:
            previous.update(
                dict.fromkeys(c for c in state.accumulated_concepts if c in taxonomy.TOPIC_CATEGORIES)
            )

        fetched = set(state.fetched_categories) if state else set()
        concepts_needed = [] if taxonomy.FUNDAMENTALS in fetched else list(current_topics)

        return ConversationSummary(
            current_topic=current_topics[0] if current_topics else "general",
            current_topics=current_topics,
            key_entities=extract_entities(recent),
            concepts_needed=concepts_needed,
            previous_topics=list(previous),
        )

    def build_query(
        self,
        message: str,
        summary: ConversationSummary,
        state: ConversationState | None,
    ) -> ContextAwareQuery:
        """Turn a summary into search scope: categories, exclusions, boosts."""
        categories = taxonomy.categories_for_topics(summary.current_topics)
        if summary.concepts_needed:
            categories = taxonomy.merge_categories(categories, [taxonomy.FUNDAMENTALS])

        topic_changed = summary.topic_changed
        exclude = [] if topic_changed or state is None else list(state.fetched_doc_ids)

        return ContextAwareQuery(
            query=message,
            categories=categories,
            exclude_doc_ids=exclude,
            boost_concepts=summary.key_entities[:3],
            topic_changed=topic_changed,
        )
