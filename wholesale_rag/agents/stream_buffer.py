# =============================================================================
# Stream Buffer — Word / Sentence / Time-Based Flushing
# =============================================================================
#
# LLM streams arrive as sub-word fragments ("Th", "e 70", "% r"). Forwarding
# them raw makes the client render half-words. The buffer accumulates
# fragments and releases text when ANY of these holds:
#
#   (a) time:     flush_interval_ms elapsed since the last flush and the
#                 buffer is non-empty → release everything. Keeps a slow
#                 trickle with no punctuation moving.
#   (b) sentence: a sentence end (". ", "! ", "? ") exists and the prefix
#                 up to the last one is at least min_chunk_size chars
#   (c) word:     buffer ≥ min_chunk_size and contains a space/newline
#                 → release up to the last boundary
#
# flush() releases the remainder at end of stream. Concatenating every
# released piece always reproduces the input exactly.
# =============================================================================

from __future__ import annotations

import re
import time
from collections.abc import Callable

_SENTENCE_END = re.compile(r"[.!?]\s+")


class StreamBuffer:
    def __init__(
        self,
        flush_interval_ms: int = 100,
        min_chunk_size: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.flush_interval_ms = flush_interval_ms
        self.min_chunk_size = min_chunk_size
        self._clock = clock
        self._buffer = ""
        self._last_flush = clock()

    def add(self, text: str) -> str | None:
        """Append a fragment; return text ready to emit, or None."""
        self._buffer += text
        if not self._buffer:
            return None

        elapsed_ms = (self._clock() - self._last_flush) * 1000
        if elapsed_ms >= self.flush_interval_ms:
            return self.flush()

        sentence_end = 0
        for match in _SENTENCE_END.finditer(self._buffer):
            sentence_end = match.end()
        if sentence_end >= self.min_chunk_size:
            return self._release(sentence_end)

        if len(self._buffer) >= self.min_chunk_size:
            boundary = max(self._buffer.rfind(" "), self._buffer.rfind("\n"))
            if boundary > 0:
                return self._release(boundary + 1)

        return None

    def flush(self) -> str:
        content, self._buffer = self._buffer, ""
        self._last_flush = self._clock()
        return content

    def has_content(self) -> bool:
        return bool(self._buffer)

    def _release(self, end: int) -> str:
        content, self._buffer = self._buffer[:end], self._buffer[end:]
        self._last_flush = self._clock()
        return content
