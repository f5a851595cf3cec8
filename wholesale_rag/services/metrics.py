# =============================================================================
# Pipeline Metrics — Per-Request Timings
# =============================================================================
#
# Every generate() / generate_streaming() call produces one RAGMetrics
# record. The default sink writes a single structured log line:
#
#   [RAG] query=27chars classify=212ms search=88ms results=5
#         categories=[Fundamentals] complexity=simple total=1490ms
#
# Any object with `record(metrics)` can replace it (tests collect them in a
# list; a deployment could forward them to a metrics backend).
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass
class RAGMetrics:
    query_length: int
    total_ms: int = 0
    classification_ms: int | None = None
    search_ms: int | None = None
    generation_ms: int | None = None
    results_found: int = 0
    categories: list[str] = field(default_factory=list)
    complexity: str | None = None
    cached: bool = False


class MetricsSink(Protocol):
    def record(self, metrics: RAGMetrics) -> None: ...


class LoggingMetricsSink:
    """Writes one INFO line per request."""

    def record(self, metrics: RAGMetrics) -> None:
        parts = [f"query={metrics.query_length}chars"]
        if metrics.cached:
            parts.append("cached=true")
        if metrics.classification_ms is not None:
            parts.append(f"classify={metrics.classification_ms}ms")
        if metrics.search_ms is not None:
            parts.append(f"search={metrics.search_ms}ms")
        if metrics.generation_ms is not None:
            parts.append(f"generate={metrics.generation_ms}ms")
        parts.append(f"results={metrics.results_found}")
        parts.append(f"categories=[{','.join(metrics.categories)}]")
        if metrics.complexity:
            parts.append(f"complexity={metrics.complexity}")
        parts.append(f"total={metrics.total_ms}ms")
        logger.info("[RAG] %s", " ".join(parts))
