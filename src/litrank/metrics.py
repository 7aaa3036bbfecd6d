# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Ranking metrics for observability.

Collects counters, labeled counters and latency statistics for tier
emissions, embedding batches, cache lookups, worker retries and cascade
transitions. One collector is injected into the orchestrator and shared
with the reranker; recording is thread-safe because worker threads report
into it.
"""

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Optional

# Metric name prefix for all ranking metrics
METRIC_PREFIX: str = "ranking"

# Bounded sample window for percentile estimates
MAX_LATENCY_SAMPLES = 1000


@dataclass
class LatencyStats:
    """Statistics for latency measurements.

    Attributes:
        count: Number of measurements.
        total_ms: Total latency in milliseconds.
        min_ms: Minimum latency in milliseconds.
        max_ms: Maximum latency in milliseconds.
        samples: Most recent measurements for percentiles.
    """

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0
    samples: list[float] = field(default_factory=list)

    def record(self, latency_ms: float) -> None:
        """Record a latency measurement."""
        self.count += 1
        self.total_ms += latency_ms
        self.min_ms = min(self.min_ms, latency_ms)
        self.max_ms = max(self.max_ms, latency_ms)
        self.samples.append(latency_ms)
        if len(self.samples) > MAX_LATENCY_SAMPLES:
            self.samples.pop(0)

    @property
    def avg_ms(self) -> float:
        """Average latency in milliseconds."""
        if self.count == 0:
            return 0.0
        return self.total_ms / self.count

    def percentile(self, pct: float) -> float:
        """Nearest-rank percentile over the sample window."""
        if not self.samples:
            return 0.0
        ordered = sorted(self.samples)
        idx = min(len(ordered) - 1, max(0, int(round(pct / 100.0 * len(ordered))) - 1))
        return ordered[idx]


class RankingMetrics:
    """Metrics collector for ranking operations.

    Example:
        >>> metrics = RankingMetrics()
        >>> metrics.record_tier("immediate", latency_ms=42.0, result_count=50)
        >>> metrics.record_cache_lookup(hit=True)
        >>> stats = metrics.get_stats()
    """

    def __init__(self):
        """Initialize the metrics collector."""
        self._lock = threading.Lock()
        self._counters: dict[str, int] = defaultdict(int)
        self._latencies: dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._labels: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))

    def record_tier(
        self,
        tier: str,
        latency_ms: float,
        result_count: int = 0,
        degraded: bool = False,
    ) -> None:
        """Record an emitted tier result.

        Args:
            tier: Tier label (immediate, refined, complete).
            latency_ms: Latency since request start.
            result_count: Number of ranked candidates emitted.
            degraded: Whether the tier carried a previous ranking.
        """
        with self._lock:
            self._counters["tier_total"] += 1
            self._counters["tier_results"] += result_count
            if degraded:
                self._counters["tier_degraded"] += 1
            self._labels["tier_by_name"][tier] += 1
            self._latencies[f"tier_{tier}"].record(latency_ms)

    def record_batch(self, size: int, latency_ms: float, success: bool = True, pooled: bool = True) -> None:
        """Record an embedding batch.

        Args:
            size: Texts in the batch.
            latency_ms: Time to obtain the vectors.
            success: Whether vectors were produced.
            pooled: Whether the worker pool computed the batch.
        """
        with self._lock:
            self._counters["batch_total"] += 1
            self._counters["batch_texts"] += size
            if not success:
                self._counters["batch_error"] += 1
            self._labels["batch_by_path"]["pool" if pooled else "sync"] += 1
            self._latencies["batch"].record(latency_ms)

    def record_cache_lookup(self, hit: bool, count: int = 1) -> None:
        """Record embedding cache lookups."""
        with self._lock:
            self._counters["cache_hit" if hit else "cache_miss"] += count

    def record_cascade(self, tier: str, result_count: int) -> None:
        """Record the cascade tier that produced a reranking."""
        with self._lock:
            self._labels["cascade_tier"][tier] += 1
            if result_count == 0:
                self._counters["cascade_empty"] += 1

    def increment_counter(
        self,
        name: str,
        value: int = 1,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """Increment a counter metric.

        Args:
            name: Name of the counter.
            value: Amount to increment by.
            labels: Optional labels for the metric.
        """
        with self._lock:
            self._counters[name] += value
            if labels:
                for label_key, label_value in labels.items():
                    self._labels[f"{name}_{label_key}"][label_value] += value

    def record_latency(self, operation: str, latency_ms: float) -> None:
        """Record latency for an operation."""
        with self._lock:
            self._latencies[operation].record(latency_ms)

    def get_counter(self, name: str) -> int:
        """Current value of a counter."""
        with self._lock:
            return self._counters.get(name, 0)

    def get_stats(self) -> dict[str, Any]:
        """Get all collected statistics.

        Returns:
            Dictionary containing all metrics and statistics.
        """
        with self._lock:
            latency_stats = {}
            for op, stats in self._latencies.items():
                latency_stats[f"{METRIC_PREFIX}.{op}"] = {
                    "count": stats.count,
                    "avg_ms": stats.avg_ms,
                    "min_ms": stats.min_ms if stats.count > 0 else 0.0,
                    "max_ms": stats.max_ms,
                    "p50_ms": stats.percentile(50),
                    "p95_ms": stats.percentile(95),
                    "p99_ms": stats.percentile(99),
                }

            return {
                "counters": dict(self._counters),
                "latencies": latency_stats,
                "labels": {k: dict(v) for k, v in self._labels.items()},
            }

    def reset(self) -> None:
        """Reset all metrics (for testing)."""
        with self._lock:
            self._counters.clear()
            self._latencies.clear()
            self._labels.clear()
