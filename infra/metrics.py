"""Prometheus-backed metrics hooks for market data resolution and the position monitor."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


@dataclass
class CycleStats:
    checked: int
    closed: int
    errors: int
    stale: int
    duration_seconds: float
    skipped: bool = False

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        return "error" if self.errors else "ok"


class MetricsRecorder:
    """
    Expose resolver, provider, cache and monitor stats via Prometheus.

    Each recorder owns its CollectorRegistry, so several instances (one per
    test, one per process) never collide on metric names. The HTTP exporter
    is only started on request.
    """

    def __init__(self, enabled: bool = True, port: int = 9100,
                 registry: Optional[CollectorRegistry] = None) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = registry or CollectorRegistry()

        self._last_cycle_stats: Optional[CycleStats] = None
        self._last_discovery: Dict[str, int] = {}

        self._collisions = Counter(
            "coinsim_resolver_collisions_total",
            "Ticker resolutions that matched more than one upstream instrument",
            labelnames=("symbol",),
            registry=self.registry,
        )
        self._fetches = Counter(
            "coinsim_provider_fetch_total",
            "Upstream fetch attempts by capability, provider and outcome",
            labelnames=("capability", "provider", "outcome"),
            registry=self.registry,
        )
        self._fallbacks = Counter(
            "coinsim_provider_fallback_total",
            "Fallbacks away from a provider after a retryable failure",
            labelnames=("capability", "provider"),
            registry=self.registry,
        )
        self._rate_limit_waits = Summary(
            "coinsim_rate_limit_wait_seconds",
            "Time spent waiting for a rate limit token",
            labelnames=("provider",),
            registry=self.registry,
        )
        self._rate_limit_rejections = Counter(
            "coinsim_rate_limit_rejections_total",
            "Requests refused because the bounded wait would be exceeded",
            labelnames=("provider",),
            registry=self.registry,
        )
        self._cache_requests = Counter(
            "coinsim_cache_requests_total",
            "Cache lookups by category and result",
            labelnames=("category", "result"),
            registry=self.registry,
        )
        self._cycle_summary = Summary(
            "coinsim_monitor_cycle_duration_seconds",
            "Duration of a position monitor cycle",
            registry=self.registry,
        )
        self._cycle_counter = Counter(
            "coinsim_monitor_cycle_total",
            "Position monitor cycles by status",
            labelnames=("status",),
            registry=self.registry,
        )
        self._closes = Counter(
            "coinsim_positions_closed_total",
            "Positions closed by reason",
            labelnames=("reason",),
            registry=self.registry,
        )
        self._discovery_rejections = Counter(
            "coinsim_discovery_rejections_total",
            "Discovery rejections by reason bucket",
            labelnames=("reason",),
            registry=self.registry,
        )
        self._discovery_candidates = Gauge(
            "coinsim_discovery_candidates",
            "Candidates that passed the last discovery run",
            registry=self.registry,
        )
        self._positions_gauge = Gauge(
            "coinsim_open_positions",
            "Number of open simulated positions",
            registry=self.registry,
        )

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port, registry=self.registry)
                self._started = True
                if port != self._port:
                    logger.warning(
                        "Port %s in use, successfully bound to port %s instead",
                        self._port, port
                    )
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                if port != ports_to_try[-1]:
                    logger.debug("Port %s in use, trying next port...", port)
                continue

        self._enabled = False
        logger.error(
            "Failed to start metrics exporter after trying ports %s: %s",
            ports_to_try, last_error
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def record_rate_limit(self, provider: str, wait_seconds: float = 0.0,
                          rejected: bool = False) -> None:
        if rejected:
            self._rate_limit_rejections.labels(provider=provider).inc()
        else:
            self._rate_limit_waits.labels(provider=provider).observe(max(wait_seconds, 0.0))

    def record_cache(self, category: str, hit: bool) -> None:
        self._cache_requests.labels(category=category, result="hit" if hit else "miss").inc()

    def record_collision(self, symbol: str, candidates: Sequence[str]) -> None:
        """Count an ambiguous ticker resolution (candidate ids are logged, not labelled)"""
        self._collisions.labels(symbol=symbol).inc()

    def record_fetch(self, capability: str, provider: str, outcome: str) -> None:
        self._fetches.labels(capability=capability, provider=provider, outcome=outcome).inc()

    def record_fallback(self, capability: str, provider: str) -> None:
        self._fallbacks.labels(capability=capability, provider=provider).inc()

    def record_monitor_cycle(self, stats: CycleStats) -> None:
        self._cycle_counter.labels(status=stats.status).inc()
        if not stats.skipped:
            self._cycle_summary.observe(stats.duration_seconds)
        self._last_cycle_stats = stats

    def record_close(self, reason: str) -> None:
        self._closes.labels(reason=reason).inc()

    def record_discovery(self, reason_counts: Mapping[str, int], candidates: int) -> None:
        for reason, count in reason_counts.items():
            if count:
                self._discovery_rejections.labels(reason=self._normalize_reason(reason)).inc(count)
        self._discovery_candidates.set(max(candidates, 0))
        self._last_discovery = dict(reason_counts)

    def set_open_positions(self, count: int) -> None:
        self._positions_gauge.set(max(count, 0))

    def last_cycle(self) -> Optional[CycleStats]:
        return self._last_cycle_stats

    def last_discovery(self) -> Dict[str, int]:
        return dict(self._last_discovery)

    def sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Current value of a sample (0.0 when never recorded)"""
        value = self.registry.get_sample_value(name, labels or {})
        return value if value is not None else 0.0

    @staticmethod
    def _normalize_reason(reason: str) -> str:
        """Collapse per-error detail so label cardinality stays bounded"""
        if reason.startswith("Error during analysis"):
            return "Error during analysis"
        return reason


__all__ = ["MetricsRecorder", "CycleStats"]
