"""Prometheus-backed metrics hooks for the keeper loop and action executor."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


@dataclass
class TickStats:
    status: str
    entities: int
    actions_dispatched: int
    fetch_errors: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose keeper stats via Prometheus.

    Each recorder owns its CollectorRegistry, so several instances (tests,
    one-shot runs) never collide on metric registration.
    """

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = CollectorRegistry()

        self._last_tick_stats: Optional[TickStats] = None
        self._action_counts: Dict[str, int] = {}
        self._failovers = 0

        self._tick_summary = Summary(
            "keeper_tick_duration_seconds",
            "Duration of a full scheduler tick",
            registry=self.registry,
        )
        self._tick_counter = Counter(
            "keeper_tick_total",
            "Total scheduler ticks by status",
            labelnames=("status",),
            registry=self.registry,
        )
        self._action_counter = Counter(
            "keeper_actions_total",
            "Actions by type and outcome",
            labelnames=("action", "outcome"),
            registry=self.registry,
        )
        self._action_summary = Summary(
            "keeper_action_duration_seconds",
            "Duration of submitted actions",
            labelnames=("action",),
            registry=self.registry,
        )
        self._in_flight_gauge = Gauge(
            "keeper_in_flight_actions",
            "Actions currently in flight",
            registry=self.registry,
        )
        self._entities_gauge = Gauge(
            "keeper_entities",
            "Tracked entities by state",
            labelnames=("state",),
            registry=self.registry,
        )
        self._failover_counter = Counter(
            "keeper_rpc_failovers_total",
            "RPC endpoint switches",
            labelnames=("to_endpoint",),
            registry=self.registry,
        )
        self._fetch_errors_counter = Counter(
            "keeper_snapshot_fetch_errors_total",
            "Snapshot fetch or decode failures",
            labelnames=("error_type",),
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
                logger.debug("Port %s in use, trying next port...", port)

        self._enabled = False
        logger.error(
            "Failed to start metrics exporter after trying ports %s: %s",
            ports_to_try, last_error
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_tick(self, stats: TickStats) -> None:
        self._last_tick_stats = stats
        if self._enabled:
            self._tick_summary.observe(stats.duration_seconds)
            self._tick_counter.labels(status=stats.status).inc()

    def record_action(self, action: str, outcome: str, duration_seconds: float = 0.0) -> None:
        key = f"{action}:{outcome}"
        self._action_counts[key] = self._action_counts.get(key, 0) + 1
        if self._enabled:
            self._action_counter.labels(action=action, outcome=outcome).inc()
            self._action_summary.labels(action=action).observe(max(duration_seconds, 0.0))

    def set_in_flight(self, count: int) -> None:
        if self._enabled:
            self._in_flight_gauge.set(max(count, 0))

    def record_entity_states(self, breakdown: Dict[str, int]) -> None:
        if self._enabled:
            for state, count in breakdown.items():
                self._entities_gauge.labels(state=state).set(max(count, 0))

    def record_failover(self, to_endpoint: str) -> None:
        self._failovers += 1
        if self._enabled:
            self._failover_counter.labels(to_endpoint=to_endpoint).inc()

    def record_fetch_error(self, error_type: str) -> None:
        if self._enabled:
            self._fetch_errors_counter.labels(error_type=self._normalize_error_type(error_type)).inc()

    def last_tick(self) -> Optional[TickStats]:
        return self._last_tick_stats

    def action_counts(self) -> Dict[str, int]:
        return dict(self._action_counts)

    def failover_count(self) -> int:
        return self._failovers

    @staticmethod
    def _normalize_error_type(error_type: str) -> str:
        """Normalize error types to keep label cardinality bounded"""
        error_lower = error_type.lower()

        if "timeout" in error_lower:
            return "timeout"
        elif "429" in error_lower or "rate" in error_lower:
            return "rate_limit"
        elif "validation" in error_lower or "decode" in error_lower:
            return "decode_error"
        elif "500" in error_lower or "502" in error_lower or "503" in error_lower:
            return "server_error"
        elif "connection" in error_lower or "transient" in error_lower:
            return "connection_error"
        else:
            return "other"


__all__ = ["MetricsRecorder", "TickStats"]
