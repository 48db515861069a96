"""Metric sink driven by the reconciliation engine."""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Mapping, Optional, Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)

from .config.settings import MetricsConfig


logger = logging.getLogger(__name__)

Labels = Optional[Mapping[str, str]]

# Gauges
SESSIONS_ACTIVE = "sessions_active"
ROOMS_ACTIVE = "rooms_active"
USERS_ACTIVE = "users_active"
PUBLISHERS_ACTIVE = "server_publishers_active"
SUBSCRIBERS_ACTIVE = "server_subscribers_active"
WEBSOCKET_ACTIVE = "server_websocket_active"

# Counters
SESSIONS_TOTAL = "sessions_total"
ROOMS_TOTAL = "rooms_total"
USERS_TOTAL = "users_total"
PEERCONNECTIONS_TOTAL = "server_peerconnections_total"
ICE_CONNECTIONS_TOTAL = "server_ice_connections_total"
ICE_DISCONNECTS_TOTAL = "server_ice_disconnects_total"
SUBSCRIBING_TOTAL = "server_subscribing_total"
SUBSCRIBERS_TOTAL = "server_subscribers_total"
MEDIA_TOTAL = "server_media_total"
WEBSOCKET_CONNECTIONS_TOTAL = "server_websocket_connections_total"
WEBSOCKET_DISCONNECTS_TOTAL = "server_websocket_disconnects_total"

# Histograms
USER_SESSION_DURATION = "users_session_duration"


GAUGES = {
    SESSIONS_ACTIVE: ("Tracks the number of active sessions", []),
    ROOMS_ACTIVE: ("Tracks the number of active rooms", []),
    USERS_ACTIVE: ("Tracks the number of active users in a room", []),
    PUBLISHERS_ACTIVE: ("Tracks the number of active publishers", []),
    SUBSCRIBERS_ACTIVE: ("Tracks the number of active subscribers", []),
    WEBSOCKET_ACTIVE: ("Tracks the active websocket connections to the server", []),
}

COUNTERS = {
    SESSIONS_TOTAL: ("Tracks the number of total sessions since server start", []),
    ROOMS_TOTAL: ("Tracks the number of total rooms since server start", []),
    USERS_TOTAL: ("Tracks the number of total users since server start", []),
    PEERCONNECTIONS_TOTAL: ("Tracks the total peer connections since server restart", []),
    ICE_CONNECTIONS_TOTAL: ("Tracks the total ICE connections since server restart", []),
    ICE_DISCONNECTS_TOTAL: ("Tracks the total ICE disconnects since server restart", []),
    SUBSCRIBING_TOTAL: (
        "Tracks the total number of attempts to subscribe to a remote feed (before answer)", []
    ),
    SUBSCRIBERS_TOTAL: ("Tracks the number of completed subscriptions", []),
    MEDIA_TOTAL: (
        "Tracks the total number of media streams being received by Janus", ["type"]
    ),
    WEBSOCKET_CONNECTIONS_TOTAL: (
        "Tracks the total of websocket connections to the server", []
    ),
    WEBSOCKET_DISCONNECTS_TOTAL: (
        "Tracks the total of websocket disconnects from the server", []
    ),
}


def duration_buckets(cap_minutes: int, width_minutes: int) -> List[float]:
    """Linear buckets from 0 to the cap, inclusive."""
    buckets = [float(edge) for edge in range(0, cap_minutes, width_minutes)]
    buckets.append(float(cap_minutes))
    return buckets


class MetricSink(ABC):
    """Instruments the reconciliation engine reports to."""

    @abstractmethod
    def inc(self, name: str, amount: float = 1, labels: Labels = None) -> None:
        """Increment a counter or gauge."""

    @abstractmethod
    def dec(self, name: str, amount: float = 1, labels: Labels = None) -> None:
        """Decrement a gauge."""

    @abstractmethod
    def set(self, name: str, value: float, labels: Labels = None) -> None:
        """Set a gauge."""

    @abstractmethod
    def observe(self, name: str, value: float, labels: Labels = None) -> None:
        """Record a histogram observation."""


class PrometheusMetricSink(MetricSink):
    """
    Metric sink backed by prometheus_client.

    Every instrument lives on its own CollectorRegistry so several sinks (one
    per test, for instance) can coexist in one process.
    """

    def __init__(self, config: MetricsConfig, registry: Optional[CollectorRegistry] = None):
        self.config = config
        self.registry = registry if registry is not None else CollectorRegistry()

        self.gauges: Dict[str, Gauge] = {}
        self.counters: Dict[str, Counter] = {}
        self.histograms: Dict[str, Histogram] = {}

        self._init_prometheus_metrics()

        if self.config.collect_process_metrics:
            self._init_process_collectors()

        logger.info("Prometheus metrics initialized")

    def _init_prometheus_metrics(self):
        """Define gauges, counters and the duration histogram."""
        for name, (documentation, label_names) in GAUGES.items():
            gauge = Gauge(name, documentation, label_names, registry=self.registry)
            if not label_names:
                gauge.set(0)
            self.gauges[name] = gauge

        for name, (documentation, label_names) in COUNTERS.items():
            self.counters[name] = Counter(
                name, documentation, label_names, registry=self.registry
            )

        self.histograms[USER_SESSION_DURATION] = Histogram(
            USER_SESSION_DURATION,
            "Tracks session duration for a user in minutes",
            buckets=duration_buckets(
                self.config.histogram_cap_minutes,
                self.config.histogram_bucket_width_minutes
            ),
            registry=self.registry
        )

    def _init_process_collectors(self):
        namespace = self.config.process_metrics_namespace
        ProcessCollector(namespace=namespace, registry=self.registry)
        PlatformCollector(registry=self.registry)

    def _child(self, metric, labels: Labels):
        if labels:
            return metric.labels(**labels)
        return metric

    def inc(self, name: str, amount: float = 1, labels: Labels = None) -> None:
        if name in self.counters:
            self._child(self.counters[name], labels).inc(amount)
        else:
            self._child(self.gauges[name], labels).inc(amount)

    def dec(self, name: str, amount: float = 1, labels: Labels = None) -> None:
        self._child(self.gauges[name], labels).dec(amount)

    def set(self, name: str, value: float, labels: Labels = None) -> None:
        self._child(self.gauges[name], labels).set(value)

    def observe(self, name: str, value: float, labels: Labels = None) -> None:
        self._child(self.histograms[name], labels).observe(value)

    def render(self) -> Tuple[bytes, str]:
        """Serialize the registry in the Prometheus text format."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
