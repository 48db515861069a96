"""Pytest configuration and shared fixtures."""

import pytest
from typing import Any, Dict
from prometheus_client import CollectorRegistry

from janus_exporter.anomalies import AnomalyReporter
from janus_exporter.config.settings import ExporterConfig, MetricsConfig
from janus_exporter.engine import ReconciliationEngine
from janus_exporter.events import VIDEOROOM_PLUGIN, WEBSOCKETS_TRANSPORT
from janus_exporter.metrics import PrometheusMetricSink
from janus_exporter.state import StateStore


class FakeClock:
    """Controllable wall clock, in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0):
        self.now += minutes * 60 + seconds


@pytest.fixture
def test_config() -> ExporterConfig:
    """Create test configuration."""
    return ExporterConfig(metrics=MetricsConfig(collect_process_metrics=False))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def anomalies() -> AnomalyReporter:
    return AnomalyReporter()


@pytest.fixture
def store(anomalies) -> StateStore:
    return StateStore(anomalies)


@pytest.fixture
def sink(test_config, registry) -> PrometheusMetricSink:
    return PrometheusMetricSink(test_config.metrics, registry=registry)


@pytest.fixture
def engine(store, sink, test_config, anomalies, clock) -> ReconciliationEngine:
    return ReconciliationEngine(store, sink, test_config, anomalies=anomalies, clock=clock)


@pytest.fixture
def metric(registry):
    """Read a sample back from the test registry (0 when absent)."""
    def _read(name: str, **labels) -> float:
        value = registry.get_sample_value(name, labels or None)
        return 0.0 if value is None else value
    return _read


@pytest.fixture
def videoroom():
    """Factory for janus.plugin.videoroom plugin events."""
    def _create(action: str, session_id: int = 1, handle_id: int = 10, **data) -> Dict[str, Any]:
        return {
            "type": 64,
            "session_id": session_id,
            "handle_id": handle_id,
            "timestamp": 1640995200000000,
            "event": {
                "plugin": VIDEOROOM_PLUGIN,
                "data": {"event": action, **data},
            },
        }
    return _create


@pytest.fixture
def session_event():
    def _create(name: str, session_id: int = 1) -> Dict[str, Any]:
        return {
            "type": 1,
            "session_id": session_id,
            "timestamp": 1640995200000000,
            "event": {"name": name},
        }
    return _create


@pytest.fixture
def media_event():
    def _create(media: str, receiving: bool, session_id: int = 1, handle_id: int = 10) -> Dict[str, Any]:
        return {
            "type": 32,
            "session_id": session_id,
            "handle_id": handle_id,
            "timestamp": 1640995200000000,
            "event": {"media": media, "receiving": receiving},
        }
    return _create


@pytest.fixture
def websocket_event():
    def _create(action: str) -> Dict[str, Any]:
        return {
            "type": 128,
            "timestamp": 1640995200000000,
            "event": {
                "transport": WEBSOCKETS_TRANSPORT,
                "id": "0x7f8e2c001230",
                "data": {"event": action, "admin_api": False, "ip": "192.0.2.10"},
            },
        }
    return _create


@pytest.fixture
def webrtc_event():
    def _create(session_id: int = 1, handle_id: int = 10, **fields) -> Dict[str, Any]:
        return {
            "type": 16,
            "session_id": session_id,
            "handle_id": handle_id,
            "timestamp": 1640995200000000,
            "event": fields,
        }
    return _create
