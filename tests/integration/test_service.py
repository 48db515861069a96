"""Service lifecycle tests."""

import asyncio
import logging

import pytest

from janus_exporter.config.settings import ExporterConfig, MetricsConfig, ServerConfig
from janus_exporter.main import JanusExporterService


pytestmark = pytest.mark.integration


@pytest.fixture
def restore_root_logger():
    """setup_logging replaces the root handlers; put pytest's back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.asyncio
async def test_service_starts_and_stops(restore_root_logger):
    config = ExporterConfig(
        server=ServerConfig(host="127.0.0.1", port=0),
        metrics=MetricsConfig(collect_process_metrics=False),
    )
    service = JanusExporterService(config)

    task = asyncio.create_task(service.start())
    for _ in range(100):
        if service.site is not None:
            break
        await asyncio.sleep(0.01)
    assert service.site is not None

    service.request_shutdown()
    await asyncio.wait_for(task, timeout=5)

    assert task.exception() is None
    assert service.engine.stats["events_processed"] == 0
