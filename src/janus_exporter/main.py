"""Janus Events Exporter Service - Janus event handler to Prometheus."""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from aiohttp import web

from .anomalies import AnomalyReporter
from .config.settings import ExporterConfig, load_config
from .engine import ReconciliationEngine
from .metrics import PrometheusMetricSink
from .server import create_app
from .state import StateStore
from .utils.logging import setup_logging


logger = logging.getLogger(__name__)

SERVICE_NAME = "janus-exporter"


class JanusExporterService:
    """Main exporter service: owns the engine and the HTTP site."""

    def __init__(self, config: ExporterConfig):
        self.config = config
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self._shutdown_event = asyncio.Event()

        setup_logging(self.config.logging, SERVICE_NAME)

        # State is memory-only and rebuilt from zero on every start
        self.anomalies = AnomalyReporter()
        self.store = StateStore(self.anomalies)
        self.sink = PrometheusMetricSink(self.config.metrics)
        self.engine = ReconciliationEngine(
            self.store, self.sink, self.config, anomalies=self.anomalies
        )
        self.app = create_app(self.engine, self.sink, self.config.server, SERVICE_NAME)

        logger.info("Janus Exporter Service initialized")

    async def start(self):
        """Start serving until a shutdown signal arrives."""
        host, port = self.config.server.host, self.config.server.port
        logger.info(f"Starting server on {host}:{port}")

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, host, port)
        await self.site.start()

        logger.info(
            f"Server listening on port {port}, Janus must POST to "
            f"{self.config.server.event_path}"
        )

        self._setup_signal_handlers()

        await self._shutdown_event.wait()

        logger.info("Shutting down Janus Exporter Service")
        await self.stop()

    async def stop(self):
        """Stop the HTTP site."""
        if self.site:
            await self.site.stop()

        if self.runner:
            await self.runner.cleanup()

        logger.info(
            f"Janus Exporter Service stopped "
            f"(events={self.engine.stats['events_processed']}, anomalies={self.anomalies.total})"
        )

    def request_shutdown(self):
        self._shutdown_event.set()

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum):
            logger.info(f"Received signal {signum}, initiating shutdown")
            self._shutdown_event.set()

        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, signal_handler, signum)


async def main():
    """Main entry point."""
    config_file = os.getenv("CONFIG_FILE")

    try:
        config = load_config(config_file)
        service = JanusExporterService(config)
        await service.start()
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        sys.exit(1)


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
