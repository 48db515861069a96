"""HTTP surface: Janus event intake and Prometheus scraping."""

import json
import logging
from aiohttp import web

from .config.settings import ServerConfig
from .engine import ReconciliationEngine
from .health import HealthCheckHandler
from .metrics import PrometheusMetricSink
from .utils.logging import log_error_with_context


logger = logging.getLogger(__name__)


class EventHandler:
    """Receives batches POSTed by the Janus HTTP event handler."""

    def __init__(self, engine: ReconciliationEngine, sink: PrometheusMetricSink):
        self.engine = engine
        self.sink = sink

    async def index(self, request: web.Request) -> web.Response:
        return web.Response(
            text="Janus events server, this page does nothing, Janus must POST to /event"
        )

    async def monitor(self, request: web.Request) -> web.Response:
        logger.debug("Got monitor request")
        return web.Response(text="up")

    async def event(self, request: web.Request) -> web.Response:
        """Apply a single event or a (nested) array of events."""
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Rejected event batch with invalid JSON: {e}")
            return web.json_response(
                {"ok": False, "error": "invalid JSON body"},
                status=400
            )

        # Applied without awaiting, so batches never interleave on the event loop
        try:
            result = self.engine.process_batch(body)
        except Exception as e:
            log_error_with_context(logger, e, "process_batch")
            return web.json_response({"ok": False, "error": str(e)}, status=500)

        if result["rejected"]:
            logger.debug(
                f"Batch applied: {result['processed']} processed, "
                f"{result['rejected']} rejected"
            )
        return web.Response(text="OK")

    async def metrics(self, request: web.Request) -> web.Response:
        payload, content_type = self.sink.render()
        response = web.Response(body=payload)
        # aiohttp refuses a charset inside content_type, so set the header directly
        response.headers["Content-Type"] = content_type
        return response


def create_app(
    engine: ReconciliationEngine,
    sink: PrometheusMetricSink,
    config: ServerConfig,
    service_name: str = "janus-exporter",
) -> web.Application:
    """Create and configure the aiohttp application."""
    app = web.Application()

    handler = EventHandler(engine, sink)
    health = HealthCheckHandler(engine, service_name)

    app.router.add_get("/", handler.index)
    app.router.add_get("/monitor/", handler.monitor)
    app.router.add_post(config.event_path, handler.event)
    app.router.add_get(config.metrics_path, handler.metrics)

    app.router.add_get("/health", health.health)
    app.router.add_get("/ready", health.ready)
    app.router.add_get("/live", health.live)

    return app
