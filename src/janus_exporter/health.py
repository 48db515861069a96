"""Health check endpoints for the exporter service."""

import json
import logging
from datetime import datetime, timezone
from aiohttp import web

from .engine import ReconciliationEngine


logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthCheckHandler:
    """Health check HTTP handler."""
    
    def __init__(self, engine: ReconciliationEngine, service_name: str = "janus-exporter"):
        self.engine = engine
        self.service_name = service_name
    
    async def health(self, request: web.Request) -> web.Response:
        """Basic health check endpoint."""
        try:
            health_data = self.engine.health_check()
            health_data["service"] = self.service_name
            
            status = 200 if health_data["status"] == "healthy" else 503
            
            return web.json_response(health_data, status=status, dumps=_dumps)
            
        except Exception as e:
            logger.error(f"Health check failed: {e}", exc_info=True)
            return web.json_response(
                {
                    "service": self.service_name,
                    "status": "unhealthy",
                    "error": str(e),
                    "timestamp": _now()
                },
                status=503
            )
    
    async def ready(self, request: web.Request) -> web.Response:
        """Readiness probe for Kubernetes."""
        try:
            health_data = self.engine.health_check()
            
            # Ready if it's healthy or degraded
            is_ready = health_data["status"] in ["healthy", "degraded"]
            status = 200 if is_ready else 503
            
            return web.json_response(
                {
                    "ready": is_ready,
                    "status": health_data["status"],
                    "timestamp": _now()
                },
                status=status
            )
            
        except Exception as e:
            logger.error(f"Readiness check failed: {e}", exc_info=True)
            return web.json_response(
                {
                    "ready": False,
                    "error": str(e),
                    "timestamp": _now()
                },
                status=503
            )
    
    async def live(self, request: web.Request) -> web.Response:
        """Liveness probe for Kubernetes."""
        return web.json_response(
            {
                "alive": True,
                "timestamp": _now()
            },
            status=200
        )


def _dumps(data) -> str:
    return json.dumps(data, default=str)
