"""Integration tests for the HTTP surface: event intake, scraping and probes."""

import pytest
from aiohttp.test_utils import TestClient, TestServer

from janus_exporter.config.settings import ServerConfig
from janus_exporter.server import create_app


pytestmark = pytest.mark.integration


class _Client:
    """Runs the app on a test server for the duration of a ``with`` block."""

    def __init__(self, engine, sink, config=None):
        self.app = create_app(engine, sink, config or ServerConfig())
        self.client = None

    async def __aenter__(self) -> TestClient:
        self.client = TestClient(TestServer(self.app))
        await self.client.start_server()
        return self.client

    async def __aexit__(self, exc_type, exc, tb):
        await self.client.close()


class TestEventEndpoint:

    @pytest.mark.asyncio
    async def test_single_event(self, engine, sink, videoroom, metric):
        async with _Client(engine, sink) as client:
            resp = await client.post("/event", json=videoroom("joined", room=5, id=100))

            assert resp.status == 200
            assert await resp.text() == "OK"

        assert metric("users_active") == 1
        assert metric("rooms_total") == 1

    @pytest.mark.asyncio
    async def test_nested_batch(self, engine, sink, videoroom, session_event, metric):
        batch = [
            [session_event("created", session_id=1)],
            [
                videoroom("joined", room=5, id=100),
                [videoroom("leaving", room=5, id=100)],
            ],
        ]

        async with _Client(engine, sink) as client:
            resp = await client.post("/event", json=batch)
            assert resp.status == 200

        assert metric("sessions_active") == 1
        assert metric("users_total") == 1
        assert metric("users_active") == 0
        assert metric("rooms_active") == 0
        assert metric("users_session_duration_count") == 1

    @pytest.mark.asyncio
    async def test_malformed_events_still_acknowledged(self, engine, sink, videoroom, metric, anomalies):
        batch = [{"type": "bogus"}, videoroom("joined", room=5, id=100)]

        async with _Client(engine, sink) as client:
            resp = await client.post("/event", json=batch)
            assert resp.status == 200

        assert metric("users_active") == 1
        assert anomalies.counts["malformed_event"] == 1

    @pytest.mark.asyncio
    async def test_invalid_json(self, engine, sink):
        async with _Client(engine, sink) as client:
            resp = await client.post(
                "/event", data=b"{not json", headers={"Content-Type": "application/json"}
            )

            assert resp.status == 400
            assert await resp.json() == {"ok": False, "error": "invalid JSON body"}

        assert engine.stats["events_received"] == 0

    @pytest.mark.asyncio
    async def test_get_not_allowed(self, engine, sink):
        async with _Client(engine, sink) as client:
            resp = await client.get("/event")
            assert resp.status == 405

    @pytest.mark.asyncio
    async def test_custom_paths(self, engine, sink, videoroom):
        config = ServerConfig(event_path="/janus/events", metrics_path="/prom")

        async with _Client(engine, sink, config) as client:
            resp = await client.post("/janus/events", json=videoroom("joined", room=5, id=100))
            assert resp.status == 200

            resp = await client.get("/prom")
            assert "users_active 1.0" in await resp.text()


class TestMetricsEndpoint:

    @pytest.mark.asyncio
    async def test_scrape(self, engine, sink, videoroom, media_event):
        async with _Client(engine, sink) as client:
            await client.post("/event", json=[
                videoroom("published", handle_id=10, room=5, id=100),
                media_event("video", True, handle_id=10),
            ])

            resp = await client.get("/metrics")
            text = await resp.text()

        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/plain")
        assert "server_publishers_active 1.0" in text
        assert 'server_media_total{type="video"} 1.0' in text
        assert "# TYPE users_session_duration histogram" in text


class TestAuxiliaryEndpoints:

    @pytest.mark.asyncio
    async def test_index_and_monitor(self, engine, sink):
        async with _Client(engine, sink) as client:
            resp = await client.get("/")
            assert resp.status == 200
            assert "POST" in await resp.text()

            resp = await client.get("/monitor/")
            assert resp.status == 200
            assert await resp.text() == "up"

    @pytest.mark.asyncio
    async def test_health_probes(self, engine, sink):
        async with _Client(engine, sink) as client:
            resp = await client.get("/health")
            body = await resp.json()
            assert resp.status == 200
            assert body["status"] == "healthy"
            assert body["service"] == "janus-exporter"
            assert body["stats"]["state"]["rooms"] == 0

            resp = await client.get("/ready")
            assert (await resp.json())["ready"] is True

            resp = await client.get("/live")
            assert (await resp.json())["alive"] is True

    @pytest.mark.asyncio
    async def test_health_degraded_on_rejections(self, engine, sink):
        async with _Client(engine, sink) as client:
            await client.post("/event", json=[{"type": "bogus"}, {"type": "worse"}])

            resp = await client.get("/health")
            assert resp.status == 503
            assert (await resp.json())["status"] == "degraded"

            resp = await client.get("/ready")
            assert resp.status == 200
