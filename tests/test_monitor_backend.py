"""
HTTP API and WebSocket channel, wired to fake browsers and a temp-dir store.
"""
import asyncio
import json

import pytest
from aiohttp.test_utils import TestClient, TestServer
from websockets.asyncio.client import connect
from websockets.asyncio.server import serve

from errors import InvalidInput
from intent_classifier import HeuristicClassifier
from monitor_backend import MonitorBackend, create_app, make_ws_handler, validate_stream_url
from storage import JsonFileStore

from conftest import OTHER_STREAM_URL, STREAM_URL, BrowserFactory, FakeBrowser, chat_page


@pytest.fixture
def factory():
    return BrowserFactory()


@pytest.fixture
async def backend(tmp_path, settings, factory):
    backend = MonitorBackend(
        store=JsonFileStore(data_dir=str(tmp_path)),
        classifier=HeuristicClassifier(),
        browser_factory=factory,
        settings=settings,
    )
    yield backend
    await backend.registry.stop_all()


@pytest.fixture
async def client(backend):
    async with TestClient(TestServer(create_app(backend))) as client:
        yield client


class BrokenBrowser(FakeBrowser):
    async def launch(self):
        raise RuntimeError("browser executable not found")

class TestUrlValidation:

    def test_platform_url_accepted(self):
        validate_stream_url(STREAM_URL)

    @pytest.mark.parametrize("url", [None, "", "https://example.com/live/1", "whatnot.com/live/1"])
    def test_rejected(self, url):
        with pytest.raises(InvalidInput):
            validate_stream_url(url)

    def test_auto_discover_without_url(self):
        validate_stream_url(None, auto_discover=True)

    @pytest.mark.parametrize("url", ["", OTHER_STREAM_URL, "https://example.com/live/1"])
    def test_auto_discover_url_is_only_a_hint(self, url):
        validate_stream_url(url, auto_discover=True)

    def test_auto_discover_still_needs_http_url(self):
        with pytest.raises(InvalidInput):
            validate_stream_url("ftp://whatnot.com/live/1", auto_discover=True)


class TestHttpApi:

    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status == 200
        body = await resp.json()
        assert body["status"] == "ok"
        assert body["activeSessions"] == 0

    async def test_start_and_stop(self, client, factory):
        resp = await client.post("/api/start-monitoring", json={"url": STREAM_URL, "sessionId": "s1"})
        assert resp.status == 200
        body = await resp.json()
        assert body["status"] == "monitoring"
        assert body["sessionId"] == "s1"
        assert body["stream"]["url"] == STREAM_URL
        stream_id = body["streamId"]

        health = await (await client.get("/health")).json()
        assert health["activeSessions"] == 1

        resp = await client.post("/api/stop-monitoring", json={"sessionId": "s1"})
        assert resp.status == 200
        assert await resp.json() == {"status": "stopped", "sessionId": "s1", "streamId": stream_id}
        assert factory.created[0].closed

        resp = await client.post("/api/stop-monitoring", json={"sessionId": "s1"})
        assert resp.status == 404

        summary = await (await client.get(f"/api/stream-summary/{stream_id}")).json()
        assert summary["status"] == "ended"
        assert summary["totalBuyers"] == 0

    async def test_same_session_twice_keeps_one_browser(self, client, factory):
        for url in (STREAM_URL, OTHER_STREAM_URL):
            resp = await client.post("/api/start-monitoring", json={"url": url, "sessionId": "s1"})
            assert resp.status == 200

        health = await (await client.get("/health")).json()
        assert health["activeSessions"] == 1
        assert factory.created[0].closed
        assert not factory.created[1].closed

    async def test_start_rejects_foreign_url(self, client):
        resp = await client.post("/api/start-monitoring", json={"url": "https://example.com/x", "sessionId": "s1"})
        assert resp.status == 400
        assert "error" in await resp.json()

    async def test_start_requires_session_id(self, client):
        resp = await client.post("/api/start-monitoring", json={"url": STREAM_URL})
        assert resp.status == 400

    async def test_start_rejects_non_json(self, client):
        resp = await client.post("/api/start-monitoring", data="not json")
        assert resp.status == 400

    async def test_start_navigation_failure(self, client, factory):
        factory.queued.append(FakeBrowser(fail_urls=[STREAM_URL]))
        resp = await client.post("/api/start-monitoring", json={"url": STREAM_URL, "sessionId": "s1"})
        assert resp.status == 500
        assert "error" in await resp.json()

    async def test_auto_discover_without_url(self, client, factory):
        factory.queued.append(FakeBrowser(discovered=[]))
        resp = await client.post("/api/start-monitoring", json={
            "sessionId": "s1", "autoDiscover": True, "fallbackUrls": [STREAM_URL],
        })
        assert resp.status == 200
        body = await resp.json()
        assert body["stream"]["source"] == "fallback"

    async def test_auto_discover_with_empty_url(self, client, factory):
        factory.queued.append(FakeBrowser(discovered=[]))
        resp = await client.post("/api/start-monitoring", json={
            "sessionId": "s1", "url": "", "autoDiscover": True, "fallbackUrls": [STREAM_URL],
        })
        assert resp.status == 200
        body = await resp.json()
        assert body["stream"]["url"] == STREAM_URL

    async def test_null_fallback_urls(self, client):
        resp = await client.post("/api/start-monitoring", json={
            "sessionId": "s1", "url": STREAM_URL, "fallbackUrls": None,
        })
        assert resp.status == 200

    async def test_summary_unknown_stream(self, client):
        resp = await client.get("/api/stream-summary/stream_missing")
        assert resp.status == 404

    async def test_streams_listing(self, client):
        await client.post("/api/start-monitoring", json={"url": STREAM_URL, "sessionId": "s1"})
        body = await (await client.get("/api/streams")).json()
        assert [s["url"] for s in body["streams"]] == [STREAM_URL]

    async def test_intent_status_flow(self, client, backend):
        stream = await backend.store.create_stream(STREAM_URL)
        intent = await backend.store.save_buyer_intent(stream.id, {"username": "katie22", "message": "claiming"})

        resp = await client.post(f"/api/intents/{intent.id}/status", json={"status": "approved"})
        assert resp.status == 200
        assert (await resp.json())["status"] == "approved"

        resp = await client.post(f"/api/intents/{intent.id}/status", json={"status": "maybe"})
        assert resp.status == 400

        resp = await client.post("/api/intents/intent_missing/status", json={"status": "skipped"})
        assert resp.status == 404

    async def test_scrape_stream(self, client, factory):
        factory.queued.append(FakeBrowser(page=chat_page([("katie22", "I'll take the blue one")])))
        resp = await client.post("/api/scrape-stream", json={"url": STREAM_URL})
        assert resp.status == 200
        body = await resp.json()
        assert body["totalBuyers"] == 1

    async def test_scrape_stream_bad_url(self, client):
        resp = await client.post("/api/scrape-stream", json={"url": "https://example.com"})
        assert resp.status == 400

    @pytest.mark.parametrize("path", ["/api/scrape-stream", "/api/analyze-stream"])
    async def test_browser_launch_failure_is_json(self, client, factory, path):
        factory.queued.append(BrokenBrowser())
        resp = await client.post(path, json={"url": STREAM_URL})
        assert resp.status == 500
        assert resp.content_type == "application/json"
        body = await resp.json()
        assert body["details"] == "browser executable not found"


class TestWebSocket:

    @pytest.fixture
    async def ws_url(self, backend):
        async with serve(make_ws_handler(backend), "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            yield f"ws://127.0.0.1:{port}"

    async def recv_json(self, ws):
        return json.loads(await asyncio.wait_for(ws.recv(), timeout=5))

    async def test_connect_and_subscribe(self, ws_url, backend):
        async with connect(ws_url) as ws:
            assert (await self.recv_json(ws))["type"] == "connected"

            await ws.send("{not json")
            await ws.send(json.dumps({"type": "SUBSCRIBE", "sessionId": "s1"}))
            assert await self.recv_json(ws) == {"type": "subscribed", "sessionId": "s1"}

            await backend.broadcaster.publish("s1", {"type": "debug_stats", "stats": {}})
            event = await self.recv_json(ws)
            assert event["type"] == "debug_stats"
            assert event["sessionId"] == "s1"

            await ws.send(json.dumps({"type": "UNSUBSCRIBE"}))
            assert (await self.recv_json(ws))["type"] == "unsubscribed"
            assert backend.broadcaster.subscriber_count("s1") == 0

    async def test_monitor_action(self, ws_url, backend):
        async with connect(ws_url) as ws:
            await self.recv_json(ws)
            await ws.send(json.dumps({"action": "monitor", "url": STREAM_URL}))

            selected = await self.recv_json(ws)
            started = await self.recv_json(ws)
            assert selected["type"] == "stream_selected"
            assert started["type"] == "monitoring_started"
            assert started["sessionId"] == selected["sessionId"]
            assert backend.registry.active_count == 1

    async def test_monitor_action_bad_url(self, ws_url, backend):
        async with connect(ws_url) as ws:
            await self.recv_json(ws)
            await ws.send(json.dumps({"action": "monitor", "url": "https://example.com"}))
            reply = await self.recv_json(ws)
            assert reply["type"] == "error"
            assert backend.registry.active_count == 0
