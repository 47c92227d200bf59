"""
Live Buyer Intel Backend
HTTP API (aiohttp) for the dashboard plus a WebSocket channel (websockets)
that streams session events to the dashboard and the browser extension.
"""

import asyncio
import json
import logging
import signal
import time
import uuid
from typing import List, Optional

from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

import config
from broadcaster import ALL_SESSIONS, Broadcaster
from browser import PlaywrightBrowser
from errors import InvalidInput, NavigationError, PersistenceError
from intent_classifier import (
    FallbackClassifier,
    HeuristicClassifier,
    IntentClassifier,
    LLMClassifier,
    StreamContext,
    build_classifier,
)
from llm_client import llm_available
from outreach import OutreachDrafter
from session_monitor import MonitorRequest, SessionMonitor
from session_registry import SessionRegistry
from storage import JsonFileStore, StreamStore
from stream_analysis import analyze_stream, scrape_stream

LOGGER = logging.getLogger(__name__)

CORS_ORIGINS = set(config.CORS_ORIGINS)


# ============== REQUEST BODIES ==============

class StartMonitoringBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1)
    url: Optional[str] = None
    auto_discover: bool = Field(default=False, alias="autoDiscover")
    fallback_urls: Optional[List[str]] = Field(default=None, alias="fallbackUrls")
    seller_name: Optional[str] = Field(default=None, alias="sellerName")
    category: Optional[str] = None


class StopMonitoringBody(BaseModel):
    session_id: str = Field(alias="sessionId", min_length=1)


class StreamUrlBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    seller_name: Optional[str] = Field(default=None, alias="sellerName")
    category: Optional[str] = None


class IntentStatusBody(BaseModel):
    status: str


def validate_stream_url(url: Optional[str], auto_discover: bool = False) -> None:
    """
    Manual sessions need a platform URL. Auto-discovery may run without one,
    and any URL it is given is only a hint, so just the scheme is checked.
    """
    if auto_discover:
        if url and not url.startswith(("http://", "https://")):
            raise InvalidInput("Invalid stream URL (expected an http(s) link)")
        return
    if not url or config.PLATFORM_HOST not in url or not url.startswith(("http://", "https://")):
        raise InvalidInput(f"Invalid stream URL (expected a {config.PLATFORM_HOST} link)")


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


# ============== BACKEND ==============

class MonitorBackend:
    """Wires the registry, broadcaster, store and classifiers together for both servers."""

    def __init__(
        self,
        store: Optional[StreamStore] = None,
        broadcaster: Optional[Broadcaster] = None,
        classifier: Optional[IntentClassifier] = None,
        browser_factory=PlaywrightBrowser,
        settings: config.MonitorSettings = config.MonitorSettings(),
    ):
        self.store = store or JsonFileStore()
        self.broadcaster = broadcaster or Broadcaster()
        self.classifier = classifier or build_classifier()
        self.browser_factory = browser_factory
        self.settings = settings
        self.registry = SessionRegistry(self._create_monitor)

    def _create_monitor(self, session_id: str, request: MonitorRequest) -> SessionMonitor:
        return SessionMonitor(
            session_id,
            request,
            broadcaster=self.broadcaster,
            store=self.store,
            classifier=self.classifier,
            browser_factory=self.browser_factory,
            settings=self.settings,
        )

    def analysis_classifier(self) -> IntentClassifier:
        if llm_available():
            return FallbackClassifier(LLMClassifier(), HeuristicClassifier())
        return HeuristicClassifier()

    async def start_session(self, body: StartMonitoringBody) -> SessionMonitor:
        validate_stream_url(body.url, body.auto_discover)
        context = StreamContext(
            seller_name=body.seller_name or "the seller",
            category=body.category or "various items",
            stream_url=body.url or None,
        )
        request = MonitorRequest(
            url=body.url or None,
            auto_discover=body.auto_discover,
            fallback_urls=tuple(u for u in body.fallback_urls or [] if u),
            context=context,
        )
        return await self.registry.start(body.session_id, request)


BACKEND_KEY = web.AppKey("backend", MonitorBackend)


# ============== HTTP ==============

def json_error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def read_body(request: web.Request, model):
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidInput("Request body must be JSON")
    if not isinstance(data, dict):
        raise InvalidInput("Request body must be a JSON object")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise InvalidInput(f"{field}: {first.get('msg')}" if field else first.get("msg"))


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except InvalidInput as e:
        return json_error(str(e), 400)
    except PersistenceError as e:
        LOGGER.error("[HTTP] Storage error on %s: %s", request.path, e)
        return json_error("Storage unavailable", 500)


@web.middleware
async def cors_middleware(request: web.Request, handler):
    if request.method == "OPTIONS":
        response = web.Response(status=204)
    else:
        response = await handler(request)
    origin = request.headers.get("Origin")
    if origin and origin in CORS_ORIGINS:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    return response


async def handle_start_monitoring(request: web.Request) -> web.Response:
    backend = request.app[BACKEND_KEY]
    body = await read_body(request, StartMonitoringBody)
    try:
        monitor = await backend.start_session(body)
    except InvalidInput:
        raise
    except NavigationError as e:
        return json_error(str(e), 500)
    except Exception as e:
        LOGGER.error("[HTTP] Failed to start session %s: %s", body.session_id, e)
        return json_error(str(e) or "Failed to start monitoring", 500)

    return web.json_response({
        "status": "monitoring",
        "sessionId": monitor.session_id,
        "streamId": monitor.stream_id,
        "stream": monitor.stream.to_dict() if monitor.stream else None,
        "message": "Real-time monitoring started. Connect to WebSocket for live updates.",
    })


async def handle_stop_monitoring(request: web.Request) -> web.Response:
    backend = request.app[BACKEND_KEY]
    body = await read_body(request, StopMonitoringBody)
    monitor = await backend.registry.stop(body.session_id)
    if monitor is None:
        return json_error("No active monitoring session", 404)
    return web.json_response({"status": "stopped", "sessionId": body.session_id, "streamId": monitor.stream_id})


async def handle_stream_summary(request: web.Request) -> web.Response:
    backend = request.app[BACKEND_KEY]
    summary = await backend.store.get_stream_summary(request.match_info["stream_id"])
    if summary is None:
        return json_error("Stream not found", 404)
    return web.json_response(summary)


async def handle_streams(request: web.Request) -> web.Response:
    backend = request.app[BACKEND_KEY]
    streams = await backend.store.get_all_streams()
    return web.json_response({"streams": [s.to_dict() for s in streams]})


async def handle_intent_status(request: web.Request) -> web.Response:
    backend = request.app[BACKEND_KEY]
    body = await read_body(request, IntentStatusBody)
    intent = await backend.store.update_intent_status(request.match_info["intent_id"], body.status)
    if intent is None:
        return json_error("Intent not found", 404)
    return web.json_response(intent.to_dict())


async def handle_scrape_stream(request: web.Request) -> web.Response:
    backend = request.app[BACKEND_KEY]
    body = await read_body(request, StreamUrlBody)
    validate_stream_url(body.url)
    try:
        result = await scrape_stream(body.url, HeuristicClassifier(), backend.browser_factory, backend.settings.value_per_sale)
    except Exception as e:
        LOGGER.error("[HTTP] Scrape failed for %s: %s", body.url, e)
        return web.json_response({"error": "Failed to scrape stream", "details": str(e)}, status=500)
    return web.json_response(result)


async def handle_analyze_stream(request: web.Request) -> web.Response:
    backend = request.app[BACKEND_KEY]
    body = await read_body(request, StreamUrlBody)
    validate_stream_url(body.url)
    try:
        result = await analyze_stream(
            body.url,
            backend.analysis_classifier(),
            OutreachDrafter(),
            seller_name=body.seller_name or "there",
            category=body.category or "items",
            browser_factory=backend.browser_factory,
            value_per_sale=backend.settings.value_per_sale,
        )
    except Exception as e:
        LOGGER.error("[HTTP] Analysis failed for %s: %s", body.url, e)
        return web.json_response({"error": "Failed to analyze stream", "details": str(e)}, status=500)
    return web.json_response(result)


async def handle_health(request: web.Request) -> web.Response:
    backend = request.app[BACKEND_KEY]
    return web.json_response({
        "status": "ok",
        "service": config.SERVICE_NAME,
        "activeSessions": backend.registry.active_count,
    })


def create_app(backend: MonitorBackend) -> web.Application:
    app = web.Application(middlewares=[cors_middleware, error_middleware])
    app[BACKEND_KEY] = backend
    app.router.add_post("/api/start-monitoring", handle_start_monitoring)
    app.router.add_post("/api/stop-monitoring", handle_stop_monitoring)
    app.router.add_get("/api/stream-summary/{stream_id}", handle_stream_summary)
    app.router.add_get("/api/streams", handle_streams)
    app.router.add_post("/api/intents/{intent_id}/status", handle_intent_status)
    app.router.add_post("/api/scrape-stream", handle_scrape_stream)
    app.router.add_post("/api/analyze-stream", handle_analyze_stream)
    app.router.add_get("/health", handle_health)
    return app


# ============== WEBSOCKET HANDLER ==============

def make_ws_handler(backend: MonitorBackend):
    broadcaster = backend.broadcaster

    async def send_json(websocket, payload: dict) -> None:
        await websocket.send(json.dumps(payload, default=str))

    async def start_from_socket(websocket, data: dict) -> Optional[str]:
        url = data.get("url")
        try:
            validate_stream_url(url)
        except InvalidInput as e:
            await send_json(websocket, {"type": "error", "error": str(e)})
            return None

        session_id = new_session_id()
        # Subscribe first so the client sees stream_selected
        broadcaster.subscribe(session_id, websocket)
        body = StartMonitoringBody(sessionId=session_id, url=url)
        try:
            monitor = await backend.start_session(body)
        except Exception as e:
            broadcaster.unsubscribe(websocket, session_id)
            await send_json(websocket, {"type": "error", "error": str(e)})
            return None

        await send_json(websocket, {
            "type": "monitoring_started",
            "status": "monitoring",
            "sessionId": session_id,
            "streamId": monitor.stream_id,
            "stream": monitor.stream.to_dict() if monitor.stream else None,
            "message": "Real-time monitoring started",
        })
        return session_id

    async def handle_client(websocket: ServerConnection):
        """Handle a WebSocket client connection"""
        client_session_id = None
        LOGGER.info("[WS] Client connected")

        try:
            await send_json(websocket, {"type": "connected", "message": f"Connected to {config.SERVICE_NAME}"})

            async for message in websocket:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    LOGGER.warning("[WS] Invalid JSON received")
                    continue
                if not isinstance(data, dict):
                    continue

                msg_type = data.get("type")
                if data.get("action") == "monitor":
                    started = await start_from_socket(websocket, data)
                    if started:
                        if client_session_id and client_session_id != started:
                            broadcaster.unsubscribe(websocket, client_session_id)
                        client_session_id = started

                elif msg_type == "SUBSCRIBE":
                    session_id = data.get("sessionId") or ALL_SESSIONS
                    if client_session_id:
                        broadcaster.unsubscribe(websocket, client_session_id)
                    client_session_id = session_id
                    broadcaster.subscribe(session_id, websocket)
                    LOGGER.info("[WS] Client subscribed to %s", session_id)
                    await send_json(websocket, {"type": "subscribed", "sessionId": session_id})

                elif msg_type == "UNSUBSCRIBE":
                    if client_session_id:
                        broadcaster.unsubscribe(websocket, client_session_id)
                        client_session_id = None
                    await send_json(websocket, {"type": "unsubscribed"})

                else:
                    LOGGER.info("[WS] Unknown message type: %s", msg_type)

        except ConnectionClosed:
            pass
        finally:
            broadcaster.unsubscribe(websocket)
            LOGGER.info("[WS] Client disconnected")

    return handle_client


# ============== MAIN ==============

async def main(stream_url: Optional[str] = None):
    """Start the HTTP and WebSocket servers, optionally with a default stream"""
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    LOGGER.info("[Config] LLM Provider: %s, classifier: %s", config.LLM_PROVIDER, config.CLASSIFIER)

    backend = MonitorBackend()
    runner = web.AppRunner(create_app(backend))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", config.PORT)
    await site.start()
    LOGGER.info("HTTP API on http://0.0.0.0:%d", config.PORT)
    LOGGER.info("WebSocket: ws://0.0.0.0:%d", config.WEBSOCKET_PORT)

    stop = asyncio.get_running_loop().create_future()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, stop.cancel)
        except NotImplementedError:
            pass

    try:
        async with serve(make_ws_handler(backend), "0.0.0.0", config.WEBSOCKET_PORT):
            if stream_url:
                LOGGER.info("Default stream: %s", stream_url)
                await backend.start_session(StartMonitoringBody(sessionId="cli", url=stream_url))
            try:
                await stop  # Run forever
            except asyncio.CancelledError:
                pass
    finally:
        await backend.registry.stop_all()
        await runner.cleanup()


def run():
    import sys
    stream_url = sys.argv[1] if len(sys.argv) > 1 else None
    asyncio.run(main(stream_url))


if __name__ == "__main__":
    run()
