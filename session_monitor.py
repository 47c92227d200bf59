"""
One monitoring session: a browser page bound to a stream plus its poll loop.

    CREATED -> CONNECTING -> MONITORING <-> ROTATING
                   |              |
                   +--> STOPPED <-+

Each tick runs snapshot -> locate -> extract -> dedup -> classify -> broadcast.
Ticks for the same session never overlap; a tick that overruns the interval
makes the loop skip the ticks it missed instead of queueing them.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

import broadcaster as events
from broadcaster import Broadcaster
from browser import PlaywrightBrowser, StreamBrowser, build_candidates, navigate_to_available_stream
from chat_locator import locate_chat_container
from config import MonitorSettings
from dedup_cache import DedupCache
from errors import ChatNotFound, NavigationError, PersistenceError
from intent_classifier import IntentClassifier, StreamContext
from message_extractor import extract_messages
from models import (
    ChatMessage,
    IntentClassification,
    StreamCandidate,
    is_auto_capture,
    iso_now,
)
from storage import StreamStore

LOGGER = logging.getLogger(__name__)

ROTATION_CANDIDATES = 3


class MonitorState(str, Enum):
    CREATED = "created"
    CONNECTING = "connecting"
    MONITORING = "monitoring"
    ROTATING = "rotating"
    STOPPED = "stopped"


@dataclass(frozen=True)
class MonitorRequest:
    """What the caller asked to watch."""

    url: Optional[str] = None
    auto_discover: bool = False
    fallback_urls: Sequence[str] = field(default_factory=tuple)
    context: StreamContext = field(default_factory=StreamContext)


class SessionMonitor:
    def __init__(
        self,
        session_id: str,
        request: MonitorRequest,
        *,
        broadcaster: Broadcaster,
        store: StreamStore,
        classifier: IntentClassifier,
        browser_factory: Callable[[], StreamBrowser] = PlaywrightBrowser,
        settings: MonitorSettings = MonitorSettings(),
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_stopped: Optional[Callable[["SessionMonitor"], None]] = None,
    ):
        self.session_id = session_id
        self.on_stopped = on_stopped
        self.request = request
        self.settings = settings
        self.state = MonitorState.CREATED
        self.stream: Optional[StreamCandidate] = None
        self.stream_id: Optional[str] = None

        self.total_messages = 0
        self.buyer_count = 0
        self.consecutive_failures = 0

        self._broadcaster = broadcaster
        self._store = store
        self._classifier = classifier
        self._browser_factory = browser_factory
        self._browser: Optional[StreamBrowser] = None
        self._clock = clock
        self._sleep = sleep
        self._dedup = DedupCache(settings.dedup_max_entries, settings.dedup_ttl_seconds, clock=clock)
        self._tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._started_at = clock()
        self._last_activity = clock()

    @property
    def estimated_value(self) -> float:
        return self.buyer_count * self.settings.value_per_sale

    @property
    def is_active(self) -> bool:
        return self.state in (MonitorState.CONNECTING, MonitorState.MONITORING, MonitorState.ROTATING)

    def stats(self) -> dict:
        elapsed_minutes = max((self._clock() - self._started_at) / 60, 1 / 60)
        return {
            "totalMessages": self.total_messages,
            "totalBuyers": self.buyer_count,
            "buyerCount": self.buyer_count,
            "estimatedValue": self.estimated_value,
            "messagesPerMinute": round(self.total_messages / elapsed_minutes),
            "lastScrape": iso_now(),
        }

    async def _publish(self, event: dict) -> None:
        if self.state == MonitorState.STOPPED and event.get("type") != events.ERROR:
            return
        await self._broadcaster.publish(self.session_id, event)

    # ============== CONNECTING ==============

    async def start(self) -> None:
        """Launch the browser, land on a stream and begin polling. Raises on failure."""
        if self.state != MonitorState.CREATED:
            raise RuntimeError(f"Session {self.session_id} already {self.state.value}")
        self.state = MonitorState.CONNECTING
        LOGGER.info("[Scraper] Starting session %s for %s", self.session_id,
                    "[auto-discovery]" if self.request.auto_discover else self.request.url)

        try:
            stream_record = await self._store.create_stream(self.request.url, self.request.auto_discover)
            self.stream_id = stream_record.id
        except PersistenceError as e:
            LOGGER.error("[Scraper] Failed to create stream session: %s", e)

        try:
            self._browser = self._browser_factory()
            await self._browser.launch()

            discovered: List[StreamCandidate] = []
            if self.request.auto_discover:
                discovered = await self._browser.discover_streams(self.settings.discovery_limit)

            candidates = build_candidates(
                discovered, self.request.url, self.request.fallback_urls, self.request.auto_discover,
            )
            if not candidates:
                raise NavigationError("No stream candidates available")

            LOGGER.info("[Scraper] Stream candidates: %s",
                        ", ".join(f"{c.url} ({c.source.value})" for c in candidates))
            self.stream = await navigate_to_available_stream(
                self._browser,
                candidates,
                retries=self.settings.nav_retries,
                backoff=self.settings.nav_backoff,
                timeout_ms=self.settings.nav_timeout_ms,
                sleep=self._sleep,
            )
        except Exception as e:
            LOGGER.error("[Scraper] Session %s failed to connect: %s", self.session_id, e)
            await self._teardown()
            await self._end_stream_record()
            await self._publish({"type": events.ERROR, "error": str(e)})
            raise

        await self._publish({"type": events.STREAM_SELECTED, "stream": self.stream.to_dict()})
        if self.settings.save_screenshot:
            await self._save_screenshot()

        self._last_activity = self._clock()
        self.state = MonitorState.MONITORING
        self._task = asyncio.create_task(self._run(), name=f"monitor:{self.session_id}")
        LOGGER.info("[Scraper] Monitoring %s", self.stream.url)

    async def _save_screenshot(self) -> None:
        path = os.path.join(os.getcwd(), f"debug-screenshot-{int(time.time())}.png")
        try:
            await self._browser.screenshot(path)
            LOGGER.info("[Scraper] Screenshot saved to %s", path)
        except Exception as e:
            LOGGER.warning("[Scraper] Unable to capture screenshot: %s", e)

    # ============== MONITORING ==============

    async def _run(self) -> None:
        interval = self.settings.poll_interval
        next_at = self._clock() + interval
        while self.is_active:
            await self._sleep(max(0.0, next_at - self._clock()))
            if not self.is_active:
                break

            await self.tick()

            if self.consecutive_failures >= self.settings.max_consecutive_failures:
                LOGGER.error("[Scraper] Session %s failed %d ticks in a row, stopping",
                             self.session_id, self.consecutive_failures)
                await self._publish({"type": events.ERROR, "error": "Monitoring stopped after repeated failures"})
                await self.stop()
                break

            next_at += interval
            now = self._clock()
            if next_at < now:
                missed = int((now - next_at) // interval) + 1
                LOGGER.debug("[Scraper] Tick overran, skipping %d tick(s)", missed)
                next_at += missed * interval

    async def tick(self) -> int:
        """Run one poll step. Returns the number of new messages (0 if skipped or failed)."""
        if self._tick_lock.locked():
            LOGGER.debug("[Scraper] Previous tick still running for %s, skipping", self.session_id)
            return 0

        async with self._tick_lock:
            if self.state != MonitorState.MONITORING:
                return 0
            try:
                fresh = await self._poll()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.consecutive_failures += 1
                LOGGER.exception("[Scraper] Monitoring error in session %s", self.session_id)
                return 0

            self.consecutive_failures = 0
            if not fresh and self.request.auto_discover:
                if self._clock() - self._last_activity > self.settings.quiet_period:
                    await self.rotate()
            return fresh

    async def _poll(self) -> int:
        snapshot = await self._browser.snapshot()
        try:
            container = locate_chat_container(snapshot)
        except ChatNotFound as e:
            LOGGER.debug("[Scraper] %s", e)
            return 0

        fresh = self._dedup.filter_new(extract_messages(container))
        if not fresh:
            LOGGER.debug("[Scraper] Scraping... (no new messages)")
            return 0

        self._last_activity = self._clock()
        self.total_messages += len(fresh)
        LOGGER.info("[Scraper] Found %d new messages (Total: %d)", len(fresh), self.total_messages)

        context = StreamContext(
            seller_name=self.request.context.seller_name,
            category=self.request.context.category,
            stream_url=self.stream.url if self.stream else None,
        )
        classifications = await self._classifier.classify_batch(fresh, context)

        for msg, detection in zip(fresh, classifications):
            await self._handle_message(msg, detection)

        await self._publish({"type": events.DEBUG_STATS, "stats": self.stats()})
        return len(fresh)

    async def _handle_message(self, msg: ChatMessage, detection: IntentClassification) -> None:
        LOGGER.debug("[Scraper] Comment: @%s said %r", msg.username, msg.message)
        timestamp = msg.observed_at.isoformat()
        captured = detection.is_buyer and is_auto_capture(detection.confidence, self.settings.capture_threshold)

        buyer_data = None
        if detection.is_buyer:
            if captured:
                self.buyer_count += 1
            buyer_data = {
                "username": msg.username,
                "message": msg.message,
                "confidence": detection.confidence,
                "category": detection.category.value,
                "reason": detection.reason,
                "itemWanted": detection.item_wanted,
                "timestamp": timestamp,
                "autoCaptured": captured,
                "buyerNumber": self.buyer_count if captured else None,
                "estimatedValue": self.settings.value_per_sale,
            }
            LOGGER.info("[Scraper] BUYER INTENT: @%s - %r | confidence %d%% | %s",
                        msg.username, msg.message, round(detection.confidence * 100), detection.reason)
            await self._publish({"type": events.BUYER_DETECTED, "buyer": buyer_data, "stats": self.stats()})

        await self._publish({
            "type": events.NEW_MESSAGE,
            "message": {
                "username": msg.username,
                "message": msg.message,
                "timestamp": timestamp,
                "isBuyer": detection.is_buyer,
                "confidence": detection.confidence,
                "category": detection.category.value,
                "isQuestion": msg.is_question,
            },
        })

        if captured and self.stream_id:
            try:
                await self._store.save_buyer_intent(self.stream_id, buyer_data)
            except PersistenceError as e:
                LOGGER.error("[Scraper] Failed to save buyer intent for @%s: %s", msg.username, e)

    # ============== ROTATING ==============

    async def rotate(self) -> bool:
        """Move to a different live stream after a quiet period. Returns True if we moved."""
        self.state = MonitorState.ROTATING
        LOGGER.info("[Scraper] Stream quiet, rotating session %s", self.session_id)
        moved = False
        try:
            discovered = await self._browser.discover_streams(self.settings.discovery_limit)
            current_url = self.stream.url if self.stream else None
            options = [c for c in discovered if c.url != current_url][:ROTATION_CANDIDATES]
            if options:
                self.stream = await navigate_to_available_stream(
                    self._browser,
                    options,
                    retries=self.settings.nav_retries,
                    backoff=self.settings.nav_backoff,
                    timeout_ms=self.settings.nav_timeout_ms,
                    sleep=self._sleep,
                )
                moved = True
            else:
                LOGGER.info("[Scraper] No other live streams to rotate to")
        except NavigationError as e:
            LOGGER.warning("[Scraper] Rotation failed: %s", e)
        finally:
            # Wait a full quiet period before trying again, moved or not
            self._last_activity = self._clock()
            if self.state == MonitorState.ROTATING:
                self.state = MonitorState.MONITORING

        if moved and self.state == MonitorState.MONITORING:
            await self._publish({"type": events.STREAM_SELECTED, "stream": self.stream.to_dict()})
            LOGGER.info("[Scraper] Rotated to %s", self.stream.url)
        return moved

    # ============== STOPPED ==============

    async def stop(self) -> None:
        """Cancel the poll loop, close the browser and end the stream record. Idempotent."""
        if self.state == MonitorState.STOPPED:
            return
        self.state = MonitorState.STOPPED

        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._teardown()
        await self._end_stream_record()
        LOGGER.info("[Scraper] Stopped session %s", self.session_id)
        if self.on_stopped is not None:
            self.on_stopped(self)

    async def _end_stream_record(self) -> None:
        if not self.stream_id:
            return
        try:
            await self._store.update_stream_counters(self.stream_id, self.total_messages)
            await self._store.end_stream(self.stream_id)
        except PersistenceError as e:
            LOGGER.error("[Scraper] Failed to end stream session %s: %s", self.stream_id, e)

    async def _teardown(self) -> None:
        self.state = MonitorState.STOPPED
        browser, self._browser = self._browser, None
        if browser is None:
            return
        try:
            await browser.close()
        except Exception as e:
            LOGGER.debug("[Scraper] Browser already closed: %s", e)

    def describe(self) -> dict:
        return {
            "sessionId": self.session_id,
            "streamId": self.stream_id,
            "state": self.state.value,
            "stream": self.stream.to_dict() if self.stream else None,
            "stats": self.stats(),
        }


