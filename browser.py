"""
Playwright browser session for one monitoring session, plus stream discovery
and candidate navigation.

Non-essential resources (images, fonts, media, stylesheets) are aborted at the
context level so stream pages come up quickly and stay light while polling.
"""

import asyncio
import logging
import re
from typing import Awaitable, Callable, Iterable, List, Optional, Protocol, Sequence

from playwright.async_api import Browser, BrowserContext, Page, Playwright, Route, async_playwright
from playwright.async_api import Error as PlaywrightError

import config
from dom_snapshot import MAX_SNAPSHOT_NODES, SNAPSHOT_SCRIPT, PageSnapshot
from errors import NavigationError
from models import CandidateSource, StreamCandidate

LOGGER = logging.getLogger(__name__)

VIEWER_COUNT_RE = re.compile(r"(\d+(?:\.\d+)?)([km]?)")

DISCOVERY_SCRIPT = """
(limit) => {
  const anchors = Array.from(document.querySelectorAll('a[href^="/live/"]'));
  const seen = new Set();
  const results = [];
  for (const anchor of anchors) {
    const href = anchor.getAttribute('href');
    if (!href || seen.has(href)) continue;
    seen.add(href);
    const viewerEl = anchor.querySelector('[data-testid*="viewer"], [aria-label*="viewer"], [class*="viewer"]');
    const titleEl = anchor.querySelector('h2, h3, span');
    results.push({
      url: new URL(href, location.origin).toString(),
      viewers: viewerEl ? (viewerEl.textContent || '') : '',
      title: titleEl ? titleEl.textContent.trim() : ''
    });
    if (results.length >= limit * 2) break;
  }
  return results;
}
"""


def parse_viewers(text: Optional[str]) -> int:
    """'1.2K watching' -> 1200, '3m' -> 3000000, junk -> 0."""
    if not text:
        return 0
    normalized = re.sub(r"[,\s]", "", str(text)).lower()
    match = VIEWER_COUNT_RE.search(normalized)
    if not match:
        return 0
    value = float(match.group(1))
    if match.group(2) == "k":
        value *= 1000
    elif match.group(2) == "m":
        value *= 1_000_000
    return int(round(value))


def dedupe_candidates(candidates: Iterable[StreamCandidate]) -> List[StreamCandidate]:
    """Drop repeated URLs, keeping the first occurrence."""
    seen = set()
    unique = []
    for candidate in candidates:
        if not candidate.url or candidate.url in seen:
            continue
        seen.add(candidate.url)
        unique.append(candidate)
    return unique


def rank_candidates(candidates: Iterable[StreamCandidate], limit: Optional[int] = None) -> List[StreamCandidate]:
    """Deduplicate by URL and order by viewer count, busiest first."""
    ranked = sorted(dedupe_candidates(candidates), key=lambda c: c.viewers or 0, reverse=True)
    return ranked[:limit] if limit else ranked


def build_candidates(
    discovered: Sequence[StreamCandidate],
    url: Optional[str],
    fallback_urls: Sequence[str],
    auto_discover: bool,
) -> List[StreamCandidate]:
    """Discovered streams first, then the requested URL, then fallbacks."""
    candidates = list(discovered)
    if url:
        source = CandidateSource.REQUESTED if auto_discover else CandidateSource.MANUAL
        candidates.append(StreamCandidate(url=url, source=source))
    for fallback_url in fallback_urls or ():
        if fallback_url and isinstance(fallback_url, str):
            candidates.append(StreamCandidate(url=fallback_url, source=CandidateSource.FALLBACK))
    return dedupe_candidates(candidates)


class StreamBrowser(Protocol):
    """What the session monitor needs from a browser; PlaywrightBrowser is the real one."""

    async def launch(self) -> None: ...

    async def navigate(self, url: str, timeout_ms: int) -> None: ...

    async def snapshot(self) -> PageSnapshot: ...

    async def discover_streams(self, limit: int) -> List[StreamCandidate]: ...

    async def screenshot(self, path: str) -> None: ...

    async def close(self) -> None: ...


async def navigate_to_available_stream(
    browser: StreamBrowser,
    candidates: Sequence[StreamCandidate],
    retries: int = config.NAV_RETRIES,
    backoff: float = config.NAV_BACKOFF,
    timeout_ms: int = config.NAV_TIMEOUT_MS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> StreamCandidate:
    """Try each candidate up to `retries` times with linear backoff; return the one that loaded."""
    for candidate in candidates:
        for attempt in range(1, retries + 1):
            LOGGER.info("[Browser] Attempting %s (try %d/%d)", candidate.url, attempt, retries)
            try:
                await browser.navigate(candidate.url, timeout_ms)
            except NavigationError as e:
                LOGGER.warning("[Browser] Attempt failed: %s", e)
                if attempt < retries and backoff > 0:
                    await sleep(backoff * attempt)
                continue
            LOGGER.info("[Browser] Connected to stream: %s", candidate.url)
            return candidate

    raise NavigationError("Unable to connect to any stream candidate")


class PlaywrightBrowser:
    def __init__(
        self,
        headless: bool = config.HEADLESS,
        executable_path: Optional[str] = config.CHROME_EXECUTABLE_PATH,
        base_url: str = config.PLATFORM_BASE_URL,
    ):
        self._headless = headless
        self._executable_path = executable_path
        self._base_url = base_url
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    @property
    def is_open(self) -> bool:
        return self._page is not None

    async def launch(self) -> None:
        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._playwright.chromium.launch(
                headless=self._headless,
                executable_path=self._executable_path,
                args=["--no-sandbox", "--disable-setuid-sandbox", "--hide-scrollbars"],
            )
            self._context = await self._browser.new_context(
                viewport=config.VIEWPORT,
                user_agent=config.USER_AGENT,
                ignore_https_errors=True,
            )
            await self._context.route("**/*", self._block_heavy_resources)
            self._page = await self._context.new_page()
        except PlaywrightError:
            await self.close()
            raise

    @staticmethod
    async def _block_heavy_resources(route: Route) -> None:
        if route.request.resource_type in config.BLOCKED_RESOURCE_TYPES:
            await route.abort()
        else:
            await route.continue_()

    def _require_page(self) -> Page:
        if self._page is None:
            raise RuntimeError("Browser is not launched")
        return self._page

    async def navigate(self, url: str, timeout_ms: int = config.NAV_TIMEOUT_MS) -> None:
        page = self._require_page()
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
            await page.wait_for_selector("body", timeout=15000)
            await page.wait_for_timeout(2000)
        except PlaywrightError as e:
            raise NavigationError(f"{url}: {e}") from e

    async def snapshot(self) -> PageSnapshot:
        page = self._require_page()
        data = await page.evaluate(SNAPSHOT_SCRIPT, MAX_SNAPSHOT_NODES)
        return PageSnapshot.from_dict(data)

    async def discover_streams(self, limit: int = config.DISCOVERY_LIMIT) -> List[StreamCandidate]:
        """Scrape the platform home page for live streams; empty list on any failure."""
        if self._context is None:
            return []

        discovery_page = None
        try:
            discovery_page = await self._context.new_page()
            await discovery_page.goto(self._base_url, wait_until="domcontentloaded", timeout=config.NAV_TIMEOUT_MS)
            await discovery_page.wait_for_timeout(2500)
            raw = await discovery_page.evaluate(DISCOVERY_SCRIPT, limit)
        except PlaywrightError as e:
            LOGGER.warning("[Browser] Unable to discover top streams: %s", e)
            return []
        finally:
            if discovery_page is not None:
                try:
                    await discovery_page.close()
                except PlaywrightError:
                    pass

        candidates = [
            StreamCandidate(
                url=item.get("url"),
                title=(item.get("title") or None),
                viewers=parse_viewers(item.get("viewers")),
                source=CandidateSource.AUTO,
            )
            for item in raw or []
            if isinstance(item, dict) and item.get("url")
        ]
        return rank_candidates(candidates, limit)

    async def screenshot(self, path: str) -> None:
        await self._require_page().screenshot(path=path, full_page=True)

    async def close(self) -> None:
        """Tear everything down; a browser that is already gone counts as closed."""
        for resource in (self._context, self._browser):
            if resource is None:
                continue
            try:
                await resource.close()
            except PlaywrightError as e:
                LOGGER.debug("[Browser] Ignoring close error: %s", e)
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except PlaywrightError as e:
                LOGGER.debug("[Browser] Ignoring playwright stop error: %s", e)
        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None
