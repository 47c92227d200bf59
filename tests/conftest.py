"""
Shared fakes for the monitor tests: a scripted browser, recording subscribers
and helpers that build synthetic chat pages as snapshot dicts.
"""

import json
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from config import MonitorSettings
from dom_snapshot import PageSnapshot
from errors import NavigationError
from models import StreamCandidate

STREAM_URL = "https://www.whatnot.com/live/abc123"
OTHER_STREAM_URL = "https://www.whatnot.com/live/def456"


# ============== DOM FIXTURES ==============

def node(tag="div", class_name="", own_text="", text="", rect=(0, 0, 0, 0), children=None, **extra) -> dict:
    left, top, width, height = rect
    data = {
        "tag": tag,
        "className": class_name,
        "ownText": own_text,
        "text": text,
        "textLength": len(text),
        "rect": {"left": left, "top": top, "width": width, "height": height},
        "scrollHeight": 0,
        "clientHeight": 0,
        "overflow": "visible",
        "visible": True,
        "children": children or [],
    }
    data.update(extra)
    return data


def bubble(username: str, message: str, top: int = 0) -> dict:
    """A chat row: username span over message span, like the live page renders it."""
    return node(
        class_name="row",
        text=f"{username}\n{message}",
        rect=(1000, top, 300, 44),
        children=[
            node("span", own_text=username, text=username, rect=(1000, top, 120, 20)),
            node("span", own_text=message, text=message, rect=(1000, top + 22, 260, 20)),
        ],
    )


def chat_page(messages: Sequence[Tuple[str, str]] = ()) -> dict:
    """Viewport with a 'Chat' header and a scrollable message list beside it."""
    rows = [bubble(username, message, top=100 + 50 * i) for i, (username, message) in enumerate(messages)]
    chat_list = node(
        class_name="list",
        rect=(1000, 80, 340, 600),
        children=rows,
        scrollHeight=2000,
        clientHeight=600,
        overflow="auto",
    )
    panel = node(
        class_name="panel",
        rect=(1000, 40, 340, 700),
        children=[node(own_text="Chat", text="Chat", rect=(1000, 40, 60, 30)), chat_list],
    )
    video = node(class_name="player", rect=(0, 0, 960, 700))
    return {
        "viewport": {"width": 1366, "height": 768},
        "root": node("body", rect=(0, 0, 1366, 768), children=[video, panel]),
    }


# ============== FAKES ==============

class FakeBrowser:
    """Scripted stand-in for PlaywrightBrowser."""

    def __init__(
        self,
        page: Optional[dict] = None,
        discovered: Sequence[StreamCandidate] = (),
        fail_urls: Sequence[str] = (),
        snapshot_error: Optional[Exception] = None,
    ):
        self.page = page if page is not None else chat_page()
        self.discovered = list(discovered)
        self.fail_urls = set(fail_urls)
        self.snapshot_error = snapshot_error
        self.launched = False
        self.closed = False
        self.current_url: Optional[str] = None
        self.visits: List[str] = []
        self.screenshots: List[str] = []

    async def launch(self):
        self.launched = True

    async def navigate(self, url, timeout_ms=0):
        self.visits.append(url)
        if url in self.fail_urls:
            raise NavigationError(f"Navigation to {url} failed: timeout")
        self.current_url = url

    async def snapshot(self):
        if self.snapshot_error is not None:
            raise self.snapshot_error
        return PageSnapshot.from_dict(self.page)

    async def discover_streams(self, limit=10):
        return self.discovered[:limit]

    async def screenshot(self, path):
        self.screenshots.append(path)

    async def close(self):
        self.closed = True


class BrowserFactory:
    """Hands out the queued browsers in order, then fresh default ones."""

    def __init__(self, *browsers: FakeBrowser):
        self.queued = list(browsers)
        self.created: List[FakeBrowser] = []

    def __call__(self) -> FakeBrowser:
        browser = self.queued.pop(0) if self.queued else FakeBrowser()
        self.created.append(browser)
        return browser


class RecordingSubscriber:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events: List[Dict] = []

    async def send(self, message: str) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.events.append(json.loads(message))

    def types(self) -> List[str]:
        return [event["type"] for event in self.events]


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings():
    # Poll loop effectively idle; tests drive ticks by hand
    return MonitorSettings(
        poll_interval=3600,
        quiet_period=30,
        nav_retries=2,
        nav_backoff=0,
        save_screenshot=False,
        max_consecutive_failures=10,
    )
