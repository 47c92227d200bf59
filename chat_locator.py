"""
Chat container locator.

The target site ships unversioned markup, so no single selector survives for long.
Instead we try an ordered list of named strategies against the page snapshot and
take the first hit.
"""

import logging
import re
from typing import Callable, NamedTuple, Optional, Sequence

from dom_snapshot import DomNode, PageSnapshot
from errors import ChatNotFound

LOGGER = logging.getLogger(__name__)

CHAT_LABEL_RE = re.compile(r"\bChat\b")
CHAT_CLASS_HINTS = ("chat", "message", "comment")
ANCESTOR_SCAN_DEPTH = 5


class LocatorStrategy(NamedTuple):
    name: str
    find: Callable[[PageSnapshot], Optional[DomNode]]


def find_by_chat_label(snapshot: PageSnapshot) -> Optional[DomNode]:
    """Anchor on the visible "Chat" tab/header and climb to its scroll region."""
    label = next(
        (el for el in snapshot.iter_elements() if CHAT_LABEL_RE.search(el.own_text)),
        None,
    )
    if label is None:
        return None

    for ancestor in label.iter_ancestors():
        if ancestor.has_scroll_style:
            return ancestor

    parent = label.parent
    for _ in range(ANCESTOR_SCAN_DEPTH):
        if parent is None:
            break
        scrollable = next((el for el in parent.iter_descendants() if el.is_scrollable), None)
        if scrollable is not None:
            return scrollable
        parent = parent.parent
    return None


def find_by_right_column(snapshot: PageSnapshot) -> Optional[DomNode]:
    """Chat usually sits in a tall column on the right 40% of the viewport."""
    width = snapshot.viewport_width
    if width <= 0:
        return None

    for el in snapshot.iter_elements():
        rect = el.rect
        if rect.left <= width * 0.6 or rect.width >= width * 0.4 or rect.height <= 300:
            continue
        if el.scroll_height > el.client_height or len(el.children) > 10:
            return el
    return None


def find_by_class_hint(snapshot: PageSnapshot) -> Optional[DomNode]:
    for el in snapshot.iter_elements():
        class_name = el.class_name.lower()
        if not any(hint in class_name for hint in CHAT_CLASS_HINTS):
            continue
        if el.rect.height > 400 and el.rect.width > 200:
            return el
    return None


DEFAULT_STRATEGIES: Sequence[LocatorStrategy] = (
    LocatorStrategy("chat-label", find_by_chat_label),
    LocatorStrategy("right-column", find_by_right_column),
    LocatorStrategy("class-hint", find_by_class_hint),
)


def locate_chat_container(
    snapshot: PageSnapshot,
    strategies: Sequence[LocatorStrategy] = DEFAULT_STRATEGIES,
) -> DomNode:
    """Return the first container any strategy finds, or raise ChatNotFound."""
    if snapshot.root is None:
        raise ChatNotFound("Page has no body")

    for strategy in strategies:
        container = strategy.find(snapshot)
        if container is not None:
            LOGGER.debug("[Locator] Chat container found via %s", strategy.name)
            return container

    raise ChatNotFound(f"No chat container after {len(strategies)} strategies")
