"""
Pull (username, message) pairs out of a located chat container.

Chat bubbles render inconsistently: sometimes the username and the message are
separate lines, sometimes one concatenated string. We parse line-based first and
fall back to a colon split, then to the first whitespace token.
"""

import logging
import re
from typing import List, Optional, Tuple

import emoji

from dom_snapshot import DomNode
from models import ChatMessage, utc_now

LOGGER = logging.getLogger(__name__)

MIN_BUBBLE_WIDTH = 100
MIN_BUBBLE_HEIGHT = 20
MIN_TEXT_LENGTH = 3
MAX_TEXT_LENGTH = 200
MAX_BUBBLE_LINES = 3

MIN_USERNAME_LENGTH = 2
MAX_USERNAME_LENGTH = 20
MIN_MESSAGE_LENGTH = 2
MAX_MESSAGE_LENGTH = 200

# System, promotional and UI chrome strings that show up inside the chat column
NOISE_PHRASES = (
    "FOLLOWERS", "JOIN NOW", "RESTOCK", "BEST PRICE",
    "Welcome", "explicit content", "Sign up", "Continue with",
    "http", "Terms", "Follow Host", "Say something",
    "Host", "Moderator", "Bidding",
)
FOLLOWER_COUNT_RE = re.compile(r"\d+K FOLLOWERS", re.IGNORECASE)
CAPS_BANNER_RE = re.compile(r"[A-Z\s]+")
SINGLE_WORD_RE = re.compile(r"\w+\s*")
BARE_HANDLE_RE = re.compile(r"[a-z]+\d+", re.IGNORECASE)
USERNAME_STRIP_RE = re.compile(r"[^\w]", re.ASCII)
COLON_SPLIT_RE = re.compile(r":\s*")


def convert_emoji_codes(text: str) -> str:
    """Render :shortcode: emoji the way the chat shows them."""
    return emoji.emojize(text, language="alias")


def is_noise(text: str) -> bool:
    if any(phrase in text for phrase in NOISE_PHRASES):
        return True
    if FOLLOWER_COUNT_RE.search(text):
        return True

    without_emoji = emoji.replace_emoji(text, replace="")
    if len(text) >= 10 and without_emoji.strip() and CAPS_BANNER_RE.fullmatch(without_emoji):
        return True

    return bool(SINGLE_WORD_RE.fullmatch(text) or BARE_HANDLE_RE.fullmatch(text))


def _clean_username(raw: str) -> str:
    return USERNAME_STRIP_RE.sub("", raw)


def parse_bubble_text(text: str) -> Optional[Tuple[str, str]]:
    """Split one bubble's text into (username, message), or None if it doesn't parse."""
    lines = [line.strip() for line in text.split("\n") if line.strip()]
    if not lines:
        return None

    if len(lines) >= 2:
        username = _clean_username(lines[0])
        message = " ".join(lines[1:])
    else:
        parts = COLON_SPLIT_RE.split(lines[0])
        if len(parts) >= 2:
            username = _clean_username(parts[0])
            message = ":".join(parts[1:])
        else:
            words = lines[0].split()
            if len(words) < 2:
                return None
            username = _clean_username(words[0])
            message = " ".join(words[1:])

    message = message.strip()
    if not MIN_USERNAME_LENGTH <= len(username) <= MAX_USERNAME_LENGTH:
        return None
    if not MIN_MESSAGE_LENGTH <= len(message) <= MAX_MESSAGE_LENGTH:
        return None
    return username, message


def _is_bubble_candidate(node: DomNode, text: str) -> bool:
    if not node.visible:
        return False
    if node.rect.width < MIN_BUBBLE_WIDTH or node.rect.height < MIN_BUBBLE_HEIGHT:
        return False
    if not MIN_TEXT_LENGTH <= len(text) <= MAX_TEXT_LENGTH:
        return False
    return len(text.split("\n")) <= MAX_BUBBLE_LINES


def extract_messages(container: DomNode) -> List[ChatMessage]:
    """Return the messages currently visible in the container, deduplicated within this pass.

    Once a node parses as a message its descendants are not visited, so the
    username and message spans of one bubble never come back as messages of
    their own.
    """
    observed_at = utc_now()
    results: List[ChatMessage] = []
    seen = set()

    stack = list(reversed(container.children))
    while stack:
        node = stack.pop()
        text = node.text.strip()

        parsed = None
        if _is_bubble_candidate(node, text) and not is_noise(text):
            parsed = parse_bubble_text(convert_emoji_codes(text))

        if parsed is None:
            stack.extend(reversed(node.children))
            continue

        username, message = parsed
        key = f"{username}|{message}"
        if key in seen:
            continue
        seen.add(key)
        results.append(ChatMessage(username=username, message=message, observed_at=observed_at))

    LOGGER.debug("[Extractor] %d messages visible", len(results))
    return results
