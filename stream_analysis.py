"""
One-shot stream analysis: load a stream once, read the chat that is on screen,
classify it, and (for analyze) draft follow-up DMs for the buyers.
"""

import logging
from typing import Callable, List

import config
from browser import PlaywrightBrowser, StreamBrowser
from chat_locator import locate_chat_container
from errors import ChatNotFound
from intent_classifier import IntentClassifier, StreamContext
from message_extractor import extract_messages
from models import ChatMessage, iso_now
from outreach import OutreachDrafter

LOGGER = logging.getLogger(__name__)


async def capture_chat(
    url: str,
    browser_factory: Callable[[], StreamBrowser] = PlaywrightBrowser,
    timeout_ms: int = config.NAV_TIMEOUT_MS,
) -> List[ChatMessage]:
    """Open the stream, read what the chat shows right now, close the browser."""
    browser = browser_factory()
    try:
        await browser.launch()
        await browser.navigate(url, timeout_ms)
        snapshot = await browser.snapshot()
    finally:
        try:
            await browser.close()
        except Exception as e:
            LOGGER.debug("[Analysis] Browser already closed: %s", e)

    try:
        container = locate_chat_container(snapshot)
    except ChatNotFound:
        if snapshot.root is None:
            return []
        LOGGER.info("[Analysis] No chat container found, scanning the whole page")
        container = snapshot.root
    messages = extract_messages(container)
    LOGGER.info("[Analysis] Extracted %d messages from %s", len(messages), url)
    return messages


async def scrape_stream(
    url: str,
    classifier: IntentClassifier,
    browser_factory: Callable[[], StreamBrowser] = PlaywrightBrowser,
    value_per_sale: float = config.VALUE_PER_SALE,
) -> dict:
    messages = await capture_chat(url, browser_factory)
    classifications = await classifier.classify_batch(messages, StreamContext(stream_url=url))

    analyzed = []
    buyers = []
    for msg, detection in zip(messages, classifications):
        row = {
            "username": msg.username,
            "message": msg.message,
            "isBuyer": detection.is_buyer,
            "confidence": detection.confidence,
            "category": detection.category.value,
            "timestamp": msg.observed_at.isoformat(),
        }
        analyzed.append(row)
        if detection.is_buyer:
            buyers.append(row)

    estimated_value = len(buyers) * value_per_sale
    LOGGER.info("[Analysis] %d buyers found, $%s estimated value", len(buyers), estimated_value)
    return {
        "totalMessages": len(analyzed),
        "totalBuyers": len(buyers),
        "estimatedValue": estimated_value,
        "messages": analyzed,
        "buyers": buyers,
        "streamUrl": url,
        "analyzedAt": iso_now(),
    }


async def analyze_stream(
    url: str,
    classifier: IntentClassifier,
    drafter: OutreachDrafter,
    seller_name: str = "there",
    category: str = "items",
    browser_factory: Callable[[], StreamBrowser] = PlaywrightBrowser,
    value_per_sale: float = config.VALUE_PER_SALE,
) -> dict:
    context = StreamContext(seller_name=seller_name, category=category, stream_url=url)
    messages = await capture_chat(url, browser_factory)
    classifications = await classifier.classify_batch(messages, context)

    flagged = [(msg, detection) for msg, detection in zip(messages, classifications) if detection.is_buyer]
    drafts = await drafter.draft_all(flagged, context)
    LOGGER.info("[Analysis] %d buyers, %d drafted messages", len(flagged), len(drafts))

    return {
        "success": True,
        "totalMessages": len(messages),
        "totalIntents": len(drafts),
        "estimatedValue": len(drafts) * value_per_sale,
        "intents": [draft.to_dict() for draft in drafts],
        "streamUrl": url,
        "analyzedAt": iso_now(),
    }
