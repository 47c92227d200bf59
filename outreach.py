"""Follow-up DM drafting for detected buyers."""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

import config
from intent_classifier import StreamContext
from llm_client import llm_complete
from models import ChatMessage, IntentClassification

LOGGER = logging.getLogger(__name__)

QUOTE_STRIP_RE = re.compile(r"^[\"']|[\"']$")

DRAFT_PROMPT = """You're helping a live-shopping seller follow up with buyers after a live stream.

Context:
- Seller name: {seller}
- Stream was about: {category}
- Item mentioned: {item}
{details}
Buyer comment from stream:
"{message}"

Write a casual, friendly DM from the seller to @{username}:
- Confirm what they wanted
- Sound excited and personable (it's live shopping, very casual)
- Include a price if it seems appropriate (estimate $30-100 based on context)
- Ask if they want a payment link
- Keep under 50 words
- Use 1-2 emojis MAX (or none)
- NO corporate language, be human and warm
- Address them by name without the @

Output ONLY the message text, nothing else. No quotes, no explanation."""


@dataclass
class DraftedOutreach:
    username: str
    original_comment: str
    item_wanted: str
    details: str
    drafted_message: str
    confidence: float
    timestamp: str
    status: str = "pending"

    def to_dict(self) -> dict:
        return {
            "username": self.username,
            "original_comment": self.original_comment,
            "item_wanted": self.item_wanted,
            "details": self.details,
            "drafted_message": self.drafted_message,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
            "status": self.status,
        }


def build_draft_prompt(message: ChatMessage, intent: IntentClassification, context: StreamContext) -> str:
    details = f"- Details: {intent.details}\n" if intent.details else ""
    return DRAFT_PROMPT.format(
        seller=context.seller_name,
        category=context.category,
        item=intent.item_wanted or "an item",
        details=details,
        message=message.message,
        username=message.username,
    )


def clean_draft(text: str) -> str:
    return QUOTE_STRIP_RE.sub("", text.strip())


class OutreachDrafter:
    """Drafts one DM per buyer, spacing LLM calls out and capping the count per stream."""

    def __init__(
        self,
        complete: Callable[..., Awaitable[Optional[str]]] = llm_complete,
        delay: float = config.DRAFT_DELAY,
        max_drafts: int = config.MAX_DRAFTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._complete = complete
        self._delay = delay
        self._max_drafts = max_drafts
        self._sleep = sleep

    async def draft_all(
        self,
        flagged: Sequence[Tuple[ChatMessage, IntentClassification]],
        context: StreamContext,
    ) -> List[DraftedOutreach]:
        results: List[DraftedOutreach] = []
        for position, (message, intent) in enumerate(flagged[: self._max_drafts]):
            if position and self._delay > 0:
                await self._sleep(self._delay)

            reply = await self._complete(build_draft_prompt(message, intent, context), temperature=0.7, max_tokens=200)
            if not reply:
                LOGGER.warning("[Outreach] No draft for @%s, skipping", message.username)
                continue

            results.append(DraftedOutreach(
                username=message.username,
                original_comment=message.message,
                item_wanted=intent.item_wanted or "item",
                details=intent.details or "",
                drafted_message=clean_draft(reply),
                confidence=intent.confidence,
                timestamp=message.observed_at.isoformat(),
            ))
        return results
