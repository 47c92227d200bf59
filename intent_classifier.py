"""
Buyer-intent classification for live-shopping chat.

Two interchangeable strategies share one async batch contract:
  - HeuristicClassifier: tiered keyword/regex rules, synchronous under the hood
  - LLMClassifier: one prompt per batch of up to 50 messages
FallbackClassifier composes them so the LLM path can fail without stalling the poll loop.
"""

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

import config
from errors import ClassificationError
from llm_client import extract_json, llm_available, llm_complete
from models import ChatMessage, IntentCategory, IntentClassification

LOGGER = logging.getLogger(__name__)

HIGH_CONFIDENCE = 0.95
SIZE_REQUEST_CONFIDENCE = 0.8
KEYWORD_CONFIDENCE = 0.7
QUESTION_BONUS = 0.1

# Whole words only: "will take" and "still taken" are not claims
CLAIM_PHRASE_RE = re.compile(r"\b(i'?ll take|claim(?:ing|ed)|sold to me|dibs)\b")

SIZE_REQUEST_RE = re.compile(r"size\s+(1[0-4]|[1-9])")

# Ordered: the first hit decides the category
BUYER_KEYWORDS = (
    ("i take it", IntentCategory.CLAIM),
    ("claim it", IntentCategory.CLAIM),
    ("sold", IntentCategory.CLAIM),
    ("mine", IntentCategory.CLAIM),
    ("i want it", IntentCategory.PURCHASE),
    ("i need it", IntentCategory.PURCHASE),
    ("need that", IntentCategory.PURCHASE),
    ("want that", IntentCategory.PURCHASE),
    ("buying", IntentCategory.PURCHASE),
    ("grabbing", IntentCategory.PURCHASE),
    ("taking", IntentCategory.PURCHASE),
    ("copping", IntentCategory.PURCHASE),
    ("put me down", IntentCategory.PURCHASE),
    ("add me", IntentCategory.PURCHASE),
    ("me please", IntentCategory.PURCHASE),
    ("ready to buy", IntentCategory.PURCHASE),
    ("ready to purchase", IntentCategory.PURCHASE),
    ("what size do you have", IntentCategory.SIZE_REQUEST),
    ("got size", IntentCategory.SIZE_REQUEST),
    ("have size", IntentCategory.SIZE_REQUEST),
    ("any size", IntentCategory.SIZE_REQUEST),
    ("how much", IntentCategory.PRICE_INQUIRY),
    ("whats the price", IntentCategory.PRICE_INQUIRY),
    ("what's the price", IntentCategory.PRICE_INQUIRY),
    ("price on", IntentCategory.PRICE_INQUIRY),
    ("how do i pay", IntentCategory.PAYMENT),
    ("send invoice", IntentCategory.PAYMENT),
    ("paypal", IntentCategory.PAYMENT),
    ("venmo", IntentCategory.PAYMENT),
    ("cashapp", IntentCategory.PAYMENT),
    ("do you ship", IntentCategory.SHIPPING),
    ("shipping to", IntentCategory.SHIPPING),
    ("ship to", IntentCategory.SHIPPING),
    ("hold it for me", IntentCategory.URGENCY),
    ("hold that for me", IntentCategory.URGENCY),
)

PRODUCT_WORDS = ("jacket", "sweater", "shirt", "pants", "shoes", "hat", "watch", "card", "jersey")
PRODUCT_WORD_RE = re.compile(r"\b(" + "|".join(PRODUCT_WORDS) + r")s?\b")
THE_ITEM_RE = re.compile(r"\bthe\s+(\w+)")
THAT_ITEM_RE = re.compile(r"\bthat\s+(\w+)")


@dataclass(frozen=True)
class StreamContext:
    seller_name: str = "the seller"
    category: str = "various items"
    stream_url: Optional[str] = None


def _normalize(text: str) -> str:
    return text.lower().replace("’", "'")


def _with_question_bonus(message: str, confidence: float) -> float:
    if message.rstrip().endswith("?"):
        confidence = min(1.0, confidence + QUESTION_BONUS)
    return round(confidence, 2)


def categorize(message: str) -> IntentCategory:
    """Best-effort category from keywords alone, used to label LLM hits."""
    lowered = _normalize(message)
    if CLAIM_PHRASE_RE.search(lowered):
        return IntentCategory.CLAIM
    if SIZE_REQUEST_RE.search(lowered):
        return IntentCategory.SIZE_REQUEST
    for keyword, category in BUYER_KEYWORDS:
        if keyword in lowered:
            return category
    return IntentCategory.PURCHASE


def extract_item_wanted(message: str) -> str:
    lowered = _normalize(message)
    match = PRODUCT_WORD_RE.search(lowered)
    if match:
        return match.group(1)

    for pattern in (THE_ITEM_RE, THAT_ITEM_RE):
        match = pattern.search(lowered)
        if match:
            return match.group(1)
    return "item"


class IntentClassifier(Protocol):
    name: str

    async def classify_batch(
        self,
        messages: Sequence[ChatMessage],
        context: Optional[StreamContext] = None,
    ) -> List[IntentClassification]:
        ...


# ============== HEURISTIC ==============

class HeuristicClassifier:
    name = "heuristic"

    def classify_text(self, message: str) -> IntentClassification:
        lowered = _normalize(message)

        # Explicit claims stand on their own, even as a single word ("claiming", "dibs")
        claim = CLAIM_PHRASE_RE.search(lowered)
        if claim:
            return IntentClassification(
                is_buyer=True,
                confidence=_with_question_bonus(message, HIGH_CONFIDENCE),
                category=IntentCategory.CLAIM,
                reason=claim.group(1),
            )

        # Any other one-word chatter ("sold", "mine", "lol") is too ambiguous to act on
        if len(message.split()) < 2:
            return IntentClassification.not_buyer()

        if SIZE_REQUEST_RE.search(lowered):
            return IntentClassification(
                is_buyer=True,
                confidence=_with_question_bonus(message, SIZE_REQUEST_CONFIDENCE),
                category=IntentCategory.SIZE_REQUEST,
                reason="size request",
            )

        for keyword, category in BUYER_KEYWORDS:
            if keyword in lowered:
                return IntentClassification(
                    is_buyer=True,
                    confidence=_with_question_bonus(message, KEYWORD_CONFIDENCE),
                    category=category,
                    reason=keyword,
                )

        return IntentClassification.not_buyer()

    async def classify_batch(self, messages, context=None):
        return [self.classify_text(msg.message) for msg in messages]


# ============== LLM ==============

CONFIDENCE_TIERS = {"high": 0.9, "medium": 0.75, "low": 0.5}

INTENT_PROMPT = """You are analyzing live stream chat messages to detect genuine buying intent.

Context:
- Platform: live shopping stream
- Seller: {seller}
- Category: {category}

Your job: Review these messages and identify which ones show GENUINE buying intent.

Buying intent signals:
- Direct purchase: "I'll take it", "sold", "mine", "claiming"
- Questions about availability: "do you have", "is this available", "got size"
- Specific requests: size, color, price questions
- Payment/shipping questions
- Urgency: "hold it for me", "put me down"

NOT buying intent:
- Generic compliments: "nice", "cool"
- Questions about the stream itself
- Greetings or chat
- Spam or ads

Messages to analyze:
{messages}

Output format (JSON only, no explanation):
{{
  "intents": [
    {{"index": 1, "confidence": "high|medium|low", "item_wanted": "blue sweater", "details": "size M"}}
  ]
}}

Only include messages with clear buying intent. Be selective."""


def build_intent_prompt(messages: Sequence[ChatMessage], context: StreamContext) -> str:
    lines = "\n".join(
        f'{i}. @{msg.username}: "{msg.message}"' for i, msg in enumerate(messages, start=1)
    )
    return INTENT_PROMPT.format(seller=context.seller_name, category=context.category, messages=lines)


def parse_intent_reply(reply: Optional[str], messages: Sequence[ChatMessage]) -> List[IntentClassification]:
    """Map the model's JSON onto one classification per input message."""
    parsed = extract_json(reply or "")
    if isinstance(parsed, dict):
        parsed = parsed.get("intents")
    if not isinstance(parsed, list):
        raise ClassificationError("LLM reply contained no intents list")

    results = [IntentClassification.not_buyer() for _ in messages]
    for entry in parsed:
        if not isinstance(entry, dict):
            continue
        try:
            index = int(entry.get("index")) - 1
        except (TypeError, ValueError):
            continue
        if not 0 <= index < len(messages):
            continue

        message = messages[index].message
        tier = str(entry.get("confidence", "medium")).lower()
        base = CONFIDENCE_TIERS.get(tier, CONFIDENCE_TIERS["medium"])
        results[index] = IntentClassification(
            is_buyer=True,
            confidence=_with_question_bonus(message, base),
            category=categorize(message),
            reason=f"llm:{tier}",
            item_wanted=entry.get("item_wanted") or None,
            details=entry.get("details") or None,
        )
    return results


class LLMClassifier:
    name = "llm"

    def __init__(
        self,
        complete: Callable[..., Awaitable[Optional[str]]] = llm_complete,
        batch_size: int = config.LLM_BATCH_SIZE,
    ):
        self._complete = complete
        self._batch_size = batch_size

    async def classify_batch(self, messages, context=None):
        context = context or StreamContext()
        results: List[IntentClassification] = []
        for start in range(0, len(messages), self._batch_size):
            chunk = list(messages[start:start + self._batch_size])
            try:
                reply = await self._complete(build_intent_prompt(chunk, context), temperature=0)
            except Exception as e:
                raise ClassificationError(f"LLM call failed: {e}") from e
            if not reply:
                raise ClassificationError("LLM returned no reply")
            results.extend(parse_intent_reply(reply, chunk))
        return results


class FallbackClassifier:
    """Try the primary strategy; on ClassificationError use the fallback for that batch."""

    def __init__(self, primary: IntentClassifier, fallback: IntentClassifier):
        self.primary = primary
        self.fallback = fallback
        self.name = f"{primary.name}+{fallback.name}"

    async def classify_batch(self, messages, context=None):
        if not messages:
            return []
        try:
            results = await self.primary.classify_batch(messages, context)
        except ClassificationError as e:
            LOGGER.warning("[Classifier] %s failed (%s), falling back to %s", self.primary.name, e, self.fallback.name)
            return await self.fallback.classify_batch(messages, context)

        if len(results) != len(messages):
            LOGGER.warning("[Classifier] %s returned %d results for %d messages", self.primary.name, len(results), len(messages))
            return await self.fallback.classify_batch(messages, context)
        return results


def build_classifier(kind: str = config.CLASSIFIER) -> IntentClassifier:
    heuristic = HeuristicClassifier()
    if kind == "llm":
        if llm_available():
            return FallbackClassifier(LLMClassifier(), heuristic)
        LOGGER.warning("[Classifier] LLM requested but provider %r is not configured; using heuristic", config.LLM_PROVIDER)
    return heuristic
