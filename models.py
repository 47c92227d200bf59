"""
Domain types shared by the scraper, classifiers, storage and the HTTP/WS layer.
Wire dictionaries use camelCase keys to match the dashboard and extension clients.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_now() -> str:
    return utc_now().isoformat()


class IntentCategory(str, Enum):
    CLAIM = "claim"
    SIZE_REQUEST = "size_request"
    PRICE_INQUIRY = "price_inquiry"
    PAYMENT = "payment"
    SHIPPING = "shipping"
    PURCHASE = "purchase"
    URGENCY = "urgency"
    NONE = "none"


class IntentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    SKIPPED = "skipped"


class StreamStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


class CandidateSource(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    FALLBACK = "fallback"
    REQUESTED = "requested"


@dataclass(frozen=True)
class ChatMessage:
    username: str
    message: str
    observed_at: datetime = field(default_factory=utc_now, compare=False)

    @property
    def dedup_key(self) -> str:
        return f"{self.username}:{self.message}"

    @property
    def is_question(self) -> bool:
        return "?" in self.message


@dataclass(frozen=True)
class IntentClassification:
    is_buyer: bool
    confidence: float
    category: IntentCategory = IntentCategory.NONE
    reason: Optional[str] = None
    item_wanted: Optional[str] = None
    details: Optional[str] = None

    @classmethod
    def not_buyer(cls) -> "IntentClassification":
        return cls(is_buyer=False, confidence=0.0)


def is_auto_capture(confidence: float, threshold: float = 0.7) -> bool:
    """A classification becomes a durable BuyerIntent only at or above the threshold."""
    return confidence >= threshold


@dataclass
class BuyerIntent:
    id: str
    stream_id: Optional[str]
    username: str
    message: str
    confidence: float
    category: str
    timestamp: str
    estimated_value: float
    item_wanted: Optional[str] = None
    status: str = IntentStatus.PENDING.value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "streamId": self.stream_id,
            "username": self.username,
            "message": self.message,
            "confidence": self.confidence,
            "category": self.category,
            "itemWanted": self.item_wanted,
            "estimatedValue": self.estimated_value,
            "timestamp": self.timestamp,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BuyerIntent":
        return cls(
            id=data["id"],
            stream_id=data.get("streamId"),
            username=data["username"],
            message=data["message"],
            confidence=float(data.get("confidence", 0.0)),
            category=data.get("category", IntentCategory.NONE.value),
            timestamp=data["timestamp"],
            estimated_value=float(data.get("estimatedValue", 0.0)),
            item_wanted=data.get("itemWanted"),
            status=data.get("status", IntentStatus.PENDING.value),
        )


@dataclass
class StreamSession:
    id: str
    url: Optional[str]
    discovery_mode: bool
    started_at: str
    ended_at: Optional[str] = None
    status: str = StreamStatus.ACTIVE.value
    total_messages: int = 0
    total_intents: int = 0
    estimated_value: float = 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "url": self.url,
            "discoveryMode": self.discovery_mode,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "status": self.status,
            "totalMessages": self.total_messages,
            "totalIntents": self.total_intents,
            "estimatedValue": self.estimated_value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StreamSession":
        return cls(
            id=data["id"],
            url=data.get("url"),
            discovery_mode=bool(data.get("discoveryMode", False)),
            started_at=data["startedAt"],
            ended_at=data.get("endedAt"),
            status=data.get("status", StreamStatus.ACTIVE.value),
            total_messages=int(data.get("totalMessages", 0)),
            total_intents=int(data.get("totalIntents", 0)),
            estimated_value=float(data.get("estimatedValue", 0.0)),
        )


@dataclass(frozen=True)
class StreamCandidate:
    url: str
    title: Optional[str] = None
    viewers: Optional[int] = None
    source: CandidateSource = CandidateSource.MANUAL

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "title": self.title,
            "viewers": self.viewers,
            "source": self.source.value,
        }
