"""
Durable sink for stream sessions and buyer intents.

The pipeline only needs the StreamStore contract; JsonFileStore keeps two JSON
files under DATA_DIR. Writes are atomic (temp file + replace) and serialized with
an asyncio lock; file I/O runs off the event loop.
"""

import asyncio
import json
import logging
import os
import tempfile
import uuid
from datetime import datetime
from typing import List, Optional, Protocol

import config
from errors import InvalidInput, PersistenceError
from intent_classifier import extract_item_wanted
from models import BuyerIntent, IntentStatus, StreamSession, StreamStatus, iso_now

LOGGER = logging.getLogger(__name__)

STREAMS_FILE = "streams.json"
INTENTS_FILE = "buyer_intents.json"


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class StreamStore(Protocol):
    async def create_stream(self, url: Optional[str], discovery_mode: bool = False) -> StreamSession: ...

    async def end_stream(self, stream_id: str) -> Optional[StreamSession]: ...

    async def save_buyer_intent(self, stream_id: str, data: dict) -> BuyerIntent: ...

    async def update_stream_counters(self, stream_id: str, total_messages: int) -> None: ...

    async def get_stream(self, stream_id: str) -> Optional[StreamSession]: ...

    async def get_all_streams(self, limit: int = 50) -> List[StreamSession]: ...

    async def get_stream_intents(self, stream_id: str) -> List[BuyerIntent]: ...

    async def get_stream_summary(self, stream_id: str) -> Optional[dict]: ...

    async def update_intent_status(self, intent_id: str, status: str) -> Optional[BuyerIntent]: ...


class JsonFileStore:
    def __init__(self, data_dir: str = config.DATA_DIR, value_per_sale: float = config.VALUE_PER_SALE):
        self._data_dir = data_dir
        self._value_per_sale = value_per_sale
        self._lock = asyncio.Lock()

    # ============== FILE I/O ==============

    def _path(self, name: str) -> str:
        return os.path.join(self._data_dir, name)

    def _read_sync(self, name: str) -> list:
        try:
            with open(self._path(name), "r", encoding="utf-8") as handle:
                return json.load(handle)
        except FileNotFoundError:
            return []

    def _write_sync(self, name: str, rows: list) -> None:
        os.makedirs(self._data_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._data_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(rows, handle, indent=2)
            os.replace(tmp_path, self._path(name))
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def _read(self, name: str) -> list:
        try:
            return await asyncio.to_thread(self._read_sync, name)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read {name}: {e}") from e

    async def _write(self, name: str, rows: list) -> None:
        try:
            await asyncio.to_thread(self._write_sync, name, rows)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write {name}: {e}") from e

    # ============== STREAMS ==============

    async def create_stream(self, url, discovery_mode=False):
        stream = StreamSession(
            id=_new_id("stream"),
            url=url,
            discovery_mode=discovery_mode,
            started_at=iso_now(),
        )
        async with self._lock:
            streams = await self._read(STREAMS_FILE)
            streams.append(stream.to_dict())
            await self._write(STREAMS_FILE, streams)
        LOGGER.info("[Storage] Created stream session %s", stream.id)
        return stream

    async def end_stream(self, stream_id):
        async with self._lock:
            streams = await self._read(STREAMS_FILE)
            row = next((s for s in streams if s["id"] == stream_id), None)
            if row is None:
                return None
            row["endedAt"] = iso_now()
            row["status"] = StreamStatus.ENDED.value
            await self._write(STREAMS_FILE, streams)
        LOGGER.info("[Storage] Ended stream session %s", stream_id)
        return StreamSession.from_dict(row)

    async def update_stream_counters(self, stream_id, total_messages):
        async with self._lock:
            streams = await self._read(STREAMS_FILE)
            row = next((s for s in streams if s["id"] == stream_id), None)
            if row is None:
                return
            row["totalMessages"] = total_messages
            await self._write(STREAMS_FILE, streams)

    async def _refresh_stream_stats(self, stream_id: str, intents: list) -> None:
        streams = await self._read(STREAMS_FILE)
        row = next((s for s in streams if s["id"] == stream_id), None)
        if row is None:
            return
        stream_intents = [i for i in intents if i.get("streamId") == stream_id]
        row["totalIntents"] = len(stream_intents)
        row["estimatedValue"] = sum(i.get("estimatedValue", self._value_per_sale) for i in stream_intents)
        await self._write(STREAMS_FILE, streams)

    async def get_stream(self, stream_id):
        streams = await self._read(STREAMS_FILE)
        row = next((s for s in streams if s["id"] == stream_id), None)
        return StreamSession.from_dict(row) if row else None

    async def get_all_streams(self, limit=50):
        streams = [StreamSession.from_dict(s) for s in await self._read(STREAMS_FILE)]
        streams.reverse()
        streams.sort(key=lambda s: s.started_at, reverse=True)
        return streams[:limit]

    # ============== INTENTS ==============

    async def save_buyer_intent(self, stream_id, data):
        intent = BuyerIntent(
            id=_new_id("intent"),
            stream_id=stream_id,
            username=data["username"],
            message=data["message"],
            confidence=float(data.get("confidence", 0.0)),
            category=data.get("category", "none"),
            timestamp=data.get("timestamp") or iso_now(),
            estimated_value=float(data.get("estimatedValue", self._value_per_sale)),
            item_wanted=data.get("itemWanted") or extract_item_wanted(data["message"]),
        )
        async with self._lock:
            intents = await self._read(INTENTS_FILE)
            intents.append(intent.to_dict())
            await self._write(INTENTS_FILE, intents)
            await self._refresh_stream_stats(stream_id, intents)
        LOGGER.info("[Storage] Saved buyer intent %s", intent.id)
        return intent

    async def get_stream_intents(self, stream_id):
        rows = [i for i in await self._read(INTENTS_FILE) if i.get("streamId") == stream_id]
        intents = [BuyerIntent.from_dict(row) for row in rows]
        intents.sort(key=lambda i: i.timestamp)
        return intents

    async def update_intent_status(self, intent_id, status):
        if status not in (IntentStatus.APPROVED.value, IntentStatus.SKIPPED.value):
            raise InvalidInput(f"Unsupported intent status: {status}")

        async with self._lock:
            intents = await self._read(INTENTS_FILE)
            row = next((i for i in intents if i["id"] == intent_id), None)
            if row is None:
                return None
            row["status"] = status
            await self._write(INTENTS_FILE, intents)
        return BuyerIntent.from_dict(row)

    async def get_stream_summary(self, stream_id):
        stream = await self.get_stream(stream_id)
        if stream is None:
            return None

        intents = await self.get_stream_intents(stream_id)
        duration = None
        if stream.ended_at:
            elapsed = datetime.fromisoformat(stream.ended_at) - datetime.fromisoformat(stream.started_at)
            duration = round(elapsed.total_seconds() / 60)

        summary = stream.to_dict()
        summary.update({
            "intents": [i.to_dict() for i in intents],
            "totalBuyers": len(intents),
            "totalValue": sum(i.estimated_value for i in intents),
            "pendingCount": sum(1 for i in intents if i.status == IntentStatus.PENDING.value),
            "duration": duration,
        })
        return summary
