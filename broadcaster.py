"""
Fan-out of session events to websocket subscribers.
Best-effort, at most once per subscriber, no replay for late joiners.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Protocol, Set

LOGGER = logging.getLogger(__name__)

ALL_SESSIONS = "*"

STREAM_SELECTED = "stream_selected"
NEW_MESSAGE = "new_message"
BUYER_DETECTED = "buyer_detected"
DEBUG_STATS = "debug_stats"
ERROR = "error"


class Subscriber(Protocol):
    async def send(self, message: str) -> None:
        ...


class Broadcaster:
    def __init__(self):
        # Structure: { session_id: Set[subscriber] }
        self._subscribers: Dict[str, Set[Subscriber]] = {}

    def subscribe(self, session_id: str, client: Subscriber) -> None:
        self._subscribers.setdefault(session_id, set()).add(client)

    def unsubscribe(self, client: Subscriber, session_id: Optional[str] = None) -> None:
        """Drop a client from one session, or from every session when none is given."""
        keys = [session_id] if session_id is not None else list(self._subscribers)
        for key in keys:
            clients = self._subscribers.get(key)
            if not clients:
                continue
            clients.discard(client)
            if not clients:
                del self._subscribers[key]

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    async def publish(self, session_id: str, event: Dict[str, Any]) -> int:
        """Send the event to everyone watching this session (or all sessions). Returns deliveries."""
        payload = dict(event)
        payload["sessionId"] = session_id

        clients = set(self._subscribers.get(session_id, ())) | set(self._subscribers.get(ALL_SESSIONS, ()))
        if not clients:
            return 0

        msg_json = json.dumps(payload, default=str)
        targets = list(clients)
        results = await asyncio.gather(*[c.send(msg_json) for c in targets], return_exceptions=True)

        delivered = 0
        for client, result in zip(targets, results):
            if isinstance(result, Exception):
                LOGGER.info("[Broadcast] Dropping subscriber after send failure: %s", result)
                self.unsubscribe(client)
            else:
                delivered += 1
        return delivered
