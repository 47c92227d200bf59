"""
Time-bounded LRU of chat messages already seen by a session.

Turns the extractor's "everything on screen" snapshot into "new since last poll".
Entries expire so that a phrase re-posted minutes later fires again, while DOM
re-renders of the same bubble do not.
"""

import time
from collections import OrderedDict
from typing import Callable, Iterable, List

from models import ChatMessage

DEFAULT_MAX_ENTRIES = 10000
DEFAULT_TTL_SECONDS = 300.0


class DedupCache:
    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache: "OrderedDict[str, float]" = OrderedDict()
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock

    def __len__(self) -> int:
        return len(self._cache)

    def seen(self, key: str) -> bool:
        """True if the key was remembered and has not expired."""
        stored_at = self._cache.get(key)
        if stored_at is None:
            return False

        if self._clock() - stored_at >= self._ttl:
            del self._cache[key]
            return False

        self._cache.move_to_end(key)
        return True

    def remember(self, key: str) -> None:
        self._cache[key] = self._clock()
        self._cache.move_to_end(key)
        while len(self._cache) > self._max_entries:
            self._cache.popitem(last=False)

    def filter_new(self, messages: Iterable[ChatMessage]) -> List[ChatMessage]:
        """Keep unseen messages (in order) and remember them."""
        fresh = []
        for msg in messages:
            key = msg.dedup_key
            if self.seen(key):
                continue
            self.remember(key)
            fresh.append(msg)
        return fresh

    def clear(self) -> None:
        self._cache.clear()
