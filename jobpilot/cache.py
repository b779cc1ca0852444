"""In-process TTL cache shared by the matching layer."""
from __future__ import annotations

import threading
import time
from datetime import timedelta
from typing import Any, Callable

from jobpilot.log import get_logger

log = get_logger(__name__)

MATCH_TTL = timedelta(hours=24)
USER_MATCHES_TTL = timedelta(minutes=30)
QUEUED_MATCHES_TTL = timedelta(minutes=5)
PROFILE_TTL = timedelta(hours=1)


class CacheKeys:
    @staticmethod
    def match(user_id: str, posting_id: str) -> str:
        return f"match:{user_id}:{posting_id}"

    @staticmethod
    def user_matches(user_id: str, min_score: float) -> str:
        return f"user_matches:{user_id}:{min_score:g}"

    @staticmethod
    def user_matches_prefix(user_id: str) -> str:
        return f"user_matches:{user_id}:"

    @staticmethod
    def match_prefix(user_id: str) -> str:
        return f"match:{user_id}:"

    @staticmethod
    def queued_matches(user_id: str) -> str:
        return f"queued_matches:{user_id}"

    @staticmethod
    def profile(user_id: str) -> str:
        return f"profile:{user_id}"


class MemoryCache:
    """Thread-safe key/value store with per-entry expiry.

    ``clock`` returns monotonic seconds and is injectable for tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: timedelta) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl.total_seconds(), value)

    def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def remove_by_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
        if doomed:
            log.debug("Evicted %d cache entries under %s", len(doomed), prefix)
        return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
