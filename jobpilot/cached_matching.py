"""Read-through caching in front of MatchingService.

Every mutation invalidates the keys it can make stale before returning, so a
read after approve/reject/calculate never serves the pre-mutation list.
"""
from __future__ import annotations

from jobpilot.cache import (
    MATCH_TTL,
    PROFILE_TTL,
    QUEUED_MATCHES_TTL,
    USER_MATCHES_TTL,
    CacheKeys,
    MemoryCache,
)
from jobpilot.cancellation import CancelToken
from jobpilot.log import get_logger
from jobpilot.matching import QUEUE_THRESHOLD, MatchingService
from jobpilot.models import DigitalProfile, Match

log = get_logger(__name__)


class CachedMatchingService:
    def __init__(self, inner: MatchingService, cache: MemoryCache | None = None) -> None:
        self.inner = inner
        self.cache = cache if cache is not None else MemoryCache()

    def get_profile(self, user_id: str) -> DigitalProfile:
        key = CacheKeys.profile(user_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        profile = self.inner.get_profile(user_id)
        self.cache.set(key, profile, PROFILE_TTL)
        return profile

    def calculate_match(self, user_id: str, posting_id: str, cancel: CancelToken | None = None) -> Match:
        key = CacheKeys.match(user_id, posting_id)
        cached = self.cache.get(key)
        if cached is not None:
            log.debug("Cache hit for %s", key)
            return cached

        match = self.inner.calculate_match(user_id, posting_id, cancel)
        self.cache.set(key, match, MATCH_TTL)
        self.cache.remove_by_prefix(CacheKeys.user_matches_prefix(user_id))
        self.cache.remove(CacheKeys.queued_matches(user_id))
        return match

    def find_matches_for_user(
        self, user_id: str, min_score: float = QUEUE_THRESHOLD, cancel: CancelToken | None = None
    ) -> list[Match]:
        key = CacheKeys.user_matches(user_id, min_score)
        cached = self.cache.get(key)
        if cached is not None:
            log.debug("Cache hit for %s", key)
            return list(cached)

        matches = self.inner.find_matches_for_user(user_id, min_score, cancel)
        # New rows may have joined the queue
        self.cache.remove(CacheKeys.queued_matches(user_id))
        if matches:
            self.cache.set(key, list(matches), USER_MATCHES_TTL)
        return matches

    def get_queued_matches(self, user_id: str) -> list[Match]:
        key = CacheKeys.queued_matches(user_id)
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)

        matches = self.inner.get_queued_matches(user_id)
        if matches:
            self.cache.set(key, list(matches), QUEUED_MATCHES_TTL)
        return matches

    def _invalidate_match(self, match: Match) -> None:
        self.cache.remove(CacheKeys.match(match.user_id, match.posting_id))
        self.cache.remove_by_prefix(CacheKeys.user_matches_prefix(match.user_id))
        self.cache.remove(CacheKeys.queued_matches(match.user_id))

    def approve_match(self, match_id: str, user_id: str) -> Match:
        match = self.inner.approve_match(match_id, user_id)
        self._invalidate_match(match)
        return match

    def reject_match(self, match_id: str, user_id: str) -> Match:
        match = self.inner.reject_match(match_id, user_id)
        self._invalidate_match(match)
        return match

    def invalidate_user_cache(self, user_id: str) -> None:
        removed = self.cache.remove_by_prefix(CacheKeys.match_prefix(user_id))
        removed += self.cache.remove_by_prefix(CacheKeys.user_matches_prefix(user_id))
        self.cache.remove(CacheKeys.queued_matches(user_id))
        self.cache.remove(CacheKeys.profile(user_id))
        log.info("Invalidated cache for user %s (%d match entries)", user_id, removed)
