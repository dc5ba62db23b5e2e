import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from cleanbook.metrics import BOOKING_CACHE_LOOKUPS

logger = structlog.get_logger()

BUSINESS = "business"
CUSTOMER = "customer"

CacheKey = tuple[str, uuid.UUID]
Loader = Callable[[], Awaitable[list[dict[str, Any]]]]


class BookingViewCache:
    """Read-through cache of serialized booking lists per viewer.

    One instance is created at startup and handed to routes and the engine
    through dependencies. Entries expire after ``ttl_seconds`` and are dropped
    for both parties whenever one of their bookings changes.
    """

    def __init__(self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[CacheKey, tuple[float, list[dict[str, Any]]]] = {}
        self._next_sweep = clock() + ttl_seconds

    @staticmethod
    def key(viewer: str, viewer_id: uuid.UUID) -> CacheKey:
        if viewer not in (BUSINESS, CUSTOMER):
            raise ValueError(f"Unknown viewer kind: {viewer}")
        return viewer, viewer_id

    def get(self, viewer: str, viewer_id: uuid.UUID) -> list[dict[str, Any]] | None:
        key = self.key(viewer, viewer_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, viewer: str, viewer_id: uuid.UUID, value: list[dict[str, Any]]) -> None:
        now = self._clock()
        if now >= self._next_sweep:
            self.purge_expired()
        self._entries[self.key(viewer, viewer_id)] = (now + self.ttl_seconds, value)

    def purge_expired(self) -> int:
        """Drop every expired entry; at most one sweep per TTL runs from ``set``."""
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self.ttl_seconds
        return len(expired)

    async def get_or_load(self, viewer: str, viewer_id: uuid.UUID, loader: Loader) -> list[dict[str, Any]]:
        cached = self.get(viewer, viewer_id)
        if cached is not None:
            BOOKING_CACHE_LOOKUPS.labels(result="hit").inc()
            return cached

        BOOKING_CACHE_LOOKUPS.labels(result="miss").inc()
        value = await loader()
        self.set(viewer, viewer_id, value)
        return value

    def invalidate(self, viewer: str, viewer_id: uuid.UUID) -> bool:
        return self._entries.pop(self.key(viewer, viewer_id), None) is not None

    def invalidate_booking(self, booking: Any) -> None:
        """Drop both lists that show ``booking``."""
        dropped = self.invalidate(BUSINESS, booking.business_id) + self.invalidate(CUSTOMER, booking.customer_id)
        logger.debug("booking_cache_invalidated", booking_id=str(booking.id), dropped=dropped)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
