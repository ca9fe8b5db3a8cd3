"""Per-key TTL cache for slow-changing clinic content.

Design decisions
────────────────
• One slot per content key (``clinic_content``, ``live_site`` ...); a slot is
  fresh while ``clock() - fetched_at < ttl``.
• The **clock is injectable** so expiry can be tested without sleeping.
• **Check-then-set without a lock**: two concurrent misses may both fetch,
  the later write wins.  Both values are equally valid content.
• A failing fetcher never propagates: the last known value (even if
  expired) is served, or a placeholder when nothing was ever cached.
• Purely ephemeral, lost on process restart.

Usage
─────
>>> cache = TTLCache(ttl_seconds=300)
>>> await cache.get("clinic_content", fetch_clinic_content)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
PLACEHOLDER_CONTENT = "Clinic information is temporarily unavailable."


@dataclass
class CachedContent:
    value: str
    fetched_at: float


class TTLCache:
    """Async-fetching cache with time-based expiry."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        placeholder: str = PLACEHOLDER_CONTENT,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._placeholder = placeholder
        self._slots: dict[str, CachedContent] = {}

    @property
    def ttl(self) -> float:
        return self._ttl

    def _is_fresh(self, slot: CachedContent) -> bool:
        return self._clock() - slot.fetched_at < self._ttl

    async def get(self, key: str, fetcher: Callable[[], Awaitable[str]]) -> str:
        """Return the cached value for *key*, refreshing it with *fetcher* when stale."""
        slot = self._slots.get(key)
        if slot is not None and self._is_fresh(slot):
            logger.debug("Cache HIT: %s", key)
            return slot.value

        logger.debug("Cache MISS: %s", key)
        try:
            value = await fetcher()
        except Exception:
            logger.warning("Fetcher for %s failed; serving last known value", key, exc_info=True)
            return slot.value if slot is not None else self._placeholder

        self._slots[key] = CachedContent(value=value, fetched_at=self._clock())
        return value

    def peek(self, key: str) -> str | None:
        """Fresh cached value for *key* without fetching, else ``None``."""
        slot = self._slots.get(key)
        if slot is None or not self._is_fresh(slot):
            return None
        return slot.value

    def invalidate(self, key: str) -> bool:
        """Remove *key*.  Returns ``True`` if it existed."""
        return self._slots.pop(key, None) is not None

    def clear(self) -> None:
        self._slots.clear()

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, key: str) -> bool:
        return self.peek(key) is not None
