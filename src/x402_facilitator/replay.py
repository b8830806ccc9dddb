"""In-memory replay guard for payment idempotency keys.

Keys are either a raw payment payload (before settlement) or a finalized
transaction signature (after settlement). Each key carries an expiry; expired
keys never count as seen.

State resets on process restart. On-chain blockhash expiry still rejects a
replayed transaction at submission, so the restart window does not put funds
at risk. Multi-instance deployments need a shared store keyed the same way.
"""
from __future__ import annotations

import math
import threading
import time
from typing import Callable, Optional

from .schemas import DEFAULT_MAX_TIMEOUT_SECONDS, MAX_TIMEOUT_SECONDS_LIMIT

REPLAY_TTL_MARGIN_SECONDS = 60


def replay_ttl_for(max_timeout_seconds: Optional[float]) -> int:
    """TTL for a settled payment: the requirement timeout rounded up plus a margin.

    The timeout is clamped to ``[0, MAX_TIMEOUT_SECONDS_LIMIT]``; a missing or
    NaN timeout uses the default.
    """
    if max_timeout_seconds is None or math.isnan(max_timeout_seconds):
        timeout = DEFAULT_MAX_TIMEOUT_SECONDS
    else:
        timeout = min(max(max_timeout_seconds, 0), MAX_TIMEOUT_SECONDS_LIMIT)
    return math.ceil(timeout) + REPLAY_TTL_MARGIN_SECONDS


class ReplayGuard:
    """Idempotency-key store with TTL expiry.

    Expired entries are evicted lazily on lookup and by a sweep that runs on
    access once ``cleanup_interval_seconds`` has passed or ``max_entries`` is
    reached.

    Args:
        cleanup_interval_seconds: How often to sweep expired entries (60s).
        max_entries: Entry count that forces a sweep (100,000).
        clock: Monotonic time source, injectable for tests.
    """

    CLEANUP_INTERVAL_SECONDS = 60
    MAX_ENTRIES = 100_000

    def __init__(
        self,
        cleanup_interval_seconds: float = CLEANUP_INTERVAL_SECONDS,
        max_entries: int = MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: dict[str, float] = {}
        self._cleanup_interval = cleanup_interval_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._last_cleanup = clock()
        self._lock = threading.RLock()
        self._destroyed = False

    def check(self, key: str) -> bool:
        """Return True if ``key`` has not been seen (safe to proceed)."""
        with self._lock:
            now = self._clock()
            self._maybe_cleanup(now)

            expires_at = self._entries.get(key)
            if expires_at is None:
                return True
            if expires_at <= now:
                del self._entries[key]
                return True
            return False

    def record(self, key: str, ttl_seconds: float) -> None:
        """Mark ``key`` as consumed for ``ttl_seconds``."""
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        with self._lock:
            now = self._clock()
            self._maybe_cleanup(now)
            expires_at = now + ttl_seconds
            # Never shorten an existing window.
            current = self._entries.get(key)
            if current is None or current < expires_at:
                self._entries[key] = expires_at

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def _maybe_cleanup(self, now: float) -> None:
        should_cleanup = (
            (now - self._last_cleanup) >= self._cleanup_interval
            or len(self._entries) >= self._max_entries
        )
        if should_cleanup:
            self.evict(now)

    def evict(self, now: Optional[float] = None) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            if now is None:
                now = self._clock()

            expired = [key for key, expires_at in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]

            self._last_cleanup = now
            return len(expired)

    def stats(self) -> dict:
        """Return guard statistics."""
        with self._lock:
            now = self._clock()
            expired_count = sum(1 for exp in self._entries.values() if exp <= now)
            return {
                "total_entries": len(self._entries),
                "expired_entries": expired_count,
                "active_entries": len(self._entries) - expired_count,
                "max_entries": self._max_entries,
            }

    def destroy(self) -> None:
        """Release all state. Safe to call more than once."""
        with self._lock:
            self._entries.clear()
            self._destroyed = True

    @property
    def destroyed(self) -> bool:
        return self._destroyed


__all__ = [
    "REPLAY_TTL_MARGIN_SECONDS",
    "ReplayGuard",
    "replay_ttl_for",
]
