"""Allowlist, amount-cap and rate-limit checks.

The check functions are pure and never raise; each returns a
``GovernanceCheckResult``. The per-minute counter they are evaluated against
is owned by the governance orchestrator.
"""
from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

RATE_WINDOW_SECONDS = 60.0


@dataclass(frozen=True)
class GovernanceCheckResult:
    """Outcome of a single governance check."""

    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "GovernanceCheckResult":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "GovernanceCheckResult":
        return cls(allowed=False, reason=reason)


def check_token_allowlist(token: str, allowlist: Optional[Iterable[str]] = None) -> GovernanceCheckResult:
    allowed = set(allowlist or ())
    if not allowed or token in allowed:
        return GovernanceCheckResult.allow()
    return GovernanceCheckResult.deny(f"Token {token} is not in the allowlist")


def check_recipient_allowlist(recipient: str, allowlist: Optional[Iterable[str]] = None) -> GovernanceCheckResult:
    allowed = set(allowlist or ())
    if not allowed or recipient in allowed:
        return GovernanceCheckResult.allow()
    return GovernanceCheckResult.deny(f"Recipient {recipient} is not in the allowlist")


def _parse_base_units(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and value.isascii() and value.isdigit():
        return int(value)
    return None


def check_amount_cap(amount, max_amount=None) -> GovernanceCheckResult:
    """Compare base-unit amounts as integers. The cap itself is allowed.

    ``amount`` and ``max_amount`` are decimal-digit strings or ints. A value
    that is not a non-negative integer is a rejection, never an exception.
    """
    if max_amount is None or max_amount == "":
        return GovernanceCheckResult.allow()

    cap = _parse_base_units(max_amount)
    if cap is None:
        return GovernanceCheckResult.deny(f"Invalid amount cap {max_amount!r}")
    value = _parse_base_units(amount)
    if value is None:
        return GovernanceCheckResult.deny(f"Invalid amount {amount!r}")

    if value <= cap:
        return GovernanceCheckResult.allow()
    return GovernanceCheckResult.deny(f"Amount {value} exceeds cap {cap}")


def check_rate_limit(current_count: int, limit_per_minute: int) -> GovernanceCheckResult:
    if current_count < limit_per_minute:
        return GovernanceCheckResult.allow()
    return GovernanceCheckResult.deny(
        f"Rate limit exceeded: {current_count}/{limit_per_minute} per minute"
    )


class RateCounter:
    """Count of settlements in the trailing 60 seconds."""

    def __init__(
        self,
        window_seconds: float = RATE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._window = window_seconds
        self._clock = clock
        self._events: deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        cutoff = now - self._window
        while self._events and self._events[0] <= cutoff:
            self._events.popleft()

    def increment(self) -> None:
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._events.append(now)

    def count(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._events)

    def destroy(self) -> None:
        with self._lock:
            self._events.clear()


__all__ = [
    "GovernanceCheckResult",
    "RateCounter",
    "check_amount_cap",
    "check_rate_limit",
    "check_recipient_allowlist",
    "check_token_allowlist",
]
