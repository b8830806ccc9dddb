"""Circuit breaker and velocity tracking for the settlement path.

``CircuitBreaker`` trips on bursts of settlement failures reported by the
caller and blocks all settlement while open. ``VelocityTracker`` denies
individual settlements that exceed sliding-window rate limits per agent, per
recipient and globally.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from ..config import CircuitBreakerSettings

logger = logging.getLogger(__name__)

MINUTE = 60.0
HOUR = 60 * MINUTE
DAY = 24 * HOUR


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    HALF_OPEN = "half_open"  # Testing if settlement recovered
    OPEN = "open"  # Blocking all settlement


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""

    failure_threshold: int = 5  # Number of failures before tripping
    reset_timeout: float = 60.0  # Seconds before attempting reset (OPEN -> HALF_OPEN)
    half_open_max_calls: int = 3  # Max calls to test in half-open state
    success_threshold: int = 2  # Successes needed in half-open to close

    @classmethod
    def from_settings(cls, settings: CircuitBreakerSettings) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=settings.failure_threshold,
            reset_timeout=settings.reset_timeout_seconds,
            half_open_max_calls=settings.half_open_max_calls,
            success_threshold=settings.success_threshold,
        )


@dataclass
class CircuitBreakerStats:
    """Statistics for a circuit breaker."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float | None = None
    last_state_change: float = field(default_factory=time.time)
    total_calls: int = 0
    total_failures: int = 0
    total_rejections: int = 0
    half_open_calls: int = 0


class CircuitBreaker:
    """Settlement circuit breaker.

    The caller asks ``allow_request()`` before the expensive settlement checks
    and reports the outcome with ``record_success()`` or ``record_failure()``.
    After ``reset_timeout`` seconds open, the breaker lets up to
    ``half_open_max_calls`` probes through; ``success_threshold`` successful
    probes close it and any failed probe reopens it.

    Example:
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=3))

        if not await breaker.allow_request():
            return HookAbort("Circuit breaker open")
        ...
        await breaker.record_failure()
    """

    def __init__(self, config: CircuitBreakerConfig | None = None) -> None:
        self.config = config or CircuitBreakerConfig()
        self.stats = CircuitBreakerStats()
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        return self.stats.state

    async def allow_request(self) -> bool:
        """Return True if a settlement attempt may proceed."""
        async with self._lock:
            self.stats.total_calls += 1

            # Check if we should attempt reset
            if self.stats.state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self._transition_to_half_open()
                else:
                    self.stats.total_rejections += 1
                    return False

            # Check half-open call limit
            if self.stats.state == CircuitState.HALF_OPEN:
                if self.stats.half_open_calls >= self.config.half_open_max_calls:
                    self.stats.total_rejections += 1
                    return False
                self.stats.half_open_calls += 1

            return True

    def _should_attempt_reset(self) -> bool:
        """Check if enough time has passed to attempt reset."""
        if self.stats.last_failure_time is None:
            return False

        time_since_failure = time.time() - self.stats.last_failure_time
        return time_since_failure >= self.config.reset_timeout

    def _transition_to_half_open(self) -> None:
        """Transition from OPEN to HALF_OPEN state."""
        logger.info("Circuit breaker half-open: probing settlement")
        self.stats.state = CircuitState.HALF_OPEN
        self.stats.last_state_change = time.time()
        self.stats.success_count = 0
        self.stats.failure_count = 0
        self.stats.half_open_calls = 0

    async def record_success(self) -> None:
        """Handle successful settlement."""
        async with self._lock:
            if self.stats.state == CircuitState.HALF_OPEN:
                self.stats.success_count += 1

                # Check if we have enough successes to close
                if self.stats.success_count >= self.config.success_threshold:
                    logger.info("Circuit breaker closed after %d successful probes", self.stats.success_count)
                    self.stats.state = CircuitState.CLOSED
                    self.stats.last_state_change = time.time()
                    self.stats.failure_count = 0
                    self.stats.success_count = 0
                    self.stats.half_open_calls = 0

            elif self.stats.state == CircuitState.CLOSED:
                # Reset failure count on success
                self.stats.failure_count = 0

    async def record_failure(self) -> None:
        """Handle failed settlement."""
        async with self._lock:
            self.stats.failure_count += 1
            self.stats.total_failures += 1
            self.stats.last_failure_time = time.time()

            if self.stats.state == CircuitState.HALF_OPEN:
                # Any failure in half-open immediately trips circuit
                logger.warning("Circuit breaker reopened: probe settlement failed")
                self.stats.state = CircuitState.OPEN
                self.stats.last_state_change = time.time()

            elif self.stats.state == CircuitState.CLOSED:
                # Check if we've exceeded failure threshold
                if self.stats.failure_count >= self.config.failure_threshold:
                    logger.warning(
                        "Circuit breaker opened after %d consecutive failures",
                        self.stats.failure_count,
                    )
                    self.stats.state = CircuitState.OPEN
                    self.stats.last_state_change = time.time()

    async def release_probe(self) -> None:
        """Return a half-open probe slot for an attempt that ended without an outcome."""
        async with self._lock:
            if self.stats.state == CircuitState.HALF_OPEN and self.stats.half_open_calls > 0:
                self.stats.half_open_calls -= 1

    async def reset(self) -> None:
        """Manually reset circuit breaker to closed state."""
        async with self._lock:
            self.stats.state = CircuitState.CLOSED
            self.stats.failure_count = 0
            self.stats.success_count = 0
            self.stats.half_open_calls = 0
            self.stats.last_state_change = time.time()

    async def get_stats(self) -> CircuitBreakerStats:
        """Get current statistics.

        Returns:
            Current circuit breaker statistics
        """
        async with self._lock:
            return CircuitBreakerStats(
                state=self.stats.state,
                failure_count=self.stats.failure_count,
                success_count=self.stats.success_count,
                last_failure_time=self.stats.last_failure_time,
                last_state_change=self.stats.last_state_change,
                total_calls=self.stats.total_calls,
                total_failures=self.stats.total_failures,
                total_rejections=self.stats.total_rejections,
                half_open_calls=self.stats.half_open_calls,
            )


# ---------------------------------------------------------------------------
# Velocity tracking
# ---------------------------------------------------------------------------


class TripType(str, Enum):
    AGENT_VELOCITY = "agent_velocity"
    RECIPIENT_VELOCITY = "recipient_velocity"
    GLOBAL_VELOCITY = "global_velocity"


@dataclass
class VelocityConfig:
    max_settlements_per_hour: int = 100
    max_settlements_per_day: int = 500
    max_value_per_hour_base_units: int = 10_000_000
    max_same_recipient_per_minute: int = 5
    max_same_recipient_per_hour: int = 20
    max_global_settlements_per_minute: int = 30

    @classmethod
    def from_settings(cls, settings: CircuitBreakerSettings) -> "VelocityConfig":
        return cls(
            max_settlements_per_hour=settings.max_settlements_per_hour,
            max_settlements_per_day=settings.max_settlements_per_day,
            max_value_per_hour_base_units=settings.max_value_per_hour_base_units,
            max_same_recipient_per_minute=settings.max_same_recipient_per_minute,
            max_same_recipient_per_hour=settings.max_same_recipient_per_hour,
            max_global_settlements_per_minute=settings.max_global_settlements_per_minute,
        )


@dataclass
class WindowStats:
    settlements_in_window: int = 0
    value_in_window: int = 0
    same_recipient_count_in_window: int = 0


@dataclass
class VelocityCheckResult:
    tripped: bool
    reason: Optional[str] = None
    trip_type: Optional[TripType] = None
    window_stats: Optional[WindowStats] = None


@dataclass(frozen=True)
class _SettlementRecord:
    timestamp: float
    agent: str
    recipient: str
    amount: int


class VelocityTracker:
    """Sliding-window velocity limits over recorded settlements.

    Windows are checked in order: same recipient per minute and per hour,
    agent count per hour and per day, agent value per hour, then global
    settlements per minute. Records older than a day are dropped.

    State resets on restart, which briefly allows bursts the tracker would
    otherwise deny; limits recover within one window.
    """

    def __init__(
        self,
        config: VelocityConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or VelocityConfig()
        self._clock = clock
        self._records: deque[_SettlementRecord] = deque()
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        cutoff = now - DAY
        while self._records and self._records[0].timestamp < cutoff:
            self._records.popleft()

    def check(self, agent: str, recipient: str, amount: int) -> VelocityCheckResult:
        cfg = self.config
        with self._lock:
            now = self._clock()
            self._evict(now)
            records = list(self._records)

        def within(window: float, pred) -> list[_SettlementRecord]:
            cutoff = now - window
            return [r for r in records if r.timestamp >= cutoff and pred(r)]

        def tripped(reason: str, trip_type: TripType, hits: list[_SettlementRecord], same_recipient: bool):
            return VelocityCheckResult(
                tripped=True,
                reason=reason,
                trip_type=trip_type,
                window_stats=WindowStats(
                    settlements_in_window=len(hits),
                    value_in_window=sum(r.amount for r in hits),
                    same_recipient_count_in_window=len(hits) if same_recipient else 0,
                ),
            )

        recipient_minute = within(MINUTE, lambda r: r.recipient == recipient)
        if len(recipient_minute) >= cfg.max_same_recipient_per_minute:
            return tripped(
                f"Same recipient {recipient} exceeded {cfg.max_same_recipient_per_minute} settlements/minute",
                TripType.RECIPIENT_VELOCITY, recipient_minute, True,
            )

        recipient_hour = within(HOUR, lambda r: r.recipient == recipient)
        if len(recipient_hour) >= cfg.max_same_recipient_per_hour:
            return tripped(
                f"Same recipient {recipient} exceeded {cfg.max_same_recipient_per_hour} settlements/hour",
                TripType.RECIPIENT_VELOCITY, recipient_hour, True,
            )

        agent_hour = within(HOUR, lambda r: r.agent == agent)
        if len(agent_hour) >= cfg.max_settlements_per_hour:
            return tripped(
                f"Agent {agent} exceeded {cfg.max_settlements_per_hour} settlements/hour",
                TripType.AGENT_VELOCITY, agent_hour, False,
            )

        agent_day = within(DAY, lambda r: r.agent == agent)
        if len(agent_day) >= cfg.max_settlements_per_day:
            return tripped(
                f"Agent {agent} exceeded {cfg.max_settlements_per_day} settlements/day",
                TripType.AGENT_VELOCITY, agent_day, False,
            )

        hourly_value = sum(r.amount for r in agent_hour)
        if hourly_value + amount > cfg.max_value_per_hour_base_units:
            return tripped(
                f"Agent {agent} value {hourly_value + amount} exceeds hourly cap "
                f"{cfg.max_value_per_hour_base_units}",
                TripType.AGENT_VELOCITY, agent_hour, False,
            )

        global_minute = within(MINUTE, lambda r: True)
        if len(global_minute) >= cfg.max_global_settlements_per_minute:
            return tripped(
                f"Global settlements exceeded {cfg.max_global_settlements_per_minute}/minute",
                TripType.GLOBAL_VELOCITY, global_minute, False,
            )

        return VelocityCheckResult(tripped=False)

    def record(self, agent: str, recipient: str, amount: int) -> None:
        with self._lock:
            now = self._clock()
            self._evict(now)
            self._records.append(_SettlementRecord(now, agent, recipient, amount))

    def destroy(self) -> None:
        with self._lock:
            self._records.clear()


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerStats",
    "CircuitState",
    "TripType",
    "VelocityCheckResult",
    "VelocityConfig",
    "VelocityTracker",
    "WindowStats",
]
