"""
Circuit breaker for external LLM provider endpoints.

Defaults:
- Failure threshold: 50% error rate over 1 minute (at least 6 calls)
- Open duration: 30 seconds
- Half-open: a limited number of probe calls; any probe failure reopens
"""
import time
from collections import deque
from enum import Enum
from threading import Lock
from typing import Any, Callable, Deque, Optional, Tuple

from consensus_ai.core.logging import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, bypass provider
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """
    Error-rate circuit breaker.

    Every slot taken by ``allow_request`` is returned by exactly one of
    ``record_success``, ``record_failure`` or ``release``.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: float = 0.5,
        time_window_seconds: float = 60,
        open_duration_seconds: float = 30,
        min_requests_for_threshold: int = 6,
        half_open_max_calls: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.time_window_seconds = time_window_seconds
        self.open_duration_seconds = open_duration_seconds
        self.min_requests_for_threshold = min_requests_for_threshold
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._lock = Lock()
        self._history: Deque[Tuple[float, bool]] = deque()  # (timestamp, success)
        self._opened_at: Optional[float] = None
        self._half_open_in_flight = 0
        self._half_open_successes = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._update_state()
            return self._state

    def _update_state(self) -> None:
        now = self._clock()
        cutoff = now - self.time_window_seconds
        while self._history and self._history[0][0] < cutoff:
            self._history.popleft()

        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if now - self._opened_at >= self.open_duration_seconds:
                self._state = CircuitState.HALF_OPEN
                self._half_open_in_flight = 0
                self._half_open_successes = 0
                logger.info("circuit_breaker_half_open", circuit_breaker=self.name)

    def _open(self, now: float, **fields: Any) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._history.clear()
        logger.warning("circuit_breaker_opened", circuit_breaker=self.name, **fields)

    def allow_request(self) -> bool:
        """Reserve a slot for a call; False means fail fast."""
        with self._lock:
            self._update_state()
            if self._state == CircuitState.OPEN:
                return False
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self.half_open_max_calls:
                    return False
                self._half_open_in_flight += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                self._half_open_successes += 1
                if self._half_open_successes >= self.half_open_max_calls:
                    self._state = CircuitState.CLOSED
                    self._opened_at = None
                    self._history.clear()
                    logger.info("circuit_breaker_closed", circuit_breaker=self.name)
                return
            self._history.append((self._clock(), True))

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = 0
                self._open(now, reason="half_open_probe_failed")
                return
            self._history.append((now, False))
            self._update_state()
            total = len(self._history)
            if self._state == CircuitState.CLOSED and total >= self.min_requests_for_threshold:
                failures = sum(1 for _, success in self._history if not success)
                error_rate = failures / total
                if error_rate >= self.failure_threshold:
                    self._open(now, error_rate=error_rate, failures=failures, total=total)

    def release(self) -> None:
        """Return a slot for a call abandoned before it produced an outcome."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

    def get_metrics(self) -> dict:
        """Get circuit breaker metrics for monitoring."""
        with self._lock:
            self._update_state()
            total = len(self._history)
            failures = sum(1 for _, success in self._history if not success)
            return {
                "name": self.name,
                "state": self._state.value,
                "recent_requests": total,
                "recent_failures": failures,
                "error_rate": failures / total if total else 0.0,
                "opened_at": self._opened_at,
            }
