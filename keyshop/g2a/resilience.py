"""
Client-side protection for the reseller API.

``RateLimiter`` throttles outgoing calls with token buckets (one global,
optional per-operation ones). ``CircuitBreaker`` stops calling an operation
that keeps failing and lets a few trial calls through after a cool-down.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, Optional, Tuple, TypeVar

from keyshop.g2a.errors import G2AError, G2AErrorCode
from keyshop.observability.metrics import increment_counter, observe_latency, set_gauge

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures that say the upstream is unhealthy; business errors (404, ORD03,
# out of stock) prove it answered and count as successes
_UNHEALTHY_CODES = frozenset(
    {G2AErrorCode.TIMEOUT, G2AErrorCode.NETWORK_ERROR, G2AErrorCode.RATE_LIMIT}
)


def is_upstream_failure(exc: BaseException) -> bool:
    if not isinstance(exc, G2AError):
        return True
    if exc.code in _UNHEALTHY_CODES:
        return True
    return exc.code == G2AErrorCode.API_ERROR and (exc.status or 0) >= 500


# ==========================================
# RATE LIMITING
# ==========================================

@dataclass
class TokenBucket:
    rate: float
    capacity: float
    tokens: float
    updated_at: float

    def refill(self, now: float) -> None:
        elapsed = max(now - self.updated_at, 0.0)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.updated_at = now

    def reserve(self, now: float) -> float:
        """Take one token, going into debt if needed; return the wait in seconds."""
        self.refill(now)
        self.tokens -= 1
        if self.tokens >= 0:
            return 0.0
        return -self.tokens / self.rate


class RateLimiter:
    def __init__(
        self,
        requests_per_second: float = 10.0,
        burst: int = 20,
        per_operation: Optional[Dict[str, Tuple[float, int]]] = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.enabled = enabled and requests_per_second > 0
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        now = clock()
        self._global = TokenBucket(requests_per_second, burst, burst, now)
        self._limits = dict(per_operation or {})
        self._buckets: Dict[str, TokenBucket] = {}

    def _bucket_for(self, operation: str, now: float) -> Optional[TokenBucket]:
        limit = self._limits.get(operation)
        if limit is None:
            return None
        bucket = self._buckets.get(operation)
        if bucket is None:
            rate, burst = limit
            bucket = self._buckets[operation] = TokenBucket(rate, burst, burst, now)
        return bucket

    def acquire(self, operation: str) -> float:
        """Block until a call to ``operation`` may go out; return the time waited."""
        if not self.enabled:
            return 0.0
        with self._lock:
            now = self._clock()
            wait = self._global.reserve(now)
            bucket = self._bucket_for(operation, now)
            if bucket is not None:
                wait = max(wait, bucket.reserve(now))
        if wait > 0:
            increment_counter("g2a_rate_limited_total", labels={"operation": operation})
            observe_latency("g2a_rate_limit_wait_ms", wait * 1000, labels={"operation": operation})
            logger.debug(f"Throttling {operation} for {wait:.3f}s")
            self._sleep(wait)
        return wait


# ==========================================
# CIRCUIT BREAKER
# ==========================================

class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


_STATE_GAUGE = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        failure_window: float = 60.0,
        reset_timeout: float = 30.0,
        half_open_successes: int = 2,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self.reset_timeout = reset_timeout
        self.half_open_successes = half_open_successes
        self.enabled = enabled
        self._clock = clock
        self._lock = threading.Lock()
        self._failures: Deque[float] = deque()
        self._trial_successes = 0
        self._state = CircuitState.CLOSED
        self._changed_at = clock()

    def _transition(self, state: CircuitState, now: float) -> None:
        if state == self._state:
            return
        logger.warning(f"Circuit for {self.name} moved {self._state.value} -> {state.value}")
        self._state = state
        self._changed_at = now
        self._trial_successes = 0
        if state == CircuitState.CLOSED:
            self._failures.clear()
        if state == CircuitState.OPEN:
            increment_counter("g2a_circuit_open_total", labels={"operation": self.name})
        set_gauge("g2a_circuit_state", _STATE_GAUGE[state], labels={"operation": self.name})

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if self._state == CircuitState.OPEN and self._clock() - self._changed_at >= self.reset_timeout:
                self._transition(CircuitState.HALF_OPEN, self._clock())
            return self._state

    def _before_call(self) -> None:
        if self.state != CircuitState.OPEN:
            return
        remaining = max(self.reset_timeout - (self._clock() - self._changed_at), 0.0)
        increment_counter("g2a_circuit_rejected_total", labels={"operation": self.name})
        raise G2AError(
            G2AErrorCode.CIRCUIT_OPEN,
            f"Circuit breaker is open for {self.name}. Will retry in {int(remaining + 0.999)}s",
            operation=self.name,
            retry_after=remaining,
        )

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._trial_successes += 1
                if self._trial_successes >= self.half_open_successes:
                    self._transition(CircuitState.CLOSED, self._clock())

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, now)
                return
            self._failures.append(now)
            while self._failures and self._failures[0] <= now - self.failure_window:
                self._failures.popleft()
            if self._state == CircuitState.CLOSED and len(self._failures) >= self.failure_threshold:
                self._transition(CircuitState.OPEN, now)

    def execute(self, fn: Callable[[], T]) -> T:
        if not self.enabled:
            return fn()
        self._before_call()
        try:
            result = fn()
        except Exception as exc:
            if is_upstream_failure(exc):
                self.record_failure()
            else:
                self.record_success()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._transition(CircuitState.CLOSED, self._clock())
            self._failures.clear()


class CircuitBreakerRegistry:
    """One breaker per operation, created on first use with shared settings."""

    def __init__(self, **settings) -> None:
        self._settings = settings
        self._lock = threading.Lock()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, operation: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(operation)
            if breaker is None:
                breaker = self._breakers[operation] = CircuitBreaker(operation, **self._settings)
            return breaker

    def states(self) -> Dict[str, str]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.state.value for breaker in breakers}
