"""Exponential backoff for idempotent reseller reads."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from keyshop.g2a.errors import G2AError
from keyshop.observability.metrics import increment_counter

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, G2AError) and exc.retryable


@dataclass
class RetryPolicy:
    """
    Retry a callable on transient reseller errors.

    Never wrap order creation, payment or key retrieval in this policy:
    those calls move money or consume single-issue keys upstream.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    is_retryable: Callable[[BaseException], bool] = is_transient
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int, exc: Optional[BaseException] = None) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            return min(float(retry_after), self.max_delay)
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    def call(self, fn: Callable[[], T], operation: str = "g2a_call") -> T:
        attempts = max(1, self.max_attempts)
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as exc:
                if attempt >= attempts or not self.is_retryable(exc):
                    raise
                delay = self.delay_for(attempt, exc)
                increment_counter("g2a_requests_retry_total", labels={"operation": operation})
                logger.warning(
                    f"{operation} failed (attempt {attempt}/{attempts}), retrying in {delay:.2f}s: {exc}"
                )
                self.sleep(delay)
                attempt += 1
