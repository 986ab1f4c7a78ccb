"""
Per-system circuit breaker for calls to the workflow engine and the stores.
"""

import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict

from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenException(Exception):
    """Call refused without reaching the external system."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit breaker '{name}' is open, retry in {retry_after:.1f}s")
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker:
    """Fails fast once an external system keeps failing.

    Only exceptions matching ``expected_exception`` count as failures, so a
    404 mapped to ``None`` or a domain error raised through the breaker
    never trips it. After ``recovery_timeout`` one trial call is let
    through; its outcome closes or reopens the breaker.
    """

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 30.0,
                 expected_exception: Any = Exception,
                 name: str = "default"):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name
        self.logger = get_logger(f"approvals.circuit_breaker.{name}")

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = 0.0

    def _retry_after(self) -> float:
        return max(0.0, self._opened_at + self.recovery_timeout - time.time())

    def _transition(self, state: CircuitBreakerState, **fields):
        if state == self._state:
            return
        log = self.logger.warning if state == CircuitBreakerState.OPEN else self.logger.info
        log("Circuit breaker state changed", breaker=self.name,
            from_state=self._state.value, to_state=state.value, **fields)
        self._state = state

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run ``func`` unless the breaker is open."""
        if self._state == CircuitBreakerState.OPEN:
            if self._retry_after() > 0:
                raise CircuitBreakerOpenException(self.name, self._retry_after())
            self._transition(CircuitBreakerState.HALF_OPEN)

        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            self._record_failure()
            raise

        self._failure_count = 0
        self._success_count += 1
        self._transition(CircuitBreakerState.CLOSED)
        return result

    def _record_failure(self):
        self._failure_count += 1
        self._success_count = 0
        if self._state == CircuitBreakerState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._opened_at = time.time()
            self._transition(
                CircuitBreakerState.OPEN,
                failure_count=self._failure_count,
                threshold=self.failure_threshold
            )

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "retry_after": self._retry_after() if self.is_open() else 0.0,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout
        }

    def is_open(self) -> bool:
        return self._state == CircuitBreakerState.OPEN
