"""
Circuit breaker for the LLM provider.

One breaker instance is created at process start and shared by reference
between engines so that a provider-wide outage is detected across requests.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from answer_engine.config import BreakerConfig
from answer_engine.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """
    Circuit breaker for external service calls.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests rejected immediately
    - HALF_OPEN: Testing recovery, limited requests allowed

    State transitions are guarded by a lock; the awaited call itself runs
    outside of it.

    Usage:
        breaker = CircuitBreaker(failure_threshold=3)
        result = await breaker.call_async(client.complete, **kwargs)
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        reset_timeout: float = 30.0,
        half_open_max_calls: int = 2,
        *,
        name: str = "llm",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock
        self._lock = threading.Lock()

        self.state = CircuitState.CLOSED
        self.failures = 0
        self.successes = 0
        self.last_failure_time: float | None = None
        self.half_open_calls = 0

    @classmethod
    def from_config(cls, config: BreakerConfig, *, name: str = "llm") -> "CircuitBreaker":
        return cls(
            failure_threshold=config.failure_threshold,
            reset_timeout=config.reset_timeout,
            half_open_max_calls=config.half_open_max_calls,
            name=name,
        )

    def _should_allow_request(self) -> bool:
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if (
                self.last_failure_time is not None
                and (self._clock() - self.last_failure_time) >= self.reset_timeout
            ):
                self._transition_to_half_open()
                return True
            return False

        return self.half_open_calls < self.half_open_max_calls

    def _transition_to_open(self) -> None:
        logger.warning(
            "Circuit breaker %s OPEN: %d failures in succession", self.name, self.failures
        )
        self.state = CircuitState.OPEN
        self.last_failure_time = self._clock()

    def _transition_to_half_open(self) -> None:
        logger.info("Circuit breaker %s transitioning to HALF_OPEN", self.name)
        self.state = CircuitState.HALF_OPEN
        self.half_open_calls = 0
        self.successes = 0

    def _transition_to_closed(self) -> None:
        logger.info("Circuit breaker %s CLOSED: service recovered", self.name)
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.successes = 0
        self.half_open_calls = 0

    def _before_call(self) -> None:
        with self._lock:
            if not self._should_allow_request():
                remaining = self.reset_timeout - (
                    self._clock() - (self.last_failure_time or 0.0)
                )
                raise CircuitOpenError(
                    f"Service {self.name} is temporarily unavailable: circuit is "
                    f"{self.state.value}, retry in {max(0.0, remaining):.0f}s"
                )
            if self.state == CircuitState.HALF_OPEN:
                self.half_open_calls += 1

    def _release_half_open_slot(self) -> None:
        with self._lock:
            if self.state == CircuitState.HALF_OPEN and self.half_open_calls > 0:
                self.half_open_calls -= 1

    def record_success(self) -> None:
        with self._lock:
            self.failures = 0
            if self.state == CircuitState.HALF_OPEN:
                self.successes += 1
                if self.successes >= self.half_open_max_calls:
                    self._transition_to_closed()

    def record_failure(self) -> None:
        with self._lock:
            self.failures += 1
            self.last_failure_time = self._clock()
            if self.state == CircuitState.HALF_OPEN:
                self._transition_to_open()
            elif self.failures >= self.failure_threshold:
                self._transition_to_open()

    async def call_async(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Await `fn` with circuit breaker protection.

        Raises:
            CircuitOpenError: If the circuit is open
            Exception: Original exception from `fn`
        """
        self._before_call()
        try:
            result = await fn(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        except BaseException:
            # Cancelled: neither a success nor a failure.
            self._release_half_open_slot()
            raise
        self.record_success()
        return result

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self.state.value,
                "failures": self.failures,
                "successes": self.successes,
                "last_failure_time": self.last_failure_time,
                "half_open_calls": self.half_open_calls,
            }


_llm_breaker: CircuitBreaker | None = None
_llm_breaker_lock = threading.Lock()


def default_llm_breaker() -> CircuitBreaker:
    """Process-wide breaker for callers that do not manage their own."""
    global _llm_breaker
    with _llm_breaker_lock:
        if _llm_breaker is None:
            _llm_breaker = CircuitBreaker.from_config(BreakerConfig())
        return _llm_breaker
