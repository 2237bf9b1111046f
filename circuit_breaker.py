"""
circuit_breaker.py - Circuit breaker guarding outbound collaborator calls
"""
from typing import Callable, Type
from datetime import datetime, timedelta
from enum import Enum
import functools
import inspect

from logger import get_logger
from metrics import circuit_breaker_state

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.OPEN: 1,
    CircuitState.HALF_OPEN: 2,
}


class CircuitBreakerError(Exception):
    """Raised when circuit is open"""
    pass


class CircuitBreaker:
    """
    Fails fast once a collaborator keeps failing

    After ``failure_threshold`` consecutive failures the circuit opens and
    calls are rejected until ``recovery_timeout`` seconds have passed; the
    next call is then let through as a trial.
    """

    def __init__(
        self,
        service: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        expected_exception: Type[Exception] = Exception
    ):
        self.service = service
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.failure_count = 0
        self.last_failure_time = None
        self._set_state(CircuitState.CLOSED)

    def __call__(self, func: Callable) -> Callable:
        if not inspect.iscoroutinefunction(func):
            raise TypeError("CircuitBreaker only wraps coroutine functions")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await self.call(func, *args, **kwargs)
        return wrapper

    def _set_state(self, state: CircuitState):
        self.state = state
        circuit_breaker_state.labels(self.service).set(_STATE_GAUGE_VALUES[state])

    async def call(self, func: Callable, *args, **kwargs):
        """Execute a coroutine function through the breaker"""
        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self._set_state(CircuitState.HALF_OPEN)
            else:
                raise CircuitBreakerError(f"Circuit breaker is OPEN for {self.service}")

        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        """Check if we should try to reset the circuit"""
        if self.last_failure_time is None:
            return False

        time_since_failure = datetime.now() - self.last_failure_time
        return time_since_failure >= timedelta(seconds=self.recovery_timeout)

    def _on_success(self):
        self.failure_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self._set_state(CircuitState.CLOSED)
            logger.info(f"Circuit breaker for {self.service} closed after successful recovery")

    def _on_failure(self):
        self.failure_count += 1
        self.last_failure_time = datetime.now()

        if self.state == CircuitState.HALF_OPEN:
            self._set_state(CircuitState.OPEN)
            logger.warning(f"Circuit breaker for {self.service} reopened after failure in half-open state")
        elif self.failure_count >= self.failure_threshold and self.state != CircuitState.OPEN:
            self._set_state(CircuitState.OPEN)
            logger.warning(
                f"Circuit breaker for {self.service} opened after {self.failure_count} failures"
            )
