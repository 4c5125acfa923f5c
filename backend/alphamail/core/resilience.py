"""Resilience patterns for external service calls.

Provides:
- CircuitBreaker: Circuit breaker with success_threshold for HALF_OPEN recovery
- RetryPolicy: Bounded retry with exponential backoff for model calls, which
  separates terminal provider failures from retryable ones

All circuit breakers are registered in a global registry for health-check visibility.
"""

import asyncio
import enum
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from alphamail.core.exceptions import (
    AIUnavailableError,
    AuthenticationError,
    AuthorizationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Circuit Breaker
# ---------------------------------------------------------------------------


class CircuitState(enum.Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """Raised when a call is attempted on an open circuit."""

    def __init__(self, service_name: str, retry_after: float = 0.0) -> None:
        self.service_name = service_name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker is open for {service_name}")


# Global registry of all circuit breakers for health-check endpoints
_circuit_breaker_registry: dict[str, "CircuitBreaker"] = {}
_registry_lock = threading.Lock()


def get_all_circuit_breakers() -> dict[str, "CircuitBreaker"]:
    """Return a snapshot of all registered circuit breakers."""
    with _registry_lock:
        return dict(_circuit_breaker_registry)


class CircuitBreaker:
    """Circuit breaker for protecting calls to external services.

    Tracks consecutive failures and opens the circuit after a threshold
    is reached.  After a recovery timeout the circuit moves to HALF_OPEN
    and allows test requests.  Only after ``success_threshold`` consecutive
    successes in HALF_OPEN does the circuit fully close again.

    Args:
        service_name: Identifier for the protected service (used in logs / registry).
        failure_threshold: Consecutive failures before opening the circuit.
        recovery_timeout: Seconds to wait in OPEN before moving to HALF_OPEN.
        success_threshold: Consecutive successes in HALF_OPEN needed to close.
    """

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 3,
    ) -> None:
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold

        self._failure_count: int = 0
        self._success_count: int = 0  # Consecutive successes in HALF_OPEN
        self._last_failure_time: float = 0.0
        self._state: CircuitState = CircuitState.CLOSED
        self._lock = threading.Lock()

        with _registry_lock:
            _circuit_breaker_registry[service_name] = self

    @property
    def state(self) -> CircuitState:
        """Current circuit state, accounting for recovery timeout."""
        with self._lock:
            if self._state == CircuitState.OPEN and self._last_failure_time > 0:
                elapsed = time.monotonic() - self._last_failure_time
                if elapsed >= self.recovery_timeout:
                    self._state = CircuitState.HALF_OPEN
                    self._success_count = 0
                    logger.warning(
                        "Circuit breaker HALF_OPEN for %s (testing recovery after %.1fs)",
                        self.service_name,
                        elapsed,
                    )
            return self._state

    def check(self) -> None:
        """Raise if the circuit is open (calls are not allowed)."""
        if self.state == CircuitState.OPEN:
            retry_after = max(
                0.0,
                self.recovery_timeout - (time.monotonic() - self._last_failure_time),
            )
            raise CircuitBreakerOpen(self.service_name, retry_after=retry_after)

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    logger.warning(
                        "Circuit breaker CLOSED for %s (recovered after %d successes)",
                        self.service_name,
                        self._success_count,
                    )
                    self._state = CircuitState.CLOSED
                    self._failure_count = 0
                    self._success_count = 0
            else:
                self._failure_count = 0
                self._success_count = 0

    def record_failure(self) -> None:
        """Record a failed call.  Opens circuit after threshold."""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.monotonic()

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(
                    "Circuit breaker re-OPENED for %s (failed during HALF_OPEN test)",
                    self.service_name,
                )
                self._state = CircuitState.OPEN
                self._success_count = 0
            elif self._failure_count >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning(
                        "Circuit breaker OPEN for %s after %d consecutive failures",
                        self.service_name,
                        self._failure_count,
                    )
                self._state = CircuitState.OPEN

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Execute an async function through the circuit breaker.

        Raises:
            CircuitBreakerOpen: If the circuit is open.
            Exception: Any exception raised by *func* (after recording the failure).
        """
        self.check()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        else:
            self.record_success()
            return result

    def reset(self) -> None:
        """Force-reset the circuit breaker to CLOSED (e.g. for tests or admin)."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = 0.0
            logger.info("Circuit breaker RESET for %s", self.service_name)

    def to_dict(self) -> dict[str, Any]:
        """Snapshot for health-check endpoints."""
        return {
            "service": self.service_name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
        }


claude_api_circuit_breaker = CircuitBreaker(
    "claude_api", failure_threshold=5, recovery_timeout=60.0, success_threshold=3,
)
supabase_circuit_breaker = CircuitBreaker(
    "supabase", failure_threshold=10, recovery_timeout=30.0, success_threshold=3,
)


# ---------------------------------------------------------------------------
# Retry policy for model calls
# ---------------------------------------------------------------------------

# Provider status codes that retrying cannot fix
TERMINAL_STATUS_CODES: frozenset[int] = frozenset({401, 403})


def is_terminal_failure(exc: BaseException) -> bool:
    """Return True when a model failure must not be retried.

    Authorization and permission failures are terminal. LiteLLM and the
    provider SDKs expose the HTTP status as ``status_code``.
    """
    if isinstance(exc, (AuthenticationError, AuthorizationError)):
        return True
    return getattr(exc, "status_code", None) in TERMINAL_STATUS_CODES


class RetryPolicy:
    """Bounded retry with exponential backoff for model calls.

    Every attempt that fails with a retryable error waits
    ``initial_delay * backoff_factor ** (attempt - 1)`` seconds before the
    next one. Terminal failures and exhausted attempts both surface as
    :class:`AIUnavailableError`, chained to the last underlying error.

    Args:
        max_attempts: Total attempts including the first call.
        initial_delay: Delay before the first retry, in seconds.
        backoff_factor: Multiplier applied to the delay per attempt.
        is_terminal: Predicate that classifies non-retryable failures.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        backoff_factor: float = 2.0,
        is_terminal: Callable[[BaseException], bool] = is_terminal_failure,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.backoff_factor = backoff_factor
        self._is_terminal = is_terminal

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return self.initial_delay * self.backoff_factor ** (attempt - 1)

    async def run(
        self,
        operation: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Run *func* under the policy.

        Args:
            operation: Name used in logs and in the raised error.
            func: Async callable to execute.
            *args: Positional arguments for *func*.
            **kwargs: Keyword arguments for *func*.

        Returns:
            The first successful result of *func*.

        Raises:
            AIUnavailableError: On a terminal failure or once attempts run out.
        """
        last_exc: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await func(*args, **kwargs)
            except Exception as exc:
                last_exc = exc
                if self._is_terminal(exc):
                    logger.error(
                        "AI call %s failed with a terminal error: %s",
                        operation,
                        type(exc).__name__,
                    )
                    raise AIUnavailableError(operation, attempt, terminal=True) from exc

                logger.warning(
                    "AI call %s failed (attempt %d/%d): %s",
                    operation,
                    attempt,
                    self.max_attempts,
                    exc,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.delay_for(attempt))

        logger.error("All %d attempts exhausted for %s", self.max_attempts, operation)
        raise AIUnavailableError(operation, self.max_attempts) from last_exc
