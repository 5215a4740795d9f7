"""
Fault-tolerance helpers for the database and the purchase path.

**Circuit breaker.**  Every repository call and unit-of-work commit runs
through :data:`db_circuit_breaker`.  Only connection-level errors
(:data:`DB_CONNECTIVITY_ERRORS`) count against it; a capacity conflict or a
constraint violation is the database working correctly and passes straight
through.  After ``CB_FAILURE_THRESHOLD`` consecutive failures the circuit
opens and calls are refused for ``CB_RECOVERY_TIMEOUT`` seconds.  After
that a single probe is admitted (HALF_OPEN); concurrent callers keep
failing fast until the probe settles the state.

**Retry with backoff.**  :class:`RetryPolicy` describes how often and how
patiently to retry; :func:`retry_with_backoff` applies it to an async
callable.  The pricing engine builds a policy from the ``PURCHASE_*``
settings and retries a whole quote-then-execute attempt when it loses a
capacity race.
"""

import asyncio
import functools
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Tuple, Type

from sqlalchemy.exc import InterfaceError, OperationalError

from tranche_service.core.config import settings

logger = logging.getLogger(__name__)

DB_CONNECTIVITY_ERRORS: Tuple[Type[Exception], ...] = (
    OperationalError,
    InterfaceError,
    ConnectionError,
    OSError,
    TimeoutError,
)


# ────────────────────────────────────────────────────────────────────────────
# Circuit Breaker
# ────────────────────────────────────────────────────────────────────────────


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """A call was refused because the circuit is open."""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker '{name}' is OPEN; refusing calls for another {retry_after:.1f}s"
        )


class CircuitBreaker:
    """
    Async circuit breaker guarding one dependency.

    Parameters
    ----------
    name : str
        Label for logs and ``/health``.
    failure_threshold : int
        Consecutive counted failures that open the circuit.
    recovery_timeout : float
        Seconds the circuit stays OPEN before admitting a probe.
    expected_exceptions : tuple
        Exception types that count as failures.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        expected_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exceptions = expected_exceptions

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self.retry_after <= 0:
            self._state = CircuitState.HALF_OPEN
            logger.info("Circuit '%s' → HALF_OPEN, admitting one probe", self.name)
        return self._state

    @property
    def retry_after(self) -> float:
        """Seconds until an OPEN circuit admits a probe (0 when not OPEN)."""
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(self.recovery_timeout - (time.monotonic() - self._last_failure_time), 0.0)

    async def call(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        """
        Await ``func(*args, **kwargs)`` unless the circuit refuses it.

        Raises :class:`CircuitBreakerError` while OPEN, and while a HALF_OPEN
        probe is already running.
        """
        state = self.state
        if state == CircuitState.OPEN:
            raise CircuitBreakerError(self.name, self.retry_after)

        probing = state == CircuitState.HALF_OPEN
        if probing:
            if self._probe_in_flight:
                raise CircuitBreakerError(self.name, 0.0)
            self._probe_in_flight = True

        try:
            result = await func(*args, **kwargs)
        except self.expected_exceptions:
            self._on_failure()
            raise
        else:
            self._on_success()
            return result
        finally:
            if probing:
                self._probe_in_flight = False

    def _on_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info(
                "Circuit '%s' → CLOSED after %d failure(s)", self.name, self._failure_count
            )
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count += 1

    def _on_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.error(
                "Circuit '%s' → OPEN after %d failure(s); refusing calls for %.1fs",
                self.name,
                self._failure_count,
                self.recovery_timeout,
            )
        else:
            logger.warning(
                "Circuit '%s' failure %d/%d",
                self.name,
                self._failure_count,
                self.failure_threshold,
            )

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._probe_in_flight = False

    def get_status(self) -> dict:
        """Snapshot for ``/health``."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "success_count": self._success_count,
            "recovery_timeout_s": self.recovery_timeout,
            "retry_after_s": round(self.retry_after, 1),
        }


db_circuit_breaker = CircuitBreaker(
    name="database",
    failure_threshold=settings.CB_FAILURE_THRESHOLD,
    recovery_timeout=settings.CB_RECOVERY_TIMEOUT,
    expected_exceptions=DB_CONNECTIVITY_ERRORS,
)


# ────────────────────────────────────────────────────────────────────────────
# Retry with Exponential Backoff
# ────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RetryPolicy:
    """
    How a retried operation waits between attempts.

    ``max_retries`` counts attempts after the first one, so ``0`` means a
    single call.  The n-th retry waits ``base_delay * 2**n`` seconds, capped
    at ``max_delay``, plus up to 50% jitter when ``jitter`` is set.
    """

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    jitter: bool = True
    retryable_exceptions: Tuple[Type[Exception], ...] = DB_CONNECTIVITY_ERRORS

    def delay_for(self, retry: int) -> float:
        delay = min(self.base_delay * (2 ** retry), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * 0.5)
        return delay


def retry_with_backoff(policy: Optional[RetryPolicy] = None, **overrides: Any) -> Callable:
    """
    Decorator: retry an async function according to ``policy``.

    Keyword ``overrides`` build a policy inline::

        @retry_with_backoff(max_retries=3, retryable_exceptions=(CapacityConflictError,))
        async def buy():
            ...

    Exceptions outside ``retryable_exceptions`` propagate immediately; once
    retries are exhausted the last retryable exception is re-raised.
    """
    policy = policy or RetryPolicy(**overrides)

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for retry in range(policy.max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except policy.retryable_exceptions as exc:
                    if retry == policy.max_retries:
                        logger.error(
                            "%s gave up after %d retr%s: %s",
                            func.__qualname__,
                            policy.max_retries,
                            "y" if policy.max_retries == 1 else "ies",
                            exc,
                        )
                        raise
                    delay = policy.delay_for(retry)
                    logger.warning(
                        "%s failed with %s; retry %d/%d in %.2fs",
                        func.__qualname__,
                        type(exc).__name__,
                        retry + 1,
                        policy.max_retries,
                        delay,
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
