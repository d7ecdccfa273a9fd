"""Retry-with-backoff executor and the process-wide provider circuit breaker.

Every outbound call to the music provider goes through ``execute``::

    task_id = await execute(lambda: client.post_submit(payload), SUBMIT_POLICY)

The breaker is shared by all jobs in the process; its counters are guarded by
a ``threading.Lock`` so it stays consistent whether callers run on the event
loop or in worker threads.
"""
from __future__ import annotations

import asyncio
import logging
import random
import threading
import time as _time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tunesmith.config import settings
from tunesmith.services.errors import CircuitOpenError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

_JITTER = 0.25


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff policy; delays are in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    uniform: Callable[[float, float], float] = random.uniform,
) -> float:
    """Delay to sleep after failed attempt ``attempt`` (0-based), with ±25% jitter."""
    delay = min(policy.base_delay * (policy.backoff_multiplier ** attempt), policy.max_delay)
    return delay * uniform(1.0 - _JITTER, 1.0 + _JITTER)


class CircuitBreaker:
    """Stops calling the provider after repeated consecutive failures.

    After ``threshold`` consecutive failures the circuit opens and every call
    fails fast with ``CircuitOpenError`` until ``cooldown`` seconds have passed
    since the last failure.  The next call after the cooldown resets the
    breaker and goes through normally.  A single success resets the counter.
    """

    def __init__(
        self,
        threshold: int = 5,
        cooldown: float = 300.0,
        clock: Callable[[], float] = _time.monotonic,
    ):
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock
        self._failures = 0
        self._last_failure_at = 0.0
        self._lock = threading.Lock()

    def _is_open_locked(self) -> bool:
        return (
            self._failures >= self.threshold
            and self._clock() - self._last_failure_at < self.cooldown
        )

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._is_open_locked()

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failures

    def before_call(self) -> None:
        """Raise ``CircuitOpenError`` if calls are currently refused."""
        with self._lock:
            if self._is_open_locked():
                retry_after = self.cooldown - (self._clock() - self._last_failure_at)
                raise CircuitOpenError(retry_after)
            if self._failures >= self.threshold:
                logger.info("🟡 Provider circuit breaker cooldown elapsed — resuming calls")
                self._failures = 0
                self._last_failure_at = 0.0

    def record_success(self) -> None:
        with self._lock:
            if self._failures >= self.threshold:
                logger.info("🟢 Provider circuit breaker CLOSED (successful request)")
            self._failures = 0
            self._last_failure_at = 0.0

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure_at = self._clock()
            if self._failures == self.threshold:
                logger.error(
                    f"🔴 Provider circuit breaker OPEN after {self._failures} "
                    f"consecutive failures — failing fast for {self.cooldown:.0f}s"
                )

    def snapshot(self) -> dict[str, object]:
        """Point-in-time view for the engine status endpoint."""
        with self._lock:
            is_open = self._is_open_locked()
            retry_after = (
                max(0.0, self.cooldown - (self._clock() - self._last_failure_at))
                if is_open
                else 0.0
            )
            return {
                "state": "open" if is_open else "closed",
                "failure_count": self._failures,
                "threshold": self.threshold,
                "retry_after_seconds": round(retry_after, 1),
            }


async def execute(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    breaker: CircuitBreaker | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    uniform: Callable[[float, float], float] = random.uniform,
    label: str = "provider call",
) -> T:
    """Run ``operation`` with exponential backoff under the shared circuit breaker.

    Terminal errors (400/401/403/413, validation, provider-reported failure)
    propagate immediately and do not count against the breaker.  Retryable
    errors are re-attempted up to ``policy.max_retries`` times; the last one is
    re-raised once attempts are exhausted.
    """
    cb = breaker if breaker is not None else get_circuit_breaker()

    for attempt in range(policy.max_attempts):
        cb.before_call()
        try:
            result = await operation()
        except Exception as exc:
            if not is_retryable(exc):
                logger.warning(f"⛔ {label} failed with terminal error: {exc}")
                raise
            cb.record_failure()
            if attempt == policy.max_retries:
                logger.error(
                    f"❌ {label} failed after {policy.max_attempts} attempts: {exc}"
                )
                raise
            delay = compute_delay(attempt, policy, uniform)
            logger.warning(
                f"⚠️ {label} failed ({type(exc).__name__}: {exc}) — "
                f"retry {attempt + 1}/{policy.max_retries} in {delay:.2f}s"
            )
            await sleep(delay)
        else:
            cb.record_success()
            return result

    raise AssertionError("unreachable")  # pragma: no cover


def submit_policy() -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.submit_max_retries,
        base_delay=settings.submit_base_delay,
        max_delay=settings.submit_max_delay,
        backoff_multiplier=settings.retry_backoff_multiplier,
    )


def query_policy() -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.query_max_retries,
        base_delay=settings.query_base_delay,
        max_delay=settings.query_max_delay,
        backoff_multiplier=settings.retry_backoff_multiplier,
    )


# ---------------------------------------------------------------------------
# Module-level singleton: one breaker per process, shared across all jobs.
# ---------------------------------------------------------------------------

_shared_breaker: CircuitBreaker | None = None
_shared_breaker_lock = threading.Lock()


def get_circuit_breaker() -> CircuitBreaker:
    """Return the process-wide CircuitBreaker singleton."""
    global _shared_breaker
    with _shared_breaker_lock:
        if _shared_breaker is None:
            _shared_breaker = CircuitBreaker(
                threshold=settings.circuit_breaker_threshold,
                cooldown=settings.circuit_breaker_cooldown,
            )
        return _shared_breaker


def reset_circuit_breaker() -> None:
    """Drop the singleton (tests, or after reconfiguration)."""
    global _shared_breaker
    with _shared_breaker_lock:
        _shared_breaker = None
