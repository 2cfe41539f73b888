"""Circuit breaking and retry/backoff for calls that leave the process.

Every external call is composed as ``breaker(retry(call))``: transient
failures first exhaust retries for one logical operation, and only sustained
failure across many operations trips the breaker. ``protect`` builds that
composition explicitly around a coroutine function.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, ParamSpec, TypeVar

import httpx
from opentelemetry import trace

from sniper.core import metrics
from sniper.core.errors import CircuitOpenError, PermanentError, TransientError
from sniper.core.telemetry import add_span_attributes

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")
P = ParamSpec("P")

JITTER_RATIO = 0.25


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(slots=True, frozen=True)
class BreakerOptions:
    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0
    timeout_seconds: float = 30.0
    volume_threshold: int = 10


@dataclass(slots=True, frozen=True)
class StateChange:
    name: str
    previous: CircuitState
    current: CircuitState
    at: float


StateObserver = Callable[[StateChange], None]


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        options: BreakerOptions | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        notify: StateObserver | None = None,
    ) -> None:
        self.name = name
        self.options = options or BreakerOptions()
        self._clock = clock
        self._notify = notify
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_at: float | None = None
        self._next_attempt_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    async def execute(self, call: Callable[[], Awaitable[T]]) -> T:
        is_trial = self._admit()
        try:
            try:
                result = await asyncio.wait_for(call(), timeout=self.options.timeout_seconds)
            except asyncio.TimeoutError as exc:
                self._on_failure()
                raise TransientError(
                    f"circuit breaker timeout for {self.name} after {self.options.timeout_seconds:.1f}s"
                ) from exc
            except Exception:
                self._on_failure()
                raise
        finally:
            if is_trial:
                self._trial_in_flight = False

        self._on_success()
        return result

    def stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "last_failure_at": self._last_failure_at,
            "next_attempt_at": self._next_attempt_at,
        }

    def _admit(self) -> bool:
        if self._state is CircuitState.OPEN:
            if self._next_attempt_at is not None and self._clock() >= self._next_attempt_at:
                self._transition(CircuitState.HALF_OPEN)
            else:
                raise CircuitOpenError(self.name, self._next_attempt_at)

        if self._state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, self._next_attempt_at)
            self._trial_in_flight = True
            return True
        return False

    def _on_success(self) -> None:
        self._failure_count = 0
        self._success_count += 1
        if self._state is CircuitState.HALF_OPEN:
            logger.info("circuit breaker closing after successful trial service=%s", self.name)
            self._close()

    def _on_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_at = self._clock()
        logger.warning(
            "circuit breaker failure recorded service=%s failure_count=%s state=%s",
            self.name,
            self._failure_count,
            self._state.value,
        )
        if self._state is CircuitState.HALF_OPEN:
            logger.error("circuit breaker reopening after failed trial service=%s", self.name)
            self._open()
        elif self._state is CircuitState.CLOSED and self._should_open():
            logger.error("circuit breaker opening on failure threshold service=%s", self.name)
            self._open()

    def _should_open(self) -> bool:
        total = self._failure_count + self._success_count
        return self._failure_count >= self.options.failure_threshold and total >= self.options.volume_threshold

    def _open(self) -> None:
        self._next_attempt_at = self._clock() + self.options.reset_timeout_seconds
        self._transition(CircuitState.OPEN)

    def _close(self) -> None:
        self._failure_count = 0
        self._success_count = 0
        self._next_attempt_at = None
        self._transition(CircuitState.CLOSED)

    def _transition(self, current: CircuitState) -> None:
        previous = self._state
        self._state = current
        if self._notify is not None and previous is not current:
            self._notify(StateChange(name=self.name, previous=previous, current=current, at=self._clock()))


class BreakerRegistry:
    """Process-lifetime map from dependency name to its breaker."""

    def __init__(
        self,
        defaults: BreakerOptions | None = None,
        overrides: dict[str, BreakerOptions] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.defaults = defaults or BreakerOptions()
        self._overrides = dict(overrides or {})
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._observers: list[StateObserver] = [log_state_change]

    def get(self, name: str, options: BreakerOptions | None = None) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            resolved = options or self._overrides.get(name) or self.defaults
            breaker = CircuitBreaker(name, resolved, clock=self._clock, notify=self._publish)
            self._breakers[name] = breaker
        return breaker

    def subscribe(self, observer: StateObserver) -> None:
        self._observers.append(observer)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.stats() for name, breaker in sorted(self._breakers.items())}

    def _publish(self, change: StateChange) -> None:
        for observer in list(self._observers):
            try:
                observer(change)
            except Exception:  # noqa: BLE001
                logger.exception("breaker state observer failed service=%s", change.name)


def log_state_change(change: StateChange) -> None:
    logger.info(
        "circuit breaker state change service=%s from=%s to=%s",
        change.name,
        change.previous.value,
        change.current.value,
    )
    metrics.breaker_transitions.add(1, {"service": change.name, "state": change.current.value})


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    retries: int = 3
    min_delay: float = 1.0
    max_delay: float = 30.0
    factor: float = 2.0
    jitter: bool = True


def network_retry_policy(
    *,
    retries: int = 5,
    min_delay: float = 2.0,
    max_delay: float = 60.0,
) -> RetryPolicy:
    return RetryPolicy(retries=retries, min_delay=min_delay, max_delay=max_delay)


@dataclass(slots=True, frozen=True)
class FailedAttempt:
    attempt_number: int
    retries_left: int
    error: Exception
    context: str | None


RetryObserver = Callable[[FailedAttempt], None]


def backoff_delay(
    attempt: int,
    *,
    base: float,
    maximum: float,
    factor: float = 2.0,
    jitter: bool = True,
    rng: random.Random | None = None,
) -> float:
    delay = min(base * (factor ** max(0, attempt - 1)), maximum)
    if jitter:
        source = rng or random
        delay += (source.random() * 2 - 1) * delay * JITTER_RATIO
    return max(0.0, delay)


def is_permanent(error: BaseException) -> bool:
    if isinstance(error, PermanentError):
        return True
    status = _status_code(error)
    return status is not None and 400 <= status < 500 and status != 429


def retry_after_seconds(error: BaseException, *, now: datetime | None = None) -> float | None:
    if isinstance(error, TransientError):
        return error.retry_after
    if isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 429:
        return parse_retry_after(error.response.headers.get("retry-after"), now=now)
    return None


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    if not value:
        return None
    raw = value.strip()
    try:
        return max(0.0, float(int(raw)))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(0.0, (when - current).total_seconds())


async def retry(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    context: str | None = None,
    on_failed_attempt: RetryObserver | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: random.Random | None = None,
) -> T:
    policy = policy or RetryPolicy()
    total_attempts = max(1, policy.retries + 1)
    attempt_number = 0

    while True:
        attempt_number += 1
        try:
            result = await call()
        except Exception as exc:
            add_span_attributes({"retry.error": str(exc), "retry.context": context})
            if is_permanent(exc):
                logger.warning("non-retryable failure context=%s error=%s", context, exc)
                raise

            retries_left = total_attempts - attempt_number
            failed = FailedAttempt(
                attempt_number=attempt_number,
                retries_left=retries_left,
                error=exc,
                context=context,
            )
            _report_failed_attempt(failed, on_failed_attempt)
            if retries_left <= 0:
                raise

            delay = retry_after_seconds(exc)
            if delay is not None:
                logger.info("rate limited, waiting %.1fs before retry context=%s", delay, context)
            else:
                delay = backoff_delay(
                    attempt_number,
                    base=policy.min_delay,
                    maximum=policy.max_delay,
                    factor=policy.factor,
                    jitter=policy.jitter,
                    rng=rng,
                )
            await sleep(delay)
            continue

        add_span_attributes({"retry.succeeded": True, "retry.context": context})
        return result


def protect(
    fn: Callable[P, Awaitable[T]],
    *,
    breaker: CircuitBreaker,
    policy: RetryPolicy | None = None,
    context: str | None = None,
    on_failed_attempt: RetryObserver | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Callable[P, Awaitable[T]]:
    label = context or breaker.name

    async def protected(*args: P.args, **kwargs: P.kwargs) -> T:
        with tracer.start_as_current_span(f"protected.{breaker.name}") as span:
            span.set_attribute("breaker.name", breaker.name)
            span.set_attribute("breaker.state", breaker.state.value)
            return await breaker.execute(
                lambda: retry(
                    lambda: fn(*args, **kwargs),
                    policy,
                    context=label,
                    on_failed_attempt=on_failed_attempt,
                    sleep=sleep,
                )
            )

    return protected


def _report_failed_attempt(failed: FailedAttempt, observer: RetryObserver | None) -> None:
    logger.warning(
        "retry attempt failed context=%s attempt=%s retries_left=%s error=%s",
        failed.context,
        failed.attempt_number,
        failed.retries_left,
        failed.error,
    )
    add_span_attributes(
        {
            "retry.attempt": failed.attempt_number,
            "retry.retries_left": failed.retries_left,
        }
    )
    metrics.retry_failed_attempts.add(1, {"context": failed.context or "unknown"})
    if observer is not None:
        observer(failed)


def _status_code(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    return None
