"""Call-resilience primitives for upstream dependencies.

* :class:`RetryPolicy` — capped exponential backoff with full jitter for
  :class:`~bops.core.errors.UpstreamTransient` failures.
* :class:`CircuitBreaker` — opens after N consecutive failures, rejects calls
  with :class:`~bops.core.errors.UpstreamUnavailable` while open, lets one
  probe through once the cooldown has elapsed (half-open).
* :class:`Pacer` — fixed minimum delay between requests.
* :func:`call_with_timeout` — bounds a blocking call's wall-clock time.

All of these are shared between worker threads, so state is lock-guarded and
time comes from ``time.monotonic``.
"""

from __future__ import annotations

import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

import structlog

from bops.core.errors import UpstreamError, UpstreamTransient, UpstreamUnavailable

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 5.0

    def backoff(self, attempt: int) -> float:
        """Full-jitter delay before retry number *attempt* (0-based).

        ``uniform(0, min(max_delay, base_delay * 2 ** attempt))``
        """
        cap = min(self.max_delay_s, self.base_delay_s * (2 ** attempt))
        return random.uniform(0, cap)

    def run(
        self,
        fn: Callable[[], T],
        *,
        source: str = "upstream",
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """Call *fn*, retrying ``UpstreamTransient`` up to ``attempts`` times in total.

        Any other exception propagates immediately.  The last transient error
        is re-raised once attempts are exhausted.
        """
        for attempt in range(self.attempts):
            try:
                return fn()
            except UpstreamTransient as exc:
                if attempt + 1 >= self.attempts:
                    logger.warning("retries_exhausted", source=source, attempts=self.attempts, error=str(exc))
                    raise
                delay = self.backoff(attempt)
                logger.info("retrying_transient_failure", source=source, attempt=attempt + 1, delay_s=round(delay, 3))
                sleep(delay)
        raise AssertionError("unreachable")  # attempts >= 1


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    States: *closed* (calls flow), *open* (calls rejected until the cooldown
    elapses), *half-open* (one probe allowed; success closes, failure re-opens).
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        cooldown_s: float = 60.0,
        source: str = "upstream",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown_s = cooldown_s
        self.source = source
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._opened_at: float | None = None
        self._probe_in_flight = False

    @property
    def failure_count(self) -> int:
        return self._failures

    def is_open(self) -> bool:
        with self._lock:
            return self._opened_at is not None and self._clock() - self._opened_at < self.cooldown_s

    def before_call(self) -> None:
        """Raise :class:`UpstreamUnavailable` unless a call may proceed."""
        with self._lock:
            if self._opened_at is None:
                return
            remaining = self.cooldown_s - (self._clock() - self._opened_at)
            if remaining > 0 or self._probe_in_flight:
                raise UpstreamUnavailable(self.source, max(remaining, 0.0))
            self._probe_in_flight = True
            logger.info("circuit_half_open", source=self.source)

    def on_success(self) -> None:
        with self._lock:
            if self._opened_at is not None:
                logger.info("circuit_closed", source=self.source)
            self._failures = 0
            self._opened_at = None
            self._probe_in_flight = False

    def on_failure(self) -> None:
        with self._lock:
            self._failures += 1
            reopen = self._probe_in_flight
            self._probe_in_flight = False
            if reopen or self._failures >= self.failure_threshold:
                if self._opened_at is None or reopen:
                    logger.warning("circuit_opened", source=self.source, failures=self._failures)
                self._opened_at = self._clock()

    def on_error(self) -> None:
        """A non-upstream error.  Ignored when closed; fails the probe when half-open."""
        with self._lock:
            if not self._probe_in_flight:
                return
        self.on_failure()

    def call(self, fn: Callable[[], T]) -> T:
        self.before_call()
        try:
            result = fn()
        except UpstreamUnavailable:
            self.on_error()
            raise
        except UpstreamError:
            self.on_failure()
            raise
        except Exception:
            self.on_error()
            raise
        self.on_success()
        return result

    def get_state(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "failure_count": self._failures,
            "threshold": self.failure_threshold,
            "is_open": self.is_open(),
        }


class Pacer:
    """Enforce a minimum interval between consecutive calls (across threads)."""

    def __init__(
        self,
        min_interval_s: float = 0.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval_s = min_interval_s
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last: float | None = None

    def wait(self) -> None:
        if self.min_interval_s <= 0:
            return
        with self._lock:
            now = self._clock()
            if self._last is not None:
                elapsed = now - self._last
                if elapsed < self.min_interval_s:
                    self._sleep(self.min_interval_s - elapsed)
                    now = self._clock()
            self._last = now


def call_with_timeout(
    fn: Callable[[], T],
    timeout_s: float | None,
    *,
    source: str = "upstream",
    executor: ThreadPoolExecutor | None = None,
) -> T:
    """Run *fn* and raise :class:`UpstreamTransient` if it exceeds *timeout_s*.

    A timed-out call keeps its thread until the underlying client gives up,
    so long-lived callers pass their own *executor*, sized for their
    concurrency.  Without one, the call gets a dedicated single-use thread.
    """
    if not timeout_s or timeout_s <= 0:
        return fn()
    if executor is None:
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="bops-timeout")
        try:
            return _bounded(pool, fn, timeout_s, source)
        finally:
            pool.shutdown(wait=False)
    return _bounded(executor, fn, timeout_s, source)


def _bounded(executor: ThreadPoolExecutor, fn: Callable[[], T], timeout_s: float, source: str) -> T:
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout_s)
    except FutureTimeout as exc:
        future.cancel()
        raise UpstreamTransient(source, f"timed out after {timeout_s:.1f}s") from exc
