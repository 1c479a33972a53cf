"""
Timeouts, per-domain block tracking and the retry policy.

Backoff is derived from how many BlockEvents a domain produced inside a
rolling window. Retries are driven by tenacity with a wait computed from that
density, so every retry in the core (navigation and per-field) backs off the
same way.
"""

import logging
import threading
import time
from collections import defaultdict, deque
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Iterable

from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    stop_when_event_set,
)

from core import settings

from .errors import PageTimeoutError, classify_error
from .models import BlockEvent, ErrorClass

logger = logging.getLogger(__name__)


def run_with_timeout(fn: Callable[..., Any], seconds: float | None, *args: Any, **kwargs: Any) -> Any:
    """Run a page interaction with an enforced timeout.

    The call runs in a worker thread; when the timeout expires the caller gets
    a PageTimeoutError while the call itself runs on to completion. A timeout
    of None (or 0) runs the call inline, for page drivers bound to one thread.

    Raises:
        PageTimeoutError: If the call did not finish in time
    """
    if not seconds:
        return fn(*args, **kwargs)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="page-call")
    future = executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=seconds)
    except FutureTimeoutError:
        if future.done():
            # the call itself raised a timeout
            raise
        name = getattr(fn, "__qualname__", repr(fn))
        raise PageTimeoutError(f"{name} timed out after {seconds}s", {"timeout": seconds}) from None
    finally:
        executor.shutdown(wait=False)


class BackoffTracker:
    """Rolling window of BlockEvents per domain.

    Events older than the window never influence the recommended delay.
    """

    def __init__(
        self: "BackoffTracker",
        window_seconds: float = settings.BLOCK_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window_seconds = window_seconds
        self.clock = clock
        self._events: dict[str, deque[BlockEvent]] = defaultdict(
            lambda: deque(maxlen=settings.MAX_BLOCK_EVENTS_PER_DOMAIN)
        )
        self._lock = threading.Lock()

    def record_block(self: "BackoffTracker", domain: str, signature: str, now: float | None = None) -> BlockEvent:
        event = BlockEvent(domain=domain, timestamp=self.clock() if now is None else now, signature=signature)
        with self._lock:
            self._events[domain].append(event)
        logger.info(f"Block event on {domain}: {signature}")
        return event

    def events(self: "BackoffTracker", domain: str) -> list[BlockEvent]:
        with self._lock:
            return list(self._events.get(domain, ()))

    def recent_blocks(
        self: "BackoffTracker",
        domain: str,
        now: float | None = None,
        window_seconds: float | None = None,
    ) -> list[BlockEvent]:
        """Block events for a domain inside the window ending at now."""
        now = self.clock() if now is None else now
        window = self.window_seconds if window_seconds is None else window_seconds
        return [e for e in self.events(domain) if 0 <= now - e.timestamp <= window]

    def recommended_delay(self: "BackoffTracker", domain: str, now: float | None = None) -> float:
        """Base delay in seconds before the next request to a domain.

        No recent blocks gives the base delay, a few gives a moderate delay and
        a burst at or above the heavy threshold gives the heavy delay.
        """
        count = len(self.recent_blocks(domain, now))
        if count == 0:
            return settings.BASE_BACKOFF_SECONDS
        if count < settings.HEAVY_BLOCK_THRESHOLD:
            return settings.MODERATE_BACKOFF_SECONDS
        return settings.HEAVY_BACKOFF_SECONDS

    def retry_delay(self: "BackoffTracker", domain: str, attempt: int, now: float | None = None) -> float:
        """Delay before retry number ``attempt`` (1-based), capped at MAX_BACKOFF_SECONDS."""
        delay = self.recommended_delay(domain, now) * settings.RETRY_MULTIPLIER ** max(0, attempt - 1)
        return min(delay, settings.MAX_BACKOFF_SECONDS)

    def is_problematic(self: "BackoffTracker", domain: str, now: float | None = None) -> bool:
        """Whether the domain blocked us more than the tolerated number of times in the last hour."""
        recent = self.recent_blocks(domain, now, window_seconds=settings.PROBLEMATIC_DOMAIN_WINDOW_SECONDS)
        return len(recent) > settings.PROBLEMATIC_DOMAIN_BLOCKS


class RetryPolicy:
    """Single retry policy applied by the extractor.

    Retries an operation when it raises, or returns an outcome tagged with, a
    retryable error class. Waits come from the BackoffTracker for the domain.
    """

    def __init__(
        self: "RetryPolicy",
        backoff: BackoffTracker,
        max_attempts: int = settings.FIELD_RETRY_ATTEMPTS,
        retryable: Iterable[str] = settings.RETRYABLE_ERROR_CLASSES,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the retry policy.

        Args:
            backoff: Per-domain block tracker used to compute waits
            max_attempts: Total attempts including the first
            retryable: Error class values that justify another attempt
            sleep: Sleep function, injectable for tests
        """
        self.backoff = backoff
        self.max_attempts = max_attempts
        self.retryable = {ErrorClass(value) for value in retryable}
        self.sleep = sleep

    def is_retryable(self: "RetryPolicy", error_class: ErrorClass | None) -> bool:
        return error_class is not None and ErrorClass(error_class) in self.retryable

    def _retrying(
        self: "RetryPolicy",
        domain: str,
        max_attempts: int | None,
        result_error_class: Callable[[Any], ErrorClass | None] | None,
        cancel_event: threading.Event | None,
    ) -> Retrying:
        retry = retry_if_exception(lambda e: self.is_retryable(classify_error(e)))
        if result_error_class is not None:
            retry = retry | retry_if_result(lambda result: self.is_retryable(result_error_class(result)))

        stop = stop_after_attempt(max_attempts or self.max_attempts)
        if cancel_event is not None:
            stop = stop | stop_when_event_set(cancel_event)

        def wait(retry_state: RetryCallState) -> float:
            return self.backoff.retry_delay(domain, retry_state.attempt_number)

        def last_outcome(retry_state: RetryCallState) -> Any:
            # re-raises when the final attempt raised
            return retry_state.outcome.result()

        return Retrying(
            retry=retry,
            stop=stop,
            wait=wait,
            sleep=self.sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            retry_error_callback=last_outcome,
        )

    def call(
        self: "RetryPolicy",
        fn: Callable[..., Any],
        *args: Any,
        domain: str,
        max_attempts: int | None = None,
        result_error_class: Callable[[Any], ErrorClass | None] | None = None,
        cancel_event: threading.Event | None = None,
        **kwargs: Any,
    ) -> Any:
        """Call fn, retrying on retryable failures with domain backoff.

        Args:
            fn: Operation to run
            domain: Domain whose block history drives the wait
            max_attempts: Override of the policy's attempt budget
            result_error_class: Maps a returned value to its error class, so
                failures reported as values can be retried too
            cancel_event: Stops further attempts once set

        Returns:
            The first acceptable result, or the last result once attempts run out

        Raises:
            The last exception when the final attempt raised
        """
        return self._retrying(domain, max_attempts, result_error_class, cancel_event)(fn, *args, **kwargs)
