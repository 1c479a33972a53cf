import threading
from unittest.mock import Mock

import pytest

from adaptive_scraper.errors import ElementNotFoundError, NavigationError, PageTimeoutError
from adaptive_scraper.models import ErrorClass
from adaptive_scraper.retry import BackoffTracker, RetryPolicy, run_with_timeout
from conftest import NOW


class TestRunWithTimeout:
    def test_returns_result(self):
        assert run_with_timeout(lambda a, b: a + b, 1.0, 2, b=3) == 5

    def test_raises_page_timeout(self):
        release = threading.Event()
        try:
            with pytest.raises(PageTimeoutError):
                run_with_timeout(release.wait, 0.05, 5)
        finally:
            release.set()

    def test_propagates_call_errors(self):
        def broken():
            raise NavigationError("gone")

        with pytest.raises(NavigationError):
            run_with_timeout(broken, 1.0)

    def test_no_timeout_runs_inline(self):
        assert run_with_timeout(threading.current_thread, None) is threading.current_thread()


class TestBackoffTracker:
    def test_delay_grows_with_recent_blocks(self, clock):
        tracker = BackoffTracker(clock=clock)
        quiet = tracker.recommended_delay("example.com")

        for _ in range(5):
            tracker.record_block("example.com", "vocabulary:sign in")

        assert tracker.recommended_delay("example.com") > quiet
        assert tracker.recommended_delay("example.com") == 15.0
        assert tracker.recommended_delay("other.com") == quiet

    def test_moderate_delay_for_few_blocks(self, clock):
        tracker = BackoffTracker(clock=clock)
        tracker.record_block("example.com", "challenge:#captcha")

        assert tracker.recommended_delay("example.com") == 5.0

    def test_old_blocks_fall_out_of_the_window(self, clock):
        tracker = BackoffTracker(window_seconds=1800, clock=clock)
        for _ in range(5):
            tracker.record_block("example.com", "vocabulary:sign in", now=NOW - 1801)

        assert tracker.recommended_delay("example.com") == 2.0
        assert len(tracker.events("example.com")) == 5

    def test_retry_delay_is_capped(self, clock):
        tracker = BackoffTracker(clock=clock)
        for _ in range(3):
            tracker.record_block("example.com", "vocabulary:sign in")

        assert tracker.retry_delay("example.com", 1) == 15.0
        assert tracker.retry_delay("example.com", 10) == 30.0

    def test_problematic_domain(self, clock):
        tracker = BackoffTracker(clock=clock)
        for _ in range(3):
            tracker.record_block("example.com", "vocabulary:sign in")
        assert not tracker.is_problematic("example.com")

        tracker.record_block("example.com", "vocabulary:sign in")
        assert tracker.is_problematic("example.com")


class TestRetryPolicy:
    def test_retries_timeouts_with_backoff(self, clock, sleeper):
        policy = RetryPolicy(BackoffTracker(clock=clock), max_attempts=3, sleep=sleeper)
        fn = Mock(side_effect=[PageTimeoutError("slow"), "ok"])

        assert policy.call(fn, domain="example.com") == "ok"
        assert fn.call_count == 2
        assert sleeper.calls == [2.0]

    def test_does_not_retry_not_found(self, clock, sleeper):
        policy = RetryPolicy(BackoffTracker(clock=clock), sleep=sleeper)
        fn = Mock(side_effect=ElementNotFoundError("missing"))

        with pytest.raises(ElementNotFoundError):
            policy.call(fn, domain="example.com")
        assert fn.call_count == 1
        assert sleeper.calls == []

    def test_reraises_after_last_attempt(self, clock, sleeper):
        policy = RetryPolicy(BackoffTracker(clock=clock), max_attempts=2, sleep=sleeper)
        fn = Mock(side_effect=NavigationError("gone"))

        with pytest.raises(NavigationError):
            policy.call(fn, domain="example.com")
        assert fn.call_count == 2

    def test_retries_results_tagged_retryable(self, clock, sleeper):
        policy = RetryPolicy(BackoffTracker(clock=clock), max_attempts=3, sleep=sleeper)
        fn = Mock(side_effect=["blocked", "blocked", "blocked"])

        result = policy.call(
            fn, domain="example.com", result_error_class=lambda r: ErrorClass.BOT_DETECTION if r == "blocked" else None
        )

        assert result == "blocked"
        assert fn.call_count == 3
        assert sleeper.calls == [2.0, pytest.approx(2.6)]

    def test_cancel_event_stops_retries(self, clock, sleeper):
        policy = RetryPolicy(BackoffTracker(clock=clock), max_attempts=5, sleep=sleeper)
        cancel = threading.Event()

        def cancel_then_time_out():
            cancel.set()
            return "timed out"

        result = policy.call(
            cancel_then_time_out,
            domain="example.com",
            result_error_class=lambda r: ErrorClass.TIMEOUT,
            cancel_event=cancel,
        )

        assert result == "timed out"
        assert sleeper.calls == []
