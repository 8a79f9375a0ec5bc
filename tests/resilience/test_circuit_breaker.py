"""Tests for CircuitBreakerRegistry on top of pybreaker, with an injected clock."""
import threading
import time

import pybreaker
import pytest

from dreamlens.services.circuit_breaker import CircuitBreakerRegistry, CircuitOpenError
from dreamlens.services.image_generation import ContentRejectedError


class UpstreamDown(Exception):
    pass


def _fail():
    raise UpstreamDown("503 from upstream")


@pytest.fixture
def registry(clock):
    return CircuitBreakerRegistry(failure_threshold=3, success_threshold=2, timeout=60.0, clock=clock)


def _trip(breaker, times=3):
    for _ in range(times):
        with pytest.raises((UpstreamDown, CircuitOpenError)):
            breaker.call(_fail)


class TestStateMachine:
    def test_opens_after_threshold(self, registry):
        breaker = registry.get("gemini-api")
        _trip(breaker, 2)
        assert breaker.current_state == pybreaker.STATE_CLOSED
        _trip(breaker, 1)
        assert breaker.current_state == pybreaker.STATE_OPEN

    def test_open_rejects_without_calling(self, registry, clock):
        breaker = registry.get("gemini-api")
        _trip(breaker)
        calls = []
        clock.advance(30)
        with pytest.raises(CircuitOpenError):
            breaker.call(lambda: calls.append(1))
        assert calls == []

    def test_half_open_trial_then_close(self, registry, clock):
        breaker = registry.get("gemini-api")
        _trip(breaker)
        clock.advance(61)
        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.current_state == pybreaker.STATE_HALF_OPEN
        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.current_state == pybreaker.STATE_CLOSED

    def test_half_open_failure_reopens(self, registry, clock):
        breaker = registry.get("gemini-api")
        _trip(breaker)
        clock.advance(61)
        with pytest.raises((UpstreamDown, CircuitOpenError)):
            breaker.call(_fail)
        assert breaker.current_state == pybreaker.STATE_OPEN
        # новый отсчёт таймаута
        clock.advance(30)
        with pytest.raises(CircuitOpenError):
            breaker.call(lambda: "ok")

    def test_success_resets_failure_count(self, registry):
        breaker = registry.get("gemini-api")
        _trip(breaker, 2)
        breaker.call(lambda: "ok")
        _trip(breaker, 2)
        assert breaker.current_state == pybreaker.STATE_CLOSED

    def test_excluded_errors_do_not_count(self, clock):
        registry = CircuitBreakerRegistry(failure_threshold=2, clock=clock, exclude=[ContentRejectedError])
        breaker = registry.get("gemini-api")

        def rejected():
            raise ContentRejectedError("Prompt blocked: SAFETY", {"block_reason": "SAFETY"})

        for _ in range(5):
            with pytest.raises(ContentRejectedError):
                breaker.call(rejected)
        assert breaker.current_state == pybreaker.STATE_CLOSED
        assert breaker.fail_counter == 0


class TestRegistry:
    def test_get_is_memoized(self, registry):
        assert registry.get("a") is registry.get("a")
        assert registry.get("a") is not registry.get("b")
        assert registry.names() == ["a", "b"]

    def test_stats(self, registry, clock):
        breaker = registry.get("gemini-api")
        _trip(breaker, 2)
        stats = registry.stats("gemini-api")
        assert stats["state"] == pybreaker.STATE_CLOSED
        assert stats["failure_count"] == 2
        assert stats["seconds_open"] is None

        _trip(breaker, 1)
        clock.advance(12)
        assert registry.stats("gemini-api")["seconds_open"] == pytest.approx(12)

    def test_reset_closes(self, registry):
        breaker = registry.get("gemini-api")
        _trip(breaker)
        registry.reset("gemini-api")
        assert breaker.current_state == pybreaker.STATE_CLOSED
        assert breaker.call(lambda: 1) == 1

    def test_separate_instances_do_not_share_state(self, clock):
        first = CircuitBreakerRegistry(failure_threshold=1, clock=clock)
        second = CircuitBreakerRegistry(failure_threshold=1, clock=clock)
        _trip(first.get("gemini-api"), 1)
        assert first.get("gemini-api").current_state == pybreaker.STATE_OPEN
        assert second.get("gemini-api").current_state == pybreaker.STATE_CLOSED


class TestConcurrency:
    def _run_threads(self, target, count):
        threads = [threading.Thread(target=target) for _ in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

    def test_closed_calls_run_in_parallel(self, registry):
        breaker = registry.get("gemini-api")
        barrier = threading.Barrier(3, timeout=2)
        results = []

        def worker():
            results.append(breaker.call(lambda: barrier.wait() >= 0))

        self._run_threads(worker, 3)
        assert results == [True, True, True]
        assert not barrier.broken

    def test_parallel_failures_are_all_counted(self, registry):
        breaker = registry.get("gemini-api")
        barrier = threading.Barrier(3, timeout=2)

        def failing():
            barrier.wait()
            raise UpstreamDown("503")

        def worker():
            try:
                breaker.call(failing)
            except (UpstreamDown, CircuitOpenError):
                pass

        self._run_threads(worker, 3)
        assert breaker.current_state == pybreaker.STATE_OPEN

    def test_half_open_lets_one_trial_call_through(self, registry, clock):
        breaker = registry.get("gemini-api")
        _trip(breaker)
        clock.advance(61)
        entered = threading.Event()
        release = threading.Event()
        second_calls = []

        def trial():
            entered.set()
            release.wait(timeout=2)
            return "trial"

        first = threading.Thread(target=lambda: breaker.call(trial))
        first.start()
        assert entered.wait(timeout=2)
        second = threading.Thread(target=lambda: breaker.call(lambda: second_calls.append(1)))
        second.start()
        time.sleep(0.1)
        assert second_calls == []
        release.set()
        first.join(timeout=2)
        second.join(timeout=2)
        assert second_calls == [1]
        assert breaker.current_state == pybreaker.STATE_CLOSED
