"""
Circuit breakers built on the pybreaker library.
One breaker per external resource name, held by an explicitly constructed registry
that is injected into services (no module-level singletons).
"""
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

import pybreaker

from dreamlens.core.config import settings
from dreamlens.utils.metrics import circuit_breaker_state


logger = logging.getLogger("circuit_breaker")

GEMINI_BREAKER = "gemini-api"

_STATE_GAUGE = {
    pybreaker.STATE_CLOSED: 0,
    pybreaker.STATE_OPEN: 1,
    pybreaker.STATE_HALF_OPEN: 2,
}

# Re-exported so callers do not import pybreaker for the "circuit open" error.
CircuitOpenError = pybreaker.CircuitBreakerError


class ClockedMemoryStorage(pybreaker.CircuitMemoryStorage):
    """
    In-memory breaker state whose OPEN timeout follows an injected clock.

    pybreaker compares wall-clock now() with opened_at; we record the clock reading
    at the moment of opening and report opened_at shifted by the elapsed clock time,
    so the timeout check sees exactly clock() - opened_clock.
    """

    def __init__(self, state: str, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._opened_clock: float | None = None
        self._opened_aware = True
        super().__init__(state)

    @property
    def opened_at(self) -> datetime | None:
        if self._opened_clock is None:
            return None
        elapsed = timedelta(seconds=self._clock() - self._opened_clock)
        now = datetime.now(timezone.utc)
        if not self._opened_aware:
            now = now.replace(tzinfo=None)
        return now - elapsed

    @opened_at.setter
    def opened_at(self, value: datetime | None) -> None:
        if value is None:
            self._opened_clock = None
            return
        self._opened_clock = self._clock()
        self._opened_aware = value.tzinfo is not None

    def seconds_open(self) -> float | None:
        if self._opened_clock is None:
            return None
        return self._clock() - self._opened_clock


class ConcurrentCircuitBreaker(pybreaker.CircuitBreaker):
    """
    pybreaker.CircuitBreaker whose CLOSED calls run outside the breaker lock.

    The stock call() holds the lock for the whole guarded call, which serializes
    parallel batch generations sharing one breaker. Here the lock guards only the
    state check and the result bookkeeping. OPEN and HALF_OPEN keep the stock path,
    so the half-open trial call still runs under the lock and stays the only call in flight.
    """

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        with self._lock:
            state = self.state
            if state.name != pybreaker.STATE_CLOSED:
                return state.call(func, *args, **kwargs)
            for listener in self.listeners:
                listener.before_call(self, func, *args, **kwargs)

        try:
            result = func(*args, **kwargs)
        except BaseException as e:
            with self._lock:
                # Состояние могло смениться, пока шёл вызов: учитываем по текущему
                self.state._handle_error(e)
            raise
        with self._lock:
            self.state._handle_success()
        return result


class CircuitBreakerListener(pybreaker.CircuitBreakerListener):
    """Listener for circuit breaker events (logging/metrics)."""

    def __init__(self, name: str) -> None:
        self.name = name

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state: Any, new_state: Any) -> None:
        old_name = getattr(old_state, "name", old_state)
        new_name = getattr(new_state, "name", new_state)
        circuit_breaker_state.labels(name=self.name).set(_STATE_GAUGE.get(new_name, 0))
        logger.warning(
            "circuit_breaker_state_change",
            extra={
                "breaker_name": self.name,
                "old_state": old_name,
                "new_state": new_name,
            },
        )

    def failure(self, cb: pybreaker.CircuitBreaker, exc: BaseException) -> None:
        logger.warning(
            "circuit_breaker_failure",
            extra={
                "breaker_name": self.name,
                "error_type": type(exc).__name__,
                "count": cb.fail_counter,
            },
        )


class CircuitBreakerRegistry:
    """
    Memoizes one pybreaker.CircuitBreaker per resource name.
    - failure_threshold: consecutive failures that open the circuit
    - success_threshold: consecutive half-open successes that close it
    - timeout: seconds the circuit stays open before a trial call is allowed
    - exclude: exception types that do not count as dependency failures
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        exclude: Iterable[type[BaseException]] = (),
    ) -> None:
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout = timeout
        self._clock = clock
        self._exclude = list(exclude)
        self._lock = threading.Lock()
        self._breakers: dict[str, pybreaker.CircuitBreaker] = {}
        self._storages: dict[str, ClockedMemoryStorage] = {}

    @classmethod
    def from_settings(cls, exclude: Iterable[type[BaseException]] = ()) -> "CircuitBreakerRegistry":
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            success_threshold=settings.cb_success_threshold,
            timeout=settings.cb_timeout_seconds,
            exclude=exclude,
        )

    def get(self, name: str) -> pybreaker.CircuitBreaker:
        """Get or create a circuit breaker by name."""
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                storage = ClockedMemoryStorage(pybreaker.STATE_CLOSED, clock=self._clock)
                breaker = ConcurrentCircuitBreaker(
                    fail_max=self.failure_threshold,
                    reset_timeout=self.timeout,
                    success_threshold=self.success_threshold,
                    exclude=list(self._exclude),
                    listeners=[CircuitBreakerListener(name)],
                    state_storage=storage,
                    throw_new_error_on_trip=False,
                    name=name,
                )
                self._breakers[name] = breaker
                self._storages[name] = storage
            return breaker

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._breakers)

    def stats(self, name: str) -> dict[str, Any]:
        breaker = self.get(name)
        storage = self._storages[name]
        return {
            "name": name,
            "state": breaker.current_state,
            "failure_count": storage.counter,
            "success_count": storage.success_counter,
            "seconds_open": storage.seconds_open(),
        }

    def reset(self, name: str | None = None) -> None:
        """Force breaker(s) back to CLOSED with zeroed counters."""
        with self._lock:
            targets = [self._breakers[name]] if name in self._breakers else (
                [] if name is not None else list(self._breakers.values())
            )
        for breaker in targets:
            breaker.close()
