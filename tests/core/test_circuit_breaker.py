"""
Tests for the circuit breaker.
"""

from __future__ import annotations

import asyncio

import pytest

from killfeed.core.cancellation import OperationCancelledError
from killfeed.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitOpenError,
    CircuitState,
)
from killfeed.core.retry import NonRetryableFeedError, RetryableFeedError

pytestmark = pytest.mark.asyncio


class Operation:
    """Counts invocations; raises ``error`` when set."""

    def __init__(self, error: BaseException | None = None, result="ok"):
        self.error = error
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


async def _fail(breaker: CircuitBreaker, times: int) -> None:
    failing = Operation(RetryableFeedError("503", status_code=503))
    for _ in range(times):
        with pytest.raises(RetryableFeedError):
            await breaker.call(failing)


class TestClosed:
    async def test_passes_results_through(self, fake_clock):
        breaker = CircuitBreaker("esi", clock=fake_clock)

        assert await breaker.call(Operation(result=7)) == 7
        assert breaker.state == CircuitState.CLOSED

    async def test_counts_consecutive_failures(self, fake_clock):
        breaker = CircuitBreaker("esi", failure_threshold=3, clock=fake_clock)

        await _fail(breaker, 2)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 2

    async def test_success_resets_count(self, fake_clock):
        breaker = CircuitBreaker("esi", failure_threshold=3, clock=fake_clock)
        await _fail(breaker, 2)

        await breaker.call(Operation())
        await _fail(breaker, 2)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 2

    async def test_client_errors_are_not_failures(self, fake_clock):
        breaker = CircuitBreaker("esi", failure_threshold=3, clock=fake_clock)
        not_found = Operation(NonRetryableFeedError("Not found", status_code=404))

        for _ in range(5):
            with pytest.raises(NonRetryableFeedError):
                await breaker.call(not_found)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    async def test_client_error_resets_count(self, fake_clock):
        breaker = CircuitBreaker("esi", failure_threshold=3, clock=fake_clock)
        await _fail(breaker, 2)

        with pytest.raises(NonRetryableFeedError):
            await breaker.call(Operation(NonRetryableFeedError("Forbidden", status_code=403)))

        assert breaker.failure_count == 0

    async def test_cancellation_leaves_count_alone(self, fake_clock):
        breaker = CircuitBreaker("esi", failure_threshold=3, clock=fake_clock)
        await _fail(breaker, 2)

        with pytest.raises(OperationCancelledError):
            await breaker.call(Operation(OperationCancelledError()))

        assert breaker.failure_count == 2
        assert breaker.state == CircuitState.CLOSED


class TestOpen:
    async def test_opens_at_threshold(self, fake_clock):
        breaker = CircuitBreaker("esi", failure_threshold=3, cooldown=60.0, clock=fake_clock)

        await _fail(breaker, 3)

        assert breaker.state == CircuitState.OPEN
        assert breaker.next_attempt_time == fake_clock() + 60.0

    async def test_open_circuit_fails_fast(self, fake_clock):
        breaker = CircuitBreaker("esi", failure_threshold=3, cooldown=60.0, clock=fake_clock)
        await _fail(breaker, 3)
        operation = Operation()
        fake_clock.advance(10)

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(operation)

        assert operation.calls == 0
        assert exc_info.value.service_name == "esi"
        assert exc_info.value.retry_in == pytest.approx(50.0)

    async def test_transition_is_logged(self, fake_clock, caplog):
        breaker = CircuitBreaker("esi", failure_threshold=1, clock=fake_clock)

        with caplog.at_level("INFO", logger="killfeed"):
            await _fail(breaker, 1)

        transitions = [r for r in caplog.records if getattr(r, "event", None) == "circuit_transition"]
        assert len(transitions) == 1
        assert "closed -> open" in transitions[0].getMessage()


class TestHalfOpen:
    async def test_trial_after_cooldown_closes(self, fake_clock):
        breaker = CircuitBreaker("esi", failure_threshold=3, cooldown=60.0, clock=fake_clock)
        await _fail(breaker, 3)
        fake_clock.advance(60)
        trial = Operation(result="recovered")

        assert await breaker.call(trial) == "recovered"

        assert trial.calls == 1
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.next_attempt_time is None

    async def test_failed_trial_reopens_with_fresh_cooldown(self, fake_clock):
        breaker = CircuitBreaker("esi", failure_threshold=3, cooldown=60.0, clock=fake_clock)
        await _fail(breaker, 3)
        fake_clock.advance(61)

        await _fail(breaker, 1)

        assert breaker.state == CircuitState.OPEN
        assert breaker.next_attempt_time == fake_clock() + 60.0

    async def test_only_one_trial_in_flight(self, fake_clock):
        breaker = CircuitBreaker("esi", failure_threshold=1, cooldown=60.0, clock=fake_clock)
        await _fail(breaker, 1)
        fake_clock.advance(60)
        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return "ok"

        trial = asyncio.create_task(breaker.call(slow_trial))
        await asyncio.sleep(0)
        assert breaker.state == CircuitState.HALF_OPEN

        second = Operation()
        with pytest.raises(CircuitOpenError):
            await breaker.call(second)
        assert second.calls == 0

        release.set()
        assert await trial == "ok"
        assert breaker.state == CircuitState.CLOSED

    async def test_trial_slot_released_after_client_error(self, fake_clock):
        breaker = CircuitBreaker("esi", failure_threshold=1, cooldown=60.0, clock=fake_clock)
        await _fail(breaker, 1)
        fake_clock.advance(60)

        with pytest.raises(NonRetryableFeedError):
            await breaker.call(Operation(NonRetryableFeedError("Not found", status_code=404)))

        # The service answered, so the circuit closes
        assert breaker.state == CircuitState.CLOSED
        assert await breaker.call(Operation()) == "ok"

    async def test_cancelled_trial_keeps_half_open(self, fake_clock):
        breaker = CircuitBreaker("esi", failure_threshold=1, cooldown=60.0, clock=fake_clock)
        await _fail(breaker, 1)
        fake_clock.advance(60)

        with pytest.raises(OperationCancelledError):
            await breaker.call(Operation(OperationCancelledError()))

        assert breaker.state == CircuitState.HALF_OPEN
        assert await breaker.call(Operation()) == "ok"
        assert breaker.state == CircuitState.CLOSED


class TestMaintenance:
    async def test_reset(self, fake_clock):
        breaker = CircuitBreaker("esi", failure_threshold=1, clock=fake_clock)
        await _fail(breaker, 1)

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert await breaker.call(Operation()) == "ok"

    async def test_snapshot(self, fake_clock):
        breaker = CircuitBreaker("esi", failure_threshold=2, cooldown=30.0, clock=fake_clock)
        assert breaker.snapshot() == {
            "state": "closed",
            "failure_count": 0,
            "failure_threshold": 2,
            "retry_in": None,
        }

        await _fail(breaker, 2)
        fake_clock.advance(10)

        snapshot = breaker.snapshot()
        assert snapshot["state"] == "open"
        assert snapshot["retry_in"] == 20.0

    async def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreaker("esi", failure_threshold=0)

    async def test_registry(self, fake_clock):
        registry = CircuitBreakerRegistry(failure_threshold=5, cooldown=10.0, clock=fake_clock)

        esi = registry.get("esi")

        assert registry.get("esi") is esi
        assert esi.failure_threshold == 5
        assert esi.cooldown == 10.0
        assert set(registry.get_stats()) == {"esi"}

        await _fail(esi, 5)
        assert esi.state == CircuitState.OPEN

        registry.reset_all()
        assert esi.state == CircuitState.CLOSED
