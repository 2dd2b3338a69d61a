"""
Unit tests for conflict retries.
"""

import pytest

from shared.errors import ConcurrencyConflict, NotFoundError
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, _calculate_delay
from service_ledger.app.persistence.guard import ConflictRetrier


class TestBackoff:
    """Delay between attempts."""

    def test_delay_doubles_until_capped(self):
        config = RetryConfig(base_delay=0.01, max_delay=0.05, jitter=False)

        delays = [_calculate_delay(attempt, config) for attempt in range(1, 6)]

        assert delays == pytest.approx([0.01, 0.02, 0.04, 0.05, 0.05])

    def test_jitter_stays_within_ten_percent(self):
        config = RetryConfig(base_delay=0.1, max_delay=1.0)

        for _ in range(20):
            assert 0.09 <= _calculate_delay(1, config) <= 0.11


def scripted(*outcomes):
    """Coroutine function that raises or returns each outcome in turn."""
    remaining = list(outcomes)

    async def write_cycle(*args):
        write_cycle.calls += 1
        outcome = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    write_cycle.calls = 0
    return write_cycle


class TestConflictRetrier:
    """Test cases for ConflictRetrier."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("ledger")

    @pytest.mark.asyncio
    async def test_conflicts_are_retried_and_counted(self, metrics):
        func = scripted(ConcurrencyConflict(), ConcurrencyConflict(), "done")
        retrier = ConflictRetrier(max_attempts=3, metrics=metrics)

        assert await retrier.run("add_app", func, "acct-1") == "done"
        assert func.calls == 3
        assert metrics.registry.get_sample_value(
            "concurrency_conflicts_total", {"operation": "add_app"}) == 2

    @pytest.mark.asyncio
    async def test_exhaustion_raises_retry_error(self):
        func = scripted(ConcurrencyConflict())
        retrier = ConflictRetrier(max_attempts=2)

        with pytest.raises(RetryError) as exc:
            await retrier.run("add_app", func)

        assert exc.value.attempts == 2
        assert isinstance(exc.value.last_exception, ConcurrencyConflict)

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        func = scripted(NotFoundError())

        with pytest.raises(NotFoundError):
            await ConflictRetrier().run("add_app", func)

        assert func.calls == 1
