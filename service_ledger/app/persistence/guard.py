"""
Optimistic-concurrency retries.

Every ledger write is a read-validate-commit cycle. When ``commit`` reports
that a guarded row moved underneath it, the whole cycle runs again against
fresh reads, up to a bounded number of attempts.
"""

from typing import Any, Awaitable, Callable, Optional

from shared.errors import ConcurrencyConflict
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, retry_on_exception


class ConflictRetrier:
    """Re-runs write cycles that lost a race."""

    def __init__(self, max_attempts: int = 5, metrics: Optional[MetricsCollector] = None):
        self.config = RetryConfig(max_attempts=max_attempts, base_delay=0.005, max_delay=0.2)
        self.metrics = metrics

    async def run(self, operation: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run ``func`` until it commits or the attempts run out."""

        def on_conflict(attempt: int, error: Exception):
            if self.metrics is not None:
                self.metrics.increment_counter("concurrency_conflicts_total", operation=operation)

        guarded = retry_on_exception((ConcurrencyConflict,), self.config, on_retry=on_conflict)(func)
        return await guarded(*args, **kwargs)
