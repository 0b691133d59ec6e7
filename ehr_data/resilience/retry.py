# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
Retry Policy & Manager — Caller-side retry with exponential backoff.

The tenant scope never retries on its own. Callers that want to ride
out pool exhaustion or a database restart wrap their call:

    manager = RetryManager(RetryPolicy(max_attempts=3))
    count = await manager.run(lambda: with_tenant(pool, "acme", count_patients))

Only TenantUnavailableError is retried by default: a not-provisioned
tenant or a constraint violation will not succeed on a second attempt.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from ehr_data.tenancy.errors import TenantUnavailableError

logger = logging.getLogger("ehr.retry")

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    backoff_base: float = 0.2        # seconds
    backoff_multiplier: float = 2.0  # exponential factor
    max_backoff: float = 5.0         # cap

    def next_delay(self, attempt: int) -> float:
        """Calculate delay before next retry (exponential backoff)."""
        delay = self.backoff_base * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_backoff)


# Default policy
DEFAULT_RETRY_POLICY = RetryPolicy()


class RetryManager:
    """Runs a tenant operation again while it fails with a retryable error."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        retry_on: Tuple[Type[BaseException], ...] = (TenantUnavailableError,),
    ):
        self._policy = policy or DEFAULT_RETRY_POLICY
        self._retry_on = retry_on

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """Check if ``error`` on ``attempt`` (1-based) warrants another try."""
        return isinstance(error, self._retry_on) and attempt < self._policy.max_attempts

    async def wait_before_retry(self, attempt: int) -> None:
        """Wait with exponential backoff before retrying."""
        delay = self._policy.next_delay(attempt)
        logger.info("Retry: waiting %.1fs before attempt %d", delay, attempt + 1)
        await asyncio.sleep(delay)

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Await ``operation()`` until it succeeds or retries are exhausted."""
        attempt = 1
        while True:
            try:
                return await operation()
            except self._retry_on as exc:
                if not self.should_retry(attempt, exc):
                    logger.error(
                        "Operation failed on attempt %d: %s; retries exhausted",
                        attempt, exc, extra={"tenant_id": getattr(exc, "tenant_id", None)},
                    )
                    raise
                logger.warning(
                    "Operation failed on attempt %d: %s; will retry",
                    attempt, exc, extra={"tenant_id": getattr(exc, "tenant_id", None)},
                )
            await self.wait_before_retry(attempt)
            attempt += 1
