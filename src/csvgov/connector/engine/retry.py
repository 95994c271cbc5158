"""Bounded retry for port calls, dispatched on the error kind."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from csvgov.connector.port import ErrorKind, GovernanceError, RateLimitError

logger = structlog.get_logger()

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class RetryPolicy:
    """Retry rate-limited calls with a linearly increasing delay.

    An expired credential is refreshed once through ``on_auth_expired`` and the
    call retried. Not-found, conflict and permanent failures are raised
    immediately.
    """

    max_attempts: int = 3
    delay: float = 5.0
    sleep: Sleep = field(default=asyncio.sleep, repr=False)

    def delay_for(self, attempt: int, error: GovernanceError | None = None) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return max(float(error.retry_after), 0.0)
        return self.delay * attempt

    async def run(
        self,
        op: Callable[[], Awaitable[T]],
        *,
        on_auth_expired: Callable[[], Awaitable[Any]] | None = None,
        description: str = "",
    ) -> T:
        """Run ``op`` until it succeeds or the attempt bound is exhausted."""
        refreshed = False
        attempt = 0
        while True:
            attempt += 1
            try:
                return await op()
            except GovernanceError as e:
                if e.kind is ErrorKind.AUTH_EXPIRED and on_auth_expired is not None and not refreshed:
                    logger.info("Credential expired, refreshing", operation=description)
                    await on_auth_expired()
                    refreshed = True
                    if attempt < self.max_attempts:
                        continue
                if e.kind is not ErrorKind.RATE_LIMITED or attempt >= self.max_attempts:
                    raise
                wait = self.delay_for(attempt, e)
                logger.warning(
                    "Rate limited, retrying",
                    operation=description,
                    attempt=attempt,
                    wait_seconds=wait,
                )
                await self.sleep(wait)
