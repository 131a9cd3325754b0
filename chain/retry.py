# betsync/chain/retry.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from config import (
    LOOKUP_RETRY_ATTEMPTS,
    LOOKUP_RETRY_DELAY,
    REFRESH_RETRY_ATTEMPTS,
    REFRESH_RETRY_BACKOFF,
    REFRESH_RETRY_DELAY,
)
from .errors import FetchError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry: ``attempts`` total tries, waiting ``delay * backoff**n`` between them."""

    attempts: int = 1
    delay: float = 0.0
    backoff: float = 1.0
    retry_on: Tuple[Type[BaseException], ...] = (FetchError,)

    def wait_for(self, attempt: int) -> float:
        return self.delay * (self.backoff ** (attempt - 1))

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        attempt = 1
        while True:
            try:
                return await fn()
            except self.retry_on as e:
                if attempt >= self.attempts:
                    raise
                wait = self.wait_for(attempt)
                logger.info(
                    "Attempt %d/%d failed (%s), retrying in %.1fs",
                    attempt, self.attempts, e, wait,
                )
                await asyncio.sleep(wait)
                attempt += 1


NO_RETRY = RetryPolicy()
LOOKUP_RETRY = RetryPolicy(attempts=LOOKUP_RETRY_ATTEMPTS, delay=LOOKUP_RETRY_DELAY)
REFRESH_RETRY = RetryPolicy(
    attempts=REFRESH_RETRY_ATTEMPTS,
    delay=REFRESH_RETRY_DELAY,
    backoff=REFRESH_RETRY_BACKOFF,
)
