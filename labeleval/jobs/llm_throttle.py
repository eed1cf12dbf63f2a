from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class LlmThrottle:
    """Process-wide pacing shared by every evaluation pass.

    Two independent mechanisms live here: a cooldown window that opens after
    any model invocation error, and an exponential backoff that grows on
    rate-limit failures and decays a little each time a pass waits it out.
    """

    def __init__(
        self,
        *,
        error_delay_ms: int = 5000,
        backoff_floor_ms: int = 1000,
        backoff_cap_ms: int = 60000,
        backoff_decay_ms: int = 100,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.error_delay_ms = max(0, int(error_delay_ms))
        self.backoff_floor_ms = max(1, int(backoff_floor_ms))
        self.backoff_cap_ms = max(self.backoff_floor_ms, int(backoff_cap_ms))
        self.backoff_decay_ms = max(0, int(backoff_decay_ms))
        self.backoff_ms = 0
        self._last_error_at: float | None = None
        self._clock = clock
        self._sleep = sleep

    def record_error(self) -> None:
        self._last_error_at = self._clock()

    def cooldown_remaining_ms(self) -> int:
        if self._last_error_at is None:
            return 0
        elapsed_ms = (self._clock() - self._last_error_at) * 1000
        return max(0, int(self.error_delay_ms - elapsed_ms))

    async def wait_for_cooldown(self) -> None:
        remaining_ms = self.cooldown_remaining_ms()
        if remaining_ms > 0:
            logger.debug("Waiting %dms for LLM error cooldown", remaining_ms)
            await self._sleep(remaining_ms / 1000)

    def register_rate_limit(self) -> int:
        if self.backoff_ms <= 0:
            self.backoff_ms = self.backoff_floor_ms
        else:
            self.backoff_ms = min(self.backoff_ms * 2, self.backoff_cap_ms)
        logger.warning("Rate limit detected, backoff is now %dms", self.backoff_ms)
        return self.backoff_ms

    async def wait_for_backoff(self) -> None:
        if self.backoff_ms <= 0:
            return
        delay_ms = self.backoff_ms
        self.backoff_ms = max(0, self.backoff_ms - self.backoff_decay_ms)
        await self._sleep(delay_ms / 1000)

    def reset(self) -> None:
        self.backoff_ms = 0
        self._last_error_at = None
