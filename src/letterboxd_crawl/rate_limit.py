import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Forces a long cooldown after every `interval` navigations.

    A fixed pause per window, not smooth pacing. Meant to be driven from one
    sequential crawl loop; it holds no lock.
    """

    def __init__(
        self,
        interval: int,
        cooldown: float = 300.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if interval < 1:
            raise ValueError(f"interval must be >= 1, got {interval}")
        self.interval = interval
        self.cooldown = cooldown
        self._sleep = sleep
        self.count = 0
        self.cooldowns = 0

    async def acquire(self) -> None:
        """Call once before each navigation."""
        if self.count >= self.interval:
            logger.info(f"Reached {self.count} navigations, cooling down for {self.cooldown:.0f}s")
            await self._sleep(self.cooldown)
            self.count = 0
            self.cooldowns += 1

        self.count += 1
