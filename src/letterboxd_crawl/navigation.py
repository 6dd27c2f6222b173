"""
Page transitions for a JavaScript-rendered site.

A navigation is one *transition* (usually "go to URL") plus an ordered list
of *triggers* whose completion proves the page is ready to scrape (an element
became visible, a jittered pause elapsed). Both are zero-argument callables
returning awaitables, so they can be built up front and started later.
"""
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable

from .config import RETRY_BASE_COOLDOWN, RETRY_COOLDOWN_STEP, TRANSIENT_STATUSES
from .errors import NavigationStatusError, NavigationTimeoutError, RetriesExhaustedError

logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[Any]]


def delay(base: float, deviation: float) -> Action:
    """
    Trigger that pauses for a random time in [base - deviation, base + deviation] seconds.
    """
    if base < deviation:
        raise ValueError(f"base ({base}) is smaller than deviation ({deviation})")

    async def _delay():
        await asyncio.sleep(base + random.uniform(-deviation, deviation))

    return _delay


async def _run_in_order(triggers: tuple[Action, ...]) -> None:
    for order, trigger in enumerate(triggers, 1):
        await trigger()
        logger.debug(f"Trigger finished order={order}/{len(triggers)}")


def _loaded(response: Any) -> bool:
    """False only for a response carrying a non-2xx status."""
    status = getattr(response, "status", None)
    return status is None or 200 <= status < 300


async def _join(transition: Action, triggers: tuple[Action, ...]) -> Any:
    nav_task = asyncio.ensure_future(transition())
    trigger_task = asyncio.ensure_future(_run_in_order(triggers))
    tasks = (nav_task, trigger_task)

    try:
        pending = set(tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            # An error page never satisfies the triggers; hand its status back
            if nav_task in done and nav_task.exception() is None and not _loaded(nav_task.result()):
                logger.debug(f"Transition returned HTTP {nav_task.result().status}, dropping triggers")
                return nav_task.result()
            for task in done:
                # First failure wins; the finally block stops the sibling
                exc = task.exception()
                if exc is not None:
                    raise exc
        return nav_task.result()
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def navigate_till_trigger(
    transition: Action,
    *triggers: Action,
    timeout: float | None = None,
) -> Any:
    """
    Run a transition and a sequence of readiness triggers concurrently.

    Returns the transition's result once the transition has succeeded and every
    trigger has completed in order. A transition that resolves to a non-2xx
    response is returned as is, without waiting on the triggers, so a caller
    such as RetryPolicy can classify it. The first error from either side is
    raised at once and the other side is cancelled. Cancelling the caller
    cancels both.

    Args:
        transition: Factory for the page transition (e.g. a goto)
        *triggers: Factories run one after another while the transition is in flight
        timeout: Optional deadline in seconds for this one navigation

    Raises:
        NavigationTimeoutError: If the deadline passes first
    """
    logger.debug(f"Start navigation triggers={len(triggers)}")

    if timeout is None:
        return await _join(transition, triggers)

    try:
        return await asyncio.wait_for(_join(transition, triggers), timeout)
    except asyncio.TimeoutError as exc:
        raise NavigationTimeoutError(f"navigation did not settle within {timeout:.0f}s") from exc


class RetryPolicy:
    """
    Bounded retries for a transition, keyed on the HTTP status of its response.

    The transition is usually a whole navigate_till_trigger call, so every
    attempt certifies the page it actually loaded. 2xx returns at once. 500/502/503/504 sleep for a linearly growing cooldown
    and try again. Any other status raises NavigationStatusError without
    retrying; transport errors propagate untouched. Running out of attempts
    raises RetriesExhaustedError.
    """

    def __init__(
        self,
        retries: int,
        base_cooldown: float = RETRY_BASE_COOLDOWN,
        cooldown_step: float = RETRY_COOLDOWN_STEP,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if retries < 1:
            raise ValueError(f"retries must be >= 1, got {retries}")
        self.retries = retries
        self.base_cooldown = base_cooldown
        self.cooldown_step = cooldown_step
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        """Cooldown after the given zero-based attempt."""
        return self.base_cooldown + self.cooldown_step * (attempt + 1)

    async def run(self, transition: Action, url: str | None = None) -> Any:
        last_status = 0

        for attempt in range(self.retries):
            response = await transition()

            # Same-document navigations have no response
            if response is None:
                logger.debug(f"No response for {url}, treating as loaded")
                return None

            status = response.status
            if 200 <= status < 300:
                return response

            if status not in TRANSIENT_STATUSES:
                raise NavigationStatusError(status, url)

            last_status = status
            if attempt < self.retries - 1:
                wait = self.backoff(attempt)
                logger.warning(
                    f"HTTP {status} on {url}, retrying in {wait:.0f}s (attempt {attempt + 1}/{self.retries})"
                )
                await self._sleep(wait)

        logger.error(f"Max retries exceeded for {url} (last status {last_status})")
        raise RetriesExhaustedError(self.retries, last_status, url)
