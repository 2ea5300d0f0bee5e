"""Suspend until a remote condition holds, or give up after a bounded number of probes."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollingTimeout(Exception):
    """The predicate never held within the attempt bound."""

    def __init__(self, attempts: int, last_value=None):
        self.attempts = attempts
        self.last_value = last_value
        super().__init__(f"Condition not met after {attempts} attempts (last value: {last_value!r})")


async def wait_until(
    probe: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    *,
    attempts: int,
    interval: float = 1.0,
    backoff: float = 1.0,
    max_interval: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call ``probe`` until ``predicate`` accepts its result.

    Sleeps ``interval`` seconds before every probe. With ``backoff > 1`` the
    interval grows geometrically, capped at ``max_interval``. Raises
    ``PollingTimeout`` carrying the last probed value once ``attempts``
    probes were made. Exceptions raised by ``probe`` propagate unchanged.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    delay = interval
    value = None
    for attempt in range(1, attempts + 1):
        await sleep(delay)
        value = await probe()
        logger.debug(f"Poll attempt {attempt}/{attempts}: {value!r}")
        if predicate(value):
            return value
        delay = delay * backoff
        if max_interval is not None:
            delay = min(delay, max_interval)

    raise PollingTimeout(attempts, value)
