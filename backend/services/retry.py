import logging
import random
import time
from typing import Callable, TypeVar

from database.store import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, *, initial: float, maximum: float, jitter: bool = True) -> float:
    delay = min(initial * (2 ** attempt), maximum)
    if jitter:
        delay = random.uniform(delay / 2, delay)
    return delay


def call_with_retry(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    initial_delay: float = 0.1,
    max_delay: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "store call",
) -> T:
    """
    Run `fn`, retrying only on StoreUnavailable with bounded exponential backoff.

    Only use for idempotent calls (reads, unconditional puts, inserts with
    fresh keys). A conditional consume write must never go through here.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except StoreUnavailable as exc:
            attempt += 1
            if attempt >= attempts:
                raise
            delay = backoff_delay(attempt - 1, initial=initial_delay, maximum=max_delay)
            logger.warning("%s failed (%s); retry %d/%d in %.2fs", label, exc, attempt, attempts - 1, delay)
            sleep(delay)
