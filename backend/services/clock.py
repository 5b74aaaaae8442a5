import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float: ...


class SystemClock:
    """Wall-clock seconds since the epoch; tokens carry absolute expiry instants."""

    def now(self) -> float:
        return time.time()
