"""Session write statistics."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict

#: Number of recent writes the throughput is computed over.
THROUGHPUT_WINDOW = 300
#: Throughput is compared against the warning threshold every N writes.
THROUGHPUT_CHECK_EVERY = 500


class SessionStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    sets: int
    gets: int
    keys: int
    throughput: float
    dips_below_minimum: int
    throughput_warn_threshold: float


class ThroughputTracker:
    """Sliding window of write timestamps.

    Not thread-safe; callers hold the table lock.
    """

    def __init__(
        self,
        *,
        window: int = THROUGHPUT_WINDOW,
        check_every: int = THROUGHPUT_CHECK_EVERY,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._samples: deque[float] = deque(maxlen=window)
        self._check_every = check_every
        self._monotonic = monotonic
        self.sets = 0

    def record(self) -> bool:
        """Record one write. Returns ``True`` when a threshold check is due."""
        self._samples.append(self._monotonic())
        self.sets += 1
        return self.sets % self._check_every == 0

    @property
    def throughput(self) -> float:
        """Writes per second over the window; 0 until two samples exist."""
        if len(self._samples) < 2:
            return 0.0
        span = self._samples[-1] - self._samples[0]
        if span <= 0:
            return 0.0
        return (len(self._samples) - 1) / span
