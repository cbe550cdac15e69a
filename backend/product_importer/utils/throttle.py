"""Blocking rate limiter for catalog writes."""

from __future__ import annotations

import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)


class Throttle:
    """Keep an average of at most ``rows_per_second`` rows.

    Call :meth:`wait` after each written batch; it sleeps long enough for the
    batch to fit the budget measured from the previous call.
    """

    def __init__(
        self,
        rows_per_second: float,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rows_per_second = rows_per_second
        self._sleep = sleep
        self._clock = clock
        self._window_start = clock()

    def wait(self, rows: int) -> float:
        """Block for the remainder of the batch's budget; returns seconds slept."""
        if self.rows_per_second <= 0 or rows <= 0:
            self._window_start = self._clock()
            return 0.0
        budget = rows / self.rows_per_second
        elapsed = self._clock() - self._window_start
        delay = budget - elapsed
        if delay > 0:
            logger.debug(f"Throttling catalog writes for {delay:.2f}s")
            self._sleep(delay)
        else:
            delay = 0.0
        self._window_start = self._clock()
        return delay
