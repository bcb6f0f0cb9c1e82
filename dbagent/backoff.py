"""
DB Agent - Backoff Module

Retry delays shared by the control link reconnect loop, the data sender and
the QAN configure loop.
"""

import random
import time
from typing import Callable, Optional

MAX_EXPONENTIAL_TRIES = 6
RANDOM_WAIT_MIN = 90.0
RANDOM_WAIT_MAX = 180.0
DEFAULT_RESET_AFTER = 300.0


class Backoff:
    """Exponential then random backoff

    The first wait is 0 s, then 1, 3, 7, 15, 31 and 63 s, then a random wait
    in [90, 180) s. The try count resets only after a success streak that
    lasted at least reset_after seconds, so a flapping remote end keeps the
    long waits.
    """

    def __init__(self, reset_after: float = DEFAULT_RESET_AFTER,
                 now_func: Callable[[], float] = time.monotonic,
                 rand_func: Callable[[], float] = random.random):
        self.reset_after = reset_after
        self.now_func = now_func
        self.rand_func = rand_func
        self.try_count = 0
        self._streak_began: Optional[float] = None

    def wait(self) -> float:
        """Return seconds to wait before the next try and count the try"""
        if self._streak_began is not None:
            if self.now_func() - self._streak_began >= self.reset_after:
                self.try_count = 0
            self._streak_began = None

        if self.try_count == 0:
            t = 0.0
            self.try_count += 1
        elif self.try_count <= MAX_EXPONENTIAL_TRIES:
            t = float(2 ** self.try_count - 1)
            self.try_count += 1
        else:
            t = RANDOM_WAIT_MIN + (RANDOM_WAIT_MAX - RANDOM_WAIT_MIN) * self.rand_func()
        return t

    def success(self) -> None:
        """Record a success; the first in a streak starts the streak clock"""
        if self._streak_began is None:
            self._streak_began = self.now_func()

    def reset(self) -> None:
        self.try_count = 0
        self._streak_began = None
