"""
src/songforge/ratelimit.py

Interval gate shared by every call on one paced lane (one provider client).

acquire(cancel) blocks until the lane is free and at least `interval` seconds
have passed since the previous release, then returns a release() callable.
Holders are serialized: a second acquire waits for the first release.
"""

from __future__ import annotations

import contextlib
import threading
import time
from typing import Callable, Iterator, Optional

from songforge import waits
from songforge.errors import Cancelled

_LOCK_POLL_S = 0.1


class RateLimiter:
    def __init__(self, interval: float) -> None:
        if interval < 0:
            raise ValueError("interval must be >= 0")
        self.interval = float(interval)
        self._lane = threading.Lock()
        self._state = threading.Lock()
        self._last: Optional[float] = None

    @property
    def last(self) -> Optional[float]:
        with self._state:
            return self._last

    def acquire(self, cancel: Optional[threading.Event] = None) -> Callable[[], None]:
        while not self._lane.acquire(timeout=_LOCK_POLL_S):
            waits.check(cancel)
        try:
            waits.check(cancel)
            with self._state:
                last = self._last
            if last is not None:
                remaining = (last + self.interval) - time.monotonic()
                if remaining > 0:
                    waits.sleep(cancel, remaining)
        except Cancelled:
            self._lane.release()
            raise

        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            with self._state:
                self._last = time.monotonic()
            self._lane.release()

        return release

    @contextlib.contextmanager
    def hold(self, cancel: Optional[threading.Event] = None) -> Iterator[None]:
        release = self.acquire(cancel)
        try:
            yield
        finally:
            release()
