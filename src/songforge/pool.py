"""
src/songforge/pool.py

Fixed-capacity worker pool with outcome collection on the calling thread.

The result queue starts with `size` ready tokens. The control loop takes one
outcome per dispatch (next_outcome) before submitting, so at most `size`
workers run at once and every outcome is consumed by the caller's thread.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from songforge import waits

log = logging.getLogger(__name__)

_POLL_S = 0.1


@dataclass(frozen=True)
class Outcome:
    value: Any = None
    error: Optional[BaseException] = None
    # Pre-seeded token: a slot that has never run anything.
    ready: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class WorkerPool:
    def __init__(self, size: int, *, name: str = "songforge-worker") -> None:
        if size < 1:
            raise ValueError("pool size must be >= 1")
        self.size = size
        self._executor = ThreadPoolExecutor(max_workers=size, thread_name_prefix=name)
        self._results: "queue.Queue[Outcome]" = queue.Queue()
        self._lock = threading.Lock()
        self._slots = 0
        self._inflight = 0
        self._closed = False
        for _ in range(size):
            self._results.put(Outcome(ready=True))

    @property
    def inflight(self) -> int:
        with self._lock:
            return self._inflight

    def next_outcome(
        self,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> Optional[Outcome]:
        """
        Block until a slot frees up and return the outcome that freed it.

        Returns None when `timeout` elapses first; raises Cancelled when the
        cancel event fires first. Each returned outcome grants one submit().
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            waits.check(cancel)
            wait = _POLL_S
            if deadline is not None:
                left = deadline - time.monotonic()
                if left <= 0:
                    return None
                wait = min(wait, left)
            try:
                out = self._results.get(timeout=wait)
            except queue.Empty:
                continue
            with self._lock:
                self._slots += 1
            return out

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("pool is closed")
            if self._slots < 1:
                raise RuntimeError("no free slot: call next_outcome() before submit()")
            self._slots -= 1
            self._inflight += 1
        self._executor.submit(self._run, fn, args, kwargs)

    def _run(self, fn: Callable[..., Any], args: Any, kwargs: Any) -> None:
        try:
            out = Outcome(value=fn(*args, **kwargs))
        except Exception as e:
            out = Outcome(error=e)
        with self._lock:
            self._inflight -= 1
        self._results.put(out)

    def drain(self) -> List[Outcome]:
        """Wait for in-flight work and return the outcomes nobody collected."""
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=True)
        left: List[Outcome] = []
        while True:
            try:
                out = self._results.get_nowait()
            except queue.Empty:
                break
            if not out.ready:
                left.append(out)
        return left

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.drain()
