"""
src/songforge/scheduler.py

Bounded concurrency generation loop.

Per iteration the control thread:
  1. takes the outcome that frees a worker slot (counts success/failure)
  2. checks the circuit breaker, the limit and the soft deadline
  3. waits a random interval in [wait_min, wait_max] (not before the first dispatch)
  4. asks the TaskSource for the next task and dispatches one worker

A worker runs generator.generate(task) and saves the songs. Counters live on
the control thread only; workers report back through the pool.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from songforge import waits
from songforge.config import SchedulerConfig
from songforge.errors import Cancelled, CircuitBreakerError
from songforge.interfaces import Generator, StorageSink
from songforge.music import GenerationTask, Song
from songforge.pool import Outcome, WorkerPool

log = logging.getLogger(__name__)

TaskSourceFn = Callable[[], GenerationTask]


@dataclass(frozen=True)
class RunStats:
    iterations: int = 0
    succeeded: int = 0
    failed: int = 0
    songs: int = 0
    consecutive_errors: int = 0
    elapsed: float = 0.0
    reason: str = ""

    @property
    def average(self) -> float:
        if self.iterations <= 0:
            return 0.0
        return self.elapsed / self.iterations


class Scheduler:
    def __init__(
        self,
        generator: Generator,
        tasks: TaskSourceFn,
        *,
        sink: Optional[StorageSink] = None,
        config: Optional[SchedulerConfig] = None,
        rng: Optional[random.Random] = None,
        sleeper: waits.Sleeper = waits.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.generator = generator
        self.tasks = tasks
        self.sink = sink
        self.config = config or SchedulerConfig()
        self.rng = rng if rng is not None else random.Random()
        self.sleeper = sleeper
        self.clock = clock

        self.iteration = 0
        self.consecutive_errors = 0
        self.succeeded = 0
        self.failed = 0
        self.songs = 0
        self.started = 0.0
        self.reason = ""

    @property
    def stats(self) -> RunStats:
        elapsed = self.clock() - self.started if self.started else 0.0
        return RunStats(
            iterations=self.iteration,
            succeeded=self.succeeded,
            failed=self.failed,
            songs=self.songs,
            consecutive_errors=self.consecutive_errors,
            elapsed=elapsed,
            reason=self.reason,
        )

    def run(self, cancel: Optional[threading.Event] = None) -> RunStats:
        """
        Dispatch generations until the limit or the soft deadline.

        Raises Cancelled when the cancel event fires and CircuitBreakerError
        after more than max_consecutive_errors failures in a row. In-flight
        workers are always drained before returning.
        """
        cfg = self.config
        cancel = cancel if cancel is not None else threading.Event()
        self.started = self.clock()
        deadline = self.started + cfg.timeout if cfg.timeout > 0 else None
        last_stats = self.started

        log.info(
            "scheduler: started (concurrency=%d limit=%s wait=%.0f-%.0fs)",
            cfg.concurrency, cfg.limit or "none", cfg.wait_min, cfg.wait_max,
        )
        pool = WorkerPool(cfg.concurrency)
        try:
            while True:
                left = None if deadline is None else deadline - self.clock()
                if left is not None and left <= 0:
                    self.reason = "timeout"
                    break
                out = pool.next_outcome(cancel, timeout=left)
                if out is None:
                    self.reason = "timeout"
                    break
                self._count(out)

                if self.consecutive_errors > cfg.max_consecutive_errors:
                    self.reason = "circuit breaker"
                    raise CircuitBreakerError(
                        f"scheduler: too many consecutive errors ({self.consecutive_errors}): {out.error}",
                        consecutive=self.consecutive_errors,
                    ) from out.error
                if cfg.limit > 0 and self.iteration >= cfg.limit:
                    self.reason = "limit"
                    break

                if self.iteration > 0:
                    self.sleeper(cancel, self.rng.uniform(cfg.wait_min, cfg.wait_max))
                    if deadline is not None and self.clock() >= deadline:
                        self.reason = "timeout"
                        break

                task = self.tasks()
                self.iteration += 1
                if self.clock() - last_stats >= cfg.stats_interval:
                    last_stats = self.clock()
                    log.info("scheduler: iteration %d (%d ok, %d failed)", self.iteration, self.succeeded, self.failed)
                log.debug("scheduler: dispatch #%d %s", self.iteration, task)
                pool.submit(self._work, task, cancel)
        except Cancelled:
            self.reason = "cancelled"
            raise
        finally:
            for out in pool.drain():
                self._count(out)
            st = self.stats
            log.info(
                "scheduler: ended (%s) iterations=%d ok=%d failed=%d songs=%d total=%.1fs average=%.1fs",
                st.reason or "stopped", st.iterations, st.succeeded, st.failed, st.songs, st.elapsed, st.average,
            )
        return self.stats

    def _count(self, out: Outcome) -> None:
        # a worker stopped by cancellation is neither a success nor a failure
        if out.ready or isinstance(out.error, Cancelled):
            return
        if out.ok:
            self.consecutive_errors = 0
            self.succeeded += 1
            self.songs += int(out.value or 0)
        else:
            self.consecutive_errors += 1
            self.failed += 1

    def _work(self, task: GenerationTask, cancel: threading.Event) -> int:
        try:
            groups = self.generator.generate(task, cancel)
        except Cancelled:
            raise
        except Exception as e:
            log.error("scheduler: generation failed (%s %r): %s", task.type or "-", task.prompt[:60], e)
            raise
        saved = self._save(groups, task)
        log.info("scheduler: saved %d song(s) for %s", saved, task.type or task.prompt[:40])
        return saved

    def _save(self, groups: List[List[Song]], task: GenerationTask) -> int:
        n = 0
        for songs in groups:
            for song in songs:
                n += 1
                if self.sink is None:
                    continue
                self.sink.save_song(song, task)
                for pos, f in enumerate(song.fragments):
                    self.sink.save_fragment(f, song.id, pos)
        return n
