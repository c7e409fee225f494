import random
import time
import threading

import pytest

from conftest import RecordingSleeper
from songforge.config import SchedulerConfig
from songforge.errors import Cancelled, CircuitBreakerError, ProviderError
from songforge.music import Fragment, GenerationTask, Song
from songforge.scheduler import Scheduler


class FakeGenerator:
    name = "fake"

    def __init__(self, fail=False, on_generate=None):
        self.fail = fail
        self.on_generate = on_generate
        self.tasks = []
        self._lock = threading.Lock()

    def start(self, cancel=None):
        pass

    def stop(self, cancel=None):
        pass

    def generate(self, task, cancel=None):
        with self._lock:
            self.tasks.append(task)
            n = len(self.tasks)
        if self.on_generate is not None:
            self.on_generate(n)
        if self.fail:
            raise ProviderError("generation failed")
        frag = Fragment(id=f"frag-{n}", duration=60.0)
        return [[Song(id=f"song-{n}", duration=120.0, fragments=(frag,))]]


class MemorySink:
    def __init__(self):
        self.songs = []
        self.fragments = []
        self._lock = threading.Lock()

    def save_song(self, song, task):
        with self._lock:
            self.songs.append(song.id)

    def save_fragment(self, fragment, song_id, position=None):
        with self._lock:
            self.fragments.append((fragment.id, song_id))


def tasks():
    return GenerationTask(prompt="lofi", type="lofi")


def test_limit_stops_dispatching_and_saves():
    gen, sink = FakeGenerator(), MemorySink()
    sched = Scheduler(gen, tasks, sink=sink, config=SchedulerConfig(limit=3), sleeper=RecordingSleeper())
    stats = sched.run()
    assert stats.iterations == 3
    assert stats.succeeded == 3
    assert stats.songs == 3
    assert stats.reason == "limit"
    assert sorted(sink.songs) == ["song-1", "song-2", "song-3"]
    assert ("frag-1", "song-1") in sink.fragments


def test_no_wait_before_first_dispatch():
    sleeper = RecordingSleeper()
    cfg = SchedulerConfig(limit=3, wait_min=5.0, wait_max=10.0)
    Scheduler(FakeGenerator(), tasks, config=cfg, rng=random.Random(7), sleeper=sleeper).run()
    assert len(sleeper.calls) == 2
    assert all(5.0 <= s <= 10.0 for s in sleeper.calls)


def test_circuit_breaker_after_consecutive_failures():
    gen = FakeGenerator(fail=True)
    sched = Scheduler(gen, tasks, config=SchedulerConfig(max_consecutive_errors=10), sleeper=RecordingSleeper())
    with pytest.raises(CircuitBreakerError) as ei:
        sched.run()
    assert ei.value.consecutive == 11
    assert isinstance(ei.value.__cause__, ProviderError)
    assert sched.stats.failed == 11
    assert sched.stats.reason == "circuit breaker"
    assert len(gen.tasks) == 11


def test_success_resets_consecutive_errors():
    gen = FakeGenerator()
    gen.fail = False

    def flaky(n):
        gen.fail = n % 2 == 0

    gen.on_generate = flaky
    cfg = SchedulerConfig(limit=8, max_consecutive_errors=1)
    stats = Scheduler(gen, tasks, config=cfg, sleeper=RecordingSleeper()).run()
    assert stats.iterations == 8
    assert stats.failed == 4


def test_cancel_stops_the_run():
    cancel = threading.Event()
    gen = FakeGenerator(on_generate=lambda n: cancel.set() if n == 2 else None)
    sched = Scheduler(gen, tasks, config=SchedulerConfig(limit=100), sleeper=RecordingSleeper())
    with pytest.raises(Cancelled):
        sched.run(cancel)
    assert sched.stats.reason == "cancelled"
    assert sched.stats.iterations < 100


def test_soft_deadline():
    now = [0.0]

    def clock():
        return now[0]

    def tick(n):
        now[0] += 40.0

    gen = FakeGenerator(on_generate=tick)
    cfg = SchedulerConfig(timeout=100.0)
    stats = Scheduler(gen, tasks, config=cfg, sleeper=RecordingSleeper(), clock=clock).run()
    assert stats.reason == "timeout"
    assert stats.iterations >= 3


class SlowGenerator(FakeGenerator):
    """Tracks how many generate() calls overlap."""

    def __init__(self, **kw):
        super().__init__(**kw)
        self.active = 0
        self.peak = 0

    def generate(self, task, cancel=None):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(0.02)
            return super().generate(task, cancel)
        finally:
            with self._lock:
                self.active -= 1


def test_concurrency_bound_and_drain_on_circuit_breaker():
    gen = SlowGenerator(fail=True)
    cfg = SchedulerConfig(concurrency=3, max_consecutive_errors=10)
    sched = Scheduler(gen, tasks, config=cfg, sleeper=RecordingSleeper())
    with pytest.raises(CircuitBreakerError):
        sched.run()

    assert 1 <= gen.peak <= 3
    # every dispatched task was drained and counted, including those in flight at the abort
    assert sched.stats.iterations == len(gen.tasks)
    assert sched.stats.failed == len(gen.tasks)
    assert 11 <= len(gen.tasks) <= 13


def test_concurrent_successes_respect_limit():
    gen = SlowGenerator()
    sched = Scheduler(gen, tasks, config=SchedulerConfig(concurrency=3, limit=7), sleeper=RecordingSleeper())
    stats = sched.run()
    assert gen.peak <= 3
    assert stats.iterations == 7
    assert stats.succeeded == 7


def test_cancelled_worker_is_not_a_failure():
    cancel = threading.Event()

    def stop(n):
        if n == 2:
            cancel.set()
            raise Cancelled("stop")

    gen = FakeGenerator(on_generate=stop)
    sched = Scheduler(gen, tasks, config=SchedulerConfig(limit=100), sleeper=RecordingSleeper())
    with pytest.raises(Cancelled):
        sched.run(cancel)
    assert sched.stats.failed == 0
    assert sched.stats.succeeded == 1
