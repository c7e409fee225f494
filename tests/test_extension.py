import random
import threading
from typing import Dict, List, Sequence

import pytest

from conftest import FakeClock, RecordingSleeper
from songforge.config import ExtensionConfig
from songforge.errors import Cancelled, ProviderError, TotalBatchError
from songforge.extension import ExtensionEngine
from songforge.music import COMPLETE, ERROR, PENDING, ExtensionChain, Fragment, GenerationTask, Song
from songforge.policy import ExtendRequest, SunoPolicy, UdioPolicy


class ScriptedBackend:
    """
    Every create() consumes the next batch of (duration, status) pairs.
    fetch() reports each fragment as pending `pending_polls` times first.
    """

    def __init__(self, batches, *, pending_polls=0):
        self.batches = list(batches)
        self.pending_polls = pending_polls
        self.requests: List[ExtendRequest] = []
        self.fetches = 0
        self.concluded: List[ExtensionChain] = []
        self._frags: Dict[str, Fragment] = {}
        self._seen: Dict[str, int] = {}
        self._n = 0
        self._lock = threading.Lock()

    def create(self, req, cancel):
        with self._lock:
            self.requests.append(req)
            if not self.batches:
                raise AssertionError("no batches left")
            ids = []
            for spec in self.batches.pop(0):
                duration, status = spec if isinstance(spec, tuple) else (spec, COMPLETE)
                self._n += 1
                fid = f"f{self._n}"
                self._frags[fid] = Fragment(
                    id=fid,
                    audio=f"https://cdn.test/{fid}.mp3",
                    duration=float(duration),
                    style=req.style,
                    status=status,
                    error="boom" if status == ERROR else "",
                )
                ids.append(fid)
            return ids

    def fetch(self, ids: Sequence[str], cancel):
        with self._lock:
            self.fetches += 1
            out = []
            for i in ids:
                seen = self._seen.get(i, 0)
                self._seen[i] = seen + 1
                f = self._frags[i]
                if seen < self.pending_polls:
                    f = Fragment(id=f.id, status=PENDING)
                out.append(f)
            return out

    def conclude(self, chain, cancel):
        self.concluded.append(chain)
        last = chain.last
        return [Song.from_fragment(last, history=tuple(chain.history), fragments=tuple(chain.fragments))]


def engine(backend, policy_cls=SunoPolicy, provider="suno", sleeper=None, clock=None, analyzer=None, **overrides):
    overrides.setdefault("poll_interval", 0.0)
    cfg = ExtensionConfig.for_provider(provider, **overrides)
    return ExtensionEngine(
        backend,
        policy_cls(cfg, random.Random(3)),
        analyzer=analyzer,
        config=cfg,
        sleeper=sleeper or RecordingSleeper(),
        clock=clock or FakeClock(),
        name="test",
    )


def test_stops_at_max_duration_after_one_extension():
    be = ScriptedBackend([[65.0], [70.0]])
    eng = engine(be, min_duration=125, max_duration=130, max_extensions=2)
    groups = eng.generate(GenerationTask(prompt="x"))

    assert len(groups) == 1
    chain = be.concluded[0]
    assert chain.extensions == 1
    assert [f.duration for f in chain.fragments] == [65.0, 70.0]
    assert len(be.requests) == 2
    assert be.requests[1].parent_id == "f1"
    assert be.requests[1].continue_at == 65.0


def test_forced_ending_then_extension_cap():
    be = ScriptedBackend([[60.0], [20.0], [30.0]])
    eng = engine(be)
    eng.generate(GenerationTask(prompt="x", style="jazz"))

    chain = be.concluded[0]
    assert chain.extensions == 2
    assert chain.forced_endings == 1
    assert be.requests[2].forced
    assert be.requests[2].style == "outro, end"


def test_chain_never_exceeds_max_extensions():
    be = ScriptedBackend([[60.0]] * 10)
    eng = engine(be, max_duration=10000, max_extensions=3)
    eng.generate(GenerationTask(prompt="x"))
    chain = be.concluded[0]
    assert chain.extensions == 3
    assert len(be.requests) == 4


def test_committed_duration_is_monotonic():
    be = ScriptedBackend([[40.0], [80.0], [50.0], [90.0], [95.0]])
    eng = engine(be, provider="udio", policy_cls=UdioPolicy, max_duration=1000, min_increment=1)
    seen = []
    real_advance = eng.policy.advance

    def spy(chain, candidate, decision):
        real_advance(chain, candidate, decision)
        seen.append(chain.committed)

    eng.policy.advance = spy
    eng.generate(GenerationTask(prompt="x"))
    assert seen == sorted(seen)


def test_each_initial_fragment_gets_its_own_chain():
    be = ScriptedBackend([[65.0, 66.0], [70.0], [71.0]])
    eng = engine(be, min_duration=125, max_duration=130)
    groups = eng.generate(GenerationTask(prompt="x"))
    assert len(groups) == 2
    assert [c.fragments[0].id for c in be.concluded] == ["f1", "f2"]


def test_parallel_chains():
    be = ScriptedBackend([[65.0, 66.0], [70.0], [71.0]])
    eng = engine(be, min_duration=125, max_duration=130, parallel=True)
    groups = eng.generate(GenerationTask(prompt="x"))
    assert len(groups) == 2
    assert sorted(c.fragments[0].id for c in be.concluded) == ["f1", "f2"]


def test_partial_batch_uses_survivors():
    be = ScriptedBackend([[60.0], [(0.0, ERROR), 70.0]])
    eng = engine(be, min_duration=100, max_duration=120)
    eng.generate(GenerationTask(prompt="x"))
    chain = be.concluded[0]
    assert [f.id for f in chain.fragments] == ["f1", "f3"]


def test_poll_returns_both_survivors_of_a_partial_batch():
    be = ScriptedBackend([[60.0, (0.0, ERROR), 70.0]])
    eng = engine(be)
    out = eng.poll(be.create(ExtendRequest(prompt="x"), None))
    assert [f.id for f in out] == ["f1", "f3"]
    assert [f.duration for f in out] == [60.0, 70.0]


def test_total_batch_failure_drops_chain():
    be = ScriptedBackend([[(0.0, ERROR), (0.0, ERROR)]])
    eng = engine(be)
    with pytest.raises(TotalBatchError) as ei:
        eng.generate(GenerationTask(prompt="x"))
    assert ei.value.failed_ids == ["f1", "f2"]


def test_failed_chain_is_dropped_others_kept():
    be = ScriptedBackend([[60.0, 61.0], [(0.0, ERROR)], [70.0]])
    eng = engine(be, min_duration=100, max_duration=120)
    groups = eng.generate(GenerationTask(prompt="x"))
    assert len(groups) == 1
    assert be.concluded[0].fragments[0].id == "f2"


def test_all_chains_failing_is_an_error():
    be = ScriptedBackend([[60.0], [(0.0, ERROR)]])
    eng = engine(be)
    with pytest.raises(ProviderError, match="no songs generated"):
        eng.generate(GenerationTask(prompt="x"))


def test_poll_waits_until_complete():
    sleeper = RecordingSleeper()
    be = ScriptedBackend([[60.0]], pending_polls=2)
    eng = engine(be, sleeper=sleeper, poll_interval=5.0)
    out = eng.poll(be.create(ExtendRequest(prompt="x"), None))
    assert [f.id for f in out] == ["f1"]
    assert be.fetches == 3
    assert sleeper.calls == [5.0, 5.0, 5.0]


def test_poll_times_out():
    clock = FakeClock()

    class Slow(RecordingSleeper):
        def __call__(self, cancel, seconds):
            super().__call__(cancel, seconds)
            clock.advance(400.0)

    be = ScriptedBackend([[60.0]], pending_polls=100)
    eng = engine(be, sleeper=Slow(), clock=clock, poll_interval=5.0, poll_timeout=900.0)
    with pytest.raises(ProviderError, match="timed out"):
        eng.poll(be.create(ExtendRequest(prompt="x"), None))


def test_cancel_propagates():
    cancel = threading.Event()
    cancel.set()
    be = ScriptedBackend([[60.0]])
    eng = engine(be)
    with pytest.raises(Cancelled):
        eng.generate(GenerationTask(prompt="x"), cancel)


def test_analyzer_results_drive_decisions():
    class Fading:
        def silences(self, audio):
            return []

        def has_fade_out(self, audio):
            return audio.endswith("f2.mp3")

    be = ScriptedBackend([[80.0], [70.0]])
    eng = engine(be, analyzer=Fading())
    eng.generate(GenerationTask(prompt="x"))
    chain = be.concluded[0]
    assert chain.fragments[-1].fade_out
    assert chain.extensions == 1


def test_udio_intro_runs_after_loop():
    be = ScriptedBackend([[100.0], [150.0], [60.0]])
    eng = engine(be, provider="udio", policy_cls=UdioPolicy, intro=True, max_duration=180.0)
    eng.generate(GenerationTask(prompt="x"))
    chain = be.concluded[0]
    assert chain.intro
    assert be.requests[-1].conditioning == "precede"
    assert [f.id for f in chain.fragments] == ["f1", "f2", "f3"]
