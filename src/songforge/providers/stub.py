#!/usr/bin/env python3
"""
src/songforge/providers/stub.py

Deterministic, network-free provider.

Runs the real extension engine (Suno-style segment accounting) over
synthetic fragments, for dry runs and CI:

- Fragment durations come from `durations` (consumed in order) or, once
  those run out, from a stable hash of (seed, request, fragment index).
- No system time, random, host, pid, etc. is used for durations or audio.
- With `render_dir`, every fragment also gets a sine-wave WAV so a real
  AudioAnalyzer can be run against it.
- Every request the engine sends is recorded in `requests` for inspection.
"""

from __future__ import annotations

import hashlib
import itertools
import math
import struct
import threading
import wave
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from songforge.errors import ProviderError
from songforge.music import COMPLETE, ExtensionChain, Fragment, Song
from songforge.policy import ExtendRequest
from songforge.providers.base import EngineProvider, chain_history


def _stable_hash_u64(s: str) -> int:
    d = hashlib.sha256(s.encode("utf-8")).digest()
    return int.from_bytes(d[:8], "big", signed=False)


def _stable_frac(key: str) -> float:
    # Large modulus gives a stable fraction in [0, 1)
    return (_stable_hash_u64(key) % (10**12)) / float(10**12)


def synthetic_duration(key: str, *, min_s: float = 40.0, max_s: float = 130.0) -> float:
    """Map a stable hash to a duration in [min_s, max_s), rounded to 2 decimals."""
    if max_s <= min_s:
        raise ValueError("max_s must be > min_s")
    return round(min_s + (max_s - min_s) * _stable_frac(key), 2)


def _render_wav_bytes(
    *,
    freq_hz: float,
    seconds: float,
    sample_rate: int = 8000,
    amplitude: float = 0.20,
) -> bytes:
    if seconds <= 0:
        raise ValueError("seconds must be > 0")
    if not (0.0 < amplitude <= 1.0):
        raise ValueError("amplitude must be in (0, 1]")

    n_frames = max(1, int(round(seconds * sample_rate)))
    max_i16 = 32767
    frames = bytearray()
    for i in range(n_frames):
        v = math.sin(2.0 * math.pi * freq_hz * i / sample_rate)
        s = max(-32768, min(32767, int(round(max_i16 * amplitude * v))))
        frames += struct.pack("<h", s)

    buf = BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)  # 16-bit PCM
        wf.setframerate(sample_rate)
        wf.writeframes(bytes(frames))
    return buf.getvalue()


class StubProvider(EngineProvider):
    name = "stub"
    base_url = "http://stub.invalid"
    needs_session = False

    def __init__(
        self,
        *,
        durations: Optional[Sequence[float]] = None,
        batch: int = 2,
        seed: int = 0,
        render_dir: Optional[Union[str, Path]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if batch < 1:
            raise ValueError("batch must be >= 1")
        self.batch = batch
        self.seed = seed
        self.render_dir = Path(render_dir) if render_dir else None
        self.requests: List[ExtendRequest] = []
        self._durations = list(durations or ())
        self._fragments: Dict[str, Fragment] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # engine backend
    # ------------------------------------------------------------------

    def _next_duration(self, key: str) -> float:
        if self._durations:
            return float(self._durations.pop(0))
        return synthetic_duration(key)

    def _audio(self, fid: str, duration: float) -> str:
        if self.render_dir is None:
            return f"stub://{fid}.wav"
        freq = round(220.0 + 660.0 * _stable_frac(f"songforge.stub.freq|{self.seed}|{fid}"), 3)
        self.render_dir.mkdir(parents=True, exist_ok=True)
        path = self.render_dir / f"{fid}.wav"
        path.write_bytes(_render_wav_bytes(freq_hz=freq, seconds=duration))
        return str(path)

    def create(self, req: ExtendRequest, cancel: Optional[threading.Event]) -> List[str]:
        ids: List[str] = []
        with self._lock:
            self.requests.append(req)
            for i in range(self.batch):
                fid = f"stub-{next(self._ids):05d}"
                key = f"songforge.stub|seed={self.seed}|prompt={req.prompt}|style={req.style}|parent={req.parent_id}|i={i}"
                duration = self._next_duration(key)
                self._fragments[fid] = Fragment(
                    id=fid,
                    audio=self._audio(fid, duration),
                    duration=duration,
                    style=req.style,
                    title=req.title or "Stub Track",
                    status=COMPLETE,
                    lyrics=req.lyrics or "",
                    prompt=req.prompt,
                    parent_id=req.parent_id,
                    continue_at=req.continue_at,
                )
                ids.append(fid)
        return ids

    def fetch(self, ids: Sequence[str], cancel: Optional[threading.Event]) -> List[Fragment]:
        with self._lock:
            missing = [i for i in ids if i not in self._fragments]
            if missing:
                raise ProviderError(f"stub: unknown fragments: {', '.join(missing)}")
            return [self._fragments[i] for i in ids]

    def conclude(self, chain: ExtensionChain, cancel: Optional[threading.Event]) -> List[Song]:
        last = chain.last
        if last is None:
            raise ProviderError("stub: empty chain")
        instrumental = chain.task.instrumental
        if chain.extensions == 0:
            return [Song.from_fragment(last, instrumental=instrumental, history=chain_history(chain), fragments=(last,))]

        full = Fragment(
            id=f"{last.id}-full",
            audio=last.audio,
            duration=round(chain.committed + last.duration, 2),
            style=chain.original_style,
            title=last.title,
            status=COMPLETE,
            lyrics=last.lyrics,
        )
        with self._lock:
            self._fragments[full.id] = full
        return [
            Song.from_fragment(
                full,
                instrumental=instrumental,
                history=chain_history(chain),
                fragments=tuple(chain.fragments),
            )
        ]
