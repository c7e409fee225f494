"""
src/songforge/analysis.py

Audio analysis backed by the ffmpeg binary.

  - silences: ffmpeg's silencedetect filter (-70 dB, 1 s minimum)
  - fade-out: RMS envelope of the decoded tail (mono 16-bit PCM)

Remote audio (http/https) is downloaded once with requests and cached in a
temporary directory for the lifetime of the analyzer.
"""

from __future__ import annotations

import array
import hashlib
import logging
import math
import re
import shutil
import subprocess
import sys
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import requests

from songforge.errors import ProviderError
from songforge.music import Silence

log = logging.getLogger(__name__)

_SILENCE_START = re.compile(r"silence_start:\s*(-?[\d.]+)")
_SILENCE_END = re.compile(r"silence_end:\s*(-?[\d.]+)\s*\|\s*silence_duration:\s*([\d.]+)")
_DURATION = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")

# Distance from the end under which a silence counts as trailing.
_FINAL_EPS = 0.05


def parse_duration(stderr: str) -> float:
    m = _DURATION.search(stderr or "")
    if not m:
        return 0.0
    h, mnt, s = m.groups()
    return int(h) * 3600 + int(mnt) * 60 + float(s)


def parse_silences(stderr: str, duration: float) -> List[Silence]:
    """
    Turn silencedetect log lines into Silence values.

    A silence_start without a matching silence_end runs to the end of the
    audio; so does any silence ending within 50 ms of `duration`.
    """
    out: List[Silence] = []
    start: Optional[float] = None
    for line in (stderr or "").splitlines():
        m = _SILENCE_START.search(line)
        if m:
            start = max(0.0, float(m.group(1)))
            continue
        m = _SILENCE_END.search(line)
        if m and start is not None:
            end = float(m.group(1))
            final = duration > 0 and end >= duration - _FINAL_EPS
            out.append(Silence(start=start, duration=max(0.0, end - start), final=final))
            start = None
    if start is not None and duration > start:
        out.append(Silence(start=start, duration=duration - start, final=True))
    return out


def rms_windows(samples: Sequence[int], rate: int, window: float = 0.05) -> List[float]:
    n = max(1, int(rate * window))
    out: List[float] = []
    for i in range(0, len(samples), n):
        chunk = samples[i:i + n]
        if not chunk:
            break
        sq = sum((s / 32768.0) ** 2 for s in chunk)
        out.append(math.sqrt(sq / len(chunk)))
    return out


def fades_out(rms: Sequence[float], *, windows: int = 10, step: float = 0.001) -> bool:
    """
    True when the last `windows` RMS values trend down: at most one of them
    is louder than its predecessor by more than `step`, and the tail ends
    quieter than it started.
    """
    tail = list(rms[-windows:])
    if len(tail) < 2:
        return False
    louder = sum(1 for a, b in zip(tail, tail[1:]) if b - a > step)
    return louder <= 1 and tail[-1] < tail[0]


class FfmpegAnalyzer:
    def __init__(
        self,
        *,
        ffmpeg: str = "ffmpeg",
        noise_db: float = -70.0,
        min_silence: float = 1.0,
        sample_rate: int = 22050,
        session: Optional[requests.Session] = None,
        timeout: float = 120.0,
    ) -> None:
        self.ffmpeg = ffmpeg
        self.noise_db = noise_db
        self.min_silence = min_silence
        self.sample_rate = sample_rate
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        self._tmp = Path(tempfile.mkdtemp(prefix="songforge-audio-"))
        self._cache: Dict[str, Path] = {}
        self._lock = threading.Lock()

    def check(self) -> None:
        """Fail early when ffmpeg is not installed."""
        if shutil.which(self.ffmpeg) is None:
            raise ProviderError(f"ffmpeg not found ({self.ffmpeg!r}); install it or pass --no-analysis")

    def close(self) -> None:
        shutil.rmtree(self._tmp, ignore_errors=True)

    # ------------------------------------------------------------------
    # AudioAnalyzer
    # ------------------------------------------------------------------

    def silences(self, audio: str) -> List[Silence]:
        path = self._local(audio)
        stderr = self._run(
            [
                "-hide_banner", "-nostats", "-i", str(path),
                "-af", f"silencedetect=noise={self.noise_db:g}dB:d={self.min_silence:g}",
                "-f", "null", "-",
            ]
        ).stderr.decode("utf-8", errors="replace")
        return parse_silences(stderr, parse_duration(stderr))

    def has_fade_out(self, audio: str) -> bool:
        path = self._local(audio)
        proc = self._run(
            [
                "-hide_banner", "-nostats", "-i", str(path),
                "-f", "s16le", "-acodec", "pcm_s16le", "-ac", "1", "-ar", str(self.sample_rate), "-",
            ]
        )
        samples = array.array("h")
        raw = proc.stdout[: len(proc.stdout) - (len(proc.stdout) % 2)]
        samples.frombytes(raw)
        if sys.byteorder == "big":
            samples.byteswap()
        # Only the tail matters; 50 ms windows over the last 2 s.
        tail = samples[-self.sample_rate * 2:]
        return fades_out(rms_windows(tail, self.sample_rate))

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _run(self, args: List[str]) -> "subprocess.CompletedProcess[bytes]":
        cmd = [self.ffmpeg, *args]
        try:
            proc = subprocess.run(cmd, capture_output=True, timeout=self.timeout, check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ProviderError(f"ffmpeg failed: {e}") from e
        if proc.returncode != 0:
            tail = proc.stderr.decode("utf-8", errors="replace").strip().splitlines()[-1:]
            raise ProviderError(f"ffmpeg exited {proc.returncode}: {' '.join(tail)}")
        return proc

    def _local(self, audio: str) -> Path:
        if not (audio.startswith("http://") or audio.startswith("https://")):
            p = Path(audio)
            if not p.exists():
                raise ProviderError(f"audio not found: {audio}")
            return p

        with self._lock:
            cached = self._cache.get(audio)
        if cached is not None and cached.exists():
            return cached

        name = hashlib.sha256(audio.encode("utf-8")).hexdigest()[:16]
        suffix = Path(audio.split("?", 1)[0]).suffix or ".mp3"
        out = self._tmp / f"{name}{suffix}"
        try:
            r = self.session.get(audio, timeout=(10.0, self.timeout))
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"couldn't download audio {audio}: {e}") from e
        if r.status_code != 200:
            raise ProviderError(f"couldn't download audio {audio}: status {r.status_code}")
        out.write_bytes(r.content)
        log.debug("analysis: downloaded %s (%d bytes)", audio, len(r.content))
        with self._lock:
            self._cache[audio] = out
        return out
