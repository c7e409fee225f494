"""
src/songforge/config.py

Resolved, immutable configuration objects.

Everything has a documented fallback and can be overridden through
SONGFORGE_* environment variables (a .env file is loaded by the CLI) or
explicit keyword overrides. Durations are seconds (float); the parser also
accepts Go-style strings such as "2m5s" or "1h".
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional, Tuple

ENV_PREFIX = "SONGFORGE_"

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")


def _env_str(name: str, default: str = "") -> str:
    v = os.environ.get(ENV_PREFIX + name)
    return (v if v is not None else default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if not raw:
        return int(default)
    try:
        return int(float(raw))
    except ValueError:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if not raw:
        return float(default)
    try:
        return parse_duration(raw)
    except ValueError:
        return float(default)


def _env_bool(name: str, default: bool = False) -> bool:
    v = _env_str(name).lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


def parse_duration(value: Any) -> float:
    """
    "90" -> 90.0, "1.5" -> 1.5, "2m5s" -> 125.0, "500ms" -> 0.5, "1h" -> 3600.0
    """
    if isinstance(value, (int, float)):
        return float(value)
    s = str(value or "").strip().lower()
    if not s:
        raise ValueError("empty duration")
    try:
        return float(s)
    except ValueError:
        pass
    total = 0.0
    pos = 0
    for m in _DURATION_RE.finditer(s):
        if m.start() != pos:
            raise ValueError(f"invalid duration: {value!r}")
        n = float(m.group(1))
        unit = m.group(2)
        if unit == "h":
            total += n * 3600.0
        elif unit == "m":
            total += n * 60.0
        elif unit == "ms":
            total += n / 1000.0
        else:
            total += n
        pos = m.end()
    if pos != len(s):
        raise ValueError(f"invalid duration: {value!r}")
    return total


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

DEFAULT_BACKOFF: Tuple[float, ...] = (30.0, 60.0, 120.0)
DEFAULT_BUSY_STATUSES: Tuple[int, ...] = (429, 502, 504, 520)


@dataclass(frozen=True)
class ClientConfig:
    wait: float = 4.0
    timeout: float = 120.0
    connect_timeout: float = 10.0
    max_attempts: int = 3
    backoff: Tuple[float, ...] = DEFAULT_BACKOFF
    busy_statuses: Tuple[int, ...] = DEFAULT_BUSY_STATUSES
    dump_dir: str = "logs"
    proxy: str = ""
    user_agent: str = "songforge/0.1"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not self.backoff:
            raise ValueError("backoff table must not be empty")

    @classmethod
    def from_env(cls, **overrides: Any) -> "ClientConfig":
        base = cls(
            wait=_env_float("WAIT", 4.0),
            timeout=_env_float("TIMEOUT", 120.0),
            connect_timeout=_env_float("CONNECT_TIMEOUT", 10.0),
            max_attempts=max(1, _env_int("MAX_ATTEMPTS", 3)),
            dump_dir=_env_str("DUMP_DIR", "logs") or "logs",
            proxy=_env_str("PROXY"),
            user_agent=_env_str("USER_AGENT", "songforge/0.1") or "songforge/0.1",
        )
        return _apply(base, overrides)


# ---------------------------------------------------------------------------
# Extension engine
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtensionConfig:
    min_duration: float = 125.0
    max_duration: float = 235.0
    max_extensions: int = 2
    min_increment: float = 30.0
    # Fragments shorter than this are treated as clearly ending (0 disables).
    short_fragment: float = 59.0
    silence_ratio: float = 0.7
    trailing_silence: float = 0.5

    end_style: str = "end"
    end_style_append: bool = False
    end_lyrics: str = "[refrain]"
    force_end_style: str = "outro, end"
    force_end_lyrics: str = "[outro]\n[end]"
    max_forced_endings: int = 2

    intro: bool = False
    intro_budget: float = 30.0
    lyrics_per_fragment: int = 4
    outro_crop_start: float = 0.9

    parallel: bool = False
    poll_interval: float = 5.0
    poll_timeout: float = 15 * 60.0

    def __post_init__(self) -> None:
        if self.max_duration <= 0:
            raise ValueError("max_duration must be > 0")
        if self.max_extensions < 0:
            raise ValueError("max_extensions must be >= 0")
        if self.lyrics_per_fragment < 1:
            raise ValueError("lyrics_per_fragment must be >= 1")

    @classmethod
    def for_provider(cls, provider: str, **overrides: Any) -> "ExtensionConfig":
        """
        Provider fallbacks:
          suno: 5s polling, 2 extensions, 30s minimum increment, 59s short fragment
          udio: 15s polling, 6 extensions, 20s minimum increment, no short-fragment rule
          stub: suno rules with instant polling
        """
        name = (provider or "").strip().lower()
        base = _PROVIDER_DEFAULTS.get(name)
        if base is None:
            raise ValueError(f"no extension defaults for provider: {provider!r}")
        return _apply(base, overrides)

    @classmethod
    def from_env(cls, provider: str, **overrides: Any) -> "ExtensionConfig":
        env: Dict[str, Any] = {}
        for f in fields(cls):
            raw = _env_str(f.name.upper())
            if not raw:
                continue
            if f.type in ("float", float):
                env[f.name] = _env_float(f.name.upper(), 0.0)
            elif f.type in ("int", int):
                env[f.name] = _env_int(f.name.upper(), 0)
            elif f.type in ("bool", bool):
                env[f.name] = _env_bool(f.name.upper())
            else:
                env[f.name] = raw.replace("\\n", "\n")
        env.update({k: v for k, v in overrides.items() if v is not None})
        return cls.for_provider(provider, **env)


_PROVIDER_DEFAULTS: Dict[str, ExtensionConfig] = {
    "suno": ExtensionConfig(),
    "udio": ExtensionConfig(
        max_extensions=6,
        min_increment=20.0,
        short_fragment=0.0,
        poll_interval=15.0,
    ),
    "stub": ExtensionConfig(poll_interval=0.0),
}


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SchedulerConfig:
    concurrency: int = 1
    wait_min: float = 0.0
    wait_max: float = 0.0
    limit: int = 0
    timeout: float = 24 * 3600.0
    max_consecutive_errors: int = 10
    stats_interval: float = 3600.0

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.wait_max < self.wait_min:
            raise ValueError("wait_max must be >= wait_min")

    @classmethod
    def from_env(cls, **overrides: Any) -> "SchedulerConfig":
        base = cls(
            concurrency=max(1, _env_int("CONCURRENCY", 1)),
            wait_min=_env_float("WAIT_MIN", 0.0),
            wait_max=max(_env_float("WAIT_MIN", 0.0), _env_float("WAIT_MAX", 0.0)),
            limit=max(0, _env_int("LIMIT", 0)),
            timeout=_env_float("RUN_TIMEOUT", 24 * 3600.0),
        )
        return _apply(base, overrides)


def _apply(base: Any, overrides: Dict[str, Any]) -> Any:
    patch = {k: v for k, v in overrides.items() if v is not None}
    if not patch:
        return base
    return replace(base, **patch)
