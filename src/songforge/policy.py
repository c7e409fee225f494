"""
src/songforge/policy.py

Extension policies: how a provider picks among candidate fragments, when a
chain stops, and what the next extension request looks like.

Two accounting models exist:
  - segments (Suno): every extension returns only the new material, so the
    song length is committed + candidate.duration
  - cumulative (Udio): every extension returns the whole song so far, so the
    song length is candidate.duration

Termination is checked in a fixed order (see ExtensionPolicy.decide). Every
step of a chain consumes one extension, forced endings included, so a chain
never runs more than max_extensions steps.
"""

from __future__ import annotations

import abc
import enum
import logging
import random
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from songforge.config import ExtensionConfig
from songforge.music import ExtensionChain, Fragment, GenerationTask

log = logging.getLogger(__name__)

CONTINUATION = "continuation"
PRECEDE = "precede"


class Action(str, enum.Enum):
    CONTINUE = "continue"
    FORCE = "force"
    STOP = "stop"


@dataclass(frozen=True)
class Decision:
    action: Action
    reason: str
    total: float
    continue_at: float

    @property
    def extend(self) -> bool:
        return self.action is not Action.STOP

    @property
    def forced(self) -> bool:
        return self.action is Action.FORCE


@dataclass(frozen=True)
class ExtendRequest:
    """
    Normalized generation request. parent_id is empty for the first
    generation of a task.
    """

    prompt: str = ""
    style: str = ""
    title: str = ""
    lyrics: Optional[str] = None
    instrumental: bool = False
    manual: bool = False

    parent_id: str = ""
    parent_audio: str = ""
    continue_at: float = 0.0
    crop_start: float = 0.0
    crop_seconds: Optional[Tuple[float, float]] = None
    conditioning: str = ""
    forced: bool = False


class ExtensionPolicy(abc.ABC):
    name: str = ""

    def __init__(self, config: ExtensionConfig, rng: Optional[random.Random] = None) -> None:
        self.config = config
        self.rng = rng if rng is not None else random.Random()

    # ------------------------------------------------------------------
    # accounting
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def total_with(self, chain: ExtensionChain, candidate: Fragment) -> float:
        """Song length if the chain stopped at `candidate`."""

    @abc.abstractmethod
    def marginal(self, chain: ExtensionChain, candidate: Fragment) -> float:
        """New material `candidate` adds past the last continuation point."""

    @abc.abstractmethod
    def advance(self, chain: ExtensionChain, candidate: Fragment, decision: Decision) -> None:
        """Lock in `candidate` up to decision.continue_at before extending it."""

    def max_extensions(self, chain: ExtensionChain) -> int:
        return self.config.max_extensions

    def max_duration(self, chain: ExtensionChain) -> float:
        return self.config.max_duration

    # ------------------------------------------------------------------
    # heuristics
    # ------------------------------------------------------------------

    def continue_point(self, candidate: Fragment) -> float:
        s = candidate.first_silence(self.config.silence_ratio)
        if s is None:
            return candidate.duration
        return max(0.0, s.start - 1.0)

    def ends(self, chain: ExtensionChain, candidate: Fragment) -> bool:
        cfg = self.config
        if cfg.short_fragment > 0 and candidate.duration < cfg.short_fragment:
            return True
        if candidate.trailing_silence > cfg.trailing_silence:
            return True
        if candidate.fade_out:
            return True
        return False

    def select(self, chain: ExtensionChain, candidates: Sequence[Fragment]) -> Fragment:
        """Prefer the first candidate that sounds like an ending."""
        if not candidates:
            raise ValueError("no candidates to select from")
        for c in candidates:
            if self.ends(chain, c):
                return c
        if len(candidates) == 1:
            return candidates[0]
        return self.rng.choice(list(candidates))

    def can_force(self, chain: ExtensionChain, total: float) -> bool:
        return False

    def decide(self, chain: ExtensionChain, candidate: Fragment) -> Decision:
        total = self.total_with(chain, candidate)
        at = self.continue_point(candidate)

        def _d(action: Action, reason: str) -> Decision:
            return Decision(action=action, reason=reason, total=total, continue_at=at)

        if total >= self.max_duration(chain):
            return _d(Action.STOP, "max duration")
        if chain.extensions >= self.max_extensions(chain):
            return _d(Action.STOP, "max extensions")
        if chain.extensions > 0:
            short = self.marginal(chain, candidate) < self.config.min_increment
            if short or self.ends(chain, candidate):
                if self.can_force(chain, total):
                    return _d(Action.FORCE, "forced ending")
                return _d(Action.STOP, "short increment" if short else "natural ending")
        return _d(Action.CONTINUE, "extend")

    # ------------------------------------------------------------------
    # requests
    # ------------------------------------------------------------------

    def new_chain(self, task: GenerationTask, first: Fragment) -> ExtensionChain:
        chain = ExtensionChain(task=task, original_style=first.style or task.style)
        if task.lyrics:
            chain.lyrics_cursor = min(len(task.lyrics), self.config.lyrics_per_fragment)
        return chain

    def initial_request(self, task: GenerationTask) -> ExtendRequest:
        return ExtendRequest(
            prompt=task.prompt,
            style=task.style,
            title=task.title,
            instrumental=task.instrumental,
            manual=task.manual,
        )

    @abc.abstractmethod
    def next_request(self, chain: ExtensionChain, candidate: Fragment) -> ExtendRequest:
        """Request extending `candidate`; called after advance()."""

    def intro_request(self, chain: ExtensionChain, candidate: Fragment) -> Optional[ExtendRequest]:
        return None


class SunoPolicy(ExtensionPolicy):
    """
    Segment accounting. Switches to the ending style once the committed length
    gets within one minimum increment of the minimum duration; a fragment that
    ends too early is followed by up to max_forced_endings forced endings.
    """

    name = "suno"

    def total_with(self, chain: ExtensionChain, candidate: Fragment) -> float:
        return chain.committed + candidate.duration

    def marginal(self, chain: ExtensionChain, candidate: Fragment) -> float:
        return candidate.duration

    def can_force(self, chain: ExtensionChain, total: float) -> bool:
        return total < self.config.min_duration and chain.forced_endings < self.config.max_forced_endings

    def advance(self, chain: ExtensionChain, candidate: Fragment, decision: Decision) -> None:
        chain.commit(chain.committed + decision.continue_at)
        chain.extensions += 1
        chain.last_forced = decision.forced
        if decision.forced:
            chain.forced_endings += 1
        chain.history.append((candidate.id, decision.continue_at))

    def initial_request(self, task: GenerationTask) -> ExtendRequest:
        req = super().initial_request(task)
        if task.manual and task.lyrics:
            return ExtendRequest(
                prompt="\n".join(task.lyrics),
                style=req.style,
                title=req.title,
                instrumental=req.instrumental,
                manual=True,
            )
        return req

    def next_request(self, chain: ExtensionChain, candidate: Fragment) -> ExtendRequest:
        cfg = self.config
        style = chain.original_style
        prompt = ""
        if chain.last_forced:
            style = cfg.force_end_style
            prompt = cfg.force_end_lyrics
        elif chain.committed + cfg.min_increment > cfg.min_duration:
            if not chain.outro:
                log.debug("suno: switching %s to ending style", candidate.id)
            chain.outro = True
            style = f"{chain.original_style}, {cfg.end_style}" if cfg.end_style_append else cfg.end_style
            prompt = cfg.end_lyrics
        return ExtendRequest(
            prompt=prompt,
            style=style,
            title=candidate.title or chain.task.title,
            instrumental=chain.task.instrumental,
            manual=chain.task.manual,
            parent_id=candidate.id,
            parent_audio=candidate.audio,
            continue_at=chain.history[-1][1] if chain.history else candidate.duration,
            forced=chain.last_forced,
        )


class UdioPolicy(ExtensionPolicy):
    """
    Cumulative accounting. Prefers candidates that do not end, requests an
    outro near the duration/extension limits, and can finish with an intro
    ("precede") generation. With lyric lines on the task, line consumption
    drives the chain instead of the duration heuristics.
    """

    name = "udio"

    def intro_enabled(self, chain: ExtensionChain) -> bool:
        return self.config.intro and not chain.lyrics

    def max_extensions(self, chain: ExtensionChain) -> int:
        if self.intro_enabled(chain):
            return max(0, self.config.max_extensions - 1)
        return self.config.max_extensions

    def max_duration(self, chain: ExtensionChain) -> float:
        if self.intro_enabled(chain):
            return max(0.0, self.config.max_duration - self.config.intro_budget)
        return self.config.max_duration

    def total_with(self, chain: ExtensionChain, candidate: Fragment) -> float:
        return max(chain.committed, candidate.duration)

    def marginal(self, chain: ExtensionChain, candidate: Fragment) -> float:
        return candidate.duration - chain.committed

    def ends(self, chain: ExtensionChain, candidate: Fragment) -> bool:
        if chain.extensions > 0 and self.marginal(chain, candidate) < self.config.min_increment:
            return True
        return super().ends(chain, candidate)

    def select(self, chain: ExtensionChain, candidates: Sequence[Fragment]) -> Fragment:
        if not candidates:
            raise ValueError("no candidates to select from")
        ok = [c for c in candidates if not self.ends(chain, c)] or list(candidates)
        if len(ok) == 1:
            return ok[0]
        return self.rng.choice(ok)

    def decide(self, chain: ExtensionChain, candidate: Fragment) -> Decision:
        if not chain.lyrics:
            return super().decide(chain, candidate)

        total = self.total_with(chain, candidate)
        at = self.continue_point(candidate)
        if total >= self.max_duration(chain):
            return Decision(Action.STOP, "max duration", total, at)
        if chain.extensions >= self.max_extensions(chain):
            return Decision(Action.STOP, "max extensions", total, at)
        if chain.lyrics_left == 0:
            return Decision(Action.STOP, "lyrics exhausted", total, at)
        return Decision(Action.CONTINUE, "next lyrics", total, at)

    def advance(self, chain: ExtensionChain, candidate: Fragment, decision: Decision) -> None:
        chain.commit(decision.continue_at)
        chain.extensions += 1
        chain.last_forced = False
        chain.history.append((candidate.id, decision.continue_at))

    def _lyrics_for(self, chain: ExtensionChain) -> Optional[str]:
        if chain.lyrics:
            return chain.take_lyrics(self.config.lyrics_per_fragment)
        if chain.task.instrumental:
            return ""
        return None

    def _crop(self, candidate: Fragment) -> Optional[Tuple[float, float]]:
        s = candidate.first_silence(self.config.silence_ratio)
        if s is None:
            return None
        return (0.0, max(0.0, s.start - 1.0))

    def initial_request(self, task: GenerationTask) -> ExtendRequest:
        lyrics: Optional[str] = None
        if task.lyrics:
            lyrics = "\n".join(task.lyrics[:self.config.lyrics_per_fragment])
        elif task.instrumental:
            lyrics = ""
        return ExtendRequest(
            prompt=task.prompt,
            style=task.style,
            title=task.title,
            lyrics=lyrics,
            instrumental=task.instrumental,
            manual=task.manual,
        )

    def next_request(self, chain: ExtensionChain, candidate: Fragment) -> ExtendRequest:
        cfg = self.config
        crop_start = 0.0
        if (
            chain.committed + cfg.intro_budget > self.max_duration(chain)
            or chain.extensions >= self.max_extensions(chain)
        ):
            chain.outro = True
            crop_start = cfg.outro_crop_start
            log.debug("udio: requesting outro for %s", candidate.id)
        return ExtendRequest(
            prompt=candidate.prompt or chain.task.prompt,
            style=chain.original_style,
            title=candidate.title or chain.task.title,
            lyrics=self._lyrics_for(chain),
            instrumental=chain.task.instrumental,
            manual=chain.task.manual,
            parent_id=candidate.id,
            parent_audio=candidate.audio,
            continue_at=self.continue_point(candidate),
            crop_start=crop_start,
            crop_seconds=self._crop(candidate),
            conditioning=CONTINUATION,
        )

    def intro_request(self, chain: ExtensionChain, candidate: Fragment) -> Optional[ExtendRequest]:
        if not self.intro_enabled(chain):
            return None
        if chain.extensions >= self.config.max_extensions:
            return None
        chain.intro = True
        chain.extensions += 1
        chain.history.append((candidate.id, 0.0))
        return ExtendRequest(
            prompt=candidate.prompt or chain.task.prompt,
            style=chain.original_style,
            title=candidate.title or chain.task.title,
            lyrics="" if chain.task.instrumental else None,
            instrumental=chain.task.instrumental,
            manual=chain.task.manual,
            parent_id=candidate.id,
            parent_audio=candidate.audio,
            crop_seconds=self._crop(candidate),
            conditioning=PRECEDE,
        )


def policy_for(name: str, config: ExtensionConfig, rng: Optional[random.Random] = None) -> ExtensionPolicy:
    n = (name or "").strip().lower()
    if n == "udio":
        return UdioPolicy(config, rng)
    if n in ("suno", "stub"):
        return SunoPolicy(config, rng)
    raise ValueError(f"no extension policy for provider: {name!r}")
