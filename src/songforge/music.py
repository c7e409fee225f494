"""
src/songforge/music.py

Data model shared by the engine, the providers and the storage layer.

Everything is an immutable dataclass except ExtensionChain, which is the
working state of one fragment-extension run and is owned by a single thread.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

PENDING = "pending"
COMPLETE = "complete"
ERROR = "error"


@dataclass(frozen=True)
class GenerationTask:
    prompt: str = ""
    style: str = ""
    title: str = ""
    instrumental: bool = False
    type: str = ""
    lyrics: Tuple[str, ...] = ()
    manual: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["lyrics"] = list(self.lyrics)
        return d


@dataclass(frozen=True)
class Silence:
    start: float
    duration: float
    # True when the silence runs to the end of the audio.
    final: bool = False

    @property
    def end(self) -> float:
        return self.start + self.duration


@dataclass(frozen=True)
class Fragment:
    id: str
    audio: str = ""
    duration: float = 0.0
    style: str = ""
    title: str = ""
    status: str = PENDING
    image: str = ""
    video: str = ""
    lyrics: str = ""
    prompt: str = ""
    error: str = ""
    parent_id: str = ""
    continue_at: float = 0.0

    # Filled in by the engine after audio analysis.
    silences: Tuple[Silence, ...] = ()
    fade_out: bool = False

    @property
    def done(self) -> bool:
        return self.status in (COMPLETE, ERROR)

    @property
    def failed(self) -> bool:
        return self.status == ERROR

    def first_silence(self, ratio: float) -> Optional[Silence]:
        """First silence starting past `ratio` of the fragment, if any."""
        limit = self.duration * ratio
        for s in self.silences:
            if s.start > limit:
                return s
        return None

    @property
    def trailing_silence(self) -> float:
        if self.silences and self.silences[-1].final:
            return self.silences[-1].duration
        return 0.0


@dataclass(frozen=True)
class Song:
    id: str
    title: str = ""
    style: str = ""
    audio: str = ""
    image: str = ""
    video: str = ""
    duration: float = 0.0
    instrumental: bool = False
    lyrics: str = ""
    # (fragment id, continue_at) pairs, oldest first.
    history: Tuple[Tuple[str, float], ...] = ()
    # Fragments the song was assembled from, in chain order.
    fragments: Tuple[Fragment, ...] = ()

    @classmethod
    def from_fragment(
        cls,
        f: Fragment,
        *,
        instrumental: bool = False,
        history: Tuple[Tuple[str, float], ...] = (),
        fragments: Tuple[Fragment, ...] = (),
    ) -> "Song":
        return cls(
            id=f.id,
            title=f.title,
            style=f.style,
            audio=f.audio,
            image=f.image,
            video=f.video,
            duration=f.duration,
            instrumental=instrumental,
            lyrics=f.lyrics,
            history=history,
            fragments=fragments,
        )


@dataclass
class ExtensionChain:
    """
    Working state of one extension run, seeded by one initial fragment.

    `committed` is the duration locked in by previous continuation points and
    only ever grows. `fragments` holds the selected fragment of every step;
    `candidates` holds the full batch the last selection was made from.
    """

    task: GenerationTask
    fragments: List[Fragment] = field(default_factory=list)
    candidates: List[Fragment] = field(default_factory=list)
    committed: float = 0.0
    extensions: int = 0
    forced_endings: int = 0
    original_style: str = ""
    intro: bool = False
    outro: bool = False
    lyrics_cursor: int = 0
    last_forced: bool = False
    history: List[Tuple[str, float]] = field(default_factory=list)
    state: str = ""

    @property
    def last(self) -> Optional[Fragment]:
        return self.fragments[-1] if self.fragments else None

    @property
    def lyrics(self) -> Tuple[str, ...]:
        return self.task.lyrics

    @property
    def lyrics_left(self) -> int:
        return max(0, len(self.task.lyrics) - self.lyrics_cursor)

    def commit(self, value: float) -> None:
        if value > self.committed:
            self.committed = value

    def take_lyrics(self, n: int) -> str:
        lines = self.task.lyrics[self.lyrics_cursor:self.lyrics_cursor + n]
        self.lyrics_cursor += len(lines)
        return "\n".join(lines)
