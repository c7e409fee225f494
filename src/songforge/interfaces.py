"""
src/songforge/interfaces.py

Seams between the engine and the outside world.

The engine consumes StorageSink, AudioAnalyzer, SessionStore and
CaptchaResolver; it produces Generator. Default implementations live in
songforge.storage and songforge.analysis; providers implement Generator.
"""

from __future__ import annotations

import threading
from typing import List, Optional, Protocol, runtime_checkable

from songforge.music import Fragment, GenerationTask, Silence, Song


@runtime_checkable
class StorageSink(Protocol):
    def save_song(self, song: Song, task: GenerationTask) -> None:
        ...

    def save_fragment(self, fragment: Fragment, song_id: str, position: Optional[int] = None) -> None:
        ...


@runtime_checkable
class AudioAnalyzer(Protocol):
    def silences(self, audio: str) -> List[Silence]:
        ...

    def has_fade_out(self, audio: str) -> bool:
        ...


@runtime_checkable
class SessionStore(Protocol):
    def get_credential(self) -> str:
        ...

    def set_credential(self, blob: str) -> None:
        ...


@runtime_checkable
class CaptchaResolver(Protocol):
    def solve(self, site_key: str, page_url: str) -> str:
        ...


@runtime_checkable
class Generator(Protocol):
    name: str

    def start(self, cancel: Optional[threading.Event] = None) -> None:
        ...

    def stop(self, cancel: Optional[threading.Event] = None) -> None:
        ...

    def generate(
        self, task: GenerationTask, cancel: Optional[threading.Event] = None
    ) -> List[List[Song]]:
        ...
