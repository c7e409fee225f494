"""
src/songforge/templates.py

Where generation tasks come from.

A TaskSource is called once per scheduler iteration and returns the next
GenerationTask. Three flavours:
  - fixed: the same prompt every time (CLI --prompt)
  - file: weighted random pick from a .json or .csv template file
  - builtin: weighted random pick from the genre table below, or a single
    entry of it selected with --type
"""

from __future__ import annotations

import csv
import json
import logging
import random
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from songforge.music import GenerationTask

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskTemplate:
    type: str
    prompt: str
    weight: int = 1
    style: str = ""
    manual: bool = False
    instrumental: bool = False
    lyrics: Tuple[str, ...] = ()

    def task(self, *, title: str = "") -> GenerationTask:
        return GenerationTask(
            prompt=self.prompt,
            style=self.style,
            title=title,
            instrumental=self.instrumental,
            type=self.type,
            lyrics=self.lyrics,
            manual=self.manual,
        )


def _genre(type_: str, prompt: str, weight: int, *, manual: bool = False) -> TaskTemplate:
    return TaskTemplate(type=type_, prompt=prompt, weight=weight, manual=manual, instrumental=True)


_TEMPLATES: Dict[str, TaskTemplate] = {
    t.type: t
    for t in (
        _genre("lullaby", "genre: lullaby", 100),
        _genre("classical", "genre: classical", 80),
        _genre("jazz", "genre: jazz", 80),
        _genre("post-metal", "genre: post-metal", 50),
        _genre("edm", "genre: electronic dance", 50),
        _genre("post-rock", "genre: post-rock", 20),
        _genre("post-punk", "genre: post-punk", 10),
        _genre("bluegrass", "genre: bluegrass", 10),
        _genre("ambient", "genre: ambient", 10),
        _genre("film score", "genre: film score", 10),
        _genre("lo-fi", "genre: lo-fi", 10),
        _genre("daftpunk", "electronic, funk, disco, house, synth-pop, innovative", 10, manual=True),
    )
}


def get_template(type_: str) -> TaskTemplate:
    n = (type_ or "").strip().lower()
    t = _TEMPLATES.get(n)
    if t is None:
        raise ValueError(f"unknown template type: {type_!r}. Available: {', '.join(list_types())}")
    return t


def list_types() -> List[str]:
    return sorted(_TEMPLATES.keys())


# ---------------------------------------------------------------------------
# Template files
# ---------------------------------------------------------------------------

def _as_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    return str(v or "").strip().lower() in ("1", "true", "yes", "y", "on")


def _as_lines(v: Any) -> Tuple[str, ...]:
    if v is None:
        return ()
    if isinstance(v, (list, tuple)):
        raw = [str(x) for x in v]
    else:
        raw = str(v).splitlines()
    return tuple(line.strip() for line in raw if line.strip())


def _from_row(row: Dict[str, Any]) -> Optional[TaskTemplate]:
    prompt = str(row.get("prompt") or "").strip()
    if not prompt:
        return None
    try:
        weight = int(float(row.get("weight") or 1))
    except (TypeError, ValueError):
        weight = 1
    return TaskTemplate(
        type=str(row.get("type") or "").strip(),
        prompt=prompt,
        weight=max(1, weight),
        style=str(row.get("style") or "").strip(),
        manual=_as_bool(row.get("manual")),
        instrumental=_as_bool(row.get("instrumental")),
        lyrics=_as_lines(row.get("lyrics")),
    )


def load_templates(path: Path) -> List[TaskTemplate]:
    """
    Read weighted templates from a .json list of objects or a .csv file with
    columns weight,type,prompt,style,manual,instrumental,lyrics.

    Rows without a prompt are skipped; weight <= 0 counts as 1.
    """
    path = Path(path)
    ext = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if ext == ".json":
        rows = json.loads(text)
        if not isinstance(rows, list):
            raise ValueError(f"{path}: expected a JSON list of templates")
    elif ext == ".csv":
        rows = list(csv.DictReader(text.splitlines(keepends=True)))
    else:
        raise ValueError(f"{path}: unsupported template format {ext!r} (use .json or .csv)")

    out: List[TaskTemplate] = []
    for row in rows:
        if not isinstance(row, dict):
            raise ValueError(f"{path}: template rows must be objects")
        t = _from_row(row)
        if t is None:
            log.warning("templates: skipping row without prompt in %s", path)
            continue
        out.append(t)
    if not out:
        raise ValueError(f"{path}: no templates found")
    return out


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------

class TaskSource:
    def __init__(
        self,
        templates: Sequence[TaskTemplate],
        *,
        rng: Optional[random.Random] = None,
        title: str = "",
    ) -> None:
        if not templates:
            raise ValueError("task source needs at least one template")
        self.templates = list(templates)
        self.rng = rng if rng is not None else random.Random()
        self.title = title
        self._weights = [max(1, t.weight) for t in self.templates]

    def __call__(self) -> GenerationTask:
        if len(self.templates) == 1:
            t = self.templates[0]
        else:
            t = self.rng.choices(self.templates, weights=self._weights, k=1)[0]
        return t.task(title=self.title)

    @classmethod
    def fixed(cls, task: GenerationTask) -> "TaskSource":
        t = TaskTemplate(
            type=task.type,
            prompt=task.prompt,
            style=task.style,
            manual=task.manual,
            instrumental=task.instrumental,
            lyrics=task.lyrics,
        )
        return cls([t], title=task.title)

    @classmethod
    def from_file(cls, path: Path, *, rng: Optional[random.Random] = None) -> "TaskSource":
        return cls(load_templates(path), rng=rng)

    @classmethod
    def builtin(cls, *, type_: str = "", rng: Optional[random.Random] = None) -> "TaskSource":
        if type_:
            return cls([get_template(type_)], rng=rng)
        return cls(list(_TEMPLATES.values()), rng=rng)


def task_source(
    *,
    input_path: Optional[str] = None,
    type_: str = "",
    prompt: str = "",
    style: str = "",
    title: str = "",
    lyrics: Sequence[str] = (),
    manual: bool = False,
    instrumental: bool = False,
    rng: Optional[random.Random] = None,
) -> TaskSource:
    """Pick the source the CLI arguments describe: file, then prompt, then table."""
    if input_path:
        return TaskSource.from_file(Path(input_path), rng=rng)
    if prompt.strip():
        return TaskSource.fixed(
            GenerationTask(
                prompt=prompt.strip(),
                style=style,
                title=title,
                instrumental=instrumental,
                type=type_,
                lyrics=_as_lines(list(lyrics)),
                manual=manual,
            )
        )
    src = TaskSource.builtin(type_=type_, rng=rng)
    if style or lyrics:
        src.templates = [replace(t, style=style or t.style, lyrics=_as_lines(list(lyrics)) or t.lyrics) for t in src.templates]
    src.title = title
    return src
