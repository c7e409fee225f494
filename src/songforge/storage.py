"""
src/songforge/storage.py

Default collaborators for persistence.

SQLiteStore is the StorageSink used by the CLI: songs, fragments and a small
settings table holding per provider/account session credentials. Writes are
upserts keyed by the provider-generated ids, so saving twice is harmless.
FileSessionStore keeps a credential in a plain file (cookie string).
"""

from __future__ import annotations

import contextlib
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from songforge.music import Fragment, GenerationTask, Song

SCHEMA = """
CREATE TABLE IF NOT EXISTS songs (
  id TEXT PRIMARY KEY,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  provider TEXT NOT NULL,
  account TEXT NOT NULL,
  type TEXT NOT NULL,
  prompt TEXT NOT NULL,
  manual INTEGER NOT NULL,
  style TEXT NOT NULL,
  title TEXT NOT NULL,
  instrumental INTEGER NOT NULL,
  audio TEXT NOT NULL,
  image TEXT NOT NULL,
  video TEXT NOT NULL,
  duration_sec REAL NOT NULL,
  lyrics TEXT NOT NULL,
  history_json TEXT NOT NULL,
  notes TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS fragments (
  id TEXT NOT NULL,
  song_id TEXT NOT NULL,
  created_at TEXT NOT NULL,
  position INTEGER NOT NULL,
  audio TEXT NOT NULL,
  duration_sec REAL NOT NULL,
  style TEXT NOT NULL,
  title TEXT NOT NULL,
  parent_id TEXT NOT NULL,
  continue_at REAL NOT NULL,
  PRIMARY KEY(song_id, id),
  FOREIGN KEY(song_id) REFERENCES songs(id)
);

-- databases created before fragments were keyed per song
CREATE UNIQUE INDEX IF NOT EXISTS fragments_song_fragment ON fragments(song_id, id);

CREATE TABLE IF NOT EXISTS settings (
  id TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
"""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteStore:
    def __init__(
        self,
        db_path: Path,
        *,
        provider: str = "",
        account: str = "default",
        notes: str = "",
    ) -> None:
        self.db_path = Path(db_path)
        self.provider = provider
        self.account = account
        self.notes = notes
        self._lock = threading.Lock()

    def connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextlib.contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def init(self) -> None:
        with self._conn() as conn:
            conn.executescript(SCHEMA)

    # ------------------------------------------------------------------
    # StorageSink
    # ------------------------------------------------------------------

    def save_song(self, song: Song, task: GenerationTask) -> None:
        ts = now_iso()
        row = {
            "id": song.id,
            "created_at": ts,
            "updated_at": ts,
            "provider": self.provider,
            "account": self.account,
            "type": task.type,
            "prompt": task.prompt,
            "manual": int(task.manual),
            "style": song.style or task.style,
            "title": song.title or task.title,
            "instrumental": int(song.instrumental or task.instrumental),
            "audio": song.audio,
            "image": song.image,
            "video": song.video,
            "duration_sec": float(song.duration),
            "lyrics": song.lyrics,
            "history_json": json.dumps([{"id": i, "continue_at": at} for i, at in song.history]),
            "notes": self.notes,
        }
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO songs (id, created_at, updated_at, provider, account, type, prompt, manual, style,
                                   title, instrumental, audio, image, video, duration_sec, lyrics, history_json, notes)
                VALUES (:id, :created_at, :updated_at, :provider, :account, :type, :prompt, :manual, :style,
                        :title, :instrumental, :audio, :image, :video, :duration_sec, :lyrics, :history_json, :notes)
                ON CONFLICT(id) DO UPDATE SET
                  updated_at=excluded.updated_at, style=excluded.style, title=excluded.title,
                  audio=excluded.audio, image=excluded.image, video=excluded.video,
                  duration_sec=excluded.duration_sec, lyrics=excluded.lyrics,
                  history_json=excluded.history_json
                """,
                row,
            )

    def save_fragment(self, fragment: Fragment, song_id: str, position: Optional[int] = None) -> None:
        """
        Upsert one fragment of `song_id`. Rows are keyed by (song_id, id) so
        sibling variants sharing earlier fragments each keep their own chain.
        Without `position` the fragment is appended after the stored ones.
        """
        row = {
            "id": fragment.id,
            "song_id": song_id,
            "created_at": now_iso(),
            "position": position,
            "audio": fragment.audio,
            "duration_sec": float(fragment.duration),
            "style": fragment.style,
            "title": fragment.title,
            "parent_id": fragment.parent_id,
            "continue_at": float(fragment.continue_at),
        }
        with self._lock, self._conn() as conn:
            if position is None:
                r = conn.execute(
                    """
                    SELECT COALESCE(
                      (SELECT position FROM fragments WHERE song_id = ? AND id = ?),
                      (SELECT COUNT(*) FROM fragments WHERE song_id = ?))
                    """,
                    (song_id, fragment.id, song_id),
                ).fetchone()
                row["position"] = int(r[0])
            conn.execute(
                """
                INSERT INTO fragments (id, song_id, created_at, position, audio, duration_sec, style, title,
                                       parent_id, continue_at)
                VALUES (:id, :song_id, :created_at, :position, :audio, :duration_sec, :style, :title,
                        :parent_id, :continue_at)
                ON CONFLICT(song_id, id) DO UPDATE SET
                  position=excluded.position, audio=excluded.audio, duration_sec=excluded.duration_sec,
                  style=excluded.style, title=excluded.title
                """,
                row,
            )

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get_song(self, song_id: str) -> Optional[Dict[str, Any]]:
        with self._conn() as conn:
            r = conn.execute("SELECT * FROM songs WHERE id = ?", (song_id,)).fetchone()
            return dict(r) if r else None

    def list_songs(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self._conn() as conn:
            cur = conn.execute("SELECT * FROM songs ORDER BY created_at DESC LIMIT ?", (int(limit),))
            return [dict(r) for r in cur.fetchall()]

    def list_fragments(self, song_id: str) -> List[Dict[str, Any]]:
        with self._conn() as conn:
            cur = conn.execute("SELECT * FROM fragments WHERE song_id = ? ORDER BY position", (song_id,))
            return [dict(r) for r in cur.fetchall()]

    # ------------------------------------------------------------------
    # settings / sessions
    # ------------------------------------------------------------------

    def get_setting(self, key: str) -> Optional[str]:
        with self._conn() as conn:
            r = conn.execute("SELECT value FROM settings WHERE id = ?", (key,)).fetchone()
            return str(r["value"]) if r else None

    def set_setting(self, key: str, value: str) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO settings (id, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                (key, value, now_iso()),
            )

    def session_store(self, provider: str, account: str) -> "SQLiteSessionStore":
        return SQLiteSessionStore(self, f"cookie/{provider}/{account}")


class SQLiteSessionStore:
    def __init__(self, store: SQLiteStore, key: str) -> None:
        self.store = store
        self.key = key

    def get_credential(self) -> str:
        return self.store.get_setting(self.key) or ""

    def set_credential(self, blob: str) -> None:
        self.store.set_setting(self.key, blob)


class FileSessionStore:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def get_credential(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return ""

    def set_credential(self, blob: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(blob, encoding="utf-8")
