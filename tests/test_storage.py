import json

from songforge.music import Fragment, GenerationTask, Song
from songforge.storage import FileSessionStore, SQLiteStore


def _store(tmp_path):
    s = SQLiteStore(tmp_path / "db" / "songforge.sqlite", provider="suno", account="main")
    s.init()
    return s


def test_save_and_read_song_with_fragments(tmp_path):
    store = _store(tmp_path)
    f1 = Fragment(id="a", duration=60.0, audio="https://cdn.test/a.mp3")
    f2 = Fragment(id="b", duration=70.0, parent_id="a", continue_at=59.0)
    song = Song(id="full", title="Song", duration=129.0, history=(("a", 59.0), ("b", 70.0)), fragments=(f1, f2))
    task = GenerationTask(prompt="genre: jazz", type="jazz", instrumental=True)

    store.save_song(song, task)
    for f in song.fragments:
        store.save_fragment(f, song.id)

    row = store.get_song("full")
    assert row["provider"] == "suno"
    assert row["account"] == "main"
    assert row["type"] == "jazz"
    assert row["instrumental"] == 1
    assert json.loads(row["history_json"]) == [{"id": "a", "continue_at": 59.0}, {"id": "b", "continue_at": 70.0}]
    frags = store.list_fragments("full")
    assert [f["id"] for f in frags] == ["a", "b"]
    assert frags[1]["parent_id"] == "a"


def test_save_song_is_an_upsert(tmp_path):
    store = _store(tmp_path)
    task = GenerationTask(prompt="x")
    store.save_song(Song(id="s", title="first"), task)
    store.save_song(Song(id="s", title="second"), task)
    rows = store.list_songs()
    assert len(rows) == 1
    assert rows[0]["title"] == "second"


def test_missing_song(tmp_path):
    assert _store(tmp_path).get_song("nope") is None


def test_session_store_is_per_provider_account(tmp_path):
    store = _store(tmp_path)
    a = store.session_store("suno", "main")
    b = store.session_store("suno", "other")
    assert a.get_credential() == ""
    a.set_credential("__client=abc")
    a.set_credential("__client=def")
    assert a.get_credential() == "__client=def"
    assert b.get_credential() == ""


def test_file_session_store(tmp_path):
    s = FileSessionStore(tmp_path / "cookies" / "suno.txt")
    assert s.get_credential() == ""
    s.set_credential("a=1; b=2")
    assert s.get_credential() == "a=1; b=2"


def test_sibling_variants_keep_their_own_chains(tmp_path):
    store = _store(tmp_path)
    task = GenerationTask(prompt="x")
    a = Fragment(id="a", duration=32.0)
    b1 = Fragment(id="b1", duration=64.0, parent_id="a")
    b2 = Fragment(id="b2", duration=60.0, parent_id="a")
    for song in (Song(id="b1", fragments=(a, b1)), Song(id="b2", fragments=(a, b2))):
        store.save_song(song, task)
        for pos, f in enumerate(song.fragments):
            store.save_fragment(f, song.id, pos)

    assert [f["id"] for f in store.list_fragments("b1")] == ["a", "b1"]
    assert [f["id"] for f in store.list_fragments("b2")] == ["a", "b2"]


def test_saving_fragments_twice_keeps_positions(tmp_path):
    store = _store(tmp_path)
    store.save_song(Song(id="s"), GenerationTask(prompt="x"))
    frags = [Fragment(id="a", duration=10.0), Fragment(id="b", duration=20.0)]
    for _ in range(2):
        for f in frags:
            store.save_fragment(f, "s")

    rows = store.list_fragments("s")
    assert [(r["id"], r["position"]) for r in rows] == [("a", 0), ("b", 1)]
