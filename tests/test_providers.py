import base64
import json
import time
import wave
from urllib.parse import quote, unquote

import pytest

from conftest import FakeSession, RecordingSleeper, make_response
from songforge.config import ExtensionConfig
from songforge.cookies import join_chunks, load_cookies
from songforge.errors import ApplicationError, ProviderError
from songforge.music import COMPLETE, ERROR, ExtensionChain, Fragment, GenerationTask
from songforge.policy import ExtendRequest
from songforge.providers import get_provider, list_providers
from songforge.providers.stub import StubProvider, synthetic_duration
from songforge.providers.suno import SunoProvider, clip_to_fragment, jwt_claims
from songforge.providers.udio import AUTH_COOKIE, UdioProvider, check_usage, song_to_fragment


class MemorySessionStore:
    def __init__(self, value=""):
        self.value = value
        self.writes = []

    def get_credential(self):
        return self.value

    def set_credential(self, blob):
        self.value = blob
        self.writes.append(blob)


def make_jwt(exp):
    def part(obj):
        return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")

    return f"{part({'alg': 'RS256'})}.{part({'exp': exp, 'sid': 'sess_1'})}.sig"


def clip(cid, duration, status="complete", **meta):
    meta.setdefault("duration", duration)
    meta.setdefault("tags", "jazz")
    return {"id": cid, "status": status, "audio_url": f"https://cdn.test/{cid}.mp3", "title": "T", "metadata": meta}


# ----------------------------
# suno
# ----------------------------

def test_jwt_claims():
    assert jwt_claims(make_jwt(123))["exp"] == 123
    with pytest.raises(ProviderError):
        jwt_claims("not-a-token")


def test_clip_to_fragment_states():
    f = clip_to_fragment(clip("c1", 65.0, history=[{"id": "c0", "continue_at": 30.5}]))
    assert (f.id, f.status, f.duration, f.parent_id, f.continue_at) == ("c1", COMPLETE, 65.0, "c0", 30.5)
    assert clip_to_fragment(clip("c2", 0, status="streaming")).done is False
    assert clip_to_fragment(clip("c3", 0, error_type="moderation")).status == ERROR


def test_suno_build_request_shapes():
    p = SunoProvider(session_store=MemorySessionStore("a=1"))
    first = p.build_request(ExtendRequest(prompt="sad jazz", style="jazz", instrumental=True))
    assert first["prompt"] == ""
    assert first["gpt_description_prompt"] == "sad jazz"
    assert first["make_instrumental"] is True
    assert first["continue_clip_id"] is None
    assert "title" not in first

    ext = p.build_request(ExtendRequest(prompt="[refrain]", style="end", parent_id="c1", continue_at=64.997))
    assert ext["continue_clip_id"] == "c1"
    assert ext["continue_at"] == 65.0
    assert "gpt_description_prompt" not in ext
    assert "make_instrumental" not in ext

    manual = p.build_request(ExtendRequest(prompt="la la", style="pop", manual=True))
    assert manual["prompt"] == "la la"
    assert "gpt_description_prompt" not in manual


def test_suno_end_to_end(client_config):
    token = make_jwt(time.time() + 3600)
    session = FakeSession([
        make_response(200, {"response": {"last_active_session_id": "sess_1"}}),
        make_response(200, {"jwt": token}),
        make_response(200, {"clips": [{"id": "c1"}]}),
        make_response(200, [clip("c1", 65.0)]),
        make_response(200, {"clips": [{"id": "c2"}]}),
        make_response(200, [clip("c2", 70.0)]),
        make_response(200, {"id": "full"}),
        make_response(200, [clip("full", 135.0)]),
    ])
    store = MemorySessionStore("__client=abc")
    p = SunoProvider(
        session_store=store,
        session=session,
        client_config=client_config,
        ext_config=ExtensionConfig.for_provider("suno", min_duration=125, max_duration=130),
        sleeper=RecordingSleeper(),
    )
    p.start()
    groups = p.generate(GenerationTask(prompt="sad jazz", style="jazz"))
    p.stop()

    [[song]] = groups
    assert song.id == "full"
    assert song.duration == 135.0
    assert song.history == (("c1", 65.0), ("c2", 70.0))
    assert [f.id for f in song.fragments] == ["c1", "c2"]

    urls = [c["url"] for c in session.calls]
    assert urls[0].startswith("https://clerk.suno.ai/v1/client?")
    assert "Authorization" not in session.calls[0]["headers"]
    assert session.calls[2]["headers"]["Authorization"] == f"Bearer {token}"
    assert urls[3].endswith("feed/?ids=c1")
    assert session.calls[4]["json"]["continue_clip_id"] == "c1"
    assert session.calls[4]["json"]["continue_at"] == 65.0
    assert urls[6].endswith("generate/concat/v2/")
    assert session.calls[6]["json"] == {"clip_id": "c2"}
    assert store.value == "__client=abc"


def test_suno_start_requires_cookie(client_config):
    p = SunoProvider(session_store=MemorySessionStore(""), session=FakeSession([]), client_config=client_config)
    with pytest.raises(ProviderError, match="cookie is empty"):
        p.start()


def test_suno_generation_error_metadata(client_config):
    session = FakeSession([make_response(200, {"clips": [], "metadata": {"error_type": "quota", "error_message": "x"}})])
    p = SunoProvider(session_store=MemorySessionStore("a=1"), session=session, client_config=client_config)
    with pytest.raises(ApplicationError):
        p.create(ExtendRequest(prompt="x"), None)


# ----------------------------
# udio
# ----------------------------

def test_check_usage():
    check_usage({"data": {"daily_used": 1, "daily_throttle_limit": 10, "monthly_used": 5, "monthly_limit": 100}})
    for data in (
        {"disabled": True},
        {"daily_throttled": True},
        {"daily_used": 10, "daily_throttle_limit": 10},
        {"monthly_used": 100, "monthly_limit": 100},
    ):
        with pytest.raises(ApplicationError, match="quota"):
            check_usage({"data": data})


def test_song_to_fragment():
    ok = song_to_fragment({"id": "t1", "song_path": "https://cdn.test/t1.mp3", "duration": 32.5, "tags": ["rock", "indie"]})
    assert (ok.status, ok.duration, ok.style) == (COMPLETE, 32.5, "rock, indie")
    assert song_to_fragment({"id": "t2", "error_id": "e1"}).failed
    assert not song_to_fragment({"id": "t3"}).done


def test_udio_build_request_extension():
    p = UdioProvider(session_store=MemorySessionStore("a=1"))
    body = p.build_request(ExtendRequest(
        prompt="indie rock",
        lyrics="",
        manual=True,
        parent_id="t1",
        parent_audio="https://cdn.test/t1.mp3",
        crop_start=0.9,
        crop_seconds=(0.0, 31.456),
        conditioning="continuation",
    ))
    opts = body["samplerOptions"]
    assert body["lyricInput"] == ""
    assert opts["seed"] == -1
    assert opts["bypass_prompt_optimization"] is True
    assert opts["crop_start_time"] == 0.9
    assert opts["audio_conditioning_crop_seconds"] == [0.0, 31.46]
    assert opts["audio_conditioning_song_id"] == "t1"
    assert opts["audio_conditioning_type"] == "continuation"


def test_udio_create_retries_with_fresh_captcha(client_config):
    class Captcha:
        n = 0

        def solve(self, site_key, page_url):
            self.n += 1
            return f"tok-{self.n}"

    session = FakeSession([
        make_response(500, b"captcha"),
        make_response(500, b"captcha"),
        make_response(200, {"message": "Success", "track_ids": ["t1", "t2"]}),
    ])
    p = UdioProvider(session_store=MemorySessionStore("a=1"), session=session, client_config=client_config, captcha=Captcha())
    assert p.create(ExtendRequest(prompt="x"), None) == ["t1", "t2"]
    assert [c["json"]["captchaToken"] for c in session.calls] == ["tok-1", "tok-2", "tok-3"]


def test_udio_create_gives_up_after_retries(client_config):
    session = FakeSession([make_response(500, b"captcha") for _ in range(2)])
    p = UdioProvider(session_store=MemorySessionStore("a=1"), session=session, client_config=client_config, captcha_retries=1)
    with pytest.raises(ApplicationError):
        p.create(ExtendRequest(prompt="x"), None)
    assert len(session.calls) == 2


def test_udio_refresh_rewrites_chunked_cookie(client_config):
    old = quote(json.dumps({"access_token": "old", "refresh_token": "r1"}), safe="")
    fresh = {"access_token": "new", "refresh_token": "r2", "expires_in": 3600, "pad": "x" * 4000}
    session = FakeSession([make_response(200, fresh)])
    store = MemorySessionStore(f"{AUTH_COOKIE}.0={old[:10]}; {AUTH_COOKIE}.1={old[10:]}")
    p = UdioProvider(session_store=store, session=session, client_config=client_config)

    load_cookies(p.client.session.cookies, store.value, p.cookie_domain)
    p.refresh()

    assert session.calls[0]["json"] == {"refresh_token": "r1"}
    raw = join_chunks(p.client.session.cookies, AUTH_COOKIE, p.cookie_domain)

    assert json.loads(unquote(raw))["access_token"] == "new"
    assert f"{AUTH_COOKIE}.1=" in store.writes[-1]
    assert p._token_expiry > time.time()


def test_udio_fetch_and_conclude(client_config):
    session = FakeSession([make_response(200, {"songs": [
        {"id": "t1", "song_path": "https://cdn.test/t1.mp3", "duration": 64.0},
        {"id": "t2", "error_id": "boom"},
    ]})])
    p = UdioProvider(session_store=MemorySessionStore("a=1"), session=session, client_config=client_config)
    frags = p.fetch(["t1", "t2"], None)
    assert session.calls[0]["url"].endswith("songs?songIds=t1,t2")
    assert [f.status for f in frags] == [COMPLETE, ERROR]

    first = Fragment(id="s0", duration=32.0, status=COMPLETE)
    a = Fragment(id="a", duration=64.0, status=COMPLETE)
    b = Fragment(id="b", duration=60.0, status=COMPLETE)
    chain = ExtensionChain(task=GenerationTask(prompt="x"), fragments=[first, a], candidates=[b, a], extensions=1)
    chain.history.append(("s0", 32.0))
    songs = p.conclude(chain, None)
    assert [s.id for s in songs] == ["a", "b"]
    assert [f.id for f in songs[1].fragments] == ["s0", "b"]
    assert songs[0].history == (("s0", 32.0), ("a", 64.0))


# ----------------------------
# stub + registry
# ----------------------------

def test_registry():
    assert list_providers() == ["stub", "suno", "udio"]
    assert isinstance(get_provider("stub"), StubProvider)
    with pytest.raises(ProviderError):
        get_provider("mubert")
    with pytest.raises(ProviderError):
        get_provider("stub", bogus=True)


def test_synthetic_duration_is_stable():
    assert synthetic_duration("k") == synthetic_duration("k")
    assert 40.0 <= synthetic_duration("other") < 130.0


def test_stub_runs_the_engine():
    p = StubProvider(
        durations=[65.0, 66.0, 70.0, 70.0, 71.0, 71.0],
        ext_config=ExtensionConfig.for_provider("stub", min_duration=125, max_duration=130),
        sleeper=RecordingSleeper(),
    )
    p.start()
    groups = p.generate(GenerationTask(prompt="x", style="lofi"))
    p.stop()

    assert len(groups) == 2
    assert [g[0].duration for g in groups] == [135.0, 137.0]
    assert groups[0][0].history[0] == ("stub-00001", 65.0)
    assert len(p.requests) == 3
    assert p.requests[1].parent_id == "stub-00001"


def test_stub_renders_wav(tmp_path):
    p = StubProvider(durations=[1.5], batch=1, render_dir=tmp_path, sleeper=RecordingSleeper())
    [fid] = p.create(ExtendRequest(prompt="x"), None)
    [frag] = p.fetch([fid], None)
    with wave.open(frag.audio, "rb") as wf:
        assert wf.getnframes() == 12000
        assert wf.getframerate() == 8000
