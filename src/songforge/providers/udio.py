"""
src/songforge/providers/udio.py

Udio web API client.

Auth is cookie based (www.udio.com). The Supabase session lives in chunked
"sb-ssr-production-auth-token.N" cookies; on expiry it is renewed with the
refresh_token grant and written back, chunked, to the jar and the session
store. Before generating, the account usage is checked so an exhausted quota
fails fast instead of burning captcha tokens.

Every generate-proxy call needs an hCaptcha token from the CaptchaResolver.
An HTTP 500 usually means the token was rejected, so the call is repeated
with a fresh token (up to captcha_retries times).
"""

from __future__ import annotations

import base64
import json
import logging
import threading
import time
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote, unquote

from songforge.cookies import chunk_cookie, dump_cookies, join_chunks
from songforge.errors import ApplicationError, AuthExpiredError, ProviderError
from songforge.interfaces import CaptchaResolver
from songforge.music import COMPLETE, ERROR, PENDING, ExtensionChain, Fragment, Song
from songforge.policy import CONTINUATION, ExtendRequest
from songforge.providers.base import EngineProvider, chain_history

log = logging.getLogger(__name__)

UDIO_API = "https://www.udio.com/api"
UDIO_AUTH_URL = "https://api.udio.com/auth/v1/token?grant_type=refresh_token"
UDIO_PAGE = "https://www.udio.com/"
HCAPTCHA_SITE_KEY = "2945592b-1928-43a9-8473-7e7fed3d752e"
AUTH_COOKIE = "sb-ssr-production-auth-token"

# Share of expires_in after which the access token is renewed proactively.
_TOKEN_LIFETIME_SHARE = 0.7


def check_usage(obj: Any) -> None:
    """Raise ApplicationError("quota ...") when the account cannot generate."""
    data = (obj or {}).get("data") if isinstance(obj, dict) else None
    if not isinstance(data, dict):
        raise ApplicationError("udio: unexpected api-usage response")
    if data.get("disabled"):
        raise ApplicationError("udio: quota: api disabled")
    if data.get("daily_throttled"):
        raise ApplicationError("udio: quota: daily throttled")
    daily_limit = int(data.get("daily_throttle_limit") or 0)
    if daily_limit and int(data.get("daily_used") or 0) >= daily_limit:
        raise ApplicationError("udio: quota: daily limit reached")
    monthly_limit = int(data.get("monthly_limit") or 0)
    if monthly_limit and int(data.get("monthly_used") or 0) >= monthly_limit:
        raise ApplicationError("udio: quota: monthly limit reached")


def song_to_fragment(song: Dict[str, Any]) -> Fragment:
    if song.get("error_id"):
        state = ERROR
    elif song.get("song_path"):
        state = COMPLETE
    else:
        state = PENDING
    tags = song.get("tags") or []
    return Fragment(
        id=str(song.get("id") or ""),
        audio=str(song.get("song_path") or ""),
        duration=float(song.get("duration") or 0.0),
        style=", ".join(str(t) for t in tags) if isinstance(tags, list) else str(tags),
        title=str(song.get("title") or ""),
        status=state,
        image=str(song.get("image_path") or ""),
        video=str(song.get("video_path") or ""),
        lyrics=str(song.get("lyrics") or ""),
        prompt=str(song.get("prompt") or ""),
        error=str(song.get("error_detail") or song.get("error_id") or ""),
    )


def _decode_session(raw: str) -> Dict[str, Any]:
    text = unquote(raw)
    if text.startswith("base64-"):
        text = base64.b64decode(text[len("base64-"):] + "=" * (-len(text) % 4)).decode("utf-8")
    try:
        data = json.loads(text)
    except ValueError as e:
        raise AuthExpiredError(f"udio: couldn't decode auth token: {e}") from e
    if not isinstance(data, dict):
        raise AuthExpiredError("udio: unexpected auth token")
    return data


class UdioProvider(EngineProvider):
    name = "udio"
    base_url = UDIO_API
    cookie_domain = "www.udio.com"

    def __init__(
        self,
        *,
        captcha: Optional[CaptchaResolver] = None,
        api_key: str = "",
        captcha_retries: int = 3,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.captcha = captcha
        self.api_key = api_key
        self.captcha_retries = max(0, captcha_retries)
        self._token_expiry = 0.0
        if captcha is None:
            log.warning("udio: no captcha resolver configured, generations will send an empty captcha token")

    # ------------------------------------------------------------------
    # auth
    # ------------------------------------------------------------------

    def auth(self, cancel: Optional[threading.Event] = None) -> None:
        with self._auth_lock:
            if self._token_expiry and time.time() >= self._token_expiry:
                self.refresh(cancel)
        check_usage(self.client.get("users/current/api-usage", cancel=cancel))

    def refresh(self, cancel: Optional[threading.Event] = None) -> None:
        with self._auth_lock:
            jar = self.client.session.cookies
            raw = join_chunks(jar, AUTH_COOKIE, self.cookie_domain)
            if not raw:
                raise AuthExpiredError("udio: couldn't find auth token cookie")
            refresh_token = str(_decode_session(raw).get("refresh_token") or "")
            if not refresh_token:
                raise AuthExpiredError("udio: auth token has no refresh_token")

            headers = {"apikey": self.api_key} if self.api_key else None
            body = self.client.post(
                UDIO_AUTH_URL, {"refresh_token": refresh_token}, cancel=cancel, refresh=False, raw=True, headers=headers
            )
            session = _decode_session(body.decode("utf-8"))
            if not session.get("access_token"):
                raise AuthExpiredError("udio: refresh returned no access_token")

            for c in [c for c in jar if c.name.startswith(AUTH_COOKIE + ".")]:
                jar.clear(c.domain, c.path, c.name)
            for name, value in chunk_cookie(AUTH_COOKIE, quote(body.decode("utf-8"), safe="")):
                jar.set(name, value, domain=self.cookie_domain, path="/")
            if self.session_store is not None:
                self.session_store.set_credential(dump_cookies(jar, self.cookie_domain))

            expires_in = float(session.get("expires_in") or 0)
            self._token_expiry = time.time() + expires_in * _TOKEN_LIFETIME_SHARE if expires_in else 0.0
            log.info("udio: session refreshed")

    # ------------------------------------------------------------------
    # engine backend
    # ------------------------------------------------------------------

    def build_request(self, req: ExtendRequest) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "seed": -1,
            "bypass_prompt_optimization": bool(req.manual),
        }
        if req.crop_start:
            options["crop_start_time"] = req.crop_start
        if req.crop_seconds:
            options["audio_conditioning_crop_seconds"] = [round(x, 2) for x in req.crop_seconds]
        if req.parent_id:
            options["audio_conditioning_path"] = req.parent_audio
            options["audio_conditioning_song_id"] = req.parent_id
            options["audio_conditioning_type"] = req.conditioning or CONTINUATION
        body: Dict[str, Any] = {"prompt": req.prompt, "samplerOptions": options}
        if req.lyrics is not None:
            body["lyricInput"] = req.lyrics
        return body

    def _captcha_token(self) -> str:
        if self.captcha is None:
            return ""
        return self.captcha.solve(HCAPTCHA_SITE_KEY, UDIO_PAGE)

    def create(self, req: ExtendRequest, cancel: Optional[threading.Event]) -> List[str]:
        if req.parent_id:
            self.auth(cancel)
        body = self.build_request(req)
        resp: Any = None
        for attempt in range(self.captcha_retries + 1):
            payload = dict(body, captchaToken=self._captcha_token())
            try:
                resp = self.client.post("generate-proxy", payload, cancel=cancel)
                break
            except ApplicationError as e:
                if e.status != 500 or attempt >= self.captcha_retries:
                    raise
                log.warning("udio: generation failed with status 500, retrying with a new captcha token")

        message = str((resp or {}).get("message") or "") if isinstance(resp, dict) else ""
        if message != "Success":
            raise ApplicationError(f"udio: generation failed: {message or resp!r}")
        ids = [str(i) for i in (resp.get("track_ids") or []) if i]
        if not ids:
            raise ApplicationError("udio: empty clips")
        return ids

    def fetch(self, ids: Sequence[str], cancel: Optional[threading.Event]) -> List[Fragment]:
        resp = self.client.get(f"songs?songIds={','.join(ids)}", cancel=cancel)
        songs = (resp or {}).get("songs") if isinstance(resp, dict) else None
        if not isinstance(songs, list):
            raise ApplicationError("udio: unexpected songs response")
        return [song_to_fragment(s) for s in songs if isinstance(s, dict)]

    def conclude(self, chain: ExtensionChain, cancel: Optional[threading.Event]) -> List[Song]:
        """The chosen fragment first, followed by its sibling variants."""
        chosen = chain.last
        if chosen is None:
            raise ProviderError("udio: empty chain")
        instrumental = chain.task.instrumental
        if chain.extensions == 0:
            variants = [chosen]
        else:
            variants = [chosen] + [c for c in chain.candidates if c.id != chosen.id]
        earlier = tuple(chain.fragments[:-1])
        return [
            Song.from_fragment(
                f,
                instrumental=instrumental,
                history=chain_history(chain, f),
                fragments=earlier + (f,),
            )
            for f in variants
        ]
