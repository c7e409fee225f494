"""
src/songforge/providers/suno.py

Suno web API client.

Auth: the stored cookie belongs to clerk.suno.ai. The Clerk client endpoint
gives the active session id; a short-lived JWT is minted from it and reused
until 90% of its lifetime has passed.

Generation: generate/v2/ returns a batch of clips that are polled through
feed/. Extensions send continue_clip_id/continue_at and return only the new
segment; a chain with extensions is finished with generate/concat/v2/.
"""

from __future__ import annotations

import base64
import json
import logging
import threading
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from songforge.errors import ApplicationError, DecodeError, ProviderError
from songforge.music import COMPLETE, ERROR, PENDING, ExtensionChain, Fragment, Song
from songforge.policy import ExtendRequest
from songforge.providers.base import EngineProvider, chain_history, drop_empty

log = logging.getLogger(__name__)

SUNO_API = "https://studio-api.suno.ai/api"
CLERK_URL = "https://clerk.suno.ai"
CLERK_VERSION = "4.70.0"
DEFAULT_MODEL = "chirp-v3-alpha"

# Token reuse window as a share of its lifetime.
_TOKEN_LIFETIME_SHARE = 0.9


def jwt_claims(token: str) -> Dict[str, Any]:
    parts = (token or "").split(".")
    if len(parts) != 3:
        raise DecodeError("suno: invalid access token")
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except ValueError as e:
        raise DecodeError(f"suno: couldn't decode access token: {e}") from e
    if not isinstance(claims, dict):
        raise DecodeError("suno: unexpected access token claims")
    return claims


def _check_metadata(obj: Any, what: str) -> None:
    meta = obj.get("metadata") if isinstance(obj, dict) else None
    if isinstance(meta, dict) and meta.get("error_type"):
        raise ApplicationError(f"suno: {what} error: ({meta.get('error_type')}) {meta.get('error_message') or ''}")


def clip_to_fragment(clip: Dict[str, Any]) -> Fragment:
    meta = clip.get("metadata") or {}
    status = str(clip.get("status") or "")
    if status == "error" or meta.get("error_type"):
        state = ERROR
    elif status == "complete":
        state = COMPLETE
    else:
        state = PENDING
    history = meta.get("history") or []
    parent_id, continue_at = "", 0.0
    if history and isinstance(history[-1], dict):
        parent_id = str(history[-1].get("id") or "")
        continue_at = float(history[-1].get("continue_at") or 0.0)
    return Fragment(
        id=str(clip.get("id") or ""),
        audio=str(clip.get("audio_url") or ""),
        duration=float(meta.get("duration") or 0.0),
        style=str(meta.get("tags") or ""),
        title=str(clip.get("title") or ""),
        status=state,
        image=str(clip.get("image_url") or ""),
        video=str(clip.get("video_url") or ""),
        lyrics=str(meta.get("prompt") or ""),
        prompt=str(meta.get("gpt_description_prompt") or ""),
        error=str(meta.get("error_message") or ""),
        parent_id=parent_id,
        continue_at=continue_at,
    )


class SunoProvider(EngineProvider):
    name = "suno"
    base_url = SUNO_API
    cookie_domain = "clerk.suno.ai"
    extra_busy_statuses = (522,)

    def __init__(self, *, model: str = DEFAULT_MODEL, clerk_url: str = CLERK_URL, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.model = model
        self.clerk_url = clerk_url.rstrip("/")
        self._sid = ""
        self._token = ""
        self._token_expiry = 0.0

    # ------------------------------------------------------------------
    # auth
    # ------------------------------------------------------------------

    def auth(self, cancel: Optional[threading.Event] = None) -> None:
        with self._auth_lock:
            if not self._sid:
                self._sid = self._session_id(cancel)
            if self._token and time.time() < self._token_expiry:
                return
            token, exp = self._session_token(cancel)
            now = time.time()
            self._token = token
            self._token_expiry = now + max(0.0, exp - now) * _TOKEN_LIFETIME_SHARE
            log.debug("suno: new token valid for %.0fs", self._token_expiry - now)

    def refresh(self, cancel: Optional[threading.Event] = None) -> None:
        with self._auth_lock:
            self._token = ""
            self._token_expiry = 0.0
            self.auth(cancel)

    def auth_headers(self, url: str) -> Dict[str, str]:
        if url.startswith(self.clerk_url):
            return {"Content-Type": "application/x-www-form-urlencoded"}
        h = {"Origin": "https://app.suno.ai", "Referer": "https://app.suno.ai/"}
        if self._token:
            h["Authorization"] = f"Bearer {self._token}"
        return h

    def _session_id(self, cancel: Optional[threading.Event]) -> str:
        obj = self.client.get(
            f"{self.clerk_url}/v1/client?_clerk_js_version={CLERK_VERSION}", cancel=cancel, refresh=False
        )
        sid = str(((obj or {}).get("response") or {}).get("last_active_session_id") or "")
        if not sid:
            raise ProviderError("suno: empty session id (cookie expired?)")
        return sid

    def _session_token(self, cancel: Optional[threading.Event]) -> Tuple[str, float]:
        obj = self.client.post(
            f"{self.clerk_url}/v1/client/sessions/{self._sid}/tokens/api?_clerk_js_version={CLERK_VERSION}",
            cancel=cancel,
            refresh=False,
        )
        jwt = str((obj or {}).get("jwt") or "")
        if not jwt:
            raise ProviderError("suno: empty clerk token")
        return jwt, float(jwt_claims(jwt).get("exp") or 0)

    # ------------------------------------------------------------------
    # engine backend
    # ------------------------------------------------------------------

    def build_request(self, req: ExtendRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "prompt": req.prompt,
            "tags": req.style,
            "mv": self.model,
            "title": req.title,
            "continue_clip_id": None,
            "continue_at": None,
        }
        if req.parent_id:
            body["continue_clip_id"] = req.parent_id
            body["continue_at"] = round(float(req.continue_at), 2)
        elif not req.manual:
            body["prompt"] = ""
            body["gpt_description_prompt"] = req.prompt
            body["make_instrumental"] = req.instrumental
        else:
            body["make_instrumental"] = req.instrumental
        return drop_empty(body, ("tags", "title", "gpt_description_prompt", "make_instrumental"))

    def create(self, req: ExtendRequest, cancel: Optional[threading.Event]) -> List[str]:
        resp = self.client.post("generate/v2/", self.build_request(req), cancel=cancel)
        if not isinstance(resp, dict):
            raise ApplicationError("suno: unexpected generate response")
        _check_metadata(resp, "generation")
        clips = resp.get("clips") or []
        if not clips:
            raise ApplicationError("suno: empty clips")
        return [str(c.get("id")) for c in clips if c.get("id")]

    def fetch(self, ids: Sequence[str], cancel: Optional[threading.Event]) -> List[Fragment]:
        self.auth(cancel)
        resp = self.client.get(f"feed/?ids={','.join(ids)}", cancel=cancel)
        if not isinstance(resp, list):
            raise ApplicationError("suno: unexpected feed response")
        return [clip_to_fragment(c) for c in resp if isinstance(c, dict)]

    def conclude(self, chain: ExtensionChain, cancel: Optional[threading.Event]) -> List[Song]:
        last = chain.last
        if last is None:
            raise ProviderError("suno: empty chain")
        instrumental = chain.task.instrumental
        if chain.extensions == 0:
            return [Song.from_fragment(last, instrumental=instrumental, history=chain_history(chain), fragments=(last,))]

        resp = self.client.post("generate/concat/v2/", {"clip_id": last.id}, cancel=cancel)
        if not isinstance(resp, dict) or not resp.get("id"):
            raise ApplicationError("suno: unexpected concat response")
        _check_metadata(resp, "concat")
        full = self.engine.poll([str(resp["id"])], cancel)[0]
        log.info("suno: concatenated %d fragments into %s (%.1fs)", len(chain.fragments), full.id, full.duration)
        return [
            Song.from_fragment(
                full,
                instrumental=instrumental,
                history=chain_history(chain),
                fragments=tuple(chain.fragments),
            )
        ]
