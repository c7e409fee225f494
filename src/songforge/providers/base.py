"""
src/songforge/providers/base.py

Shared provider plumbing.

EngineProvider wires one ResilientClient (one rate-limited lane), one
ExtensionPolicy and one ExtensionEngine together. Subclasses supply the
remote calls the engine needs:

  create(req, cancel)    start a generation, return fragment ids
  fetch(ids, cancel)     current state of those fragments
  conclude(chain, cancel) turn a finished chain into output Songs

and optionally auth()/refresh()/check_body() for session handling.
"""

from __future__ import annotations

import abc
import logging
import random
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import requests

from songforge import waits
from songforge.config import ClientConfig, ExtensionConfig
from songforge.cookies import dump_cookies, load_cookies
from songforge.errors import AuthExpiredError, ProviderError
from songforge.extension import ExtensionEngine
from songforge.interfaces import AudioAnalyzer, SessionStore
from songforge.music import ExtensionChain, Fragment, GenerationTask, Song
from songforge.policy import ExtendRequest, policy_for
from songforge.transport import ResilientClient

log = logging.getLogger(__name__)

# Application messages that mean "log in again" even with a 2xx status.
_AUTH_MARKERS = ("unauthorized", "quota")


def body_message(obj: Any) -> str:
    if not isinstance(obj, dict):
        return ""
    for key in ("detail", "error", "message"):
        v = obj.get(key)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return ""


def chain_history(chain: ExtensionChain, last: Optional[Fragment] = None) -> Tuple[Tuple[str, float], ...]:
    """(fragment id, seconds kept from it) for every step, ending with `last`."""
    last = last if last is not None else chain.last
    hist = list(chain.history)
    if last is not None:
        hist.append((last.id, float(last.duration)))
    return tuple(hist)


class EngineProvider(abc.ABC):
    name: str = ""
    base_url: str = ""
    cookie_domain: str = ""
    extra_busy_statuses: Tuple[int, ...] = ()
    needs_session: bool = True

    def __init__(
        self,
        *,
        session_store: Optional[SessionStore] = None,
        client_config: Optional[ClientConfig] = None,
        ext_config: Optional[ExtensionConfig] = None,
        analyzer: Optional[AudioAnalyzer] = None,
        session: Optional[requests.Session] = None,
        sleeper: waits.Sleeper = waits.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.session_store = session_store
        self.ext_config = ext_config or ExtensionConfig.for_provider(self.name)
        self.client = ResilientClient(
            self.base_url,
            config=client_config or ClientConfig(),
            session=session,
            sleeper=sleeper,
            refresher=self.refresh,
            check_body=self.check_body,
            headers=self.auth_headers,
            extra_busy_statuses=self.extra_busy_statuses,
            name=self.name,
        )
        self.policy = policy_for(self.name, self.ext_config, rng)
        self.engine = ExtensionEngine(
            self,
            self.policy,
            analyzer=analyzer,
            config=self.ext_config,
            sleeper=sleeper,
            clock=clock,
            name=self.name,
        )
        self._auth_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Generator
    # ------------------------------------------------------------------

    def start(self, cancel: Optional[threading.Event] = None) -> None:
        """Load the stored session cookie into the client and authenticate."""
        if self.needs_session:
            if self.session_store is None:
                raise ProviderError(f"{self.name}: no session store configured")
            raw = self.session_store.get_credential()
            if not raw:
                raise ProviderError(f"{self.name}: cookie is empty")
            n = load_cookies(self.client.session.cookies, raw, self.cookie_domain)
            log.info("%s: loaded %d cookie(s)", self.name, n)
        self.auth(cancel)

    def stop(self, cancel: Optional[threading.Event] = None) -> None:
        """Persist the (possibly refreshed) session cookie."""
        if self.needs_session and self.session_store is not None:
            raw = dump_cookies(self.client.session.cookies, self.cookie_domain)
            if raw:
                self.session_store.set_credential(raw)
        self.client.close()

    def generate(self, task: GenerationTask, cancel: Optional[threading.Event] = None) -> List[List[Song]]:
        self.auth(cancel)
        return self.engine.generate(task, cancel)

    # ------------------------------------------------------------------
    # session hooks
    # ------------------------------------------------------------------

    def auth(self, cancel: Optional[threading.Event] = None) -> None:
        return None

    def refresh(self, cancel: Optional[threading.Event] = None) -> None:
        self.auth(cancel)

    def auth_headers(self, url: str) -> Dict[str, str]:
        return {}

    def check_body(self, obj: Any) -> None:
        msg = body_message(obj)
        low = msg.lower()
        if any(m in low for m in _AUTH_MARKERS):
            raise AuthExpiredError(f"{self.name}: {msg}")

    # ------------------------------------------------------------------
    # engine backend
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def create(self, req: ExtendRequest, cancel: Optional[threading.Event]) -> List[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def fetch(self, ids: Sequence[str], cancel: Optional[threading.Event]) -> List[Fragment]:
        raise NotImplementedError

    @abc.abstractmethod
    def conclude(self, chain: ExtensionChain, cancel: Optional[threading.Event]) -> List[Song]:
        raise NotImplementedError


def drop_empty(d: Dict[str, Any], keys: Iterable[str]) -> Dict[str, Any]:
    """Remove `keys` whose value is falsy (JSON omitempty)."""
    for k in keys:
        if not d.get(k):
            d.pop(k, None)
    return d
