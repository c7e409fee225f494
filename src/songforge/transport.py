"""
src/songforge/transport.py

Resilient JSON-over-HTTP client used by every provider.

One ResilientClient owns one requests.Session and one RateLimiter lane.
Each call is retried according to how it failed:

  - connection failure / timeout  -> TransportError, retried right away
  - busy statuses (429, 502, ...) -> ThrottleError, retried after backoff[k-1]
  - 401 or an "unauthorized" body -> AuthExpiredError, session refreshed once
  - any other non-2xx             -> ApplicationError, not retried
  - undecodable body              -> DecodeError, not retried

All outcomes count against ClientConfig.max_attempts. Failing payloads are
dumped to ClientConfig.dump_dir for postmortem.
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple

import requests

from songforge import waits
from songforge.config import ClientConfig
from songforge.errors import (
    ApplicationError,
    AuthExpiredError,
    DecodeError,
    ProviderError,
    RequestError,
    ThrottleError,
    TransportError,
)
from songforge.ratelimit import RateLimiter

log = logging.getLogger(__name__)

# (cancel) -> None. Re-authenticates the session in place.
Refresher = Callable[[Optional[threading.Event]], None]
# (decoded body) -> None. Raises AuthExpiredError/ApplicationError for error payloads sent with 2xx.
BodyCheck = Callable[[Any], None]

_TRANSIENT = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    requests.exceptions.ChunkedEncodingError,
)

_dump_seq = itertools.count(1)
_dump_lock = threading.Lock()


def backoff_delay(table: Sequence[float], throttles: int) -> float:
    """
    Delay before retrying after the k-th throttled outcome of a call.

    The index saturates at the last entry: backoff_delay((30, 60, 120), 7) == 120.
    """
    if throttles < 1:
        raise ValueError("throttles must be >= 1")
    if not table:
        raise ValueError("backoff table must not be empty")
    return float(table[min(throttles - 1, len(table) - 1)])


def _truncate(text: str, n: int = 100) -> str:
    text = (text or "").replace("\n", " ")
    if len(text) > n:
        return text[:n] + "..."
    return text


def dump_payload(dump_dir: str, body: bytes) -> Optional[Path]:
    if not dump_dir:
        return None
    with _dump_lock:
        n = next(_dump_seq)
    ts = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    out = Path(dump_dir) / f"debug_{ts}_{n}.json"
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_bytes(body or b"")
    except OSError as e:
        log.warning("transport: could not write debug dump %s: %s", out, e)
        return None
    return out


class ResilientClient:
    def __init__(
        self,
        base_url: str,
        *,
        config: Optional[ClientConfig] = None,
        session: Optional[requests.Session] = None,
        limiter: Optional[RateLimiter] = None,
        sleeper: waits.Sleeper = waits.sleep,
        refresher: Optional[Refresher] = None,
        check_body: Optional[BodyCheck] = None,
        headers: Optional[Callable[[str], Dict[str, str]]] = None,
        extra_busy_statuses: Iterable[int] = (),
        name: str = "http",
    ) -> None:
        self.base_url = (base_url or "").strip().rstrip("/")
        self.config = config or ClientConfig()
        self.session = session if session is not None else requests.Session()
        self.limiter = limiter if limiter is not None else RateLimiter(self.config.wait)
        self.sleeper = sleeper
        self.refresher = refresher
        self.check_body = check_body
        self.headers = headers
        self.busy = frozenset(self.config.busy_statuses) | frozenset(extra_busy_statuses)
        self.name = name

        if self.config.user_agent:
            self.session.headers["User-Agent"] = self.config.user_agent
        if self.config.proxy:
            self.session.proxies.update({"http": self.config.proxy, "https": self.config.proxy})

    # ------------------------------------------------------------------
    # public
    # ------------------------------------------------------------------

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def do(
        self,
        method: str,
        path: str,
        payload: Any = None,
        *,
        cancel: Optional[threading.Event] = None,
        raw: bool = False,
        refresh: bool = True,
        headers: Optional[Dict[str, str]] = None,
        form: bool = False,
    ) -> Any:
        """
        Perform one logical call, retrying per failure class.

        Returns the decoded JSON body (None for an empty body), or the raw bytes
        when raw=True. refresh=False disables the session-refresh path, which
        authentication calls use so that a 401 during refresh is terminal.
        """
        method = method.upper()
        url = self.url(path)
        max_attempts = self.config.max_attempts
        throttles = 0
        refreshed = False
        last_err: Optional[RequestError] = None

        for attempt in range(1, max_attempts + 1):
            waits.check(cancel)
            try:
                return self._attempt(method, url, payload, attempt, cancel, raw, headers, form)
            except TransportError as e:
                last_err = e
                log.warning("%s: %s %s attempt %d/%d: %s", self.name, method, url, attempt, max_attempts, e)
            except ThrottleError as e:
                last_err = e
                throttles += 1
                if attempt >= max_attempts:
                    break
                delay = backoff_delay(self.config.backoff, throttles)
                log.warning(
                    "%s: %s %s busy (status=%s), waiting %.0fs (attempt %d/%d)",
                    self.name, method, url, e.status, delay, attempt, max_attempts,
                )
                self.sleeper(cancel, delay)
            except AuthExpiredError as e:
                last_err = e
                if not refresh or self.refresher is None or refreshed or attempt >= max_attempts:
                    raise
                refreshed = True
                log.info("%s: session expired on %s %s, refreshing", self.name, method, url)
                self._refresh(cancel, e)

        if last_err is None:
            raise TransportError(
                f"{method} {url}: no attempts allowed (max_attempts={max_attempts})", method=method, url=url
            )
        raise last_err

    def get(self, path: str, **kw: Any) -> Any:
        return self.do("GET", path, **kw)

    def post(self, path: str, payload: Any = None, **kw: Any) -> Any:
        return self.do("POST", path, payload, **kw)

    def close(self) -> None:
        self.session.close()

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _refresh(self, cancel: Optional[threading.Event], cause: AuthExpiredError) -> None:
        refresher = self.refresher
        if refresher is None:
            raise cause
        try:
            refresher(cancel)
        except ProviderError:
            raise
        except Exception as e:
            raise AuthExpiredError(
                f"session refresh failed: {e}",
                status=cause.status,
                method=cause.method,
                url=cause.url,
                attempt=cause.attempt,
            ) from e

    def _timeout(self) -> Tuple[float, float]:
        return (float(self.config.connect_timeout), float(self.config.timeout))

    def _attempt(
        self,
        method: str,
        url: str,
        payload: Any,
        attempt: int,
        cancel: Optional[threading.Event],
        raw: bool,
        headers: Optional[Dict[str, str]],
        form: bool,
    ) -> Any:
        hdrs: Dict[str, str] = {}
        if self.headers is not None:
            hdrs.update(self.headers(url))
        if headers:
            hdrs.update(headers)

        kwargs: Dict[str, Any] = {"headers": hdrs, "timeout": self._timeout()}
        if payload is not None:
            if form:
                kwargs["data"] = payload
            else:
                kwargs["json"] = payload
            if log.isEnabledFor(logging.DEBUG):
                log.debug("%s: %s %s body=%s", self.name, method, url, _truncate(json.dumps(payload, default=str)))

        with self.limiter.hold(cancel):
            try:
                resp = self.session.request(method, url, **kwargs)
            except _TRANSIENT as e:
                raise TransportError(
                    f"{method} {url}: {e}", method=method, url=url, attempt=attempt
                ) from e
            except requests.exceptions.RequestException as e:
                # bad URL, redirect loop, undecodable content: retrying cannot help
                raise ApplicationError(
                    f"{method} {url}: {e}", method=method, url=url, attempt=attempt
                ) from e

        body = resp.content or b""
        status = int(resp.status_code)
        ctx = dict(status=status, method=method, url=url, attempt=attempt, body=body)

        if status < 200 or status >= 300:
            dump = dump_payload(self.config.dump_dir, body)
            snippet = _truncate(body.decode("utf-8", errors="replace"))
            msg = f"{method} {url}: status {status}: {snippet}"
            if dump is not None:
                msg += f" (dump: {dump})"
            if status in self.busy:
                raise ThrottleError(msg, **ctx)
            if status == 401:
                raise AuthExpiredError(msg, **ctx)
            raise ApplicationError(msg, **ctx)

        if raw:
            return body

        if log.isEnabledFor(logging.DEBUG):
            log.debug("%s: %s %s -> %d %s", self.name, method, url, status, _truncate(body.decode("utf-8", errors="replace")))

        if not body.strip():
            return None
        try:
            obj = json.loads(body)
        except ValueError as e:
            dump = dump_payload(self.config.dump_dir, body)
            raise DecodeError(
                f"{method} {url}: undecodable body ({e}); dump: {dump}", **ctx
            ) from e

        if self.check_body is not None:
            try:
                self.check_body(obj)
            except RequestError as e:
                # Fill request context the body checker cannot know.
                e.status = e.status if e.status is not None else status
                e.method = e.method or method
                e.url = e.url or url
                e.attempt = e.attempt or attempt
                e.body = e.body or body
                raise
        return obj
