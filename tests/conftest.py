import json
import threading
from typing import Any, Dict, List, Optional

import pytest
import requests

from songforge.config import ClientConfig
from songforge.errors import Cancelled


def make_response(status: int = 200, body: Any = None, *, url: str = "https://api.test/x") -> requests.Response:
    r = requests.Response()
    r.status_code = status
    r.url = url
    if body is None:
        r._content = b""
    elif isinstance(body, (bytes, bytearray)):
        r._content = bytes(body)
    elif isinstance(body, str):
        r._content = body.encode("utf-8")
    else:
        r._content = json.dumps(body).encode("utf-8")
    return r


class FakeSession(requests.Session):
    """requests.Session whose request() replays a script of responses/exceptions."""

    def __init__(self, script: Optional[List[Any]] = None) -> None:
        super().__init__()
        self.script = list(script or [])
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, url, **kwargs):  # noqa: ANN001, ANN201
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.script:
            raise AssertionError(f"unexpected request: {method} {url}")
        item = self.script.pop(0)
        if callable(item) and not isinstance(item, requests.Response):
            item = item(method, url, kwargs)
        if isinstance(item, BaseException):
            raise item
        return item


class RecordingSleeper:
    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, cancel: Optional[threading.Event], seconds: float) -> None:
        if cancel is not None and cancel.is_set():
            raise Cancelled("cancelled")
        self.calls.append(seconds)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, s: float) -> None:
        self.now += s


@pytest.fixture
def sleeper() -> RecordingSleeper:
    return RecordingSleeper()


@pytest.fixture
def client_config(tmp_path) -> ClientConfig:
    return ClientConfig(wait=0.0, dump_dir=str(tmp_path / "dumps"))
