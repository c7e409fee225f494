from __future__ import annotations

import threading
from typing import Callable, Optional

from songforge.errors import Cancelled

# Signature shared by every component that needs to pause: (cancel, seconds).
Sleeper = Callable[[Optional[threading.Event], float], None]


def sleep(cancel: Optional[threading.Event], seconds: float) -> None:
    """
    Wait `seconds`, waking up as soon as `cancel` is set.

    Raises Cancelled if the event is (or becomes) set.
    """
    if cancel is None:
        cancel = threading.Event()
    if cancel.is_set():
        raise Cancelled("cancelled")
    if seconds <= 0:
        return
    if cancel.wait(seconds):
        raise Cancelled("cancelled")


def check(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise Cancelled("cancelled")
