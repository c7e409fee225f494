"""
src/songforge/errors.py

Error taxonomy shared by the request pipeline, the extension engine and the
scheduler.

Hierarchy:
  ProviderError
    Cancelled
    RequestError
      TransportError      retried up to the attempt cap, no backoff
      ThrottleError       retried with the backoff table (alias ServerBusyError)
      AuthExpiredError    one session refresh, then retried
      ApplicationError    terminal
      DecodeError         terminal
    BatchError
      PartialBatchError   some polled fragments errored (logged, survivors used)
      TotalBatchError     every polled fragment errored (terminal for the chain)
    CircuitBreakerError   too many consecutive task failures
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence


class ProviderError(RuntimeError):
    """Raised when a provider cannot be constructed or fails generation."""


class Cancelled(ProviderError):
    """The run's cancel event fired while waiting."""


class RequestError(ProviderError):
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        method: str = "",
        url: str = "",
        attempt: int = 0,
        body: bytes = b"",
    ) -> None:
        super().__init__(message)
        self.status = status
        self.method = method
        self.url = url
        self.attempt = attempt
        self.body = body

    def snippet(self, n: int = 100) -> str:
        text = self.body.decode("utf-8", errors="replace").strip().replace("\n", " ")
        if len(text) > n:
            return text[:n] + "..."
        return text


class TransportError(RequestError):
    retryable = True


class ThrottleError(RequestError):
    retryable = True


ServerBusyError = ThrottleError


class AuthExpiredError(RequestError):
    retryable = True


class ApplicationError(RequestError):
    pass


class DecodeError(RequestError):
    pass


class BatchError(ProviderError):
    def __init__(self, message: str, *, failed: Sequence[Dict[str, Any]] = ()) -> None:
        super().__init__(message)
        self.failed = [dict(f) for f in failed]

    @property
    def failed_ids(self) -> list[str]:
        return [str(f.get("id") or "") for f in self.failed]


class PartialBatchError(BatchError):
    pass


class TotalBatchError(BatchError):
    pass


class CircuitBreakerError(ProviderError):
    def __init__(self, message: str, *, consecutive: int) -> None:
        super().__init__(message)
        self.consecutive = consecutive


__all__ = [
    "ApplicationError",
    "AuthExpiredError",
    "BatchError",
    "Cancelled",
    "CircuitBreakerError",
    "DecodeError",
    "PartialBatchError",
    "ProviderError",
    "RequestError",
    "ServerBusyError",
    "ThrottleError",
    "TotalBatchError",
    "TransportError",
]
