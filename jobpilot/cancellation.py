"""Cooperative cancellation shared by ingestion, matching and outreach."""
from __future__ import annotations

import threading


class OperationCancelled(Exception):
    """Raised when a cancellation-aware wait is aborted."""


class CancelToken:
    """A single cancellation signal threaded through one pipeline call.

    Long-running loops poll ``cancelled`` between units of work; every delay
    goes through ``wait`` so an in-flight sleep returns as soon as ``cancel``
    is called instead of running to completion.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return True if cancelled meanwhile."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)

    def sleep(self, seconds: float) -> None:
        """Like ``wait`` but raises OperationCancelled when interrupted."""
        if self.wait(seconds):
            raise OperationCancelled(f"cancelled during {seconds:.1f}s wait")

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("operation cancelled")


def ensure_token(cancel: CancelToken | None) -> CancelToken:
    """Callers may omit the token; hand back a fresh one that never fires."""
    return cancel if cancel is not None else CancelToken()
