"""Caller-supplied cancellation signal shared by every external call of a run."""

from __future__ import annotations

import threading

from core.errors import PipelineCancelled


class CancellationToken:
    """Thread-safe cancellation flag.

    The caller keeps a reference and calls `cancel()`; pipeline code calls
    `raise_if_cancelled()` at stage boundaries and around external calls.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str | None = None) -> None:
        if self._event.is_set():
            raise PipelineCancelled(stage)


def ensure_token(cancel: CancellationToken | None) -> CancellationToken:
    return cancel if cancel is not None else CancellationToken()
