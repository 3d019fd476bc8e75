"""
auth/cancel.py -- Caller-supplied cancellation / deadline signal.

Store calls accept an optional CancelToken. A request handler that gives up
(client disconnected, deadline passed) cancels the token and any store call
still waiting for a lock or about to commit short-circuits with
OperationCancelledError instead of completing.

Usage:
    cancel = CancelToken(timeout=2.0)
    store.get_by_token(raw, cancel=cancel)
    ...
    cancel.cancel()  # from another thread
"""

from __future__ import annotations

import threading
import time
from typing import Optional

from core.errors import OperationCancelledError


class CancelToken:
    def __init__(self, timeout: Optional[float] = None) -> None:
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self) -> None:
        """Raise OperationCancelledError if the token was cancelled or its deadline passed."""
        if self._event.is_set():
            raise OperationCancelledError("operation cancelled")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise OperationCancelledError("operation deadline exceeded")


def check(cancel: Optional[CancelToken]) -> None:
    if cancel is not None:
        cancel.check()
