from __future__ import annotations

import threading
from typing import Callable, List, Optional


class CancelToken:
    """
    Cooperative cancellation signal threaded through scheduler and executors.

    Child tokens are cancelled with their parent, but cancelling a child
    leaves the parent untouched (fail-fast cancels in-flight steps without
    cancelling the run).
    """

    def __init__(self, parent: Optional["CancelToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: str | None = None
        if parent is not None:
            parent.add_callback(lambda: self.cancel(parent.reason))

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb()

    def add_callback(self, cb: Callable[[], None]) -> None:
        """Run ``cb`` on cancellation (immediately if already cancelled)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)
                return
        cb()

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)
