"""Cooperative cancellation shared by every job of a run."""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from shotmatrix.errors import JobCancelledError

LOGGER = logging.getLogger("shotmatrix.cancellation")


class CancellationToken:
    """
    One-shot stop flag backed by ``threading.Event``.

    Long waits go through ``wait()`` so a tripped token wakes sleepers
    immediately instead of after the full delay.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancellation requested") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
        LOGGER.info("Cancellation requested: %s", reason)
        for callback in callbacks:
            try:
                callback()
            except Exception:
                LOGGER.exception("Cancellation callback failed")

    def on_cancel(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True when cancelled meanwhile."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)

    def raise_if_cancelled(self, job_id: str) -> None:
        if self._event.is_set():
            raise JobCancelledError(job_id)
