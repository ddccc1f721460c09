"""Cooperative cancellation for in-flight generations."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from ..errors import GenerationAbortedError

LOGGER = logging.getLogger(__name__)

__all__ = ["CancellationToken"]


class CancellationToken:
    """One-shot cancellation signal carrying the exception that describes it.

    ``cancel`` may be called from any thread and is idempotent. The ``reason``
    is the exact exception instance a generation raises when it stops because
    of this token, so callers can tell their own abort apart from a genuine
    failure by identity.
    """

    __slots__ = ("_event", "_reason", "_callbacks", "_lock")

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: BaseException | None = None
        self._callbacks: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> BaseException | None:
        return self._reason

    def cancel(self, reason: BaseException | None = None) -> bool:
        """Signal cancellation; returns ``False`` when already cancelled."""

        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason or GenerationAbortedError("Generation aborted")
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                LOGGER.exception("Cancellation callback failed")
        return True

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation, immediately if already cancelled."""

        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set() and self._reason is not None:
            raise self._reason
