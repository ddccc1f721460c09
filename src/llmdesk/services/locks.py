"""Named async mutexes serializing operations per backend resource."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

LOGGER = logging.getLogger(__name__)

__all__ = [
    "CHAT_SESSION_LOCK",
    "CONTEXT_LOCK",
    "CONTEXT_SEQUENCE_LOCK",
    "ENGINE_LOCK",
    "MODEL_DOWNLOAD_LOCK",
    "MODEL_LOCK",
    "NamedLocks",
]

ENGINE_LOCK = "engine"
MODEL_LOCK = "model"
CONTEXT_LOCK = "context"
CONTEXT_SEQUENCE_LOCK = "contextSequence"
CHAT_SESSION_LOCK = "chatSession"
MODEL_DOWNLOAD_LOCK = "modelDownload"


class NamedLocks:
    """Lazily created ``asyncio.Lock`` per name.

    Waiters on the same name are served in FIFO order. Locks with different
    names are independent; callers that need two of them must acquire them in
    a fixed order themselves.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    def locked(self, name: str) -> bool:
        lock = self._locks.get(name)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[None]:
        """Hold the mutex called ``name`` for the duration of the block."""

        lock = self._get_lock(name)
        LOGGER.debug("Acquiring lock %s", name)
        async with lock:
            LOGGER.debug("Lock acquired: %s", name)
            try:
                yield
            finally:
                LOGGER.debug("Lock released: %s", name)
