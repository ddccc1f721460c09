"""Message ports carrying serialized frames between backend and frontend.

A port moves opaque text frames in order. ``post`` never blocks; ``receive``
returns ``None`` once the peer has gone away.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from ..errors import TransportUnavailableError

LOGGER = logging.getLogger(__name__)

__all__ = ["MemoryPort", "MessagePort", "StreamPort", "open_tcp_port"]

_CLOSED = None


class MessagePort(Protocol):
    def post(self, frame: str) -> None: ...

    async def receive(self) -> str | None: ...

    def close(self) -> None: ...

    @property
    def closed(self) -> bool: ...


class MemoryPort:
    """In-process port; create connected ends with :meth:`pair`."""

    def __init__(self, inbox: asyncio.Queue[str | None], outbox: asyncio.Queue[str | None]) -> None:
        self._inbox = inbox
        self._outbox = outbox
        self._closed = False

    @classmethod
    def pair(cls) -> tuple[MemoryPort, MemoryPort]:
        left: asyncio.Queue[str | None] = asyncio.Queue()
        right: asyncio.Queue[str | None] = asyncio.Queue()
        return cls(left, right), cls(right, left)

    @property
    def closed(self) -> bool:
        return self._closed

    def post(self, frame: str) -> None:
        if self._closed:
            raise TransportUnavailableError("Port is closed")
        self._outbox.put_nowait(frame)

    async def receive(self) -> str | None:
        if self._closed:
            return None
        frame = await self._inbox.get()
        if frame is _CLOSED:
            self._closed = True
        return frame

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._outbox.put_nowait(_CLOSED)
        self._inbox.put_nowait(_CLOSED)


class StreamPort:
    """Newline-delimited frames over an asyncio stream pair.

    ``post`` writes synchronously and schedules a single background
    ``drain`` so the transport's flow control is honoured; :meth:`drain`
    waits for it.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._closed = False
        self._drain_task: asyncio.Task[None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def post(self, frame: str) -> None:
        if self._closed or self._writer.is_closing():
            raise TransportUnavailableError("Stream is closed")
        if "\n" in frame:
            raise ValueError("Frames must not contain raw newlines")
        self._writer.write(frame.encode("utf-8") + b"\n")
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._flush())

    async def drain(self) -> None:
        """Wait until everything posted so far has been handed to the transport."""

        task = self._drain_task
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def _flush(self) -> None:
        try:
            await self._writer.drain()
        except ConnectionError as exc:
            LOGGER.info("Stream closed while flushing: %s", exc)

    async def receive(self) -> str | None:
        if self._closed:
            return None
        try:
            line = await self._reader.readline()
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            LOGGER.info("Stream closed by peer: %s", exc)
            line = b""
        if not line:
            self._closed = True
            return None
        return line.decode("utf-8").rstrip("\n")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
        self._writer.close()


async def open_tcp_port(host: str, port: int) -> StreamPort:
    """Connect to a backend listening on ``host:port``."""

    try:
        reader, writer = await asyncio.open_connection(host, port)
    except OSError as exc:
        raise TransportUnavailableError(f"Backend at {host}:{port} is unreachable: {exc}") from exc
    return StreamPort(reader, writer)
