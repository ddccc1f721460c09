"""Symmetric request/response and event channel over a :class:`MessagePort`.

Either side can expose functions and call the other side's functions. Frames
are JSON objects::

    {"frame_type": "rpc", "type": "request", "id": ..., "endpoint": ..., "args": [...]}
    {"frame_type": "rpc", "type": "response", "id": ..., "endpoint": ..., "ok": true, "result": ...}
    {"frame_type": "rpc", "type": "response", "id": ..., "endpoint": ..., "ok": false,
     "error": {"type": ..., "detail": ...}}
    {"frame_type": "event", "event": ..., "payload": [...]}

Requests are handled concurrently, each in its own task, so a long running
call never delays a later one. Events carry no id, get no reply and are
dispatched in arrival order.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from ..errors import RpcError, TransportClosedError, TransportUnavailableError
from .transport import MessagePort

LOGGER = logging.getLogger(__name__)

__all__ = ["RpcChannel", "to_wire"]

Handler = Callable[..., Any]

# High-frequency events that are not logged per delivery.
_QUIET_EVENTS = frozenset({"update_state"})


def to_wire(value: Any) -> Any:
    """Convert dataclasses, tuples and paths into JSON-compatible values."""

    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_wire(to_dict())
    if is_dataclass(value) and not isinstance(value, type):
        return to_wire(asdict(value))
    if isinstance(value, Mapping):
        return {str(key): to_wire(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_wire(item) for item in value]
    if isinstance(value, Path):
        return str(value)
    return value


class RpcChannel:
    """One end of a bidirectional RPC link."""

    def __init__(
        self,
        port: MessagePort,
        functions: Mapping[str, Handler] | None = None,
        *,
        name: str = "rpc",
    ) -> None:
        self._port = port
        self._functions: Dict[str, Handler] = dict(functions or {})
        self._name = name
        self._pending: Dict[str, asyncio.Future[Dict[str, Any]]] = {}
        self._request_tasks: set[asyncio.Task[None]] = set()
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = False
        self._closed_event = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    def register(self, name: str, handler: Handler) -> None:
        self._functions[name] = handler

    def start(self) -> None:
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._reader(), name=f"{self._name}-reader")

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------
    async def call(self, endpoint: str, *args: Any, timeout: float | None = None) -> Any:
        """Invoke ``endpoint`` on the peer and return its result.

        Raises :class:`RpcError` when the remote handler fails and
        :class:`TransportClosedError` when the link drops first.
        """

        if self._closed:
            raise TransportClosedError(f"{self._name}: channel is closed")
        req_id = str(uuid.uuid4())
        body = json.dumps(
            {
                "frame_type": "rpc",
                "type": "request",
                "id": req_id,
                "endpoint": endpoint,
                "args": to_wire(list(args)),
            }
        )
        future: asyncio.Future[Dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        try:
            self._post(body)
            if timeout is None:
                message = await future
            else:
                message = await asyncio.wait_for(future, timeout)
        finally:
            self._pending.pop(req_id, None)

        if not message.get("ok"):
            error = message.get("error") or {}
            raise RpcError(
                endpoint,
                str(error.get("type", "Error")),
                str(error.get("detail", "Unknown error")),
            )
        return message.get("result")

    def notify(self, event: str, *args: Any) -> None:
        """Fire-and-forget event; dropped silently once the channel is closed."""

        if self._closed:
            return
        body = json.dumps({"frame_type": "event", "event": event, "payload": to_wire(list(args))})
        try:
            self._post(body)
        except TransportClosedError:
            LOGGER.debug("%s: dropped event %s on closed port", self._name, event)

    def _post(self, body: str) -> None:
        try:
            self._port.post(body)
        except TransportUnavailableError as exc:
            raise TransportClosedError(f"{self._name}: {exc}") from exc

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------
    async def _reader(self) -> None:
        try:
            while True:
                raw = await self._port.receive()
                if raw is None:
                    LOGGER.info("%s: peer closed the connection", self._name)
                    break
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    LOGGER.warning("%s: dropping malformed frame", self._name)
                    continue
                if not isinstance(message, dict):
                    continue
                frame_type = message.get("frame_type")
                if frame_type == "event":
                    await self._dispatch_event(message)
                elif frame_type == "rpc" and message.get("type") == "request":
                    task = asyncio.create_task(self._handle_request(message))
                    self._request_tasks.add(task)
                    task.add_done_callback(self._request_tasks.discard)
                elif frame_type == "rpc":
                    future = self._pending.get(str(message.get("id")))
                    if future is not None and not future.done():
                        future.set_result(message)
        except asyncio.CancelledError:
            pass
        finally:
            self._mark_closed()

    async def _dispatch_event(self, message: Mapping[str, Any]) -> None:
        event = str(message.get("event"))
        handler = self._functions.get(event)
        if handler is None:
            LOGGER.debug("%s: no handler for event %s", self._name, event)
            return
        if event not in _QUIET_EVENTS:
            LOGGER.debug("%s: event %s", self._name, event)
        try:
            result = handler(*(message.get("payload") or ()))
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.exception("%s: event handler %s failed", self._name, event)

    async def _handle_request(self, message: Mapping[str, Any]) -> None:
        req_id = message.get("id")
        endpoint = str(message.get("endpoint"))
        handler = self._functions.get(endpoint)
        response: Dict[str, Any] = {
            "frame_type": "rpc",
            "type": "response",
            "id": req_id,
            "endpoint": endpoint,
        }
        if handler is None:
            response.update(ok=False, error={"type": "LookupError", "detail": f"Unknown method {endpoint}"})
        else:
            try:
                result = handler(*(message.get("args") or ()))
                if inspect.isawaitable(result):
                    result = await result
                response.update(ok=True, result=to_wire(result))
            except Exception as exc:
                LOGGER.warning("%s: %s failed: %s", self._name, endpoint, exc)
                response.update(ok=False, error={"type": type(exc).__name__, "detail": str(exc)})
        try:
            self._port.post(json.dumps(response))
        except TransportUnavailableError:
            LOGGER.debug("%s: could not answer %s; port closed", self._name, endpoint)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------
    async def close(self) -> None:
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)
        tasks = list(self._request_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._port.close()
        self._mark_closed()

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportClosedError(f"{self._name}: connection lost"))
        self._pending.clear()
        self._closed_event.set()
