"""Frontend end of the RPC link and the read-only state mirror."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from ..errors import TransportUnavailableError
from ..state.llm_state import LlmState
from ..state.store import StateStore
from .channel import RpcChannel
from .transport import MessagePort

LOGGER = logging.getLogger(__name__)

__all__ = ["FrontendRpc", "FrontendStateMirror"]


class FrontendStateMirror:
    """Holds the last snapshot pushed by the backend; never mutated locally."""

    def __init__(self) -> None:
        self.store: StateStore[LlmState] = StateStore(LlmState())
        self._updates = 0

    @property
    def state(self) -> LlmState:
        return self.store.get()

    @property
    def update_count(self) -> int:
        return self._updates

    def update_state(self, snapshot: Mapping[str, Any]) -> None:
        self._updates += 1
        self.store.set(LlmState.from_dict(snapshot))


class FrontendRpc:
    """Client for the backend function table.

    Raises :class:`TransportUnavailableError` immediately when no port is
    available; there is no retry.
    """

    def __init__(self, port: MessagePort | None, mirror: FrontendStateMirror | None = None) -> None:
        if port is None:
            raise TransportUnavailableError("No transport to the backend is available")
        self.mirror = mirror or FrontendStateMirror()
        self._channel = RpcChannel(port, {"update_state": self.mirror.update_state}, name="frontend")

    @property
    def channel(self) -> RpcChannel:
        return self._channel

    async def start(self) -> LlmState:
        """Start listening and fetch the initial snapshot."""

        self._channel.start()
        seen = self.mirror.update_count
        snapshot = await self.get_state()
        if self.mirror.update_count == seen:
            self.mirror.update_state(snapshot)
        return self.mirror.state

    async def close(self) -> None:
        await self._channel.close()

    async def get_state(self) -> dict[str, Any]:
        return await self._channel.call("get_state")

    async def select_model_file_and_load(self) -> None:
        await self._channel.call("select_model_file_and_load")

    async def set_draft_prompt(self, text: str) -> None:
        await self._channel.call("set_draft_prompt", text)

    async def prompt(self, message: str) -> None:
        await self._channel.call("prompt", message)

    async def stop_active_prompt(self) -> None:
        await self._channel.call("stop_active_prompt")

    async def reset_chat_history(self) -> None:
        await self._channel.call("reset_chat_history")

    async def initialize_models(self) -> None:
        await self._channel.call("initialize_models")

    async def scan_local_models(self) -> list[dict[str, Any]]:
        return await self._channel.call("scan_local_models")

    async def load_default_models(self) -> list[dict[str, Any]]:
        return await self._channel.call("load_default_models")

    async def search_remote_models(self, query: str) -> list[dict[str, Any]]:
        return await self._channel.call("search_remote_models", query)

    async def get_recommended_model(self) -> dict[str, Any]:
        return await self._channel.call("get_recommended_model")

    async def download_and_load_model(self, model: Mapping[str, Any], file_index: int = 0) -> None:
        await self._channel.call("download_and_load_model", model, file_index)

    async def download_starter_model(self) -> None:
        await self._channel.call("download_starter_model")

    async def load_model_from_local(self, filename: str) -> None:
        await self._channel.call("load_model_from_local", filename)

    async def unload_model(self) -> None:
        await self._channel.call("unload_model")

    async def delete_model(self, filename: str) -> bool:
        return bool(await self._channel.call("delete_model", filename))

    async def delete_multiple_models(self, filenames: Iterable[str]) -> dict[str, list[str]]:
        return await self._channel.call("delete_multiple_models", list(filenames))

    async def load_prompts(self) -> list[dict[str, str]]:
        return await self._channel.call("load_prompts")

    async def save_prompts(self, prompts: Iterable[Mapping[str, str]]) -> None:
        await self._channel.call("save_prompts", list(prompts))
