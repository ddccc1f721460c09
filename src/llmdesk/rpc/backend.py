"""Backend end of the RPC link: the function table plus state pushes."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict

from ..services.runtime import BackendServices
from .channel import RpcChannel
from .transport import MessagePort

LOGGER = logging.getLogger(__name__)

__all__ = ["BackendRpc"]


class BackendRpc:
    """Serves :class:`BackendServices` to one frontend over ``port``.

    The full state snapshot is pushed as ``update_state`` once when the link
    starts and again after every state change.
    """

    def __init__(self, services: BackendServices, port: MessagePort) -> None:
        self._services = services
        self._channel = RpcChannel(port, self._function_table(), name="backend")

    @property
    def channel(self) -> RpcChannel:
        return self._channel

    def start(self) -> None:
        self._channel.start()
        self._services.store.add_listener(self._push_state)
        self._push_state()
        LOGGER.info("Backend RPC started")

    async def close(self) -> None:
        self._services.store.remove_listener(self._push_state)
        await self._channel.close()

    async def wait_closed(self) -> None:
        await self._channel.wait_closed()
        self._services.store.remove_listener(self._push_state)

    def _push_state(self) -> None:
        if self._channel.closed:
            self._services.store.remove_listener(self._push_state)
            return
        self._channel.notify("update_state", self._services.store.get().to_dict())

    def _function_table(self) -> Dict[str, Callable[..., Any]]:
        services = self._services
        chat = services.chat
        catalog = services.catalog
        return {
            "get_state": lambda: services.store.get().to_dict(),
            "select_model_file_and_load": services.select_model_file_and_load,
            "set_draft_prompt": chat.set_draft_prompt,
            "prompt": chat.prompt,
            "stop_active_prompt": chat.stop_active_prompt,
            "reset_chat_history": lambda: chat.reset_chat_history(),
            "initialize_models": services.initialize_models,
            "scan_local_models": catalog.scan_local_models,
            "load_default_models": catalog.load_default_models,
            "search_remote_models": catalog.search_remote_models,
            "get_recommended_model": services.get_recommended_model,
            "download_and_load_model": services.download_and_load_model,
            "download_starter_model": services.download_starter_model,
            "load_model_from_local": services.load_model_from_local,
            "unload_model": services.unload_model,
            "delete_model": services.delete_model,
            "delete_multiple_models": services.delete_multiple_models,
            "load_prompts": services.load_prompts,
            "save_prompts": services.save_prompts,
        }
