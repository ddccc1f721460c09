"""Composition root owning every backend service.

Nothing here is module-level: the desktop app and the headless server each
build one :class:`BackendServices` and hand it to the RPC layer.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol

from .. import __version__
from ..ai.engine import EngineFactory
from ..chat.session import ChatSessionEngine
from ..errors import ModelDownloadError
from ..state.llm_state import (
    ChatSessionState,
    DraftPrompt,
    LlmState,
    ModelDownloadState,
    RemoteModel,
    remote_model_from_dict,
)
from ..state.store import StateStore
from .catalog import STARTER_MODEL, CatalogSettings, ModelCatalog
from .downloads import ModelDownloader
from .lifecycle import ResourceLifecycleManager
from .locks import MODEL_DOWNLOAD_LOCK, NamedLocks
from .prompt_library import PromptItem, PromptLibrary
from .settings import Settings, SettingsStore

LOGGER = logging.getLogger(__name__)

__all__ = ["BackendServices", "FilePicker", "default_engine_factory"]


class FilePicker(Protocol):
    async def pick_model_file(self, initial_dir: Path) -> Path | None:
        """Ask the user for a model file; ``None`` when cancelled."""


def default_engine_factory(settings: Settings) -> EngineFactory:
    """Engine factory backed by llama-cpp-python and the given settings."""

    from ..ai.llama_cpp_engine import LlamaOptions, create_llama_engine

    options = LlamaOptions(
        context_size=settings.context_size,
        gpu_layers=settings.gpu_layers,
        threads=settings.threads,
        temperature=settings.temperature,
        top_p=settings.top_p,
        max_response_tokens=settings.max_response_tokens,
        completion_max_tokens=settings.completion_max_tokens,
    )

    async def _factory():
        return await create_llama_engine(options)

    return _factory


class BackendServices:
    """Everything the backend function table delegates to."""

    def __init__(
        self,
        settings: Settings,
        *,
        settings_store: SettingsStore | None = None,
        engine_factory: EngineFactory | None = None,
        catalog: ModelCatalog | None = None,
        downloader: ModelDownloader | None = None,
        prompts: PromptLibrary | None = None,
        file_picker: FilePicker | None = None,
        app_version: str | None = __version__,
    ) -> None:
        self._settings = settings
        self._settings_store = settings_store
        self.store: StateStore[LlmState] = StateStore(LlmState(app_version=app_version))
        self.locks = NamedLocks()
        self.lifecycle = ResourceLifecycleManager(
            self.store,
            engine_factory or default_engine_factory(settings),
            locks=self.locks,
        )
        self.chat = ChatSessionEngine(
            self.store,
            self.lifecycle,
            locks=self.locks,
            system_prompt=settings.system_prompt or None,
        )
        self.catalog = catalog or ModelCatalog(
            self.store,
            CatalogSettings(
                models_dir=settings.models_path,
                base_url=settings.huggingface_base_url,
                token=settings.huggingface_token,
                request_timeout=settings.request_timeout,
                max_retries=settings.max_retries,
                retry_min_seconds=settings.retry_min_seconds,
                retry_max_seconds=settings.retry_max_seconds,
            ),
        )
        self.downloader = downloader or ModelDownloader(
            self.store,
            token=settings.huggingface_token,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
        )
        self.prompts = prompts or PromptLibrary(settings.data_path)
        self.file_picker = file_picker

    @property
    def settings(self) -> Settings:
        return self._settings

    # ------------------------------------------------------------------
    # Model loading
    # ------------------------------------------------------------------
    async def load_model_from_path(self, path: str | Path) -> None:
        """Run the whole cascade for ``path``, stopping at the first failed stage."""

        model_path = str(path)
        state = self.store.get()
        self.store.set(
            replace(
                state,
                selected_model_file_path=model_path,
                chat_session=ChatSessionState(
                    draft_prompt=DraftPrompt(prompt=state.chat_session.draft_prompt.prompt)
                ),
            )
        )

        if not self.store.get().engine.loaded:
            await self.lifecycle.load_engine()
            if not self.store.get().engine.loaded:
                return
        await self.lifecycle.load_model(model_path)
        if not self.store.get().model.loaded:
            return
        await self.lifecycle.create_context()
        if not self.store.get().context.loaded:
            return
        await self.lifecycle.create_context_sequence()
        if not self.store.get().context_sequence.loaded:
            return
        await self.chat.create_chat_session()
        if self.store.get().chat_session.loaded:
            self._remember_model(model_path)

    async def load_model_from_local(self, filename: str) -> None:
        await self.load_model_from_path(self.catalog.resolve_local_path(filename))

    async def select_model_file_and_load(self) -> None:
        if self.file_picker is None:
            LOGGER.warning("No file picker available in this process")
            return
        models_dir = self.catalog.models_dir
        models_dir.mkdir(parents=True, exist_ok=True)
        selected = await self.file_picker.pick_model_file(models_dir)
        if selected is None:
            LOGGER.debug("Model file selection cancelled")
            return
        await self.load_model_from_path(selected)

    async def unload_model(self) -> None:
        await self.lifecycle.unload_model()

    def _remember_model(self, path: str) -> None:
        if self._settings.last_used_model_path == path:
            return
        if self._settings_store is not None:
            self._settings = self._settings_store.update(self._settings, last_used_model_path=path)
        else:
            self._settings = replace(self._settings, last_used_model_path=path)

    # ------------------------------------------------------------------
    # Catalog and downloads
    # ------------------------------------------------------------------
    async def initialize_models(self) -> None:
        await self.catalog.scan_local_models()
        await self.catalog.load_default_models()

    def get_recommended_model(self) -> dict[str, Any]:
        return self.catalog.get_recommended_model(self._settings.last_used_model_path)

    async def download_and_load_model(
        self, model: RemoteModel | Mapping[str, Any], file_index: int = 0
    ) -> None:
        remote = model if isinstance(model, RemoteModel) else remote_model_from_dict(model)
        if not remote.files or not 0 <= file_index < len(remote.files):
            LOGGER.warning("Model %s has no file at index %s", remote.id, file_index)
            return

        file = remote.files[file_index]
        filename = Path(file.filename).name
        if self.catalog.resolve_local_path(filename).exists():
            LOGGER.info("%s is already downloaded", filename)
            await self.load_model_from_local(filename)
            return

        async with self.locks.hold(MODEL_DOWNLOAD_LOCK):
            try:
                await self.downloader.download(file, self.catalog.models_dir)
            except ModelDownloadError as exc:
                self.store.update(
                    lambda state: replace(
                        state,
                        model_download=ModelDownloadState(downloading=False, name=filename, error=str(exc)),
                    )
                )
                return
        await self.load_model_from_local(filename)
        await self.catalog.scan_local_models()

    async def download_starter_model(self) -> None:
        await self.download_and_load_model(STARTER_MODEL)

    async def delete_model(self, filename: str) -> bool:
        return await self.catalog.delete_model(filename, unload=self.unload_model)

    async def delete_multiple_models(self, filenames: Iterable[str]) -> dict[str, list[str]]:
        return await self.catalog.delete_multiple_models(filenames, unload=self.unload_model)

    # ------------------------------------------------------------------
    # Prompt library
    # ------------------------------------------------------------------
    def load_prompts(self) -> list[PromptItem]:
        return self.prompts.load()

    def save_prompts(self, prompts: Iterable[PromptItem | Mapping[str, Any]]) -> None:
        self.prompts.save(prompts)

    async def aclose(self) -> None:
        try:
            await self.lifecycle.unload_model()
        finally:
            engine = self.lifecycle.engine
            if engine is not None:
                engine.dispose()
            await self.catalog.aclose()
            await self.downloader.aclose()
