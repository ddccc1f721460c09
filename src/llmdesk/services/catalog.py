"""Local model discovery, remote catalog queries and model recommendations."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..state.llm_state import LlmState, LocalModel, RemoteModel, RemoteModelFile
from ..state.store import StateStore

LOGGER = logging.getLogger(__name__)

__all__ = [
    "CatalogSettings",
    "ModelCatalog",
    "STARTER_MODEL",
    "prettify_model_name",
]

MODEL_EXTENSION = ".gguf"
_DEFAULT_LIMIT = 10
_FILES_PER_MODEL = 3
_QUANT_PRIORITY: tuple[str, ...] = ("q4_k_m", "q4_0", "q5_k_m", "q8_0")

STARTER_MODEL = RemoteModel(
    id="HuggingFaceTB/SmolLM2-1.7B-Instruct-GGUF",
    name="SmolLM2 1.7B Instruct",
    author="HuggingFaceTB",
    tags=("chat", "instruct", "small"),
    description="State-of-the-art compact LLM for on-device applications",
    url="https://huggingface.co/HuggingFaceTB/SmolLM2-1.7B-Instruct-GGUF",
    size=1_060_000_000,
    files=(
        RemoteModelFile(
            filename="smollm2-1.7b-instruct-q4_k_m.gguf",
            size=1_060_000_000,
            download_url=(
                "https://huggingface.co/HuggingFaceTB/SmolLM2-1.7B-Instruct-GGUF"
                "/resolve/main/smollm2-1.7b-instruct-q4_k_m.gguf"
            ),
        ),
    ),
)

_EXTENSION_RE = re.compile(r"\.(gguf|bin)$", re.IGNORECASE)
_HF_PREFIX_RE = re.compile(r"^hf[_-]?", re.IGNORECASE)
_QUANT_RE = re.compile(r"(?<![A-Za-z0-9])(I?Q\d+(?:_[A-Za-z0-9]+)*)(?![A-Za-z0-9])", re.IGNORECASE)
_SIZE_RE = re.compile(r"\b(\d+(?:\.\d+)?)\s*B\b", re.IGNORECASE)


def prettify_model_name(filename: str) -> str:
    """Turn a model file name into a display name such as ``Llama 2 Chat 7B (Q4_K_M)``."""

    stem = _HF_PREFIX_RE.sub("", _EXTENSION_RE.sub("", filename))

    quant = ""
    quant_match = _QUANT_RE.search(stem)
    if quant_match:
        quant = quant_match.group(1).upper()
        stem = stem[: quant_match.start()] + " " + stem[quant_match.end() :]

    name = re.sub(r"[_-]", " ", stem)
    name = re.sub(r"\s+", " ", name).strip()

    size = ""
    size_match = _SIZE_RE.search(name)
    if size_match:
        size = f"{size_match.group(1)}B"
        name = name[: size_match.start()] + name[size_match.end() :]

    name = re.sub(r"\s+", " ", name).strip(" .")
    name = re.sub(r"\b\w", lambda match: match.group(0).upper(), name)

    display = " ".join(part for part in (name, size) if part)
    if quant:
        display = f"{display} ({quant})" if display else quant
    return display or filename


@dataclass(slots=True)
class CatalogSettings:
    """Subset of settings the catalog needs."""

    models_dir: Path
    base_url: str = "https://huggingface.co"
    token: str = ""
    request_timeout: float = 30.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0


class ModelCatalog:
    """Keeps ``available_models`` in sync with the disk and the remote index."""

    def __init__(
        self,
        store: StateStore[LlmState],
        settings: CatalogSettings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._owns_client = client is None

    @property
    def models_dir(self) -> Path:
        return self._settings.models_dir

    @property
    def settings(self) -> CatalogSettings:
        return self._settings

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Local models
    # ------------------------------------------------------------------
    def resolve_local_path(self, filename: str) -> Path:
        """Return the path of ``filename`` inside the models directory.

        Raises ``ValueError`` for names that would escape the directory.
        """

        candidate = Path(filename)
        if not filename or candidate.name != filename or filename in {".", ".."}:
            raise ValueError(f"Invalid model file name: {filename!r}")
        return self.models_dir / filename

    async def scan_local_models(self) -> list[LocalModel]:
        models = await asyncio.to_thread(self._scan_models_dir)
        self._store.update(lambda state: state.with_available_models(local=tuple(models)))
        LOGGER.debug("Found %d local model(s) in %s", len(models), self.models_dir)
        return models

    def _scan_models_dir(self) -> list[LocalModel]:
        directory = self.models_dir
        directory.mkdir(parents=True, exist_ok=True)
        models: list[LocalModel] = []
        for path in sorted(directory.iterdir()):
            if not path.is_file() or path.suffix.lower() != MODEL_EXTENSION:
                continue
            try:
                stat = path.stat()
            except OSError as exc:
                LOGGER.warning("Unable to stat model file %s: %s", path, exc)
                continue
            models.append(
                LocalModel(
                    id=path.name,
                    name=prettify_model_name(path.name),
                    path=str(path),
                    size=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
                )
            )
        return models

    async def delete_model(
        self,
        filename: str,
        *,
        unload: Callable[[], Awaitable[None]] | None = None,
    ) -> bool:
        """Remove a local model file, unloading it first when it is the selected one."""

        path = self.resolve_local_path(filename)
        selected = self._store.get().selected_model_file_path
        if unload is not None and selected and Path(selected) == path:
            LOGGER.info("Unloading %s before deleting it", filename)
            await unload()
        try:
            path.unlink()
        except FileNotFoundError:
            LOGGER.warning("Model file %s does not exist", path)
            await self.scan_local_models()
            return False
        LOGGER.info("Deleted model file %s", path)
        await self.scan_local_models()
        return True

    async def delete_multiple_models(
        self,
        filenames: Iterable[str],
        *,
        unload: Callable[[], Awaitable[None]] | None = None,
    ) -> dict[str, list[str]]:
        deleted: list[str] = []
        failed: list[str] = []
        for filename in filenames:
            try:
                removed = await self.delete_model(filename, unload=unload)
            except (OSError, ValueError) as exc:
                LOGGER.warning("Failed to delete model %s: %s", filename, exc)
                removed = False
            (deleted if removed else failed).append(filename)
        return {"deleted": deleted, "failed": failed}

    # ------------------------------------------------------------------
    # Remote catalog
    # ------------------------------------------------------------------
    async def load_default_models(self) -> list[RemoteModel]:
        """Scan the disk and fetch the most downloaded remote models."""

        self._store.update(lambda state: state.with_available_models(loading=True))
        try:
            await self.scan_local_models()
            listing = await self._get_json(
                "/api/models",
                params={"filter": "gguf", "sort": "downloads", "limit": _DEFAULT_LIMIT},
            )
            models = await asyncio.gather(
                *(self._build_remote_model(entry, prioritize=True) for entry in _as_list(listing))
            )
            remote = tuple(model for model in models if model.files)
        except Exception as exc:
            LOGGER.warning("Failed to load default models: %s", exc)
            self._store.update(lambda state: state.with_available_models(remote=(), loading=False))
            return []
        self._store.update(lambda state: state.with_available_models(remote=remote, loading=False))
        return list(remote)

    async def search_remote_models(self, query: str) -> list[RemoteModel]:
        if not query.strip():
            self._store.update(
                lambda state: state.with_available_models(search_query=query, search_results=())
            )
            return []

        self._store.update(
            lambda state: state.with_available_models(loading=True, search_query=query)
        )
        try:
            listing = await self._get_json(
                "/api/models",
                params={
                    "search": query,
                    "filter": "gguf",
                    "sort": "downloads",
                    "limit": _DEFAULT_LIMIT,
                },
            )
            results = tuple(
                await asyncio.gather(
                    *(self._build_remote_model(entry, prioritize=False) for entry in _as_list(listing))
                )
            )
        except Exception as exc:
            LOGGER.warning("Model search for %r failed: %s", query, exc)
            self._store.update(
                lambda state: state.with_available_models(search_results=(), loading=False)
            )
            return []
        self._store.update(
            lambda state: state.with_available_models(search_results=results, loading=False)
        )
        return list(results)

    async def _build_remote_model(self, entry: Mapping[str, Any], *, prioritize: bool) -> RemoteModel:
        model_id = str(entry.get("id") or entry.get("modelId") or "")
        downloads = int(entry.get("downloads") or 0)
        files: tuple[RemoteModelFile, ...] = ()
        try:
            tree = await self._get_json(f"/api/models/{model_id}/tree/main")
            files = self._select_files(model_id, _as_list(tree), prioritize=prioritize)
        except Exception as exc:
            LOGGER.warning("Failed to list files for model %s: %s", model_id, exc)

        description = entry.get("description")
        if not description:
            description = f"Popular model with {downloads:,} downloads" if prioritize else ""
        return RemoteModel(
            id=model_id,
            name=model_id,
            author=model_id.split("/")[0] or "unknown",
            downloads=downloads,
            likes=int(entry.get("likes") or 0),
            tags=tuple(str(tag) for tag in entry.get("tags") or ()),
            description=description,
            url=f"{self._public_base_url()}/{model_id}",
            files=files,
        )

    def _select_files(
        self, model_id: str, tree: Sequence[Mapping[str, Any]], *, prioritize: bool
    ) -> tuple[RemoteModelFile, ...]:
        candidates = [
            item
            for item in tree
            if item.get("type") == "file" and str(item.get("path", "")).endswith(MODEL_EXTENSION)
        ]
        if prioritize:
            candidates.sort(key=lambda item: _quant_priority(str(item["path"])))
        base = self._public_base_url()
        return tuple(
            RemoteModelFile(
                filename=str(item["path"]),
                size=int(item.get("size") or 0),
                download_url=f"{base}/{model_id}/resolve/main/{item['path']}",
            )
            for item in candidates[:_FILES_PER_MODEL]
        )

    def _public_base_url(self) -> str:
        return self._settings.base_url.rstrip("/")

    async def _get_json(self, path: str, *, params: Mapping[str, Any] | None = None) -> Any:
        async for attempt in self._retrying():
            with attempt:
                response = await self._client.get(path, params=params)
                response.raise_for_status()
                return response.json()
        return None  # pragma: no cover - AsyncRetrying reraises on exhaustion

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
        )

    @staticmethod
    def _build_client(settings: CatalogSettings) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if settings.token:
            headers["Authorization"] = f"Bearer {settings.token}"
        return httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            headers=headers,
            follow_redirects=True,
        )

    # ------------------------------------------------------------------
    # Recommendation
    # ------------------------------------------------------------------
    def get_recommended_model(self, last_used_path: str | None = None) -> dict[str, Any]:
        """Suggest what to load on the start screen.

        Prefers the last used model when it is still on disk, then the only or
        most recently modified local model, and otherwise the starter download.
        """

        local = list(self._store.get().available_models.local)
        if last_used_path:
            for model in local:
                if Path(model.path) == Path(last_used_path):
                    return {"type": "local", "model": model, "reason": "last used"}
        if len(local) == 1:
            return {"type": "local", "model": local[0], "reason": "only local model"}
        if local:
            newest = max(local, key=lambda model: model.last_modified)
            return {"type": "local", "model": newest, "reason": "most recently added"}
        return {"type": "download", "model": STARTER_MODEL, "reason": "no local models"}


def _quant_priority(filename: str) -> int:
    lowered = filename.lower()
    for index, marker in enumerate(_QUANT_PRIORITY, start=1):
        if marker in lowered:
            return index
    return len(_QUANT_PRIORITY) + 1


def _as_list(payload: Any) -> list[Mapping[str, Any]]:
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, Mapping)]
