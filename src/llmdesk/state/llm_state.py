"""Immutable snapshot types describing everything the UI renders."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from ..chat.message_model import ChatItem, chat_item_from_dict

__all__ = [
    "AvailableModels",
    "ChatSessionState",
    "DraftPrompt",
    "EngineState",
    "LlmState",
    "LocalModel",
    "ModelDownloadState",
    "ModelState",
    "RemoteModel",
    "RemoteModelFile",
    "ResourceState",
    "local_model_from_dict",
    "local_model_to_dict",
    "remote_model_from_dict",
    "remote_model_to_dict",
]


@dataclass(frozen=True, slots=True)
class EngineState:
    loaded: bool = False
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ModelState:
    loaded: bool = False
    load_progress: float | None = None
    name: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ResourceState:
    """Status of a context or context sequence."""

    loaded: bool = False
    error: str | None = None


@dataclass(frozen=True, slots=True)
class DraftPrompt:
    prompt: str = ""
    completion: str = ""


@dataclass(frozen=True, slots=True)
class ChatSessionState:
    loaded: bool = False
    generating_result: bool = False
    transcript: tuple[ChatItem, ...] = ()
    draft_prompt: DraftPrompt = field(default_factory=DraftPrompt)


@dataclass(frozen=True, slots=True)
class LocalModel:
    """A model file found in the models directory."""

    id: str
    name: str
    path: str
    size: int
    last_modified: str


@dataclass(frozen=True, slots=True)
class RemoteModelFile:
    filename: str
    size: int | None
    download_url: str


@dataclass(frozen=True, slots=True)
class RemoteModel:
    """A downloadable model advertised by the remote index."""

    id: str
    name: str
    author: str
    downloads: int = 0
    likes: int = 0
    size: int | None = None
    tags: tuple[str, ...] = ()
    description: str | None = None
    url: str = ""
    files: tuple[RemoteModelFile, ...] = ()


@dataclass(frozen=True, slots=True)
class AvailableModels:
    local: tuple[LocalModel, ...] = ()
    remote: tuple[RemoteModel, ...] = ()
    loading: bool = False
    search_query: str = ""
    search_results: tuple[RemoteModel, ...] = ()


@dataclass(frozen=True, slots=True)
class ModelDownloadState:
    downloading: bool = False
    progress: float | None = None
    speed: str | None = None
    name: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class LlmState:
    """Root snapshot published by the backend after every mutation."""

    app_version: str | None = None
    engine: EngineState = field(default_factory=EngineState)
    selected_model_file_path: str | None = None
    model: ModelState = field(default_factory=ModelState)
    context: ResourceState = field(default_factory=ResourceState)
    context_sequence: ResourceState = field(default_factory=ResourceState)
    chat_session: ChatSessionState = field(default_factory=ChatSessionState)
    available_models: AvailableModels = field(default_factory=AvailableModels)
    model_download: ModelDownloadState = field(default_factory=ModelDownloadState)

    def with_chat_session(self, **changes: Any) -> LlmState:
        return replace(self, chat_session=replace(self.chat_session, **changes))

    def with_draft_prompt(self, **changes: Any) -> LlmState:
        draft = replace(self.chat_session.draft_prompt, **changes)
        return self.with_chat_session(draft_prompt=draft)

    def with_available_models(self, **changes: Any) -> LlmState:
        return replace(self, available_models=replace(self.available_models, **changes))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible mapping."""

        session = self.chat_session
        available = self.available_models
        return {
            "app_version": self.app_version,
            "engine": {"loaded": self.engine.loaded, "error": self.engine.error},
            "selected_model_file_path": self.selected_model_file_path,
            "model": {
                "loaded": self.model.loaded,
                "load_progress": self.model.load_progress,
                "name": self.model.name,
                "error": self.model.error,
            },
            "context": {"loaded": self.context.loaded, "error": self.context.error},
            "context_sequence": {
                "loaded": self.context_sequence.loaded,
                "error": self.context_sequence.error,
            },
            "chat_session": {
                "loaded": session.loaded,
                "generating_result": session.generating_result,
                "transcript": [item.to_dict() for item in session.transcript],
                "draft_prompt": {
                    "prompt": session.draft_prompt.prompt,
                    "completion": session.draft_prompt.completion,
                },
            },
            "available_models": {
                "local": [local_model_to_dict(model) for model in available.local],
                "remote": [remote_model_to_dict(model) for model in available.remote],
                "loading": available.loading,
                "search_query": available.search_query,
                "search_results": [remote_model_to_dict(model) for model in available.search_results],
            },
            "model_download": {
                "downloading": self.model_download.downloading,
                "progress": self.model_download.progress,
                "speed": self.model_download.speed,
                "name": self.model_download.name,
                "error": self.model_download.error,
            },
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> LlmState:
        """Rebuild a snapshot produced by :meth:`to_dict`; missing keys take defaults."""

        engine = payload.get("engine") or {}
        model = payload.get("model") or {}
        context = payload.get("context") or {}
        sequence = payload.get("context_sequence") or {}
        session = payload.get("chat_session") or {}
        draft = session.get("draft_prompt") or {}
        available = payload.get("available_models") or {}
        download = payload.get("model_download") or {}
        return cls(
            app_version=payload.get("app_version"),
            engine=EngineState(loaded=bool(engine.get("loaded")), error=engine.get("error")),
            selected_model_file_path=payload.get("selected_model_file_path"),
            model=ModelState(
                loaded=bool(model.get("loaded")),
                load_progress=model.get("load_progress"),
                name=model.get("name"),
                error=model.get("error"),
            ),
            context=ResourceState(loaded=bool(context.get("loaded")), error=context.get("error")),
            context_sequence=ResourceState(
                loaded=bool(sequence.get("loaded")), error=sequence.get("error")
            ),
            chat_session=ChatSessionState(
                loaded=bool(session.get("loaded")),
                generating_result=bool(session.get("generating_result")),
                transcript=tuple(chat_item_from_dict(item) for item in session.get("transcript") or ()),
                draft_prompt=DraftPrompt(
                    prompt=str(draft.get("prompt", "")),
                    completion=str(draft.get("completion", "")),
                ),
            ),
            available_models=AvailableModels(
                local=tuple(local_model_from_dict(item) for item in available.get("local") or ()),
                remote=tuple(remote_model_from_dict(item) for item in available.get("remote") or ()),
                loading=bool(available.get("loading")),
                search_query=str(available.get("search_query", "")),
                search_results=tuple(
                    remote_model_from_dict(item) for item in available.get("search_results") or ()
                ),
            ),
            model_download=ModelDownloadState(
                downloading=bool(download.get("downloading")),
                progress=download.get("progress"),
                speed=download.get("speed"),
                name=download.get("name"),
                error=download.get("error"),
            ),
        )


def local_model_to_dict(model: LocalModel) -> dict[str, Any]:
    return {
        "id": model.id,
        "name": model.name,
        "path": model.path,
        "size": model.size,
        "last_modified": model.last_modified,
    }


def local_model_from_dict(payload: Mapping[str, Any]) -> LocalModel:
    return LocalModel(
        id=str(payload["id"]),
        name=str(payload.get("name") or payload["id"]),
        path=str(payload.get("path", "")),
        size=int(payload.get("size") or 0),
        last_modified=str(payload.get("last_modified", "")),
    )


def remote_model_to_dict(model: RemoteModel) -> dict[str, Any]:
    return {
        "id": model.id,
        "name": model.name,
        "author": model.author,
        "downloads": model.downloads,
        "likes": model.likes,
        "size": model.size,
        "tags": list(model.tags),
        "description": model.description,
        "url": model.url,
        "files": [
            {"filename": item.filename, "size": item.size, "download_url": item.download_url}
            for item in model.files
        ],
    }


def remote_model_from_dict(payload: Mapping[str, Any]) -> RemoteModel:
    files = tuple(
        RemoteModelFile(
            filename=str(item["filename"]),
            size=item.get("size"),
            download_url=str(item.get("download_url", "")),
        )
        for item in payload.get("files") or ()
    )
    return RemoteModel(
        id=str(payload["id"]),
        name=str(payload.get("name") or payload["id"]),
        author=str(payload.get("author", "")),
        downloads=int(payload.get("downloads") or 0),
        likes=int(payload.get("likes") or 0),
        size=payload.get("size"),
        tags=tuple(str(tag) for tag in payload.get("tags") or ()),
        description=payload.get("description"),
        url=str(payload.get("url", "")),
        files=files,
    )
