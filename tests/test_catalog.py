"""Tests for the model catalog: names, local scans, remote listing and recommendations."""

from __future__ import annotations

import os

import httpx
import pytest

from llmdesk.services.catalog import STARTER_MODEL, CatalogSettings, ModelCatalog, prettify_model_name
from llmdesk.state.llm_state import LlmState
from llmdesk.state.store import StateStore

_TREE = [
    {"type": "file", "path": "repo.Q8_0.gguf", "size": 8},
    {"type": "file", "path": "repo.Q4_K_M.gguf", "size": 4},
    {"type": "file", "path": "README.md", "size": 1},
    {"type": "directory", "path": "extra"},
    {"type": "file", "path": "repo.Q5_K_M.gguf", "size": 5},
    {"type": "file", "path": "repo.Q2_K.gguf", "size": 2},
]


def _hub_handler(requests: list[httpx.Request]):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        path = request.url.path
        if path == "/api/models":
            return httpx.Response(
                200,
                json=[
                    {"id": "org/repo-GGUF", "downloads": 1234, "likes": 5, "tags": ["gguf"]},
                    {"id": "org/empty", "downloads": 1},
                ],
            )
        if path == "/api/models/org/repo-GGUF/tree/main":
            return httpx.Response(200, json=_TREE)
        if path == "/api/models/org/empty/tree/main":
            return httpx.Response(200, json=[])
        return httpx.Response(404, json={"error": "not found"})

    return handler


def _catalog(tmp_path, handler, **overrides) -> tuple[ModelCatalog, StateStore[LlmState]]:
    store: StateStore[LlmState] = StateStore(LlmState())
    settings = CatalogSettings(
        models_dir=tmp_path / "models",
        max_retries=overrides.pop("max_retries", 1),
        retry_min_seconds=0,
        retry_max_seconds=0,
        **overrides,
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=settings.base_url)
    return ModelCatalog(store, settings, client=client), store


@pytest.mark.parametrize(
    ("filename", "expected"),
    [
        ("llama-2-7b-chat.Q4_K_M.gguf", "Llama 2 Chat 7B (Q4_K_M)"),
        ("smollm2-1.7b-instruct-q4_k_m.gguf", "Smollm2 Instruct 1.7B (Q4_K_M)"),
        ("hf_phi-3-mini.gguf", "Phi 3 Mini"),
        ("model.gguf", "Model"),
    ],
)
def test_prettify_model_name(filename, expected):
    assert prettify_model_name(filename) == expected


def test_resolve_local_path_rejects_escapes(tmp_path):
    catalog, _ = _catalog(tmp_path, lambda request: httpx.Response(200))

    assert catalog.resolve_local_path("a.gguf") == tmp_path / "models" / "a.gguf"
    for bad in ("", "..", "../a.gguf", "sub/a.gguf"):
        with pytest.raises(ValueError):
            catalog.resolve_local_path(bad)


@pytest.mark.asyncio
async def test_scan_lists_only_complete_gguf_files(tmp_path):
    catalog, store = _catalog(tmp_path, lambda request: httpx.Response(200))
    models_dir = tmp_path / "models"
    models_dir.mkdir()
    (models_dir / "tiny.Q4_0.gguf").write_bytes(b"1234")
    (models_dir / "big.gguf.part").write_bytes(b"12")
    (models_dir / "notes.txt").write_text("x")

    models = await catalog.scan_local_models()

    assert [model.id for model in models] == ["tiny.Q4_0.gguf"]
    assert models[0].size == 4
    assert models[0].name == "Tiny (Q4_0)"
    assert store.get().available_models.local == tuple(models)
    await catalog.aclose()


@pytest.mark.asyncio
async def test_load_default_models_prioritises_quantisations(tmp_path):
    requests: list[httpx.Request] = []
    catalog, store = _catalog(tmp_path, _hub_handler(requests))

    remote = await catalog.load_default_models()

    assert [model.id for model in remote] == ["org/repo-GGUF"]
    model = remote[0]
    assert [item.filename for item in model.files] == [
        "repo.Q4_K_M.gguf",
        "repo.Q5_K_M.gguf",
        "repo.Q8_0.gguf",
    ]
    assert model.files[0].download_url == (
        "https://huggingface.co/org/repo-GGUF/resolve/main/repo.Q4_K_M.gguf"
    )
    assert model.description == "Popular model with 1,234 downloads"
    assert model.author == "org"
    available = store.get().available_models
    assert available.remote == (model,)
    assert available.loading is False
    listing = requests[0]
    assert listing.url.params["filter"] == "gguf"
    assert listing.url.params["sort"] == "downloads"
    await catalog.aclose()


@pytest.mark.asyncio
async def test_load_default_models_failure_clears_loading(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    catalog, store = _catalog(tmp_path, handler, max_retries=2)

    assert await catalog.load_default_models() == []
    available = store.get().available_models
    assert available.loading is False
    assert available.remote == ()
    await catalog.aclose()


@pytest.mark.asyncio
async def test_transient_errors_are_retried(tmp_path):
    attempts: list[int] = []
    inner = _hub_handler([])

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/models" and not attempts:
            attempts.append(1)
            raise httpx.ReadTimeout("slow", request=request)
        return inner(request)

    catalog, _ = _catalog(tmp_path, handler, max_retries=3)

    remote = await catalog.load_default_models()

    assert attempts == [1]
    assert [model.id for model in remote] == ["org/repo-GGUF"]
    await catalog.aclose()


@pytest.mark.asyncio
async def test_search_keeps_files_in_listing_order(tmp_path):
    requests: list[httpx.Request] = []
    catalog, store = _catalog(tmp_path, _hub_handler(requests))

    results = await catalog.search_remote_models("repo")

    assert requests[0].url.params["search"] == "repo"
    repo = results[0]
    assert [item.filename for item in repo.files] == ["repo.Q8_0.gguf", "repo.Q4_K_M.gguf", "repo.Q5_K_M.gguf"]
    assert repo.description == ""
    available = store.get().available_models
    assert available.search_query == "repo"
    assert len(available.search_results) == 2

    assert await catalog.search_remote_models("   ") == []
    assert store.get().available_models.search_results == ()
    await catalog.aclose()


@pytest.mark.asyncio
async def test_recommendation_prefers_last_used_then_newest(tmp_path):
    catalog, _ = _catalog(tmp_path, lambda request: httpx.Response(200))

    assert catalog.get_recommended_model() == {
        "type": "download",
        "model": STARTER_MODEL,
        "reason": "no local models",
    }

    models_dir = tmp_path / "models"
    models_dir.mkdir()
    first = models_dir / "first.gguf"
    second = models_dir / "second.gguf"
    first.write_bytes(b"1")
    second.write_bytes(b"2")

    os.utime(first, (1_000_000, 1_000_000))
    os.utime(second, (2_000_000, 2_000_000))
    await catalog.scan_local_models()

    newest = catalog.get_recommended_model()
    assert newest["type"] == "local"
    assert newest["model"].id == "second.gguf"

    last_used = catalog.get_recommended_model(str(first))
    assert last_used["model"].id == "first.gguf"
    assert last_used["reason"] == "last used"
    await catalog.aclose()


@pytest.mark.asyncio
async def test_delete_selected_model_unloads_first(tmp_path):
    catalog, store = _catalog(tmp_path, lambda request: httpx.Response(200))
    models_dir = tmp_path / "models"
    models_dir.mkdir()
    target = models_dir / "a.gguf"
    target.write_bytes(b"x")
    store.set(LlmState(selected_model_file_path=str(target)))
    unloaded: list[bool] = []

    async def unload() -> None:
        unloaded.append(True)

    assert await catalog.delete_model("a.gguf", unload=unload) is True
    assert unloaded == [True]
    assert not target.exists()

    summary = await catalog.delete_multiple_models(["a.gguf", "../escape.gguf"], unload=unload)
    assert summary == {"deleted": [], "failed": ["a.gguf", "../escape.gguf"]}
    await catalog.aclose()
