"""Tests covering the application bootstrap helpers."""

from __future__ import annotations

import asyncio
import io
import json
import sys
from pathlib import Path
from typing import Any

import pytest

from llmdesk import app
from llmdesk.services.settings import Settings, SettingsStore


def test_coerce_cli_overrides_casts_types() -> None:
    overrides = app._coerce_cli_overrides(
        [
            "models_dir=/srv/models",
            "debug_logging=yes",
            "context_size=8192",
            "temperature=0.25",
            "threads=none",
            "last_used_model_path=/srv/models/a.gguf",
        ]
    )

    assert overrides["models_dir"] == "/srv/models"
    assert overrides["debug_logging"] is True
    assert overrides["context_size"] == 8192
    assert overrides["temperature"] == pytest.approx(0.25)
    assert overrides["threads"] is None
    assert overrides["last_used_model_path"] == "/srv/models/a.gguf"


@pytest.mark.parametrize(
    "entry",
    ["not_a_setting=value", "context_size", "=4", "context_size=big", "debug_logging=maybe"],
)
def test_coerce_cli_overrides_rejects_bad_entries(entry: str) -> None:
    with pytest.raises(ValueError):
        app._coerce_cli_overrides([entry])


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("127.0.0.1:8765", ("127.0.0.1", 8765)),
        (":9000", ("127.0.0.1", 9000)),
        ("backend.local:1", ("backend.local", 1)),
    ],
)
def test_parse_address(value: str, expected: tuple[str, int]) -> None:
    assert app._parse_address(value) == expected


@pytest.mark.parametrize("value", ["8765", "host:", "host:http", "host:0", "host:70000"])
def test_parse_address_rejects_malformed_values(value: str) -> None:
    with pytest.raises(ValueError):
        app._parse_address(value)


def test_dump_settings_redacts_token(tmp_path: Path) -> None:
    settings = Settings(huggingface_token="hf_super_secret", context_size=2048)
    store = SettingsStore(tmp_path / "settings.json")
    buffer = io.StringIO()

    app._dump_settings(settings, store, overrides={"context_size": 2048}, stream=buffer)

    payload = json.loads(buffer.getvalue())
    assert payload["settings"]["huggingface_token"] == "hf***********et"
    assert payload["settings"]["context_size"] == 2048
    assert payload["meta"]["secret_backend"] == "fernet"
    assert payload["meta"]["path"] == str(tmp_path / "settings.json")
    assert payload["meta"]["cli_overrides"] == ["context_size"]


def test_main_dump_settings_applies_overrides(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    settings_path = tmp_path / "settings.json"
    SettingsStore(settings_path).save(Settings(system_prompt="Be terse."))
    monkeypatch.setattr(app, "configure_logging", lambda *args, **kwargs: None)
    monkeypatch.setattr(sys, "argv", ["llmdesk"])
    monkeypatch.setenv("LLMDESK_CONTEXT_SIZE", "1024")

    app.main(
        [
            "--dump-settings",
            "--settings-path",
            str(settings_path),
            "--set",
            "gpu_layers=20",
            "--qt-flag",
        ]
    )

    payload = json.loads(capsys.readouterr().out)
    assert payload["settings"]["system_prompt"] == "Be terse."
    assert payload["settings"]["gpu_layers"] == 20
    assert payload["settings"]["context_size"] == 1024
    assert payload["meta"]["cli_overrides"] == ["gpu_layers"]
    assert "LLMDESK_CONTEXT_SIZE" in payload["meta"]["environment_variables"]
    assert sys.argv == ["llmdesk"]


def test_main_rejects_invalid_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app, "configure_logging", lambda *args, **kwargs: None)
    monkeypatch.setattr(sys, "argv", ["llmdesk"])

    with pytest.raises(SystemExit) as excinfo:
        app.main(["--settings-path", str(tmp_path / "s.json"), "--set", "context_size=lots"])

    assert excinfo.value.code == 2


def test_load_settings_falls_back_to_defaults(tmp_path: Path) -> None:
    class _BrokenStore:
        path = tmp_path / "settings.json"

        def load(self, *, overrides: Any = None) -> Settings:
            raise OSError("disk gone")

    assert app.load_settings(store=_BrokenStore()) == Settings()  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_shutdown_closes_remote_frontend() -> None:
    class _Frontend:
        closed = False

        async def close(self) -> None:
            self.closed = True

    frontend = _Frontend()

    await app._shutdown(frontend, None)  # type: ignore[arg-type]

    assert frontend.closed is True


@pytest.mark.asyncio
async def test_shutdown_cancels_unfinished_startup_work() -> None:
    class _Frontend:
        closed = False

        async def close(self) -> None:
            self.closed = True

    frontend = _Frontend()
    startup = asyncio.create_task(asyncio.sleep(10))
    finished = asyncio.create_task(asyncio.sleep(0))
    await finished

    await app._shutdown(frontend, None, pending=(startup, finished))  # type: ignore[arg-type]

    assert startup.cancelled()
    assert frontend.closed is True


def test_unknown_flags_are_left_for_qt() -> None:
    args, qt_args = app._parse_cli_args(["--serve", "127.0.0.1:9000", "-platform", "offscreen"])

    assert args.serve == "127.0.0.1:9000"
    assert qt_args == ["-platform", "offscreen"]
