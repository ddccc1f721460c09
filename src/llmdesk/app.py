"""Application bootstrap helpers for the LLMDesk desktop app and headless backend."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, cast, get_args, get_type_hints

from .rpc.backend import BackendRpc
from .rpc.frontend import FrontendRpc
from .rpc.transport import MemoryPort, StreamPort, open_tcp_port
from .services.runtime import BackendServices, FilePicker
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


@dataclass(slots=True)
class QtRuntime:
    """Container returned by :func:`create_qapp`."""

    app: Any
    loop: asyncio.AbstractEventLoop


@dataclass(slots=True)
class InProcessLink:
    """Backend and frontend joined by a pair of in-memory ports."""

    services: BackendServices
    backend: BackendRpc
    frontend: FrontendRpc

    async def aclose(self) -> None:
        await self.frontend.close()
        await self.backend.close()
        await self.services.aclose()


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure structured logging for the application."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def create_qapp(qt_args: Sequence[str] = ()) -> QtRuntime:
    """Create a qasync-powered QApplication; unrecognised CLI flags go to Qt."""

    try:  # Local import so the headless backend runs without a display stack.
        from PySide6.QtWidgets import QApplication
    except ImportError as exc:  # pragma: no cover - depends on desktop stack
        raise RuntimeError("PySide6 must be installed to launch the LLMDesk UI.") from exc

    try:
        from qasync import QEventLoop
    except ImportError as exc:  # pragma: no cover - depends on env setup
        raise RuntimeError("qasync is required to run the async Qt event loop.") from exc

    os.environ.setdefault("QT_ENABLE_HIGHDPI_SCALING", "1")
    program = sys.argv[0] if sys.argv else "llmdesk"
    app = cast(Any, QApplication.instance() or QApplication([program, *qt_args]))
    app.setApplicationName("LLMDesk")
    app.setApplicationDisplayName("LLMDesk")

    loop = QEventLoop(app)
    asyncio.set_event_loop(loop)
    app.aboutToQuit.connect(loop.stop)
    return QtRuntime(app=app, loop=loop)


async def start_in_process(
    settings: Settings,
    *,
    settings_store: SettingsStore | None = None,
    file_picker: FilePicker | None = None,
    services: BackendServices | None = None,
) -> InProcessLink:
    """Wire a backend and a frontend together inside this process."""

    services = services or BackendServices(
        settings, settings_store=settings_store, file_picker=file_picker
    )
    backend_port, frontend_port = MemoryPort.pair()
    backend = BackendRpc(services, backend_port)
    backend.start()
    frontend = FrontendRpc(frontend_port)
    await frontend.start()
    return InProcessLink(services=services, backend=backend, frontend=frontend)


async def serve_backend(
    settings: Settings,
    host: str,
    port: int,
    *,
    settings_store: SettingsStore | None = None,
    services: BackendServices | None = None,
) -> None:
    """Run the headless backend until cancelled; one RPC link per connection."""

    services = services or BackendServices(settings, settings_store=settings_store)
    links: set[BackendRpc] = set()

    async def _on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        _LOGGER.info("Frontend connected from %s", peer)
        link = BackendRpc(services, StreamPort(reader, writer))
        links.add(link)
        link.start()
        try:
            await link.wait_closed()
        finally:
            links.discard(link)
            _LOGGER.info("Frontend %s disconnected", peer)

    server = await asyncio.start_server(_on_connect, host, port)
    addresses = ", ".join(str(sock.getsockname()) for sock in server.sockets or ())
    _LOGGER.info("Backend listening on %s", addresses)
    try:
        async with server:
            await server.serve_forever()
    finally:
        for link in list(links):
            await link.close()
        await services.aclose()


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the `llmdesk` console script."""

    args, qt_args = _parse_cli_args(argv)

    debug = _env_flag("LLMDESK_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("LLMDESK_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    overrides_mapping: Dict[str, Any] | None = cli_overrides or None
    settings = load_settings(resolved_path, store=settings_store, overrides=overrides_mapping)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if args.serve:
        try:
            host, port = _parse_address(args.serve)
        except ValueError as exc:
            print(f"Invalid --serve address: {exc}", file=sys.stderr)
            raise SystemExit(2) from exc
        try:
            asyncio.run(serve_backend(settings, host, port, settings_store=settings_store))
        except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
            _LOGGER.info("Shutdown requested by user.")
        return

    remote: tuple[str, int] | None = None
    if args.connect:
        try:
            remote = _parse_address(args.connect)
        except ValueError as exc:
            print(f"Invalid --connect address: {exc}", file=sys.stderr)
            raise SystemExit(2) from exc

    _run_desktop(settings, settings_store, remote=remote, qt_args=qt_args)


def _run_desktop(
    settings: Settings,
    settings_store: SettingsStore,
    *,
    remote: tuple[str, int] | None,
    qt_args: Sequence[str] = (),
) -> None:
    from .services.window_state import WindowStateStore
    from .ui.file_dialogs import QtModelFilePicker
    from .ui.main_window import MainWindow

    runtime = create_qapp(qt_args)
    loop = runtime.loop
    picker = QtModelFilePicker()
    link: InProcessLink | None = None
    frontend: FrontendRpc

    if remote is None:
        link = loop.run_until_complete(
            start_in_process(settings, settings_store=settings_store, file_picker=picker)
        )
        frontend = link.frontend
    else:
        port = loop.run_until_complete(open_tcp_port(*remote))
        frontend = FrontendRpc(port)
        loop.run_until_complete(frontend.start())

    window = MainWindow(frontend, window_state=WindowStateStore(settings.data_path))
    picker.attach(window)
    window.show()
    startup = loop.create_task(_initialize_models(frontend))

    try:
        loop.run_forever()
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
    finally:
        with contextlib.suppress(RuntimeError):
            loop.run_until_complete(_shutdown(frontend, link, pending=(startup,)))
        loop.close()


async def _initialize_models(frontend: FrontendRpc) -> None:
    try:
        await frontend.initialize_models()
    except Exception as exc:
        _LOGGER.warning("Model catalog initialization failed: %s", exc)


async def _shutdown(
    frontend: FrontendRpc,
    link: InProcessLink | None,
    *,
    pending: Sequence[asyncio.Task[Any]] = (),
) -> None:
    """Cancel unfinished startup work, then close the link."""

    unfinished = [task for task in pending if not task.done()]
    for task in unfinished:
        task.cancel()
    if unfinished:
        await asyncio.gather(*unfinished, return_exceptions=True)
    if link is not None:
        await link.aclose()
    else:
        await frontend.close()


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> tuple[argparse.Namespace, list[str]]:
    parser = argparse.ArgumentParser(
        prog="llmdesk",
        add_help=True,
        description="Chat with local GGUF models, run the headless backend or inspect configuration.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.llmdesk/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings before launch (repeatable).",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--serve",
        metavar="HOST:PORT",
        help="Run the backend without a window and accept frontends on HOST:PORT.",
    )
    mode.add_argument(
        "--connect",
        metavar="HOST:PORT",
        help="Open the window against a backend started with --serve.",
    )
    return parser.parse_known_args(argv)


def _parse_address(value: str) -> tuple[str, int]:
    host, sep, raw_port = value.strip().rpartition(":")
    if not sep or not raw_port:
        raise ValueError(f"'{value}' must use HOST:PORT syntax.")
    try:
        port = int(raw_port, 10)
    except ValueError as exc:
        raise ValueError(f"'{raw_port}' is not a port number.") from exc
    if not 0 < port < 65536:
        raise ValueError(f"Port {port} is out of range.")
    return host or "127.0.0.1", port


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    names = {field.name for field in fields(Settings)}
    hints = get_type_hints(Settings)
    overrides: Dict[str, Any] = {}
    for entry in items:
        key, sep, raw_value = entry.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        if key not in names:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _parse_setting(hints[key], raw_value.strip())
    return overrides


def _parse_setting(annotation: Any, raw_value: str) -> Any:
    # ``int | None`` and friends: accept any member type, plus "none".
    kinds = set(get_args(annotation)) or {annotation}
    if type(None) in kinds and raw_value.lower() in {"none", "null"}:
        return None
    if bool in kinds:
        return _parse_bool(raw_value)
    if int in kinds:
        return int(raw_value, 10)
    if float in kinds:
        return float(raw_value)
    return raw_value


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["huggingface_token"] = redact_secret(settings.huggingface_token)
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.prefix,
        "log_path": str(logging_utils.get_log_path() or ""),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("LLMDESK_"))
