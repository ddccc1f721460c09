"""Streaming model downloads with progress published into ``model_download``."""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import ModelDownloadError
from ..state.llm_state import LlmState, ModelDownloadState, RemoteModelFile
from ..state.store import StateStore

LOGGER = logging.getLogger(__name__)

__all__ = ["ModelDownloader", "format_speed"]

_CHUNK_SIZE = 1024 * 1024
_PUBLISH_INTERVAL = 0.25


def format_speed(bytes_per_second: float) -> str:
    return f"{bytes_per_second / (1024 * 1024):.2f} MB/s"


class ModelDownloader:
    """Downloads a model file into a directory, reporting progress and speed."""

    def __init__(
        self,
        store: StateStore[LlmState],
        *,
        client: httpx.AsyncClient | None = None,
        token: str = "",
        request_timeout: float = 30.0,
        max_retries: int = 3,
        retry_min_seconds: float = 0.5,
        retry_max_seconds: float = 6.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._client = client or self._build_client(token, request_timeout)
        self._owns_client = client is None
        self._max_retries = max_retries
        self._retry_min_seconds = retry_min_seconds
        self._retry_max_seconds = retry_max_seconds
        self._clock = clock

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def download(self, file: RemoteModelFile, directory: Path) -> Path:
        """Fetch ``file`` into ``directory`` and return the final path.

        The body is written to ``<name>.part`` and renamed once complete, so a
        partially downloaded file is never picked up by the local scan.
        """

        directory.mkdir(parents=True, exist_ok=True)
        target = directory / Path(file.filename).name
        partial = target.with_name(target.name + ".part")
        self._publish(ModelDownloadState(downloading=True, progress=0.0, name=target.name))
        LOGGER.info("Downloading %s from %s", target.name, file.download_url)

        try:
            async for attempt in self._retrying():
                with attempt:
                    await self._stream_to(file, partial, expected_size=file.size)
            partial.replace(target)
        except Exception as exc:
            partial.unlink(missing_ok=True)
            LOGGER.warning("Download of %s failed: %s", target.name, exc)
            raise ModelDownloadError(f"Failed to download {target.name}: {exc}") from exc

        self._publish(ModelDownloadState(downloading=False, progress=1.0, name=target.name))
        LOGGER.info("Downloaded %s", target)
        return target

    async def _stream_to(self, file: RemoteModelFile, partial: Path, *, expected_size: int | None) -> None:
        async with self._client.stream("GET", file.download_url) as response:
            response.raise_for_status()
            total = _content_length(response) or expected_size or 0
            downloaded = 0
            started = self._clock()
            last_publish = started
            with partial.open("wb") as handle:
                async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                    handle.write(chunk)
                    downloaded += len(chunk)
                    now = self._clock()
                    if now - last_publish >= _PUBLISH_INTERVAL:
                        last_publish = now
                        self._publish_progress(downloaded, total, now - started)
            self._publish_progress(downloaded, total, self._clock() - started)

    def _publish_progress(self, downloaded: int, total: int, elapsed: float) -> None:
        state = self._store.get()
        current = state.model_download
        progress = min(downloaded / total, 1.0) if total > 0 else current.progress
        speed = format_speed(downloaded / elapsed) if elapsed > 0 else current.speed
        self._store.set(replace(state, model_download=replace(current, progress=progress, speed=speed)))

    def _publish(self, download: ModelDownloadState) -> None:
        self._store.update(lambda state: replace(state, model_download=download))

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._max_retries)),
            wait=wait_exponential(multiplier=self._retry_min_seconds, max=self._retry_max_seconds),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
        )

    @staticmethod
    def _build_client(token: str, request_timeout: float) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        timeout = httpx.Timeout(request_timeout, read=None)
        return httpx.AsyncClient(timeout=timeout, headers=headers, follow_redirects=True)


def _content_length(response: httpx.Response) -> int | None:
    value = response.headers.get("content-length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None
