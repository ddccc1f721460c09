"""Exception types raised across the backend, transport and frontend."""

from __future__ import annotations

__all__ = [
    "GenerationAbortedError",
    "IllegalStateError",
    "LLMDeskError",
    "ModelDownloadError",
    "RpcError",
    "TransportClosedError",
    "TransportUnavailableError",
]


class LLMDeskError(Exception):
    """Base class for application errors."""


class IllegalStateError(LLMDeskError, RuntimeError):
    """An operation was called before the resource it depends on was loaded."""


class GenerationAbortedError(LLMDeskError):
    """Default reason attached to a cancelled generation."""


class ModelDownloadError(LLMDeskError):
    """A model file could not be downloaded."""


class RpcError(LLMDeskError):
    """A remote call failed on the other side of the channel."""

    def __init__(self, method: str, error_type: str, detail: str) -> None:
        super().__init__(f"{method} failed: {error_type}: {detail}")
        self.method = method
        self.error_type = error_type
        self.detail = detail


class TransportUnavailableError(LLMDeskError):
    """The cross-process transport could not be established."""


class TransportClosedError(LLMDeskError):
    """The transport closed while calls were still pending."""
