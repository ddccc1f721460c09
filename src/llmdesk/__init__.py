"""LLMDesk: a desktop chat client for local GGUF language models."""

__all__ = ["__version__"]

__version__ = "0.1.0"
