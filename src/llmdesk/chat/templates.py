"""Placeholder expansion for system prompts (``{{DATE}}``, ``{{USERNAME}}`` ...)."""

from __future__ import annotations

import getpass
import logging
import re
from datetime import datetime
from typing import Callable, Mapping

LOGGER = logging.getLogger(__name__)

__all__ = ["apply_template_variables", "get_template_variables", "has_template_variables"]

_VARIABLE_PATTERN = re.compile(r"\{\{([A-Z_]+)\}\}")


def _username() -> str:
    try:
        return getpass.getuser() or "User"
    except Exception:  # getuser raises when no login name can be determined
        return "User"


def _resolvers(now: datetime, filename: str | None) -> Mapping[str, Callable[[], str]]:
    return {
        "DATE": lambda: now.strftime("%Y-%m-%d"),
        "TIME": lambda: now.strftime("%H:%M:%S"),
        "DATETIME": lambda: now.strftime("%Y-%m-%d %H:%M:%S"),
        "USERNAME": _username,
        "FILENAME": lambda: filename or "untitled",
    }


def apply_template_variables(
    text: str,
    *,
    filename: str | None = None,
    now: datetime | None = None,
) -> str:
    """Replace known ``{{NAME}}`` placeholders; unknown ones are left untouched."""

    if not text:
        return text
    resolvers = _resolvers(now or datetime.now(), filename)

    def _substitute(match: re.Match[str]) -> str:
        resolver = resolvers.get(match.group(1))
        return resolver() if resolver is not None else match.group(0)

    return _VARIABLE_PATTERN.sub(_substitute, text)


def has_template_variables(text: str) -> bool:
    return bool(text) and _VARIABLE_PATTERN.search(text) is not None


def get_template_variables(text: str) -> list[str]:
    """Return the distinct placeholders in order of first appearance."""

    seen: list[str] = []
    for match in _VARIABLE_PATTERN.finditer(text or ""):
        token = match.group(0)
        if token not in seen:
            seen.append(token)
    return seen
