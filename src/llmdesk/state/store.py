"""Observable single-value container backing the backend state.

The store holds one immutable snapshot. Writers replace it wholesale with
:meth:`StateStore.set`; every registered listener is then called exactly
once, synchronously, with no arguments, and reads the new value through
:meth:`StateStore.get`.
"""

from __future__ import annotations

import logging
from typing import Callable, Generic, TypeVar
from weakref import WeakMethod

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[], None]

__all__ = ["Listener", "StateStore"]


class StateStore(Generic[T]):
    """Holds the current snapshot and notifies listeners on replacement.

    Thread Safety:
        Not thread-safe. All calls must happen on the event loop thread.
    """

    __slots__ = ("_value", "_listeners")

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._listeners: list[_ListenerRef] = []

    def get(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        """Replace the snapshot and notify every listener once.

        A listener that raises is logged; the remaining listeners still run.
        """
        self._value = value
        dead: list[_ListenerRef] = []
        for listener_ref in list(self._listeners):
            listener = listener_ref.resolve()
            if listener is None:
                dead.append(listener_ref)
                continue
            try:
                listener()
            except Exception:
                logger.exception("State listener %s raised", _listener_name(listener))
        for listener_ref in dead:
            if listener_ref in self._listeners:
                self._listeners.remove(listener_ref)

    def update(self, change: Callable[[T], T]) -> T:
        """Build the replacement from the current snapshot and publish it."""

        value = change(self._value)
        self.set(value)
        return value

    def add_listener(self, listener: Listener) -> None:
        """Register ``listener``; registering it again is a no-op."""

        if any(ref.matches(listener) for ref in self._listeners):
            return
        self._listeners.append(_ListenerRef.create(listener))
        logger.debug("Registered state listener %s", _listener_name(listener))

    def remove_listener(self, listener: Listener) -> None:
        """Unregister ``listener``; unknown listeners are ignored."""

        for index, listener_ref in enumerate(self._listeners):
            if listener_ref.matches(listener):
                self._listeners.pop(index)
                logger.debug("Removed state listener %s", _listener_name(listener))
                return

    def listener_count(self) -> int:
        return sum(1 for ref in self._listeners if ref.resolve() is not None)


class _ListenerRef:
    """Listener holder; bound methods are kept weakly so subscribers can be collected."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, listener_ref: WeakMethod | Listener, is_weak: bool) -> None:
        self._ref = listener_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, listener: Listener) -> _ListenerRef:
        if hasattr(listener, "__self__") and hasattr(listener, "__func__"):
            try:
                return cls(WeakMethod(listener), is_weak=True)  # type: ignore[arg-type]
            except TypeError:
                pass
        return cls(listener, is_weak=False)

    def resolve(self) -> Listener | None:
        if self._is_weak:
            return self._ref()  # type: ignore[operator]
        return self._ref  # type: ignore[return-value]

    def matches(self, listener: Listener) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        if resolved is listener:
            return True
        if hasattr(listener, "__self__") and hasattr(listener, "__func__"):
            return (
                getattr(resolved, "__self__", None) is listener.__self__  # type: ignore[attr-defined]
                and getattr(resolved, "__func__", None) is listener.__func__  # type: ignore[attr-defined]
            )
        return False


def _listener_name(listener: Listener) -> str:
    return getattr(listener, "__qualname__", None) or repr(listener)
