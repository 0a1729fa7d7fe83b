"""
Broadcast Signals

Minimal in-process signal used by the transport and the scheduler to
publish events to any number of listeners. Listeners are held by weak
reference when they are bound methods, so a consumer object that goes away
is dropped automatically.
"""

import weakref
from typing import Any, Callable

from .logging_setup import get_service_logger

logger = get_service_logger("signals")


class _StrongRef:
    """Reference-like wrapper that keeps a plain function alive"""

    def __init__(self, thing):
        self._thing = thing

    def __call__(self):
        return self._thing


def ref(thing):
    """ Return a reference to a listener. Bound methods are referenced
        weakly so their owner can be collected; plain functions and
        lambdas are kept alive for as long as they stay connected.
    """

    try:
        thing.__func__
        thing.__self__
    except AttributeError:
        return _StrongRef(thing)
    else:
        return weakref.WeakMethod(thing)


class Signal:
    """
    A named event with weakly referenced listeners.

    Emission is synchronous and in connection order. Listeners that raise
    are logged and skipped so one broken consumer cannot stall the others.
    """

    def __init__(self, name: str):
        self.name = name
        self._slots: list = []

    def connect(self, slot: Callable[..., Any]) -> None:
        """Add a listener (no-op if already connected)"""
        if slot in self._listeners():
            return
        self._slots.append(ref(slot))

    def disconnect(self, slot: Callable[..., Any]) -> None:
        """Remove a listener if present"""
        self._slots = [
            r for r in self._slots
            if r() is not None and r() != slot
        ]

    def disconnect_owner(self, owner: Any) -> int:
        """Remove every bound method belonging to ``owner``"""
        before = len(self._slots)
        self._slots = [
            r for r in self._slots
            if r() is not None and getattr(r(), "__self__", None) is not owner
        ]
        return before - len(self._slots)

    def __len__(self) -> int:
        return len(self._listeners())

    def _listeners(self) -> list[Callable[..., Any]]:
        alive = []
        for r in self._slots:
            slot = r()
            if slot is not None:
                alive.append(slot)
        return alive

    def emit(self, *args: Any) -> None:
        """Call every live listener with ``args``"""
        # Snapshot so listeners may connect/disconnect while we iterate
        for slot in self._listeners():
            try:
                slot(*args)
            except Exception as e:
                logger.error(f"Listener for '{self.name}' failed: {e}", exc_info=True)

        # Drop dead references
        self._slots = [r for r in self._slots if r() is not None]
