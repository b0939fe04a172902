"""
piggyflow.core.events - Synchronous Event Emitter
==================================================

A small observer-list-per-event-name abstraction shared by the three
orchestration components. Delivery is synchronous: ``emit()`` calls every
listener before it returns, in registration order.

    ┌───────────────────────┐   emit("step:updated", {...})
    │ WorkflowStateManager  │ ─────────────────────────────┐
    └───────────────────────┘                              ▼
                                              ┌─────────────────────────┐
                                              │ listener 1, listener 2  │
                                              └─────────────────────────┘

A listener that raises is logged and skipped; the remaining listeners still
receive the event and the emitting component never sees the exception.

Usage:
    >>> emitter = EventEmitter()
    >>> emitter.on("status:changed", lambda data: print(data["current"]))
    >>> emitter.emit("status:changed", {"previous": "idle", "current": "running"})
    running
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Optional

import structlog

logger = structlog.get_logger()

Listener = Callable[..., Any]


class EventEmitter:
    """Named-event observer registry with same-tick delivery."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}
        self._event_logger = logger.bind(component=type(self).__name__)

    def on(self, event: str, listener: Listener) -> Listener:
        """Register ``listener`` for ``event``. Returns the listener."""
        self._listeners.setdefault(event, []).append(listener)
        return listener

    def once(self, event: str, listener: Listener) -> Listener:
        """Register a listener that detaches itself after the first call.

        Returns the wrapper, which is what ``off()`` needs to remove it early.
        """

        def _wrapper(*args: Any) -> Any:
            self.off(event, _wrapper)
            return listener(*args)

        return self.on(event, _wrapper)

    def off(self, event: str, listener: Listener) -> bool:
        """Remove one registration of ``listener``. Returns False if absent."""
        listeners = self._listeners.get(event)
        if not listeners or listener not in listeners:
            return False
        listeners.remove(listener)
        if not listeners:
            del self._listeners[event]
        return True

    def emit(self, event: str, *args: Any) -> bool:
        """Call every listener for ``event``.

        Returns:
            True if at least one listener was registered.
        """
        # Copy: listeners may detach themselves (once) while we iterate.
        listeners = list(self._listeners.get(event, ()))
        for listener in listeners:
            try:
                listener(*args)
            except Exception as exc:
                self._event_logger.error(
                    "event_listener_error",
                    event=event,
                    error=str(exc),
                    exc_info=True,
                )
        return bool(listeners)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def remove_all_listeners(self, event: Optional[str] = None) -> None:
        """Drop listeners for ``event``, or for every event when None."""
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)
