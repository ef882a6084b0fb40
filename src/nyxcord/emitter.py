"""
Typed event emitter shared by the REST and Gateway components.

Events are members of a closed Enum; listeners receive a single payload
object. A failing listener is logged and never breaks the emitting component
or the remaining listeners. Coroutine listeners are scheduled as tasks owned
by the emitter.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

Listener = Callable[[Any], Any]


class EventEmitter(Generic[E]):
    """Publish/subscribe hub keyed by an event Enum."""

    def __init__(self) -> None:
        # (listener, once) per registration, in registration order
        self._listeners: dict[E, list[tuple[Listener, bool]]] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: E, listener: Listener) -> Listener:
        """Register a listener and return it."""
        self._listeners.setdefault(event, []).append((listener, False))
        return listener

    def once(self, event: E, listener: Listener) -> Listener:
        """Register a listener that is removed after its first call."""
        self._listeners.setdefault(event, []).append((listener, True))
        return listener

    def off(self, event: E, listener: Listener) -> None:
        """Remove every registration of a listener (no-op if it was never registered)."""
        registrations = self._listeners.get(event)
        if not registrations:
            return
        self._listeners[event] = [entry for entry in registrations if entry[0] != listener]

    def listener_count(self, event: E) -> int:
        return len(self._listeners.get(event, []))

    def remove_all_listeners(self, event: E | None = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def emit(self, event: E, payload: Any = None) -> bool:
        """
        Deliver payload to every listener of event.

        Args:
            event: Event member.
            payload: Event payload passed to each listener.

        Returns:
            True if at least one listener was registered.
        """
        registrations = list(self._listeners.get(event, []))
        for entry in registrations:
            listener, once = entry
            if once:
                self._listeners[event] = [
                    other for other in self._listeners.get(event, []) if other is not entry
                ]
            try:
                result = listener(payload)
            except Exception as exc:
                logger.exception(
                    "Error in event listener: %s",
                    exc,
                    extra={"event": event.value},
                )
                continue
            if inspect.isawaitable(result):
                self._schedule(event, result)
        return bool(registrations)

    def _schedule(self, event: E, awaitable: Any) -> None:
        async def _run() -> None:
            try:
                await awaitable
            except Exception as exc:
                logger.exception(
                    "Error in async event listener: %s",
                    exc,
                    extra={"event": event.value},
                )

        task = asyncio.get_running_loop().create_task(_run())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def drain(self) -> None:
        """Wait for scheduled async listeners to finish."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
