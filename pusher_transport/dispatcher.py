"""Event dispatch to bound handlers."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

from .protocol import Event

_LOGGER = logging.getLogger(__name__)

EventHandler = Callable[[Event], Awaitable[None] | None]
EventFilter = Callable[[Event], Awaitable[Event | None]]


class EventDispatcher:
    """Maps event names to handlers, invoked in registration order.

    Each handler receives its own copy of the event. Coroutine handlers are
    awaited before the next handler runs.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._lock = asyncio.Lock()

    async def bind(self, event_name: str, handler: EventHandler) -> None:
        """Register ``handler`` for ``event_name``. Duplicates are allowed."""
        async with self._lock:
            self._handlers.setdefault(event_name, []).append(handler)

    async def unbind(self, event_name: str, handler: EventHandler | None = None) -> None:
        """Remove one handler, or every handler when ``handler`` is None."""
        async with self._lock:
            handlers = self._handlers.get(event_name)
            if handlers is None:
                return
            if handler is None:
                del self._handlers[event_name]
                return
            try:
                handlers.remove(handler)
            except ValueError:
                return
            if not handlers:
                del self._handlers[event_name]

    async def handlers_for(self, event_name: str) -> list[EventHandler]:
        async with self._lock:
            return list(self._handlers.get(event_name, ()))

    async def dispatch(self, event: Event) -> None:
        """Invoke every handler bound to ``event.event``."""
        for handler in await self.handlers_for(event.event):
            try:
                result = handler(event.copy())
                if inspect.isawaitable(result):
                    await result
            except Exception as err:
                _LOGGER.exception("Handler for %s failed: %s", event.event, err)

    async def run(
        self,
        queue: asyncio.Queue[Event | None],
        *,
        prepare: EventFilter | None = None,
    ) -> None:
        """Drain ``queue`` until the ``None`` sentinel arrives.

        ``prepare`` may rewrite an event before dispatch, or return None to
        drop it.
        """
        while True:
            event = await queue.get()
            if event is None:
                _LOGGER.debug("Dispatcher stopped")
                return
            if prepare is not None:
                try:
                    prepared = await prepare(event)
                except Exception as err:
                    _LOGGER.exception("Preparing %s failed: %s", event.event, err)
                    continue
                if prepared is None:
                    continue
                event = prepared
            await self.dispatch(event)
