"""router.py — Event and notice fan-out to observers.

The orchestrator hands every engine event and every notice it produces
to the router, tagged with the chat it belongs to. The router passes it
to each registered observer in order.

Observers are the transport's business: a chat bot renders events as
messages, the console driver prints them, tests collect them. A broken
observer gets logged and skipped. It never takes the session down.
"""

from __future__ import annotations

from typing import Protocol

import logfire

from .events import Event


# -- Observer protocol --------------------------------------------------------


class Observer(Protocol):
    """Something that watches the event stream for every chat."""

    async def on_event(self, chat_id: int | str | None, event: Event) -> None:
        """Called for every event and notice, in emission order."""
        ...


# -- Router -------------------------------------------------------------------


class Router:
    """Delivers events to observers sequentially.

    Sequential on purpose: observers see a turn's events in the order
    the engine emitted them, and ExecutionResult before the queue drains.

    Usage:
        router = Router(observers=[bot])
        await router.route(chat_id, event)
    """

    def __init__(self, observers: list[Observer] | None = None):
        self._observers = list(observers) if observers else []

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: Observer) -> None:
        self._observers.remove(observer)

    async def route(self, chat_id: int | str | None, event: Event) -> None:
        """Deliver one event to every observer."""
        for observer in list(self._observers):
            await self._safe_notify(observer, chat_id, event)

    async def _safe_notify(self, observer: Observer, chat_id: int | str | None, event: Event) -> None:
        """Notify an observer, catching exceptions so one bad observer
        doesn't break the rest."""
        try:
            await observer.on_event(chat_id, event)
        except Exception as e:
            logfire.error(
                "Observer {observer} failed on {event}: {error}",
                observer=type(observer).__name__,
                event=type(event).__name__,
                error=str(e),
            )
