from collections import defaultdict
from collections.abc import Callable, Coroutine
from typing import Any

type Handler[T] = Callable[[T], Coroutine[Any, Any, None]]


class EventBus:
    """Awaited, in-order delivery: `publish` returns once every handler has run."""

    def __init__(self):
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._catch_all: list[Handler] = []

    def subscribe[T](self, event_type: type[T], handler: Handler[T]) -> None:
        self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: Handler[Any]) -> None:
        self._catch_all.append(handler)

    async def publish[T](self, event: T) -> None:
        for handler in self._handlers.get(type(event), []):
            await handler(event)
        for handler in self._catch_all:
            await handler(event)
