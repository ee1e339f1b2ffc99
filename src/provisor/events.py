"""Registration and resolution events, and a synchronous dispatcher for them."""

from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, runtime_checkable

__all__ = [
    "SERVICE_REGISTERED",
    "SERVICE_RESOLVED",
    "ServiceRegistered",
    "ServiceResolved",
    "EventSink",
    "EventDispatcher",
]

SERVICE_REGISTERED = "service.registered"
SERVICE_RESOLVED = "service.resolved"

Listener = Callable[[Any], None]


@dataclass(frozen=True)
class ServiceRegistered:
    service_id: str
    service_class: str
    alias: Optional[str] = None
    group: Optional[str] = None
    tags: tuple[str, ...] = ()
    singleton: bool = True
    implements: Optional[str] = None


@dataclass(frozen=True)
class ServiceResolved:
    service_id: str
    instance: Any
    from_cache: bool = False
    dependencies: tuple[str, ...] = ()


@runtime_checkable
class EventSink(Protocol):
    """Anything that can receive events pushed by the registry and resolver."""

    def dispatch(self, name: str, event: Any) -> None: ...


class EventDispatcher:
    """Dispatch events to listeners, highest priority first.

    Listeners with equal priority run in the order they were added.

    Example:
        >>> dispatcher = EventDispatcher()
        >>> dispatcher.add_listener(SERVICE_RESOLVED, lambda event: print(event.service_id))
        >>> container = Container(event_sink=dispatcher)
    """

    def __init__(self):
        self._listeners: dict[str, list[tuple[Listener, int]]] = {}

    def dispatch(self, name: str, event: Any) -> None:
        for listener in self.listeners(name):
            listener(event)

    def add_listener(self, name: str, listener: Listener, priority: int = 0) -> None:
        self._listeners.setdefault(name, []).append((listener, priority))

    def remove_listener(self, name: str, listener: Listener) -> None:
        if name not in self._listeners:
            return
        remaining = [entry for entry in self._listeners[name] if entry[0] is not listener]
        if remaining:
            self._listeners[name] = remaining
        else:
            del self._listeners[name]

    def has_listeners(self, name: str) -> bool:
        return bool(self._listeners.get(name))

    def listeners(self, name: str) -> list[Listener]:
        # sorted() is stable, so ties keep insertion order.
        entries = sorted(self._listeners.get(name, []), key=lambda entry: -entry[1])
        return [listener for listener, _ in entries]
