"""
Typed event channels with explicit unsubscribe handles.

Services publish named events (``tokenStored``, ``authExpired``, ...)
or save status entries. Listeners subscribe by event name or glob
pattern and get back a handle that removes exactly that listener.

Usage:
    channel = EventChannel("graphkeep.auth")
    sub = channel.on(AuthEvent.TOKEN_STORED, handle_token)
    channel.on("auth*", log_auth_trouble)
    channel.emit(AuthEvent.TOKEN_STORED, {"user": "octocat"})
    sub.unsubscribe()
"""

from __future__ import annotations

import fnmatch
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar, Union

from pydantic import BaseModel, Field

logger = logging.getLogger("graphkeep.events")

T = TypeVar("T")


class AuthEvent(str, Enum):
    """Credential lifecycle events consumed by the UI."""

    TOKEN_STORED = "tokenStored"
    TOKEN_VALIDATED = "tokenValidated"
    TOKENS_CLEARED = "tokensCleared"
    AUTH_EXPIRED = "authExpired"
    RE_AUTH_REQUIRED = "reAuthRequired"
    AUTH_DEGRADED = "authDegraded"
    AUTH_ERROR = "authError"
    HEALTH_CHECK = "healthCheck"
    HEALTH_CHECK_ERROR = "healthCheckError"
    AUTO_CONNECTED = "autoConnected"
    APP_INSTALLATION_STORED = "appInstallationStored"
    APP_INSTALLATION_CLEARED = "appInstallationCleared"


class Event(BaseModel):
    """A single emitted event."""

    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Subscription:
    """Handle returned by ``on``; calling ``unsubscribe`` is idempotent."""

    def __init__(self, remove: Callable[[], None]):
        self._remove = remove
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._remove()

    __call__ = unsubscribe


class Observable(Generic[T]):
    """A single-topic observer list.

    Handlers run synchronously in registration order. A failing handler
    is logged and never prevents the others from running.
    """

    def __init__(self, name: str):
        self._name = name
        self._handlers: list[Callable[[T], Any]] = []

    def subscribe(self, handler: Callable[[T], Any]) -> Subscription:
        self._handlers.append(handler)

        def _remove() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return Subscription(_remove)

    def publish(self, item: T) -> None:
        for handler in list(self._handlers):
            try:
                handler(item)
            except Exception as exc:
                logger.error("Handler error on '%s': %s", self._name, exc)

    def clear(self) -> None:
        self._handlers.clear()

    def __len__(self) -> int:
        return len(self._handlers)


class EventChannel:
    """Named-event channel with glob pattern subscriptions.

    Args:
        name: Channel name, used in log lines.
    """

    def __init__(self, name: str):
        self._name = name
        self._listeners: dict[str, list[Callable[[Event], Any]]] = {}

    def on(self, pattern: Union[str, Enum], callback: Callable[[Event], Any]) -> Subscription:
        """Register a callback for events matching a name or glob pattern.

        Args:
            pattern: Event name (or enum member) or glob such as ``"auth*"``.
            callback: Called with each matching Event.

        Returns:
            Subscription whose ``unsubscribe()`` removes this callback.
        """
        key = _event_name(pattern)
        self._listeners.setdefault(key, []).append(callback)

        def _remove() -> None:
            callbacks = self._listeners.get(key)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._listeners[key]

        return Subscription(_remove)

    def emit(self, name: Union[str, Enum], payload: Optional[dict[str, Any]] = None) -> int:
        """Deliver an event to every matching listener.

        Returns:
            Number of callbacks that ran without raising.
        """
        event = Event(name=_event_name(name), payload=payload or {})
        delivered = 0
        for pattern, callbacks in list(self._listeners.items()):
            if not fnmatch.fnmatchcase(event.name, pattern):
                continue
            for cb in list(callbacks):
                try:
                    cb(event)
                    delivered += 1
                except Exception as exc:
                    logger.error(
                        "Listener error on %s for '%s': %s",
                        self._name, event.name, exc,
                    )
        return delivered

    def listener_count(self) -> int:
        return sum(len(cbs) for cbs in self._listeners.values())

    def clear(self) -> None:
        """Drop every listener."""
        self._listeners.clear()


def _event_name(name: Union[str, Enum]) -> str:
    return name.value if isinstance(name, Enum) else name
