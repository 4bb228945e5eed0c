"""
pretested-integration: in-process event stream for one workflow instance.

Components publish lifecycle events (change detected, revision will merge,
workspace prepared, pushed, rolled back) to an :class:`EventBus`. Delivery is
synchronous and in publish order. A subscriber that raises is recorded as a
:class:`DispatchError` and never stops the integration step that published.
The most recent events stay in a bounded buffer for :meth:`EventBus.replay`,
which is how ``--verbose`` runs and tests inspect what happened.
"""

from __future__ import annotations

import itertools
import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Final

from pretested_integration.domain.events import EventType, IntegrationEvent

Subscriber = Callable[[IntegrationEvent], object]

MAX_DISPATCH_ERRORS: Final[int] = 256


@dataclass(frozen=True, slots=True)
class DispatchError:
    event_id: str
    target: str
    error_type: str
    message: str


class EventBus:
    def __init__(self, *, buffer_size: int = 512) -> None:
        if isinstance(buffer_size, bool) or not isinstance(buffer_size, int) or buffer_size <= 0:
            raise ValueError(f"buffer_size must be a positive integer, got {buffer_size!r}")
        self._history: deque[IntegrationEvent] = deque(maxlen=buffer_size)
        self._errors: deque[DispatchError] = deque(maxlen=MAX_DISPATCH_ERRORS)
        self._subscribers: dict[int, tuple[EventType | None, Subscriber]] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, event_type: str | EventType | None, callback: Subscriber) -> int:
        """Register ``callback`` for one event type, or every event when ``None``.

        Returns a token for :meth:`unsubscribe`.
        """
        if not callable(callback):
            raise ValueError("callback must be callable")
        wanted = None if event_type is None else _event_type(event_type)
        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = (wanted, callback)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscribers.pop(token, None) is not None

    def publish(self, event: IntegrationEvent) -> tuple[DispatchError, ...]:
        """Deliver ``event`` to matching subscribers and return their failures."""
        if not isinstance(event, IntegrationEvent):
            raise ValueError(f"event must be IntegrationEvent, got {type(event).__name__}")
        with self._lock:
            self._history.append(event)
            targets = [
                callback
                for wanted, callback in self._subscribers.values()
                if wanted is None or wanted == event.event_type
            ]

        failures: list[DispatchError] = []
        for callback in targets:
            try:
                callback(event)
            except Exception as exc:  # noqa: BLE001 - subscriber faults must not abort a publish
                failures.append(
                    DispatchError(event.event_id, _describe(callback), type(exc).__name__, str(exc))
                )
        if failures:
            with self._lock:
                self._errors.extend(failures)
        return tuple(failures)

    def emit(
        self, event_type: str | EventType, payload: Mapping[str, object] | None = None
    ) -> IntegrationEvent:
        event = IntegrationEvent(event_type=_event_type(event_type), payload=dict(payload or {}))
        self.publish(event)
        return event

    def replay(
        self,
        *,
        since: datetime | None = None,
        event_type: str | EventType | None = None,
        limit: int | None = None,
    ) -> tuple[IntegrationEvent, ...]:
        """Buffered events in publish order, optionally newer than ``since``.

        ``limit`` keeps only the most recent matches.
        """
        if since is not None and since.utcoffset() is None:
            raise ValueError("since datetime must be timezone-aware")
        if limit is not None and limit <= 0:
            return ()
        cutoff = since.astimezone(UTC) if since is not None else None
        wanted = None if event_type is None else _event_type(event_type)
        with self._lock:
            history = list(self._history)
        matches = [
            event
            for event in history
            if (cutoff is None or event.timestamp > cutoff)
            and (wanted is None or event.event_type == wanted)
        ]
        return tuple(matches if limit is None else matches[-limit:])

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._errors)


def _event_type(value: str | EventType) -> EventType:
    try:
        return EventType(value)
    except ValueError as exc:
        known = ", ".join(member.value for member in EventType)
        raise ValueError(f"invalid event_type {value!r}; allowed: {known}") from exc


def _describe(callback: Subscriber) -> str:
    return getattr(callback, "__name__", None) or type(callback).__name__


__all__ = ["DispatchError", "EventBus", "Subscriber"]
