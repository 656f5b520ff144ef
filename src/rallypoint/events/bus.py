"""Async event bus and the activity recorder that listens on it."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import Any

from rallypoint.events.types import EventType
from rallypoint.storage.base import StorageBackend

logger = logging.getLogger(__name__)

Listener = Callable[[EventType, dict[str, Any]], Coroutine[Any, Any, None]]


class EventBus:
    """Async pub/sub bus. Listener failures are logged, never raised to the emitter."""

    def __init__(self) -> None:
        self._listeners: dict[EventType, list[Listener]] = defaultdict(list)
        self._global_listeners: list[Listener] = []

    def on(self, event_type: EventType, listener: Listener) -> None:
        self._listeners[event_type].append(listener)

    def on_all(self, listener: Listener) -> None:
        self._global_listeners.append(listener)

    def off(self, event_type: EventType, listener: Listener) -> None:
        if listener in self._listeners[event_type]:
            self._listeners[event_type].remove(listener)

    async def emit(
        self,
        event_type: EventType,
        data: dict[str, Any] | None = None,
        *,
        actor_id: str | None = None,
    ) -> None:
        """Deliver an event to its listeners, then to the catch-all listeners."""
        payload = dict(data or {})
        if actor_id is not None:
            payload.setdefault("actor_id", actor_id)
        listeners = self._listeners.get(event_type, []) + self._global_listeners

        for listener in listeners:
            try:
                await listener(event_type, payload)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in event listener for %s", event_type)

    def clear(self) -> None:
        self._listeners.clear()
        self._global_listeners.clear()


# Which payload key names the entity an event is about.
_ENTITY_KEYS: dict[str, str] = {
    "user": "user_id",
    "region": "region_id",
    "chapter": "chapter_id",
    "join": "request_id",
    "member": "chapter_id",
    "content": "content_id",
    "rsvp": "content_id",
    "attendance": "content_id",
    "comment": "comment_id",
}


class ActivityRecorder:
    """Writes one activity log row per emitted event."""

    def __init__(self, store: StorageBackend) -> None:
        self.store = store

    def attach(self, bus: EventBus) -> None:
        bus.on_all(self.record)

    async def record(self, event_type: EventType, data: dict[str, Any]) -> None:
        entity_type = event_type.value.split(".", 1)[0]
        entity_id = data.get(_ENTITY_KEYS.get(entity_type, "id"))
        details = ", ".join(
            f"{key}={value}" for key, value in sorted(data.items()) if key != "actor_id"
        )
        await self.store.log_activity(
            {
                "id": str(uuid.uuid4())[:8],
                "user_id": data.get("actor_id"),
                "activity_type": event_type.value,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "description": details or None,
                "created_at": datetime.now(UTC).isoformat(),
            }
        )
