"""Rallypoint event system."""

from rallypoint.events.bus import ActivityRecorder, EventBus
from rallypoint.events.types import EventType

__all__ = ["ActivityRecorder", "EventBus", "EventType"]
