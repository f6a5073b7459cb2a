"""Core infrastructure: events, the event bus and per-entity locks."""

from .events import Event, EventType
from .locks import KeyedLocks
from .pubsub import PubSubManager

__all__ = ["Event", "EventType", "KeyedLocks", "PubSubManager"]
