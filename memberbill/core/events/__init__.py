"""In-process domain event bus."""

from .base import BaseEvent, GlobalEventBus, get_global_event_bus

__all__ = ["BaseEvent", "GlobalEventBus", "get_global_event_bus"]
