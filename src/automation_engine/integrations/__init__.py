"""
外部协作方接口与默认实现
"""
from .actions import ActionDefinition, ActionDispatcher, BuiltinActions, LocalActionDispatcher
from .event_bus import EXECUTION_EVENTS_TOPIC, Event, EventBus
from .notifier import LoggingNotifier, Notifier
from .signals import InMemorySignalStore, SignalStore

__all__ = [
    "ActionDefinition",
    "ActionDispatcher",
    "BuiltinActions",
    "LocalActionDispatcher",
    "EXECUTION_EVENTS_TOPIC",
    "Event",
    "EventBus",
    "LoggingNotifier",
    "Notifier",
    "InMemorySignalStore",
    "SignalStore",
]
