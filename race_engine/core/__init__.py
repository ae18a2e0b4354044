from race_engine.core.event_bus import (
    DomainEvent,
    EventBus,
    PriorityHoldGranted,
    PriorityHoldReleased,
    RaceCreated,
    RaceOpened,
    RfqAwarded,
    RfqCancelled,
    RfqClosed,
    get_event_bus,
    reset_event_bus_for_tests,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "RaceCreated",
    "RaceOpened",
    "RfqAwarded",
    "PriorityHoldGranted",
    "PriorityHoldReleased",
    "RfqClosed",
    "RfqCancelled",
    "get_event_bus",
    "reset_event_bus_for_tests",
]
