#!/usr/bin/env python3
"""
Progress event sinks for crm-migrate.

The orchestrator reports progress by calling ``sink.emit(event, payload)``
on a sink passed in by the caller. Event names:

    migration:start, migration:complete, phase:start,
    entity:start, entity:progress, entity:complete,
    validation:start, validation:complete, quality:alert,
    rollback:start, rollback:complete
"""

from typing import Any, Callable, Dict, List, Protocol, Tuple

MIGRATION_START = "migration:start"
MIGRATION_COMPLETE = "migration:complete"
PHASE_START = "phase:start"
ENTITY_START = "entity:start"
ENTITY_PROGRESS = "entity:progress"
ENTITY_COMPLETE = "entity:complete"
VALIDATION_START = "validation:start"
VALIDATION_COMPLETE = "validation:complete"
QUALITY_ALERT = "quality:alert"
ROLLBACK_START = "rollback:start"
ROLLBACK_COMPLETE = "rollback:complete"


class ProgressSink(Protocol):
    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        ...


class NullSink:
    """Discards every event."""

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        pass


class CallbackSink:
    """Forwards events to a plain function ``fn(event, payload)``."""

    def __init__(self, fn: Callable[[str, Dict[str, Any]], None]):
        self.fn = fn

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        self.fn(event, payload)


class RecordingSink:
    """Keeps every event in order."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((event, dict(payload)))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def of(self, event: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]
