"""Lifecycle events emitted by the tool pipeline, security gate and orchestrator."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol


@dataclass
class Event:
    """Base event."""

    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC), kw_only=True)


@dataclass
class ToolCalled(Event):
    tool: str
    arguments: dict[str, Any]


@dataclass
class ToolExecuted(Event):
    tool: str
    arguments: dict[str, Any]
    result: Any
    duration_ms: float


@dataclass
class ToolFailed(Event):
    tool: str
    arguments: dict[str, Any]
    error: str


@dataclass
class SecurityViolation(Event):
    type: str
    details: dict[str, Any]


@dataclass
class AgentStarted(Event):
    conversation_id: str | None
    message: str


@dataclass
class AgentCompleted(Event):
    conversation_id: str | None
    finish_reason: str | None
    iterations: int


class EventSink(Protocol):
    """Receiver for lifecycle events."""

    def emit(self, event: Event) -> None: ...


class NullEventSink:
    """Discards every event."""

    def emit(self, event: Event) -> None:
        pass


class RecordingEventSink:
    """Keeps events in memory, mostly for tests."""

    def __init__(self):
        self.events: list[Event] = []

    def emit(self, event: Event) -> None:
        self.events.append(event)

    def of_type[E: Event](self, event_type: type[E]) -> list[E]:
        return [event for event in self.events if isinstance(event, event_type)]


class CompositeEventSink:
    """Fans events out to several sinks."""

    def __init__(self, *sinks: EventSink):
        self.sinks = list(sinks)

    def emit(self, event: Event) -> None:
        for sink in self.sinks:
            sink.emit(event)
