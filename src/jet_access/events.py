"""
Event system for jet-access.

Every stage of the pipeline (secret lookup, strategy building, the session
engine) reports what it did as a structured event. Events fan out to an
in-memory collector, a JSONL file, or both, so a failed session can be
reconstructed afterwards.

Event types:
- SECRET_READ: A credential record was resolved (or failed to resolve)
- SECRET_LIST: A secret directory was enumerated
- AUTH_BUILD: Authentication strategies were built from credential material
- STATE: The session engine moved to a new state
- CONNECT: SSH connection initiated/established
- AUTH: Authentication succeeded/failed
- PTY: Pseudo-terminal requested
- SHELL: Interactive shell started/completed
- DISCONNECT: Connection closed
- ERROR: Any error condition

Credential material never reaches a sink: EventEmitter.emit replaces the
value of any REDACTED_FIELDS key, at any depth, with REDACTED.
"""
from __future__ import annotations

import json
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Iterator, Protocol


class EventType(str, Enum):
    """Event types for structured logging."""
    SECRET_READ = "SECRET_READ"
    SECRET_LIST = "SECRET_LIST"
    AUTH_BUILD = "AUTH_BUILD"
    STATE = "STATE"
    CONNECT = "CONNECT"
    AUTH = "AUTH"
    PTY = "PTY"
    SHELL = "SHELL"
    DISCONNECT = "DISCONNECT"
    ERROR = "ERROR"


REDACTED_FIELDS = frozenset({"password", "key", "key_passphrase", "passphrase", "token"})
REDACTED = "<redacted>"


def redact(value: Any) -> Any:
    """Return a copy of value with every REDACTED_FIELDS entry masked."""
    if isinstance(value, dict):
        return {
            k: (REDACTED if k in REDACTED_FIELDS and v not in (None, "", b"") else redact(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


@dataclass(frozen=True)
class Event:
    """One event: its type, when it happened (Unix ms) and its payload."""
    event_type: str
    timestamp: float = field(default_factory=lambda: time.time() * 1000)
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        valid_types = {e.value for e in EventType}
        assert self.event_type in valid_types, \
            f"Invalid event_type '{self.event_type}'. Must be one of: {sorted(valid_types)}"
        assert self.timestamp > 0, f"Timestamp must be positive, got {self.timestamp}"

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, line: str) -> "Event":
        raw = json.loads(line)
        return cls(
            event_type=raw["event_type"],
            timestamp=raw["timestamp"],
            data=raw.get("data", {}),
        )


class EventSink(Protocol):
    def emit(self, event: Event) -> None: ...

    def close(self) -> None: ...


class EventCollector:
    """Keeps events in memory; used by tests and the CLI's --events flag."""

    def __init__(self) -> None:
        self._events: list[Event] = []

    def emit(self, event: Event) -> None:
        self._events.append(event)

    def close(self) -> None:
        pass

    @property
    def events(self) -> list[Event]:
        return list(self._events)

    def get_by_type(self, event_type: str | EventType) -> list[Event]:
        if isinstance(event_type, EventType):
            event_type = event_type.value
        return [e for e in self._events if e.event_type == event_type]


class JSONLEventWriter:
    """
    Appends events to a JSONL file, one JSON object per line.

    The file is created on the first event. Writing after close() is a
    programming error.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._file: IO[str] | None = None
        self._closed = False

    def emit(self, event: Event) -> None:
        assert not self._closed, f"Event log {self._path} already closed"
        if self._file is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self._path, "a", encoding="utf-8")
        self._file.write(event.to_json() + "\n")
        self._file.flush()

    def close(self) -> None:
        self._closed = True
        if self._file is not None:
            self._file.close()
            self._file = None


class EventEmitter:
    """
    Builds events and dispatches them to every configured sink.

    Payloads are redacted before any sink sees them, so callers may pass
    whatever context they have without leaking credential material.
    """

    def __init__(
        self,
        collector: EventCollector | None = None,
        jsonl_path: Path | str | None = None,
    ) -> None:
        self._sinks: list[EventSink] = []
        if collector is not None:
            self._sinks.append(collector)
        if jsonl_path:
            self._sinks.append(JSONLEventWriter(jsonl_path))

    def emit(self, event_type: str | EventType, **data: Any) -> Event:
        if isinstance(event_type, EventType):
            event_type = event_type.value

        event = Event(event_type=event_type, data=redact(data))
        for sink in self._sinks:
            sink.emit(event)
        return event

    def close(self) -> None:
        for sink in self._sinks:
            sink.close()

    @contextmanager
    def timed_event(
        self,
        event_type: str | EventType,
        **initial_data: Any,
    ) -> Iterator[dict[str, Any]]:
        """
        Emit one event when the block exits, with duration_ms added.

        The yielded dict is the event payload; the block fills in the
        outcome. The event is emitted even if the block raises.

        Usage:
            with emitter.timed_event(EventType.SECRET_READ, path=path) as data:
                record = await fetch()
                data["shape"] = "nested"
        """
        start = time.monotonic()
        event_data = dict(initial_data)
        try:
            yield event_data
        finally:
            event_data["duration_ms"] = (time.monotonic() - start) * 1000
            self.emit(event_type, **event_data)


def read_jsonl_events(path: Path | str) -> list[Event]:
    """Load every event from a JSONL log written by JSONLEventWriter."""
    path = Path(path)
    assert path.exists(), f"JSONL file not found: {path}"

    with open(path, "r", encoding="utf-8") as f:
        return [Event.from_json(line) for line in f if line.strip()]
