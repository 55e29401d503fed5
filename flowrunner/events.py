"""Progress events emitted while a flow runs.

The local composer and external backends report progress with the same
event shapes, so the reconciler consumes one contract for both.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


class ProgressEvent:
    """Base class for progress events."""

    pass


@dataclass
class FlowStarted(ProgressEvent):
    depth: int
    flow_path: str
    flow_name: str = ""
    command_count: Optional[int] = None


@dataclass
class FlowFinished(ProgressEvent):
    depth: int
    status: str = "Passed"
    duration_ms: int = 0

    @property
    def passed(self) -> bool:
        return self.status.strip().lower() == "passed"

    @property
    def cancelled(self) -> bool:
        return self.status.strip().lower() == "cancelled"


@dataclass
class CommandStarted(ProgressEvent):
    depth: int
    index: int
    command: str = ""


@dataclass
class CommandPassed(ProgressEvent):
    index: int
    duration_ms: int = 0


@dataclass
class CommandFailed(ProgressEvent):
    index: int
    error: str = ""
    duration_ms: int = 0


@dataclass
class CommandSkipped(ProgressEvent):
    index: int
    reason: str = ""


@dataclass
class CommandCancelled(ProgressEvent):
    index: int
    reason: str = ""


@dataclass
class CommandRetrying(ProgressEvent):
    index: int
    attempt: int = 0
    max_attempts: int = 0


@dataclass
class Log(ProgressEvent):
    message: str
    depth: int = 0


# Session-level events carry nothing the reconciler needs
IGNORED_EVENT_TYPES = ("SessionStarted", "SessionFinished")


def _field(payload: Dict[str, Any], *names: str, default: Any = None) -> Any:
    """Read the first present key among snake_case/camelCase spellings."""
    for name in names:
        if name in payload and payload[name] is not None:
            return payload[name]
    return default


def parse_event(payload: Dict[str, Any]) -> Optional[ProgressEvent]:
    """Build a ProgressEvent from a backend JSON payload.

    Accepts flat payloads ({"type": ..., "index": ...}) and payloads whose
    fields sit under "data" or "payload".

    Args:
        payload: Decoded JSON object

    Returns:
        The event, or None for session events and unknown types

    Raises:
        ValueError: If a known event is missing a required field or a
            field has the wrong type
    """
    event_type = _field(payload, "type", "event")
    if not isinstance(event_type, str) or event_type in IGNORED_EVENT_TYPES:
        return None

    nested = _field(payload, "data", "payload")
    fields = {**payload, **nested} if isinstance(nested, dict) else payload

    try:
        return _build_event(event_type, fields)
    except TypeError as e:
        raise ValueError(f"{event_type} event has an invalid field: {e}")


def _build_event(event_type: str, fields: Dict[str, Any]) -> Optional[ProgressEvent]:
    def require(*names: str) -> Any:
        value = _field(fields, *names)
        if value is None:
            raise ValueError(f"{event_type} event missing '{names[0]}'")
        return value

    depth = int(_field(fields, "depth", default=0))
    duration = int(_field(fields, "duration_ms", "durationMs", "duration", default=0))

    if event_type == "FlowStarted":
        count = _field(fields, "command_count", "commandCount")
        return FlowStarted(
            depth=depth,
            flow_path=str(require("flow_path", "flowPath")),
            flow_name=str(_field(fields, "flow_name", "flowName", default="")),
            command_count=int(count) if count is not None else None,
        )
    if event_type == "FlowFinished":
        return FlowFinished(
            depth=depth,
            status=str(_field(fields, "status", default="Passed")),
            duration_ms=duration,
        )
    if event_type == "CommandStarted":
        return CommandStarted(
            depth=depth,
            index=int(require("index")),
            command=str(_field(fields, "command", default="")),
        )
    if event_type == "CommandPassed":
        return CommandPassed(index=int(require("index")), duration_ms=duration)
    if event_type == "CommandFailed":
        return CommandFailed(
            index=int(require("index")),
            error=str(_field(fields, "error", default="")),
            duration_ms=duration,
        )
    if event_type == "CommandSkipped":
        return CommandSkipped(
            index=int(require("index")),
            reason=str(_field(fields, "reason", default="")),
        )
    if event_type == "CommandCancelled":
        return CommandCancelled(
            index=int(require("index")),
            reason=str(_field(fields, "reason", default="")),
        )
    if event_type == "CommandRetrying":
        return CommandRetrying(
            index=int(require("index")),
            attempt=int(_field(fields, "attempt", default=0)),
            max_attempts=int(_field(fields, "max_attempts", "maxAttempts", default=0)),
        )
    if event_type == "Log":
        return Log(message=str(_field(fields, "message", default="")), depth=depth)

    return None
