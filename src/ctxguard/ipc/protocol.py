"""IPC protocol definitions for engine status and control."""

import json
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Optional, Union


class CommandType(str, Enum):
    """Available IPC commands."""

    STATUS = "status"
    CONTEXTS = "contexts"
    USAGE = "usage"
    CLEANUP = "cleanup"
    ARCHIVES = "archives"
    SHUTDOWN = "shutdown"
    CREATE = "create"
    REMOVE = "remove"
    EVENT = "event"
    TANGENT_PUSH = "tangent_push"
    TANGENT_POP = "tangent_pop"
    THRESHOLDS = "thresholds"


# Commands that act on a single context
CONTEXT_COMMANDS = {
    CommandType.USAGE,
    CommandType.CLEANUP,
    CommandType.ARCHIVES,
    CommandType.CREATE,
    CommandType.REMOVE,
    CommandType.EVENT,
    CommandType.TANGENT_PUSH,
    CommandType.TANGENT_POP,
    CommandType.THRESHOLDS,
}


class ResponseStatus(str, Enum):
    """Response status codes."""

    OK = "ok"
    ERROR = "error"


@dataclass
class Command:
    """Command sent from a client to the engine.

    Only type is always present; the rest are per-command arguments and
    are left out of the wire form when unset.
    """

    type: CommandType
    context_id: Optional[str] = None
    mode: Optional[str] = None  # cleanup
    limit: Optional[int] = None  # archives
    scope: Optional[str] = None  # create
    task: Optional[str] = None  # create
    overrides: Optional[dict[str, Any]] = None  # create: nested config overrides
    force: bool = False  # create: replace an existing context
    event_type: Optional[str] = None  # event
    payload: Optional[dict[str, Any]] = None  # event
    importance: Optional[int] = None  # event
    reason: Optional[str] = None  # tangent_push
    new_task: Optional[str] = None  # tangent_push
    return_point: Optional[str] = None  # tangent_push
    result: Any = None  # tangent_pop
    thresholds: Optional[dict[str, float]] = None  # thresholds: partial boundaries

    def to_json(self) -> str:
        d = {"type": self.type.value}
        for f in fields(self)[1:]:
            value = getattr(self, f.name)
            if value != f.default:
                d[f.name] = value
        return json.dumps(d, default=str)

    @classmethod
    def from_json(cls, data: str) -> "Command":
        parsed = json.loads(data)
        if not isinstance(parsed, dict):
            raise ValueError("Command must be a JSON object")
        known = {f.name for f in fields(cls)}
        args = {k: v for k, v in parsed.items() if k in known and k != "type"}
        command = cls(type=CommandType(parsed["type"]), **args)
        command.validate()
        return command

    def validate(self) -> None:
        """Check that the arguments a command needs are present.

        Raises:
            ValueError: A required argument is missing or has the wrong shape.
        """
        if self.type in CONTEXT_COMMANDS and not self.context_id:
            raise ValueError(f"Command {self.type.value} requires a context_id")
        if self.type == CommandType.EVENT and not self.event_type:
            raise ValueError("Command event requires an event_type")
        if self.type == CommandType.TANGENT_PUSH and not self.new_task:
            raise ValueError("Command tangent_push requires a new_task")
        if self.type == CommandType.THRESHOLDS and not self.thresholds:
            raise ValueError("Command thresholds requires at least one boundary")
        for name in ("payload", "overrides", "thresholds"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, dict):
                raise ValueError(f"{name} must be an object, got {type(value).__name__}")


class _JSONResponse:
    """to_json/from_json for response dataclasses with a status field."""

    def to_json(self) -> str:
        d = asdict(self)
        d["status"] = self.status.value
        return json.dumps(d, default=str)

    @classmethod
    def from_json(cls, data: str):
        parsed = json.loads(data)
        parsed["status"] = ResponseStatus(parsed["status"])
        return cls(**parsed)


@dataclass
class SimpleResponse(_JSONResponse):
    """Simple OK/Error response."""

    status: ResponseStatus
    message: str
    error: Optional[str] = None


@dataclass
class StatusResponse(_JSONResponse):
    """Engine-wide status."""

    status: ResponseStatus
    uptime_seconds: float
    context_count: int
    highest_level: str
    levels: dict[str, str] = field(default_factory=dict)  # context_id -> level
    error: Optional[str] = None


@dataclass
class ContextsResponse(_JSONResponse):
    """Summaries of all active contexts."""

    status: ResponseStatus
    contexts: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class UsageResponse(_JSONResponse):
    """Usage, trend and compression stats for one context."""

    status: ResponseStatus
    context_id: str
    usage: dict[str, Any] = field(default_factory=dict)
    trend: dict[str, Any] = field(default_factory=dict)
    compression: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class CleanupResponse(_JSONResponse):
    """Result of a manually requested cleanup."""

    status: ResponseStatus
    context_id: str
    result: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class ArchivesResponse(_JSONResponse):
    """Archive records and store stats for one context."""

    status: ResponseStatus
    context_id: str
    archives: list[dict[str, Any]] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class ContextResponse(_JSONResponse):
    """Summary of a context after it was created, removed or changed."""

    status: ResponseStatus
    context_id: str
    context: dict[str, Any] = field(default_factory=dict)
    message: str = ""
    error: Optional[str] = None


@dataclass
class EventResponse(_JSONResponse):
    """Id of an appended event and the resulting log length."""

    status: ResponseStatus
    context_id: str
    event_id: str
    events: int
    error: Optional[str] = None


@dataclass
class TangentResponse(_JSONResponse):
    """Frame pushed or popped, and the task now current."""

    status: ResponseStatus
    context_id: str
    frame: dict[str, Any] = field(default_factory=dict)
    current_task: Optional[str] = None
    depth: int = 0
    error: Optional[str] = None


# Type alias for any response
Response = Union[
    SimpleResponse,
    StatusResponse,
    ContextsResponse,
    UsageResponse,
    CleanupResponse,
    ArchivesResponse,
    ContextResponse,
    EventResponse,
    TangentResponse,
]
