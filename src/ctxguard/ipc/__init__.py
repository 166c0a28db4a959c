"""IPC server, client and protocol module."""

from .client import EngineUnavailableError, send_command
from .protocol import (
    ArchivesResponse,
    CleanupResponse,
    Command,
    CommandType,
    ContextResponse,
    ContextsResponse,
    EventResponse,
    ResponseStatus,
    SimpleResponse,
    StatusResponse,
    TangentResponse,
    UsageResponse,
)
from .server import IPCServer

__all__ = [
    "ArchivesResponse",
    "CleanupResponse",
    "Command",
    "CommandType",
    "ContextResponse",
    "ContextsResponse",
    "EventResponse",
    "EngineUnavailableError",
    "IPCServer",
    "ResponseStatus",
    "SimpleResponse",
    "StatusResponse",
    "TangentResponse",
    "UsageResponse",
    "send_command",
]
