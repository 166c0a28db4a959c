"""Tag-delimited rendering of an event log, and parsing it back.

The rendered form is what gets counted, sent to the model and archived:

    <workflow_context id="ctx_1" scope="session" task="deploy backend">
    <event id="evt_1" type="tool_call" timestamp="2026-01-01T00:00:00.000000Z">
    {
      "tool": "git_tags"
    }
    </event>
    </workflow_context>
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional
from xml.sax.saxutils import escape, quoteattr, unescape

from .events import Event

logger = logging.getLogger(__name__)

CONTAINER_TAG = "workflow_context"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_ATTR_ENTITIES = {"&quot;": '"', "&apos;": "'", "&#10;": "\n", "&#13;": "\r", "&#9;": "\t"}
_ATTR_RE = re.compile(r"""([\w-]+)=("[^"]*"|'[^']*')""")
_CONTAINER_RE = re.compile(rf"<{CONTAINER_TAG}([^>]*)>")
_EVENT_RE = re.compile(r"<event\b([^>]*)>\n(.*?)\n</event>", re.DOTALL)


class LogFormatError(ValueError):
    """Raised when a serialized log cannot be parsed."""


@dataclass
class ParsedLog:
    """Events and container attributes recovered from a serialized log."""

    events: list[Event] = field(default_factory=list)
    attributes: dict[str, str] = field(default_factory=dict)


def format_timestamp(timestamp: float) -> str:
    """Epoch seconds to ISO-8601 UTC with microseconds."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> float:
    """ISO-8601 UTC (as written by format_timestamp) to epoch seconds."""
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc).timestamp()


def render_event(event: Event) -> str:
    """Render one event element."""
    attrs = [
        ("id", event.id),
        ("type", event.type),
        ("timestamp", format_timestamp(event.timestamp)),
    ]
    if event.importance is not None:
        attrs.append(("importance", str(event.importance)))
    if event.repeat_count > 1:
        attrs.append(("repeat", str(event.repeat_count)))

    body = json.dumps(event.payload, indent=2, ensure_ascii=False, default=str)
    return f"<event {_format_attrs(attrs)}>\n{escape(body)}\n</event>"


def render_log(
    events: Iterable[Event],
    context_id: Optional[str] = None,
    scope: Optional[str] = None,
    task: Optional[str] = None,
) -> str:
    """Render a full log inside the container tag."""
    attrs = [
        (name, value)
        for name, value in (("id", context_id), ("scope", scope), ("task", task))
        if value is not None
    ]
    open_tag = f"<{CONTAINER_TAG} {_format_attrs(attrs)}>" if attrs else f"<{CONTAINER_TAG}>"
    parts = [open_tag]
    parts.extend(render_event(event) for event in events)
    parts.append(f"</{CONTAINER_TAG}>")
    return "\n".join(parts)


def parse_log(text: str) -> ParsedLog:
    """Parse a rendered log back into events.

    Raises:
        LogFormatError: If the container tag is missing or an event
            element is malformed.
    """
    container = _CONTAINER_RE.search(text)
    if container is None:
        raise LogFormatError(f"Missing <{CONTAINER_TAG}> container")

    parsed = ParsedLog(attributes=_parse_attrs(container.group(1)))

    for match in _EVENT_RE.finditer(text, container.end()):
        attrs = _parse_attrs(match.group(1))
        try:
            payload = json.loads(unescape(match.group(2)))
            event = Event(
                id=attrs["id"],
                type=attrs["type"],
                payload=payload,
                timestamp=parse_timestamp(attrs["timestamp"]),
                importance=int(attrs["importance"]) if "importance" in attrs else None,
                repeat_count=int(attrs.get("repeat", "1")),
            )
        except (KeyError, ValueError) as e:
            raise LogFormatError(f"Malformed event element: {e}") from e
        parsed.events.append(event)

    logger.debug(f"Parsed {len(parsed.events)} events from {len(text)} chars")
    return parsed


def _format_attrs(attrs: list[tuple[str, str]]) -> str:
    return " ".join(f"{name}={quoteattr(value)}" for name, value in attrs)


def _parse_attrs(raw: str) -> dict[str, str]:
    return {name: unescape(value[1:-1], _ATTR_ENTITIES) for name, value in _ATTR_RE.findall(raw)}
