"""Two-tier structured logging for ctxguard.

Provides:
- Console: one compact line per record, tagged with the context it concerns
- Debug file: JSON Lines carrying the usage level at the time of each record

Per-context components prefix their messages with "[context_id]"; the
prefix is lifted into its own field so the debug log can be filtered by
context.
"""

import json
import logging
import os
import platform
import re
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from .levels import Level

# Most recent usage level, injected into every record
_current_level: Level = Level.SAFE

_CONTEXT_PREFIX_RE = re.compile(r"^\[([^\]]+)\] ")

DEBUG_LOG_BACKUPS = 3
NOISY_LOGGERS = ("httpx", "httpcore", "anthropic", "asyncio")


def set_current_level(level: Level) -> None:
    """Update the usage level for log context injection."""
    global _current_level
    _current_level = level


def get_current_level() -> Level:
    return _current_level


class UsageContextFilter(logging.Filter):
    """Attaches usage level, context id and bare message to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        match = _CONTEXT_PREFIX_RE.match(message)
        record.usage = _current_level.value
        record.context_id = getattr(record, "context_id", None) or (
            match.group(1) if match else None
        )
        record.bare_message = message[match.end():] if match else message
        return True


def _component(record: logging.LogRecord) -> str:
    # "ctxguard.context.pruning" -> "pruning"
    return record.name.rsplit(".", 1)[-1]


class JSONFormatter(logging.Formatter):
    """Formats log records as JSON Lines.

    Output format:
    {"ts":"2026-02-04T10:15:32.123Z","level":"INFO","component":"monitor",
     "usage":"warning","context":"ctx_1","msg":"...","ctx":{...}}
    """

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "usage"):
            UsageContextFilter().filter(record)

        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: dict[str, Any] = {
            "ts": timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "component": _component(record),
            "usage": record.usage,
            "msg": record.bare_message,
        }
        if record.context_id:
            entry["context"] = record.context_id
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        # Structured extras via extra={"ctx": {...}}
        if hasattr(record, "ctx"):
            entry["ctx"] = record.ctx

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Compact console line: time, short level, component, context, message.

    Colour follows the record level; records emitted while usage is above
    safe also carry the usage level.
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    SHORT_LEVELS = {
        "DEBUG": "DBG",
        "INFO": "INF",
        "WARNING": "WRN",
        "ERROR": "ERR",
        "CRITICAL": "CRT",
    }

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "usage"):
            UsageContextFilter().filter(record)

        parts = [
            datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
            self.SHORT_LEVELS.get(record.levelname, record.levelname[:3]),
            _component(record),
        ]
        if record.context_id:
            parts.append(f"[{record.context_id}]")
        if record.usage != Level.SAFE.value:
            parts.append(f"<{record.usage}>")
        line = " ".join(parts) + f": {record.bare_message}"

        if self.use_colors:
            line = f"{self.COLORS.get(record.levelname, '')}{line}{self.RESET}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def get_debug_log_path() -> Path:
    """Debug log location (XDG data dir)."""
    data_home = os.environ.get("XDG_DATA_HOME", os.path.expanduser("~/.local/share"))
    return Path(data_home) / "ctxguard" / "logs" / "debug.log"


def rotate_debug_log(log_path: Path, backups: int = DEBUG_LOG_BACKUPS) -> None:
    """Shift debug.log -> debug.log.1 -> ... -> debug.log.N, dropping the oldest."""
    if not log_path.exists():
        return
    oldest = log_path.with_name(f"{log_path.name}.{backups}")
    if oldest.exists():
        oldest.unlink()
    for index in range(backups - 1, 0, -1):
        source = log_path.with_name(f"{log_path.name}.{index}")
        if source.exists():
            source.rename(log_path.with_name(f"{log_path.name}.{index + 1}"))
    log_path.rename(log_path.with_name(f"{log_path.name}.1"))


def log_session_header(config: Any, logger: logging.Logger) -> None:
    """Record interpreter, platform and effective config at the top of the debug log."""
    header = {
        "session_start": datetime.now(timezone.utc).isoformat(),
        "pid": os.getpid(),
        "python_version": platform.python_version(),
        "platform": platform.system(),
        "config": asdict(config) if hasattr(config, "__dataclass_fields__") else str(config),
    }
    logger.info("=== ctxguard started ===", extra={"ctx": header})


def setup_logging(
    config: Any,
    console_level: str = "INFO",
    debug_to_file: bool = True,
    use_colors: bool = True,
) -> None:
    """Configure console and JSON debug-file logging.

    Args:
        config: Config object recorded in the session header
        console_level: Minimum level for console output
        debug_to_file: Whether to write JSON debug logs to file
        use_colors: Whether to use ANSI colors in console output
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)  # Handlers filter
    root.handlers.clear()

    usage_filter = UsageContextFilter()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(getattr(logging, console_level.upper()))
    console.addFilter(usage_filter)
    console.setFormatter(ConsoleFormatter(use_colors=use_colors))
    root.addHandler(console)

    if debug_to_file:
        log_path = get_debug_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        rotate_debug_log(log_path)

        file_handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(usage_filter)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    log_session_header(config, logging.getLogger("ctxguard"))


def get_debug_log_contents(lines: int = 200) -> str:
    """Last N lines of the debug log."""
    log_path = get_debug_log_path()
    if not log_path.exists():
        return "No debug log found."

    with open(log_path, "r", encoding="utf-8") as f:
        all_lines = f.readlines()

    return "".join(all_lines[-lines:])


def iter_log_entries(log_path: Optional[Path] = None) -> Iterator[tuple[str, dict]]:
    """Yield (raw line, decoded entry) for each JSON line of the debug log."""
    log_path = log_path or get_debug_log_path()
    with open(log_path, "r", encoding="utf-8") as f:
        for line in f:
            try:
                yield line, json.loads(line)
            except json.JSONDecodeError:
                continue


def get_filtered_logs(
    component: Optional[str] = None,
    level: Optional[str] = None,
    usage: Optional[str] = None,
    context_id: Optional[str] = None,
    lines: int = 100,
) -> str:
    """Debug log lines matching every given filter.

    Args:
        component: e.g. "monitor", "pruning"
        level: e.g. "ERROR", "WARNING"
        usage: e.g. "critical"
        context_id: Context the record concerns
        lines: Maximum lines to return
    """
    if not get_debug_log_path().exists():
        return "No debug log found."

    wanted = {"component": component, "level": level, "usage": usage, "context": context_id}
    wanted = {key: value for key, value in wanted.items() if value is not None}

    results = [
        line
        for line, entry in iter_log_entries()
        if all(entry.get(key) == value for key, value in wanted.items())
    ]
    return "".join(results[-lines:])
