"""Tests for structured logging."""

import json
import logging

import pytest

from ctxguard.config import Config
from ctxguard.levels import Level
from ctxguard.logging import (
    ConsoleFormatter,
    JSONFormatter,
    get_debug_log_contents,
    get_debug_log_path,
    get_filtered_logs,
    rotate_debug_log,
    set_current_level,
    setup_logging,
)


def make_record(name="ctxguard.monitor", level=logging.INFO, msg="hello", **extra):
    record = logging.LogRecord(name, level, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def reset_level():
    set_current_level(Level.SAFE)
    yield
    set_current_level(Level.SAFE)


@pytest.fixture
def data_home(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))
    yield tmp_path
    root = logging.getLogger()
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)


class TestFormatters:
    def test_json_line(self):
        set_current_level(Level.CRITICAL)
        entry = json.loads(JSONFormatter().format(make_record(ctx={"context_id": "a"})))

        assert entry["component"] == "monitor"
        assert entry["level"] == "INFO"
        assert entry["usage"] == "critical"
        assert entry["msg"] == "hello"
        assert entry["ctx"] == {"context_id": "a"}

    def test_console_line(self):
        line = ConsoleFormatter(use_colors=False).format(
            make_record(name="ctxguard.context.pruning", level=logging.WARNING)
        )
        assert line.endswith(" WRN pruning: hello")

    def test_context_prefix_lifted(self):
        set_current_level(Level.WARNING)
        record = make_record(msg="[ctx_1] cleanup done")

        entry = json.loads(JSONFormatter().format(record))
        line = ConsoleFormatter(use_colors=False).format(record)

        assert entry["context"] == "ctx_1"
        assert entry["msg"] == "cleanup done"
        assert line.endswith(" INF monitor [ctx_1] <warning>: cleanup done")

    def test_no_context_field_without_prefix(self):
        entry = json.loads(JSONFormatter().format(make_record()))
        assert "context" not in entry


class TestDebugFile:
    def test_path_follows_xdg(self, data_home):
        assert get_debug_log_path() == data_home / "ctxguard" / "logs" / "debug.log"

    def test_rotate(self, tmp_path):
        log_path = tmp_path / "debug.log"
        log_path.write_text("old\n")

        rotate_debug_log(log_path)

        assert not log_path.exists()
        assert (tmp_path / "debug.log.1").read_text() == "old\n"

    def test_rotate_keeps_limited_backups(self, tmp_path):
        log_path = tmp_path / "debug.log"
        for run in range(5):
            log_path.write_text(f"run {run}\n")
            rotate_debug_log(log_path, backups=2)

        assert (tmp_path / "debug.log.1").read_text() == "run 4\n"
        assert (tmp_path / "debug.log.2").read_text() == "run 3\n"
        assert not (tmp_path / "debug.log.3").exists()

    def test_setup_writes_json_with_usage(self, data_home):
        setup_logging(Config(), console_level="ERROR", use_colors=False)
        set_current_level(Level.WARNING)
        logging.getLogger("ctxguard.monitor").info("entered warning")
        logging.getLogger("ctxguard.archive").error("disk full")
        logging.getLogger("ctxguard.context.session").info("[ctx_9] cleanup done")
        for handler in logging.getLogger().handlers:
            handler.flush()

        contents = get_debug_log_contents()
        assert "ctxguard started" in contents

        monitor_lines = get_filtered_logs(component="monitor")
        assert "entered warning" in monitor_lines
        assert "disk full" not in monitor_lines

        errors = get_filtered_logs(level="ERROR")
        assert "disk full" in errors

        warning_lines = [json.loads(line) for line in get_filtered_logs(usage="warning").splitlines()]
        assert {entry["msg"] for entry in warning_lines} == {
            "entered warning",
            "disk full",
            "cleanup done",
        }

        context_lines = get_filtered_logs(context_id="ctx_9").splitlines()
        assert len(context_lines) == 1
        assert json.loads(context_lines[0])["component"] == "session"

    def test_missing_log(self, data_home):
        assert get_debug_log_contents() == "No debug log found."
        assert get_filtered_logs(level="ERROR") == "No debug log found."
