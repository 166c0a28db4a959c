"""Pytest configuration and fixtures for ctxguard tests."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import pytest

from ctxguard.archive import ArchiveStore
from ctxguard.config import Config
from ctxguard.context import Context, Event, Scope
from ctxguard.tokens import TokenAccountant

BASE_TS = 1767225600.0  # 2026-01-01T00:00:00Z


class FakeClock:
    """Manually advanced UTC clock for archive retention tests."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_event(n: int, /, type: str = "tool_call", importance=None, **payload) -> Event:
    """Event with a fixed, microsecond-exact timestamp."""
    return Event(
        id=f"evt_{n}",
        type=type,
        payload=payload,
        timestamp=BASE_TS + n,
        importance=importance,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def archive_store(tmp_path: Path, clock: FakeClock) -> ArchiveStore:
    return ArchiveStore(tmp_path / "archive", clock=clock)


@pytest.fixture
def make_context(tmp_path: Path) -> Callable[..., Context]:
    """Factory for contexts with a small capacity and their own archive."""

    def factory(
        context_id: str = "ctx_test",
        scope: Scope = Scope.SESSION,
        capacity: int = 2000,
        **kwargs,
    ) -> Context:
        kwargs.setdefault("archive", ArchiveStore(tmp_path / "archive" / context_id))
        kwargs.setdefault("accountant", TokenAccountant())
        return Context(context_id, scope, capacity=capacity, **kwargs)

    return factory


@pytest.fixture
def engine_config(tmp_path: Path) -> Config:
    """Config with no network counting, no socket and a temp archive root."""
    config = Config()
    config.tokens.exact_counting = False
    config.ipc.enabled = False
    config.archive.directory = str(tmp_path / "archives")
    return config


@pytest.fixture
def temp_config(tmp_path: Path) -> Path:
    """Create temporary config file.

    Returns:
        Path to config file.
    """
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
tokens:
  capacity: 100000
  exact_counting: false
thresholds:
  warning: 50
compaction:
  project:
    compression_aggressiveness: 0.4
  critical_boost: 0.1
monitor:
  poll_interval: 2.5
logging:
  level: DEBUG
"""
    )
    return config_path
