"""Configuration loading and validation for ctxguard."""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional
import os

import yaml


@dataclass
class TokenConfig:
    """Token accounting configuration."""

    capacity: int = 200000  # Model context window in tokens
    exact_counting: bool = True  # Use the count_tokens API when a key is set
    model: str = "claude-sonnet-4-20250514"
    timeout: float = 10.0  # count_tokens request timeout in seconds
    cache_size: int = 100
    chars_per_token: int = 4


@dataclass
class ThresholdConfig:
    """Usage level boundaries, in percent of capacity."""

    warning: float = 40.0
    critical: float = 70.0
    emergency: float = 90.0


@dataclass
class ScopeDefaults:
    """Compaction defaults for one context scope."""

    compression_aggressiveness: float = 0.7
    auto_cleanup_retention_days: int = 30


@dataclass
class CompactionConfig:
    """Cleanup and pruning configuration."""

    session: ScopeDefaults = field(default_factory=ScopeDefaults)
    project: ScopeDefaults = field(
        default_factory=lambda: ScopeDefaults(
            compression_aggressiveness=0.5,
            auto_cleanup_retention_days=365,
        )
    )
    critical_boost: float = 0.2  # Added to scope aggressiveness at CRITICAL
    emergency_min_reduction: float = 0.5  # Forced minimum at EMERGENCY
    preserve_importance: Optional[int] = None  # Events at/above this survive pruning


@dataclass
class MonitorConfig:
    """Threshold monitor configuration."""

    poll_interval: float = 5.0  # Seconds between usage checks
    auto_cleanup: bool = True
    history_size: int = 50


@dataclass
class ArchiveConfig:
    """Archive store configuration."""

    directory: Optional[str] = None
    retention_days: int = 30
    max_records: int = 100

    def get_directory(self) -> Path:
        """Get the archive root, using the XDG data dir if not specified."""
        if self.directory:
            return Path(os.path.expanduser(self.directory))
        data_home = os.environ.get("XDG_DATA_HOME", os.path.expanduser("~/.local/share"))
        return Path(data_home) / "ctxguard" / "archive"


@dataclass
class IPCConfig:
    """Status socket configuration."""

    enabled: bool = True
    socket_path: Optional[str] = None

    def get_socket_path(self) -> str:
        """Get the socket path, using default if not specified."""
        if self.socket_path:
            return self.socket_path
        # Try XDG_RUNTIME_DIR first, fall back to /tmp
        runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
        if runtime_dir and os.path.isdir(runtime_dir) and os.access(runtime_dir, os.W_OK):
            return f"{runtime_dir}/ctxguard.sock"
        return "/tmp/ctxguard.sock"


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    debug_to_file: bool = True  # Write JSON debug logs to ~/.local/share/ctxguard/logs/
    use_colors: bool = True  # ANSI colors in console output


@dataclass
class Config:
    """Main configuration container."""

    tokens: TokenConfig = field(default_factory=TokenConfig)
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    compaction: CompactionConfig = field(default_factory=CompactionConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    ipc: IPCConfig = field(default_factory=IPCConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load configuration from file.

        Args:
            path: Optional path to config file. If not provided, searches
                  XDG config locations.

        Returns:
            Loaded configuration with defaults for missing values.
        """
        config_path: Optional[Path] = None

        if path:
            config_path = Path(path)
        else:
            # Try XDG config first
            xdg_config = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
            user_config = Path(xdg_config) / "ctxguard" / "config.yaml"

            if user_config.exists():
                config_path = user_config
            else:
                # Try system config
                system_config = Path("/etc/ctxguard/config.yaml")
                if system_config.exists():
                    config_path = system_config

        if config_path and config_path.exists():
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
            return cls._from_dict(data)

        return cls()

    def merged(self, overrides: Optional[dict[str, Any]]) -> "Config":
        """Return a copy with a nested override dict applied on top.

        Used for per-context settings at creation time; keys left out keep
        the values of this config.
        """
        if not overrides:
            return self._from_dict(asdict(self))
        return self._from_dict(_deep_merge(asdict(self), overrides))

    @staticmethod
    def _parse_compaction(data: dict) -> CompactionConfig:
        """Parse compaction config, handling the nested per-scope tables."""
        data = dict(data)  # shallow copy
        session_raw = data.pop("session", None)
        project_raw = data.pop("project", None)
        config = CompactionConfig(**data)
        if session_raw is not None:
            config.session = ScopeDefaults(**session_raw)
        if project_raw is not None:
            config.project = ScopeDefaults(
                **{**asdict(CompactionConfig().project), **project_raw}
            )
        return config

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create config from dictionary."""
        return cls(
            tokens=TokenConfig(**data.get("tokens", {})),
            thresholds=ThresholdConfig(**data.get("thresholds", {})),
            compaction=cls._parse_compaction(data.get("compaction", {})),
            monitor=MonitorConfig(**data.get("monitor", {})),
            archive=ArchiveConfig(**data.get("archive", {})),
            ipc=IPCConfig(**data.get("ipc", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )


def _deep_merge(base: dict, overrides: dict) -> dict:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged
