"""
Configuration management with YAML loading and environment variable support.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .constants import (
    DEFAULT_CANCEL_GRACE_SECONDS,
    DEFAULT_CAPTURE_OUTPUT_LINES,
    DEFAULT_OUTPUT_QUEUE_SIZE,
    DEFAULT_POLL_INTERVAL,
)


def _get_default_data_dir() -> Path:
    """Get default data directory based on XDG spec or platform."""
    if xdg_data := os.environ.get("XDG_DATA_HOME"):
        return Path(xdg_data) / "resumeflow"
    if local_app_data := os.environ.get("LOCALAPPDATA"):
        return Path(local_app_data) / "resumeflow"
    return Path.home() / ".local" / "share" / "resumeflow"


def _env_path(env_var: str, default: Path | None = None) -> Path | None:
    """Get path from environment variable or return default."""
    if value := os.environ.get(env_var):
        return Path(value)
    return default


@dataclass
class PathsConfig:
    """Paths configuration - all paths can be overridden via environment variables."""

    state_dir: Path = field(default_factory=lambda: _env_path("RFW_STATE_DIR", _get_default_data_dir() / "state"))
    logs_dir: Path = field(default_factory=lambda: _env_path("RFW_LOGS_DIR", _get_default_data_dir() / "logs"))


@dataclass
class EngineConfig:
    cancel_grace_seconds: float = DEFAULT_CANCEL_GRACE_SECONDS
    output_queue_size: int = DEFAULT_OUTPUT_QUEUE_SIZE
    poll_interval: float = DEFAULT_POLL_INTERVAL
    capture_output_lines: int = DEFAULT_CAPTURE_OUTPUT_LINES


@dataclass
class SecurityConfig:
    backend: str = "installation-key"  # "installation-key" or "derived"


@dataclass
class HooksConfig:
    enabled: bool = True
    backend: str = "auto"  # "auto", "xdg", "launchd", "runonce" or "none"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file_logging: bool = True
    console_logging: bool = True


_SECTIONS = ["paths", "engine", "security", "hooks", "logging"]


@dataclass
class AppConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    hooks: HooksConfig = field(default_factory=HooksConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> "AppConfig":
        """Load configuration from YAML file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict) -> "AppConfig":
        """Create config from dictionary."""
        config = cls()

        if "paths" in data:
            for key, value in data["paths"].items():
                if hasattr(config.paths, key):
                    setattr(config.paths, key, Path(value).expanduser() if isinstance(value, str) else value)

        for section in _SECTIONS[1:]:
            if section not in data:
                continue
            target = getattr(config, section)
            for key, value in (data[section] or {}).items():
                if hasattr(target, key):
                    setattr(target, key, value)

        return config

    def _to_dict(self) -> dict:
        """Convert config to dictionary."""
        result = {}
        for attr in _SECTIONS:
            section = getattr(self, attr)
            result[attr] = {
                key: str(value) if isinstance(value, Path) else value for key, value in vars(section).items()
            }
        return result


def _get_default_config_dir() -> Path:
    """Get default config directory."""
    # Check environment variable first
    if config_dir := os.environ.get("RFW_CONFIG_DIR"):
        return Path(config_dir)

    # Check XDG config home
    if xdg_config := os.environ.get("XDG_CONFIG_HOME"):
        return Path(xdg_config) / "resumeflow"

    # Fall back to ~/.config
    return Path.home() / ".config" / "resumeflow"


def load_config(config_path: Path | None = None, config_dir: Path | None = None) -> AppConfig:
    """
    Load configuration from the first config file found.

    Args:
        config_path: Path to config file (default: searches standard locations)
        config_dir: Config directory to search

    Returns:
        AppConfig (defaults when no file exists)
    """
    if config_dir is None:
        config_dir = _get_default_config_dir()

    if config_path is None:
        search_paths = [
            config_dir / "config.yaml",
            Path.cwd() / "resumeflow.yaml",
        ]
        for path in search_paths:
            if path.exists():
                config_path = path
                break

    return AppConfig.from_yaml(config_path) if config_path else AppConfig()


def validate_config(config: AppConfig) -> list[str]:
    """
    Validate configuration values.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    if config.security.backend not in ("installation-key", "derived"):
        errors.append(f"Unknown security backend: {config.security.backend}")
    if config.hooks.backend not in ("auto", "xdg", "launchd", "runonce", "none"):
        errors.append(f"Unknown hooks backend: {config.hooks.backend}")
    if config.engine.cancel_grace_seconds < 0:
        errors.append("engine.cancel_grace_seconds must not be negative")
    if config.engine.output_queue_size < 1:
        errors.append("engine.output_queue_size must be at least 1")
    return errors
