"""
kb Settings - kb.toml based configuration.

This module provides:
- The declared [discovery] and [state] sections
- Typed Settings loaded from kb.toml with defaults filled in
- Default kb.toml generation

Example usage:
    from kblabs.config import load_settings

    settings = load_settings(Path.cwd())
    print(settings.strategies)  # ["workspace", "pkg", "dir", "file"]
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kblabs.config.schema import ConfigField, SchemaError, validate_config
from kblabs.config.toml_handler import (
    TOMLError,
    generate_toml_from_schemas,
    read_toml,
    write_toml,
)

STRATEGY_NAMES = ["workspace", "pkg", "dir", "file"]

# Looked up in order, relative to the working directory
CONFIG_FILES = (Path("kb.toml"), Path(".kb") / "kb.toml")

DISCOVERY_SCHEMA: dict[str, ConfigField] = {
    "strategies": ConfigField(
        list,
        list(STRATEGY_NAMES),
        "Discovery strategies to run",
        choices=list(STRATEGY_NAMES),
        item_type=str,
    ),
    "roots": ConfigField(
        list, [], "Roots to scan (empty: the working directory)", item_type=str
    ),
    "prefer_current": ConfigField(
        bool, True, "Prefer current-schema manifests over legacy ones"
    ),
    "allow_downgrade": ConfigField(
        bool, False, "Let a higher version override source priority"
    ),
}

STATE_SCHEMA: dict[str, ConfigField] = {
    "path": ConfigField(str, ".kb/state.json", "Key-value state file (setup markers)"),
    "plugins_path": ConfigField(
        str, ".kb/plugins.json", "Plugin enable/disable and crash state"
    ),
}

SECTIONS: dict[str, dict[str, ConfigField]] = {
    "discovery": DISCOVERY_SCHEMA,
    "state": STATE_SCHEMA,
}


class ConfigError(Exception):
    """Base exception for settings errors."""

    pass


@dataclass
class Settings:
    """
    Resolved kb settings.

    Relative paths are resolved against ``cwd``.
    """

    cwd: Path
    strategies: list[str] = field(default_factory=lambda: list(STRATEGY_NAMES))
    roots: list[Path] = field(default_factory=list)
    prefer_current: bool = True
    allow_downgrade: bool = False
    state_path: Path | None = None
    plugins_state_path: Path | None = None
    source: Path | None = None

    def __post_init__(self):
        if self.state_path is None:
            self.state_path = self.cwd / ".kb" / "state.json"
        if self.plugins_state_path is None:
            self.plugins_state_path = self.cwd / ".kb" / "plugins.json"


def find_config_file(cwd: Path) -> Path | None:
    """Return the first existing kb.toml candidate under ``cwd``."""
    for candidate in CONFIG_FILES:
        path = cwd / candidate
        if path.is_file():
            return path
    return None


def load_settings(cwd: Path, config_file: Path | None = None) -> Settings:
    """
    Load settings for a working directory.

    Args:
        cwd: Working directory
        config_file: Explicit kb.toml; looked up under ``cwd`` when omitted

    Returns:
        Settings with defaults for anything not configured

    Raises:
        ConfigError: If the file is unreadable or holds invalid values
    """
    path = config_file or find_config_file(cwd)
    data: dict[str, Any] = {}

    if path is not None:
        try:
            data = read_toml(path)
        except TOMLError as e:
            raise ConfigError(str(e)) from e

    try:
        discovery = validate_config(data.get("discovery", {}), DISCOVERY_SCHEMA)
        state = validate_config(data.get("state", {}), STATE_SCHEMA)
    except SchemaError as e:
        raise ConfigError(f"Invalid settings in {path}: {e}") from e

    return Settings(
        cwd=cwd,
        strategies=discovery["strategies"],
        roots=[(cwd / root).resolve() for root in discovery["roots"]],
        prefer_current=discovery["prefer_current"],
        allow_downgrade=discovery["allow_downgrade"],
        state_path=cwd / state["path"],
        plugins_state_path=cwd / state["plugins_path"],
        source=path,
    )


def init_config(cwd: Path, force: bool = False) -> Path:
    """
    Write a default kb.toml into ``cwd``.

    Raises:
        ConfigError: If the file exists and ``force`` is false
    """
    path = cwd / CONFIG_FILES[0]
    if path.exists() and not force:
        raise ConfigError(f"{path} already exists")

    try:
        write_toml(path, generate_toml_from_schemas(SECTIONS))
    except TOMLError as e:
        raise ConfigError(str(e)) from e

    return path


__all__ = [
    "ConfigError",
    "Settings",
    "STRATEGY_NAMES",
    "find_config_file",
    "init_config",
    "load_settings",
]
