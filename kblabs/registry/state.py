"""
Persisted Plugin State.

This module provides the two pieces of state that outlive an invocation:

- A file-backed key-value store (setup markers such as
  ``plugin:{id}:setup-done``) behind a narrow get/set/delete interface
- Plugin enable/disable and crash counts (``.kb/plugins.json``)

Neither file is locked. Separate ``kb`` processes sharing a file may
interleave a read and a write; in particular two first runs of the same
plugin can both run its setup.
"""

import json
import logging
import math
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

CRASH_THRESHOLD = 3


class StateError(Exception):
    """Base exception for persisted state errors."""

    pass


class StateStore(Protocol):
    """Narrow key-value interface used by the setup gate."""

    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    def delete(self, key: str) -> bool: ...


def setup_key(plugin_id: str) -> str:
    return f"plugin:{plugin_id}:setup-done"


def _read_json_file(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise StateError(f"Corrupt state file {path}: {e}") from e
    except OSError as e:
        raise StateError(f"Failed to read state file {path}: {e}") from e


def _write_json_file(path: Path, data: Any) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
    except OSError as e:
        raise StateError(f"Failed to write state file {path}: {e}") from e


class FileStateStore:
    """
    JSON file key-value store with optional expiry.

    Entries are stored as ``{"value": ..., "expiresAt": epoch | null}``;
    a null expiry never lapses.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _entries(self) -> dict[str, Any]:
        data = _read_json_file(self.path, {})
        if not isinstance(data, dict):
            raise StateError(f"State file {self.path} must contain a JSON object")
        entries = data.get("entries", {})
        if not isinstance(entries, dict):
            raise StateError(f"'entries' in {self.path} must be an object")
        return entries

    def get(self, key: str) -> Any:
        """Return the value stored under ``key``, or None if absent or expired."""
        entry = self._entries().get(key)
        if not isinstance(entry, dict):
            return None

        expires_at = entry.get("expiresAt")
        if expires_at is not None and expires_at <= time.time():
            return None

        return entry.get("value")

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """
        Store ``value`` under ``key``.

        Args:
            key: Key
            value: JSON-serializable value
            ttl: Seconds to live; None or math.inf never expire
        """
        entries = self._entries()
        expires_at = None if ttl is None or math.isinf(ttl) else time.time() + ttl
        entries[key] = {"value": value, "expiresAt": expires_at}
        _write_json_file(self.path, {"entries": entries})

    def delete(self, key: str) -> bool:
        entries = self._entries()
        if key not in entries:
            return False
        del entries[key]
        _write_json_file(self.path, {"entries": entries})
        return True


def create_state_store(path: Path) -> FileStateStore:
    return FileStateStore(path)


@dataclass
class PluginsState:
    """
    Plugin enablement and crash bookkeeping.

    Attributes:
        enabled: Plugin ids explicitly enabled
        disabled: Plugin ids explicitly (or automatically) disabled
        crashes: Plugin id -> crash count
        last_updated: Epoch milliseconds of the last save
    """

    enabled: list[str] = field(default_factory=list)
    disabled: list[str] = field(default_factory=list)
    crashes: dict[str, int] = field(default_factory=dict)
    last_updated: int = 0

    def is_enabled(self, plugin_id: str, default: bool = True) -> bool:
        if plugin_id in self.disabled:
            return False
        if plugin_id in self.enabled:
            return True
        return default


def _id_list(data: dict[str, Any], key: str, path: Path) -> list[str]:
    value = data.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise StateError(f"'{key}' in {path} must be a list of plugin ids")
    return list(value)


def load_plugins_state(path: Path) -> PluginsState:
    """
    Load ``.kb/plugins.json``; a missing file yields the defaults.

    Raises:
        StateError: If the file is unreadable or malformed
    """
    data = _read_json_file(path, {})
    if not isinstance(data, dict):
        raise StateError(f"{path} must contain a JSON object")

    crashes = data.get("crashes", {})
    if not isinstance(crashes, dict) or not all(
        isinstance(count, int) and not isinstance(count, bool) for count in crashes.values()
    ):
        raise StateError(f"'crashes' in {path} must map plugin ids to counts")

    last_updated = data.get("lastUpdated", 0)
    if not isinstance(last_updated, (int, float)) or isinstance(last_updated, bool):
        raise StateError(f"'lastUpdated' in {path} must be a number")

    return PluginsState(
        enabled=_id_list(data, "enabled", path),
        disabled=_id_list(data, "disabled", path),
        crashes=dict(crashes),
        last_updated=int(last_updated),
    )


def save_plugins_state(path: Path, state: PluginsState) -> None:
    state.last_updated = int(time.time() * 1000)
    data = asdict(state)
    data["lastUpdated"] = data.pop("last_updated")
    _write_json_file(path, data)


def enable_plugin(path: Path, plugin_id: str) -> PluginsState:
    state = load_plugins_state(path)
    if plugin_id not in state.enabled:
        state.enabled.append(plugin_id)
    state.disabled = [p for p in state.disabled if p != plugin_id]
    state.crashes.pop(plugin_id, None)
    save_plugins_state(path, state)
    return state


def disable_plugin(path: Path, plugin_id: str) -> PluginsState:
    state = load_plugins_state(path)
    if plugin_id not in state.disabled:
        state.disabled.append(plugin_id)
    state.enabled = [p for p in state.enabled if p != plugin_id]
    save_plugins_state(path, state)
    return state


def record_crash(path: Path, plugin_id: str) -> int:
    """
    Count a crash; the plugin is disabled once it reaches CRASH_THRESHOLD.

    Returns:
        The plugin's crash count
    """
    state = load_plugins_state(path)
    count = state.crashes.get(plugin_id, 0) + 1
    state.crashes[plugin_id] = count

    if count >= CRASH_THRESHOLD and plugin_id not in state.disabled:
        state.disabled.append(plugin_id)
        state.enabled = [p for p in state.enabled if p != plugin_id]
        logger.warning("Plugin %s disabled after %d crashes", plugin_id, count)

    save_plugins_state(path, state)
    return count
