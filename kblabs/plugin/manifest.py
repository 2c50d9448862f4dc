"""
Plugin Manifest Model.

This module turns raw manifest objects into typed PluginManifest records.

Key features:
- Current and legacy schema parsing (classification via compat)
- Command declaration validation
- Setup handler declaration
- Semantic version parsing and comparison
"""

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kblabs.plugin.compat import (
    ManifestKind,
    check_dual_manifest,
    deprecation_warning,
    detect_version,
    is_manifest_version_supported,
    migrate_legacy_to_current,
)

logger = logging.getLogger(__name__)

SEMVER_RE = re.compile(
    r"^v?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)

LEGACY_COMMAND_ID_RE = re.compile(r"^[a-z0-9-]+(?::[a-z0-9-]+){1,2}$")
COMMAND_NAME_RE = re.compile(r"^[a-z0-9-]+(?::[a-z0-9-]+)*$")


class ManifestError(Exception):
    """Base exception for manifest-related errors."""

    pass


class ValidationError(ManifestError):
    """Raised when manifest validation fails."""

    pass


@dataclass
class SetupSpec:
    """
    One-time setup declared by a plugin.

    Attributes:
        handler: Handler reference (``./setup.py#run``, ``pkg.mod:run`` or a script path)
        describe: Human-readable description
    """

    handler: str
    describe: str = ""


@dataclass
class CommandSpec:
    """
    A command declared by a manifest.

    Exactly one of ``handler`` and ``loader`` is set.
    """

    id: str
    group: str
    describe: str = ""
    requires: list[str] = field(default_factory=list)
    aliases: list[str] = field(default_factory=list)
    flags: list[dict[str, Any]] = field(default_factory=list)
    handler: str | None = None
    loader: Callable[[], Any] | None = None


@dataclass
class PluginManifest:
    """
    A parsed plugin manifest.

    Attributes:
        id: Plugin identifier
        version: Plugin version
        kind: Schema generation
        path: File the manifest was loaded from
        raw: Raw manifest object
        display: Display name and description
        requires: Plugin-wide runtime dependencies
        setup: Declared setup handler, if any
        commands: Declared commands
        dual: Whether both legacy and current fields are present
    """

    id: str
    version: str
    kind: ManifestKind
    path: Path
    raw: Mapping[str, Any]
    display: dict[str, str | None] = field(default_factory=dict)
    requires: list[str] = field(default_factory=list)
    setup: SetupSpec | None = None
    commands: list[CommandSpec] = field(default_factory=list)
    dual: bool = False

    @property
    def namespace(self) -> str:
        return plugin_namespace(self.id)

    @property
    def base_dir(self) -> Path:
        return self.path.parent


def plugin_namespace(plugin_id: str) -> str:
    """
    Command namespace for a plugin id.

    ``@scope/playbooks`` -> ``playbooks``
    """
    return plugin_id.split("/")[-1].removeprefix("@") or plugin_id


def parse_semver(version: str) -> tuple[tuple[int, int, int], list[int | str]]:
    """
    Parse a semantic version.

    Args:
        version: Version string (e.g. "1.2.3", "2.0.0-rc.1")

    Returns:
        ((major, minor, patch), prerelease identifiers)

    Raises:
        ValueError: If the string is not a semantic version
    """
    match = SEMVER_RE.match(version.strip()) if isinstance(version, str) else None
    if not match:
        raise ValueError(f"Invalid semantic version: {version!r}")

    major, minor, patch, prerelease = match.groups()
    identifiers: list[int | str] = []
    if prerelease:
        identifiers = [int(p) if p.isdigit() else p for p in prerelease.split(".")]

    return (int(major), int(minor), int(patch)), identifiers


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two semantic versions.

    Build metadata is ignored; a prerelease sorts below its release.

    Returns:
        -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2

    Raises:
        ValueError: If either version is invalid
    """
    core1, pre1 = parse_semver(v1)
    core2, pre2 = parse_semver(v2)

    if core1 != core2:
        return -1 if core1 < core2 else 1

    if pre1 == pre2:
        return 0
    if not pre1:
        return 1
    if not pre2:
        return -1

    for a, b in zip(pre1, pre2):
        if a == b:
            continue
        # Numeric identifiers have lower precedence than alphanumeric ones
        if isinstance(a, int) and isinstance(b, str):
            return -1
        if isinstance(a, str) and isinstance(b, int):
            return 1
        return -1 if a < b else 1

    return -1 if len(pre1) < len(pre2) else 1


def _string_list(data: Mapping, key: str, where: str) -> list[str]:
    value = data.get(key) or []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"'{key}' in {where} must be a list of strings")
    return list(value)


def _parse_setup(raw: Mapping) -> SetupSpec | None:
    setup = raw.get("setup")
    if not setup:
        return None

    if isinstance(setup, str):
        return SetupSpec(handler=setup)

    if isinstance(setup, Mapping) and isinstance(setup.get("handler"), str):
        return SetupSpec(handler=setup["handler"], describe=setup.get("describe", ""))

    raise ValidationError("'setup' must be a handler reference or a table with 'handler'")


def _parse_command(data: Any, namespace: str, legacy: bool) -> CommandSpec:
    if not isinstance(data, Mapping):
        raise ValidationError(f"Command declaration must be a mapping, got {type(data).__name__}")

    command_id = data.get("id")
    where = f"command {command_id!r}"
    if not isinstance(command_id, str) or not command_id:
        raise ValidationError("Command declaration missing 'id'")

    if legacy:
        if data.get("manifestVersion") != "1.0":
            raise ValidationError(
                f"Unsupported manifestVersion {data.get('manifestVersion')!r} in {where} "
                f"(expected '1.0')"
            )
        if not LEGACY_COMMAND_ID_RE.match(command_id):
            raise ValidationError(f"Invalid command id {command_id!r}")
        for required in ("group", "describe"):
            if not isinstance(data.get(required), str):
                raise ValidationError(f"Missing required field '{required}' in {where}")
    elif not COMMAND_NAME_RE.match(command_id):
        raise ValidationError(f"Invalid command id {command_id!r}")

    handler = data.get("handler")
    loader = data.get("loader")
    if loader is not None and not callable(loader):
        raise ValidationError(f"'loader' in {where} must be callable")
    if handler is not None and not isinstance(handler, str):
        raise ValidationError(f"'handler' in {where} must be a string")
    if (handler is None) == (loader is None):
        raise ValidationError(f"{where} must declare exactly one of 'handler' or 'loader'")

    flags = data.get("flags") or []
    if not isinstance(flags, list) or not all(
        isinstance(f, Mapping) and isinstance(f.get("name"), str) for f in flags
    ):
        raise ValidationError(f"'flags' in {where} must be a list of tables with 'name'")

    return CommandSpec(
        id=command_id,
        group=data.get("group") or namespace,
        describe=data.get("describe", ""),
        requires=_string_list(data, "requires", where),
        aliases=_string_list(data, "aliases", where),
        flags=[dict(f) for f in flags],
        handler=handler,
        loader=loader,
    )


def parse_manifest(
    raw: Any, path: Path, fallback_id: str | None = None
) -> PluginManifest:
    """
    Parse a raw manifest object.

    Args:
        raw: Manifest object (mapping) as loaded from the entry point
        path: File the manifest came from
        fallback_id: Plugin id to use when the manifest does not carry one

    Returns:
        PluginManifest

    Raises:
        ValidationError: If the manifest is unclassifiable or invalid
    """
    kind = detect_version(raw)
    if kind is ManifestKind.UNKNOWN:
        raise ValidationError(f"Unrecognized manifest schema in {path}")

    dual = check_dual_manifest(raw)

    if kind is ManifestKind.CURRENT:
        plugin_id = raw["id"]
        if not isinstance(plugin_id, str) or not plugin_id:
            raise ValidationError(f"Manifest 'id' must be a non-empty string in {path}")
        version = str(raw["version"])
        display_raw = raw.get("display") or {}
        if not isinstance(display_raw, Mapping):
            raise ValidationError(f"Manifest 'display' must be a table in {path}")
        display = {
            "name": display_raw.get("name"),
            "description": display_raw.get("description"),
        }
        cli = raw.get("cli") or {}
        if not isinstance(cli, Mapping):
            raise ValidationError(f"Manifest 'cli' must be a table in {path}")
        declared = cli.get("commands", [])
        setup = _parse_setup(raw)
    else:
        plugin_id = raw.get("id") or fallback_id
        if not isinstance(plugin_id, str) or not plugin_id:
            raise ValidationError(f"Cannot determine plugin id for legacy manifest {path}")
        manifest_version = raw.get("manifestVersion")
        if manifest_version is not None and not is_manifest_version_supported(
            str(manifest_version)
        ):
            raise ValidationError(
                f"Unsupported manifestVersion {manifest_version!r} in {path}"
            )
        version = str(raw.get("version", "0.0.0"))
        display = dict(migrate_legacy_to_current(raw, plugin_id)["display"])
        declared = raw.get("commands", [])
        setup = None
        logger.warning(deprecation_warning(plugin_id))

    if not isinstance(declared, list):
        raise ValidationError(f"Command list must be a list in {path}")

    if dual:
        logger.warning(
            "Manifest %s carries both legacy and current fields; loading as %s",
            path,
            kind.value,
        )

    namespace = plugin_namespace(plugin_id)
    commands = [
        _parse_command(entry, namespace, kind is ManifestKind.LEGACY) for entry in declared
    ]

    return PluginManifest(
        id=plugin_id,
        version=version,
        kind=kind,
        path=path,
        raw=raw,
        display=display,
        requires=_string_list(raw, "requires", str(path)),
        setup=setup,
        commands=commands,
        dual=dual,
    )
