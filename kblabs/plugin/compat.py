"""
Manifest Compatibility Layer.

Classifies raw manifest objects by schema generation and offers a
best-effort legacy -> current shim.

Classification happens once, here; everything downstream switches on the
returned ManifestKind.
"""

from collections.abc import Mapping
from enum import Enum
from typing import Any

LEGACY_FIELDS = ("manifestVersion", "commands")
CURRENT_FIELDS = ("id", "version")


class ManifestKind(Enum):
    """Manifest schema generation."""

    CURRENT = "current"
    LEGACY = "legacy"
    UNKNOWN = "unknown"


def _has_legacy_fields(raw: Mapping) -> bool:
    return any(name in raw for name in LEGACY_FIELDS)


def _has_current_fields(raw: Mapping) -> bool:
    return all(name in raw for name in CURRENT_FIELDS)


def detect_version(raw: Any) -> ManifestKind:
    """
    Classify a raw manifest.

    ``id`` and ``version`` mean current; otherwise ``manifestVersion`` or
    ``commands`` mean legacy; anything else is unknown.

    Args:
        raw: Manifest object as loaded

    Returns:
        ManifestKind
    """
    if not isinstance(raw, Mapping):
        return ManifestKind.UNKNOWN

    if _has_current_fields(raw):
        return ManifestKind.CURRENT

    if _has_legacy_fields(raw):
        return ManifestKind.LEGACY

    return ManifestKind.UNKNOWN


def check_dual_manifest(raw: Any) -> bool:
    """
    Check whether a manifest carries both legacy and current fields.

    Independent of detect_version: a dual manifest keeps its primary
    classification and is only flagged.
    """
    if not isinstance(raw, Mapping):
        return False

    return _has_legacy_fields(raw) and _has_current_fields(raw)


def migrate_legacy_to_current(raw: Mapping, plugin_id: str) -> dict[str, Any]:
    """
    Build a minimal current-schema object from a legacy manifest.

    The result has no commands; it exists for warnings and reporting, not
    for running anything.

    Args:
        raw: Legacy manifest
        plugin_id: Identifier to give the migrated manifest

    Returns:
        Partial current-schema manifest
    """
    return {
        "id": plugin_id,
        "version": "1.0.0",
        "display": {
            "name": plugin_id,
            "description": raw.get("describe") or "Migrated from legacy manifest",
        },
        "commands": [],
    }


def is_manifest_version_supported(version: str) -> bool:
    """Only 1.x and 2.x manifest versions are understood."""
    return version.startswith("1.") or version.startswith("2.")


def deprecation_warning(plugin_id: str) -> str:
    return (
        f"DEPRECATION: legacy manifest loaded for {plugin_id}. "
        f"Please migrate to the current manifest schema."
    )
