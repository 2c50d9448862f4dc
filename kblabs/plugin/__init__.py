"""
kb Plugin Model - manifests, schema compatibility and loading.

This module handles:
- Manifest parsing (current and legacy schemas)
- Schema classification and legacy migration
- Per-run dynamic loading of manifests and handlers
- Setup handler execution
"""

from kblabs.plugin.compat import ManifestKind, check_dual_manifest, detect_version
from kblabs.plugin.loader import LoaderError, ModuleLoader
from kblabs.plugin.manifest import (
    CommandSpec,
    ManifestError,
    PluginManifest,
    SetupSpec,
    ValidationError,
    compare_versions,
    plugin_namespace,
)

__all__ = [
    "CommandSpec",
    "LoaderError",
    "ManifestError",
    "ManifestKind",
    "ModuleLoader",
    "PluginManifest",
    "SetupSpec",
    "ValidationError",
    "check_dual_manifest",
    "compare_versions",
    "detect_version",
    "plugin_namespace",
]
