"""
kb Plugin Discovery - locating and reconciling plugins.

This module handles:
- Scanning workspaces, package descriptors, directories and explicit files
- Merging strategy results
- Picking exactly one version per plugin id
"""

from kblabs.discovery.manager import DiscoveryManager, Resolution
from kblabs.discovery.strategies import (
    DirectoryStrategy,
    DiscoveryStrategy,
    ExplicitFileStrategy,
    PackageManifestStrategy,
    WorkspaceStrategy,
)
from kblabs.discovery.types import (
    Display,
    DiscoveryError,
    DiscoveryOptions,
    DiscoveryResult,
    PluginBrief,
    PluginSource,
    SourceKind,
)

__all__ = [
    "DirectoryStrategy",
    "DiscoveryError",
    "DiscoveryManager",
    "DiscoveryOptions",
    "DiscoveryResult",
    "DiscoveryStrategy",
    "Display",
    "ExplicitFileStrategy",
    "PackageManifestStrategy",
    "PluginBrief",
    "PluginSource",
    "Resolution",
    "SourceKind",
    "WorkspaceStrategy",
]
