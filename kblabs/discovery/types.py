"""
Discovery Data Types.

Plugin briefs, discovery results and options. Everything here is rebuilt on
every invocation and never persisted.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from kblabs.plugin.compat import ManifestKind
from kblabs.plugin.manifest import PluginManifest


class SourceKind(Enum):
    """Where a plugin was found."""

    WORKSPACE = "workspace"
    PKG = "pkg"
    DIR = "dir"
    FILE = "file"


# Lower is more authoritative
SOURCE_PRIORITY: dict[SourceKind, int] = {
    SourceKind.WORKSPACE: 1,
    SourceKind.PKG: 2,
    SourceKind.DIR: 3,
    SourceKind.FILE: 4,
}


@dataclass(frozen=True)
class PluginSource:
    """
    Origin of a brief.

    Attributes:
        kind: Strategy that found it
        path: Absolute path of the manifest entry point
    """

    kind: SourceKind
    path: str

    @property
    def priority(self) -> int:
        return SOURCE_PRIORITY[self.kind]


@dataclass(frozen=True)
class Display:
    name: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class PluginBrief:
    """
    One candidate for a plugin id.

    Several briefs may share an id until the DiscoveryManager deduplicates
    them.
    """

    id: str
    version: str
    kind: ManifestKind
    source: PluginSource
    display: Display = field(default_factory=Display)


@dataclass(frozen=True)
class DiscoveryError:
    path: str
    error: str


@dataclass
class DiscoveryResult:
    """
    Output of a strategy, or of a whole discovery run.

    Failures are recorded in ``errors``; they never remove plugins.
    """

    plugins: list[PluginBrief] = field(default_factory=list)
    manifests: dict[str, PluginManifest] = field(default_factory=dict)
    errors: list[DiscoveryError] = field(default_factory=list)

    def add_error(self, path: Path | str, error: BaseException | str) -> None:
        self.errors.append(DiscoveryError(path=str(path), error=str(error)))

    def add_plugin(self, brief: PluginBrief, manifest: PluginManifest) -> None:
        self.plugins.append(brief)
        self.manifests[brief.id] = manifest


@dataclass
class DiscoveryOptions:
    """
    Options for a discovery run.

    Attributes:
        roots: Roots to scan; the working directory when empty
        strategies: Names of the strategies to run
        prefer_current: Rank current-schema manifests above legacy ones
        allow_downgrade: Let a higher version override source priority
    """

    roots: list[Path] = field(default_factory=list)
    strategies: list[str] = field(
        default_factory=lambda: ["workspace", "pkg", "dir", "file"]
    )
    prefer_current: bool = True
    allow_downgrade: bool = False
