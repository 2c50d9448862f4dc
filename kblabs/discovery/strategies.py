"""
Discovery Strategies.

Each strategy scans a list of roots for plugins and reports what it found.

Key features:
- Workspace: pnpm-workspace.yaml / package.json ``workspaces`` members
- PackageManifest: ``kbLabs`` in package.json, ``[tool.kblabs]`` in pyproject.toml
- Directory: ``.kb/plugins/**/manifest.{py,json}``
- ExplicitFile: roots that are manifest files themselves

A strategy never raises out of ``discover``; every per-root or per-manifest
failure becomes an entry in ``DiscoveryResult.errors``.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from kblabs.config.toml_handler import TOMLError, read_toml
from kblabs.discovery.types import (
    Display,
    DiscoveryResult,
    PluginBrief,
    PluginSource,
    SourceKind,
)
from kblabs.plugin.compat import ManifestKind, deprecation_warning, detect_version
from kblabs.plugin.loader import LoaderError, ModuleLoader
from kblabs.plugin.manifest import ManifestError, PluginManifest

logger = logging.getLogger(__name__)

MANIFEST_FILENAMES = ("manifest.py", "manifest.json")


class StrategyError(Exception):
    """Raised for a malformed package or workspace descriptor."""

    pass


# Expected per-entry failures; anything else is logged with a traceback
SCAN_ERRORS = (StrategyError, LoaderError, ManifestError)


@dataclass
class PackageDescriptor:
    """
    package.json or pyproject.toml of a plugin package.

    Attributes:
        path: Descriptor file
        name: Package name
        version: Package version
        description: Package description
        kb: The ``kbLabs`` object / ``[tool.kblabs]`` table
    """

    path: Path
    name: str | None = None
    version: str | None = None
    description: str | None = None
    kb: dict[str, Any] = field(default_factory=dict)
    workspaces: Any = None

    @property
    def root(self) -> Path:
        return self.path.parent

    @property
    def display(self) -> Display:
        return Display(
            name=self.kb.get("name") or self.name,
            description=self.kb.get("description") or self.description,
        )


def read_json(path: Path) -> Any:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise StrategyError(f"Failed to parse {path.name}: {e}") from e
    except OSError as e:
        raise StrategyError(f"Failed to read {path}: {e}") from e


def read_descriptor(directory: Path) -> PackageDescriptor | None:
    """
    Read a package's descriptor.

    package.json wins over pyproject.toml.

    Returns:
        PackageDescriptor, or None if the directory has neither file

    Raises:
        StrategyError: If the descriptor is malformed
    """
    package_json = directory / "package.json"
    if package_json.is_file():
        pkg = read_json(package_json)
        if not isinstance(pkg, dict):
            raise StrategyError(f"{package_json} must contain a JSON object")
        kb = pkg.get("kbLabs") or {}
        if not isinstance(kb, dict):
            raise StrategyError(f"'kbLabs' in {package_json} must be an object")
        return PackageDescriptor(
            path=package_json,
            name=pkg.get("name"),
            version=pkg.get("version"),
            description=pkg.get("description"),
            kb=kb,
            workspaces=pkg.get("workspaces"),
        )

    pyproject = directory / "pyproject.toml"
    if pyproject.is_file():
        try:
            data = read_toml(pyproject)
        except TOMLError as e:
            raise StrategyError(str(e)) from e
        project = data.get("project", {})
        tool = data.get("tool", {})
        if not isinstance(project, dict) or not isinstance(tool, dict):
            raise StrategyError(f"[project] and [tool] in {pyproject} must be tables")
        kb = tool.get("kblabs", {})
        if not isinstance(kb, dict):
            raise StrategyError(f"[tool.kblabs] in {pyproject} must be a table")
        return PackageDescriptor(
            path=pyproject,
            name=project.get("name"),
            version=project.get("version"),
            description=project.get("description"),
            kb=kb,
        )

    return None


class DiscoveryStrategy:
    """
    Base class for discovery strategies.

    Subclasses implement ``scan``, which runs in a worker thread and owns its
    result buffers.
    """

    name: str = ""
    source_kind: SourceKind
    priority: int = 0

    def __init__(self, loader: ModuleLoader):
        self.loader = loader

    async def discover(self, roots: list[Path]) -> DiscoveryResult:
        """
        Scan ``roots``.

        Never raises; an unexpected failure is reported as an error against
        the strategy itself.
        """
        try:
            return await asyncio.to_thread(self.scan, [Path(r) for r in roots])
        except Exception as e:
            logger.exception("Discovery strategy %s failed", self.name)
            result = DiscoveryResult()
            result.add_error(f"<{self.name}>", e)
            return result

    def scan(self, roots: list[Path]) -> DiscoveryResult:
        raise NotImplementedError

    def _record_error(self, result: DiscoveryResult, path: Path | str, error: Exception) -> None:
        """Record a per-entry failure; unexpected ones are logged with a traceback."""
        if isinstance(error, SCAN_ERRORS):
            logger.debug("%s: %s: %s", self.name, path, error)
        else:
            logger.exception("%s: unexpected error scanning %s", self.name, path)
        result.add_error(path, error)

    def _brief(
        self, plugin_id: str, version: str | None, manifest: PluginManifest, display: Display
    ) -> PluginBrief:
        return PluginBrief(
            id=plugin_id,
            version=version or "0.0.0",
            kind=manifest.kind,
            source=PluginSource(kind=self.source_kind, path=str(manifest.path)),
            display=display,
        )

    def _add_package(self, descriptor: PackageDescriptor, result: DiscoveryResult) -> None:
        """
        Add the plugin a descriptor points at through ``manifest``.

        Raises:
            StrategyError, LoaderError, ManifestError: On any failure
        """
        manifest_ref = descriptor.kb.get("manifest")
        if not manifest_ref:
            return
        if not isinstance(manifest_ref, str):
            raise StrategyError(f"'manifest' in {descriptor.path} must be a path string")
        for key in ("name", "version"):
            value = getattr(descriptor, key)
            if value is not None and not isinstance(value, str):
                raise StrategyError(f"'{key}' in {descriptor.path} must be a string")

        manifest_path = (descriptor.root / manifest_ref).resolve()
        if not manifest_path.is_file():
            raise StrategyError(f"Manifest not found: {manifest_path}")

        plugin_id = descriptor.name or descriptor.root.name
        manifest = self.loader.load_manifest(manifest_path, fallback_id=plugin_id)
        result.add_plugin(
            self._brief(plugin_id, descriptor.version, manifest, descriptor.display),
            manifest,
        )
        logger.debug("%s: found %s at %s", self.name, plugin_id, manifest_path)


def find_workspace_root(start: Path) -> Path | None:
    """
    Walk upwards from ``start`` to the nearest workspace root.

    A workspace root holds pnpm-workspace.yaml or a package.json declaring
    ``workspaces``.
    """
    current = start.resolve()
    if current.is_file():
        current = current.parent

    while current != current.parent:
        if (current / "pnpm-workspace.yaml").is_file():
            return current

        package_json = current / "package.json"
        if package_json.is_file():
            try:
                pkg = read_json(package_json)
            except StrategyError:
                pkg = None
            if isinstance(pkg, dict) and pkg.get("workspaces"):
                return current

        current = current.parent

    return None


class WorkspaceStrategy(DiscoveryStrategy):
    """Plugins declared by the members of a monorepo workspace."""

    name = "workspace"
    source_kind = SourceKind.WORKSPACE
    priority = 1

    def _patterns(self, workspace_root: Path) -> list[str]:
        pnpm = workspace_root / "pnpm-workspace.yaml"
        if pnpm.is_file():
            try:
                config = yaml.safe_load(pnpm.read_text(encoding="utf-8")) or {}
            except (OSError, yaml.YAMLError) as e:
                raise StrategyError(f"Failed to read {pnpm}: {e}") from e
            patterns = config.get("packages", []) if isinstance(config, dict) else []
        else:
            workspaces = read_descriptor(workspace_root).workspaces
            patterns = workspaces.get("packages", []) if isinstance(workspaces, dict) else workspaces

        if not isinstance(patterns, list) or not all(isinstance(p, str) for p in patterns):
            raise StrategyError(f"Workspace packages of {workspace_root} must be a list of globs")
        return patterns

    def _members(self, workspace_root: Path, patterns: list[str]) -> list[Path]:
        included: set[Path] = set()
        excluded: set[Path] = set()

        for pattern in patterns:
            target = excluded if pattern.startswith("!") else included
            try:
                matches = list(workspace_root.glob(pattern.lstrip("!").rstrip("/")))
            except (ValueError, NotImplementedError) as e:
                raise StrategyError(f"Invalid workspace pattern {pattern!r}: {e}") from e
            target.update(match.resolve() for match in matches if match.is_dir())

        return sorted(included - excluded)

    def scan(self, roots: list[Path]) -> DiscoveryResult:
        result = DiscoveryResult()
        seen: set[Path] = set()

        for root in roots:
            workspace_root = find_workspace_root(root)
            if workspace_root is None or workspace_root in seen:
                continue
            seen.add(workspace_root)

            try:
                members = self._members(workspace_root, self._patterns(workspace_root))
            except Exception as e:
                self._record_error(result, workspace_root, e)
                continue

            for member in members:
                try:
                    descriptor = read_descriptor(member)
                    if descriptor is not None:
                        self._add_package(descriptor, result)
                except Exception as e:
                    self._record_error(result, member, e)

        return result


class PackageManifestStrategy(DiscoveryStrategy):
    """Plugins named by a root's package.json / pyproject.toml."""

    name = "pkg"
    source_kind = SourceKind.PKG
    priority = 2

    def scan(self, roots: list[Path]) -> DiscoveryResult:
        result = DiscoveryResult()

        for root in roots:
            if not root.is_dir():
                continue

            try:
                descriptor = read_descriptor(root)
            except Exception as e:
                self._record_error(result, root, e)
                continue
            if descriptor is None:
                continue

            try:
                self._add_package(descriptor, result)
            except Exception as e:
                self._record_error(result, descriptor.path, e)

            plugins = descriptor.kb.get("plugins") or []
            if not isinstance(plugins, list):
                result.add_error(descriptor.path, "'plugins' must be a list of paths")
                continue

            for plugin_ref in plugins:
                if not isinstance(plugin_ref, str):
                    result.add_error(
                        descriptor.path, f"Plugin path must be a string: {plugin_ref!r}"
                    )
                    continue
                plugin_dir = (root / plugin_ref).resolve()
                if not plugin_dir.is_dir():
                    logger.debug("pkg: plugin directory %s does not exist", plugin_dir)
                    continue
                try:
                    sub = read_descriptor(plugin_dir)
                    if sub is not None:
                        self._add_package(sub, result)
                except Exception as e:
                    self._record_error(result, plugin_dir, e)

        return result


class DirectoryStrategy(DiscoveryStrategy):
    """Manifests dropped into ``.kb/plugins``."""

    name = "dir"
    source_kind = SourceKind.DIR
    priority = 3

    def scan(self, roots: list[Path]) -> DiscoveryResult:
        result = DiscoveryResult()

        for root in roots:
            plugins_dir = root / ".kb" / "plugins"
            if not plugins_dir.is_dir():
                continue

            try:
                manifest_files = sorted(
                    path
                    for filename in MANIFEST_FILENAMES
                    for path in plugins_dir.rglob(filename)
                    if path.is_file()
                )
            except OSError as e:
                self._record_error(result, plugins_dir, e)
                continue

            for manifest_path in manifest_files:
                try:
                    self._add_manifest(plugins_dir, manifest_path, result)
                except Exception as e:
                    self._record_error(result, manifest_path, e)

        return result

    def _add_manifest(
        self, plugins_dir: Path, manifest_path: Path, result: DiscoveryResult
    ) -> None:
        relative = manifest_path.parent.relative_to(plugins_dir).as_posix()
        dir_id = manifest_path.parent.name if relative == "." else relative

        manifest = self.loader.load_manifest(manifest_path, fallback_id=dir_id)
        plugin_id = manifest.id if manifest.kind is ManifestKind.CURRENT else dir_id

        descriptor = read_descriptor(manifest_path.parent)
        if descriptor is not None:
            version = descriptor.version
            display = descriptor.display
        else:
            version = manifest.version
            display = Display(**manifest.display)

        result.add_plugin(self._brief(plugin_id, version, manifest, display), manifest)


class ExplicitFileStrategy(DiscoveryStrategy):
    """Roots that are themselves manifest files."""

    name = "file"
    source_kind = SourceKind.FILE
    priority = 4

    def scan(self, roots: list[Path]) -> DiscoveryResult:
        result = DiscoveryResult()

        for root in roots:
            if not root.is_file():
                continue

            manifest_path = root.resolve()
            try:
                raw = self.loader.load_manifest_object(manifest_path)
                kind = detect_version(raw)
                if kind is not ManifestKind.CURRENT:
                    if kind is ManifestKind.LEGACY:
                        logger.warning(deprecation_warning(manifest_path.parent.name))
                    logger.debug("file: %s is not a current manifest, skipping", manifest_path)
                    continue

                manifest = self.loader.load_manifest(manifest_path)
                result.add_plugin(
                    self._brief(
                        manifest.id,
                        manifest.version,
                        manifest,
                        self._display(manifest),
                    ),
                    manifest,
                )
            except Exception as e:
                self._record_error(result, manifest_path, e)

        return result

    def _display(self, manifest: PluginManifest) -> Display:
        declared = manifest.display
        try:
            descriptor = read_descriptor(manifest.base_dir)
        except StrategyError as e:
            logger.warning("Ignoring sibling package metadata of %s: %s", manifest.path, e)
            descriptor = None

        if descriptor is None:
            return Display(name=declared.get("name"), description=declared.get("description"))

        fallback = descriptor.display
        return Display(
            name=declared.get("name") or fallback.name,
            description=declared.get("description") or fallback.description,
        )


STRATEGIES: dict[str, type[DiscoveryStrategy]] = {
    "workspace": WorkspaceStrategy,
    "pkg": PackageManifestStrategy,
    "dir": DirectoryStrategy,
    "file": ExplicitFileStrategy,
}
