"""
Command Registry.

This module indexes the commands contributed by reconciled plugins.

Key features:
- Command id normalization (``namespace:command``) and whitespace aliases
- Per-command availability
- Shadowing of lower-priority duplicates
- A monotonic ``partial`` flag for runs with discovery errors
- Auto-generated ``namespace:setup`` commands
"""

import functools
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kblabs.discovery.types import (
    SOURCE_PRIORITY,
    DiscoveryError,
    DiscoveryResult,
    PluginBrief,
    SourceKind,
)
from kblabs.plugin.compat import ManifestKind
from kblabs.plugin.hooks import build_setup_command
from kblabs.plugin.loader import LoaderError, ModuleLoader
from kblabs.plugin.manifest import ManifestError, PluginManifest
from kblabs.registry.availability import Availability, check_requires
from kblabs.registry.state import PluginsState

logger = logging.getLogger(__name__)

ALIAS_RE = re.compile(r"^[a-z0-9-:]+$", re.IGNORECASE)
BUILTIN_SOURCE = "builtin"

# Lower is more authoritative; built-in commands outrank every plugin source
COMMAND_SOURCE_PRIORITY: dict[str, int] = {
    BUILTIN_SOURCE: 0,
    **{kind.value: priority for kind, priority in SOURCE_PRIORITY.items()},
}


class RegistryError(Exception):
    """Base exception for registry errors."""

    pass


class CollisionError(RegistryError):
    """Raised when two commands claim an id or alias and neither outranks the other."""

    pass


@dataclass
class CommandManifest:
    """
    A command as the registry indexes it.

    ``loader()`` returns the implementation: a callable, or an object or
    module exposing a callable ``run(ctx, argv, flags)``.
    """

    id: str
    group: str
    describe: str
    loader: Callable[[], Any]
    requires: list[str] = field(default_factory=list)
    aliases: list[str] = field(default_factory=list)
    flags: list[dict[str, Any]] = field(default_factory=list)
    plugin_id: str | None = None
    package: str | None = None


@dataclass
class RegisteredCommand:
    """
    A command plus its availability and shadowing status.

    Attributes:
        manifest: Command manifest
        available: Whether its dependencies resolve (and its plugin is enabled)
        source: Origin (a SourceKind value or "builtin")
        unavailable_reason: Why it is unavailable
        hint: How to make it available
        shadowed: Hidden behind a higher-priority command with the same id
        plugin: Manifest of the contributing plugin
    """

    manifest: CommandManifest
    available: bool
    source: str
    unavailable_reason: str | None = None
    hint: str | None = None
    shadowed: bool = False
    plugin: PluginManifest | None = None

    @property
    def id(self) -> str:
        return self.manifest.id

    @property
    def priority(self) -> int:
        return COMMAND_SOURCE_PRIORITY.get(self.source, len(COMMAND_SOURCE_PRIORITY))


def normalize_command_id(command_id: str, namespace: str) -> str:
    """
    Ensure ``namespace:command`` form.

    ``pack`` -> ``mind:pack``; ``other:pack`` -> ``mind:pack``
    """
    if ":" in command_id:
        ns, rest = command_id.split(":", 1)
        if ns != namespace:
            logger.warning(
                "Command id %r normalized to %r", command_id, f"{namespace}:{rest}"
            )
            return f"{namespace}:{rest}"
        return command_id
    return f"{namespace}:{command_id}"


def normalize_aliases(command_id: str, aliases: list[str]) -> list[str]:
    """Valid declared aliases plus the whitespace form of the id."""
    result: list[str] = []
    for alias in aliases:
        if not ALIAS_RE.match(alias):
            logger.warning(
                "Invalid alias %r in %s: aliases must be alphanumeric with hyphens or colons",
                alias,
                command_id,
            )
            continue
        if alias not in result:
            result.append(alias)

    spaced = command_id.replace(":", " ", 1)
    if spaced != command_id and spaced not in result:
        result.append(spaced)

    return result


def _merge_requires(*groups: list[str]) -> list[str]:
    merged: list[str] = []
    for group in groups:
        for name in group:
            if name not in merged:
                merged.append(name)
    return merged


def build_commands(
    brief: PluginBrief, manifest: PluginManifest, loader: ModuleLoader
) -> list[CommandManifest]:
    """
    Turn a plugin manifest's declarations into command manifests.

    Adds ``namespace:setup`` when the plugin declares setup and does not
    declare that command itself.
    """
    commands: list[CommandManifest] = []

    for spec in manifest.commands:
        # Legacy commands carry their own group; current ones use the plugin namespace
        if manifest.kind is ManifestKind.LEGACY:
            namespace = spec.group
        else:
            namespace = manifest.namespace
        command_id = normalize_command_id(spec.id, namespace)
        if spec.loader is not None:
            command_loader = spec.loader
        else:
            command_loader = functools.partial(
                loader.resolve_handler, spec.handler, manifest.base_dir
            )

        commands.append(
            CommandManifest(
                id=command_id,
                group=spec.group or namespace,
                describe=spec.describe,
                loader=command_loader,
                requires=_merge_requires(manifest.requires, spec.requires),
                aliases=normalize_aliases(command_id, spec.aliases),
                flags=spec.flags,
                plugin_id=manifest.id,
                package=brief.id,
            )
        )

    setup_id = f"{manifest.namespace}:setup"
    if manifest.setup is not None and all(c.id != setup_id for c in commands):
        setup_command = build_setup_command(manifest, loader)
        commands.append(
            CommandManifest(
                id=setup_id,
                group=manifest.namespace,
                describe=manifest.setup.describe or f"Run setup for {manifest.id}",
                loader=lambda: setup_command,
                aliases=normalize_aliases(setup_id, []),
                plugin_id=manifest.id,
                package=brief.id,
            )
        )

    return commands


class CommandRegistry:
    """
    Registry of commands contributed by discovered plugins.

    Example:
        registry = CommandRegistry()
        register_plugins(registry, result, loader)
        command = registry.find(["mind", "pack"])
    """

    def __init__(self):
        self._commands: dict[str, RegisteredCommand] = {}
        self._aliases: dict[str, str] = {}
        self._shadowed: list[RegisteredCommand] = []
        self._plugins: dict[str, PluginManifest] = {}
        self._partial = False
        self.errors: list[DiscoveryError] = []

    @property
    def partial(self) -> bool:
        """True once any upstream source failed; never reset."""
        return self._partial

    def mark_partial(self) -> None:
        self._partial = True

    def add_error(self, path: Path | str, error: BaseException | str) -> None:
        self.errors.append(DiscoveryError(path=str(path), error=str(error)))
        self.mark_partial()

    def add_plugin(self, manifest: PluginManifest) -> None:
        self._plugins[manifest.id] = manifest

    def plugin(self, plugin_id: str) -> PluginManifest | None:
        return self._plugins.get(plugin_id)

    @property
    def plugins(self) -> list[PluginManifest]:
        return list(self._plugins.values())

    def _check_aliases(self, command: RegisteredCommand) -> list[str]:
        """Aliases ``command`` may claim; raises on an unresolvable clash."""
        claimable: list[str] = []
        for alias in command.manifest.aliases:
            owner_id = self._aliases.get(alias)
            if owner_id is None or owner_id == command.id:
                claimable.append(alias)
                continue

            owner = self._commands[owner_id]
            if command.priority < owner.priority:
                claimable.append(alias)
            elif command.priority == owner.priority:
                raise CollisionError(
                    f'Alias collision: "{alias}" used by both {command.id} and {owner_id}. '
                    f"Rename one alias or use a different namespace."
                )
        return claimable

    def register(self, command: RegisteredCommand) -> RegisteredCommand:
        """
        Register a command, resolving id collisions by source priority.

        Returns:
            The registered command (``shadowed`` set if it lost)

        Raises:
            CollisionError: If two workspace packages export the same id, or
                two equal-priority commands claim one alias
        """
        existing = self._commands.get(command.id)

        if existing is not None:
            if (
                command.source == SourceKind.WORKSPACE.value
                and existing.source == SourceKind.WORKSPACE.value
            ):
                raise CollisionError(
                    f'Command ID collision: "{command.id}" is exported by multiple '
                    f"workspace packages. Rename one of the commands."
                )

            if command.priority >= existing.priority:
                command.shadowed = True
                self._shadowed.append(command)
                logger.info(
                    "%s from %s shadowed by %s version",
                    command.id,
                    command.source,
                    existing.source,
                )
                return command

        aliases = self._check_aliases(command)

        if existing is not None:
            existing.shadowed = True
            self._shadowed.append(existing)
            for alias, owner in list(self._aliases.items()):
                if owner == existing.id:
                    del self._aliases[alias]
            logger.info(
                "%s from %s shadows %s version", command.id, command.source, existing.source
            )

        self._commands[command.id] = command
        for alias in aliases:
            self._aliases[alias] = command.id

        return command

    def get(self, command_id: str) -> RegisteredCommand | None:
        return self._commands.get(command_id)

    def find(self, path: list[str]) -> RegisteredCommand | None:
        """
        Find a command by path.

        ``["mind", "pack"]``, ``["mind:pack"]`` and aliases all resolve.
        """
        if not path:
            return None

        for key in (":".join(path), " ".join(path)):
            if key in self._commands:
                return self._commands[key]
            if key in self._aliases:
                return self._commands[self._aliases[key]]

        return None

    def resolve(
        self, argv: list[str], max_depth: int = 3
    ) -> tuple[RegisteredCommand | None, list[str]]:
        """
        Match the longest command path at the start of ``argv``.

        Returns:
            (command or None, remaining arguments)
        """
        for depth in range(min(max_depth, len(argv)), 0, -1):
            command = self.find(argv[:depth])
            if command is not None:
                return command, argv[depth:]
        return None, argv

    def list(self, include_shadowed: bool = False) -> list[RegisteredCommand]:
        commands = sorted(self._commands.values(), key=lambda c: c.id)
        if include_shadowed:
            commands.extend(sorted(self._shadowed, key=lambda c: c.id))
        return commands


def _availability(
    command: CommandManifest, plugins_state: PluginsState | None, cwd: Path | None
) -> Availability:
    if plugins_state is not None and not plugins_state.is_enabled(command.package or ""):
        return Availability(
            available=False,
            reason=f"Plugin disabled: {command.package}",
            hint=f"Run: kb plugins enable {command.package}",
        )
    return check_requires(command, cwd)


def register_plugins(
    registry: CommandRegistry,
    result: DiscoveryResult,
    loader: ModuleLoader,
    cwd: Path | None = None,
    plugins_state: PluginsState | None = None,
) -> CommandRegistry:
    """
    Register the commands of every reconciled plugin.

    Plugins are registered in source priority order. Failures are recorded
    on the registry (which becomes partial) and never stop registration of
    other plugins.

    Args:
        registry: Registry to fill
        result: Merged, deduplicated discovery result
        loader: Loader of the same discovery run
        cwd: Directory dependencies are resolved from
        plugins_state: Enable/disable state; everything enabled when omitted

    Returns:
        The registry
    """
    if result.errors:
        registry.mark_partial()
        registry.errors.extend(result.errors)

    for brief in sorted(result.plugins, key=lambda b: (b.source.priority, b.id)):
        try:
            manifest = loader.load_manifest(Path(brief.source.path), fallback_id=brief.id)
        except (LoaderError, ManifestError) as e:
            registry.add_error(brief.source.path, e)
            continue

        registry.add_plugin(manifest)

        for command in build_commands(brief, manifest, loader):
            availability = _availability(command, plugins_state, cwd)
            try:
                registry.register(
                    RegisteredCommand(
                        manifest=command,
                        available=availability.available,
                        source=brief.source.kind.value,
                        unavailable_reason=availability.reason,
                        hint=availability.hint,
                        plugin=manifest,
                    )
                )
            except CollisionError as e:
                logger.error(str(e))
                registry.add_error(brief.source.path, e)

    return registry
