"""
Runtime Bootstrap.

Wires settings, discovery and registration into one per-invocation
runtime: roots -> strategies -> DiscoveryManager -> CommandRegistry.
"""

import logging
from dataclasses import dataclass, field

from kblabs.config import Settings
from kblabs.discovery import DiscoveryManager, DiscoveryOptions, DiscoveryResult
from kblabs.plugin import ModuleLoader
from kblabs.registry.commands import CommandRegistry, register_plugins
from kblabs.registry.dispatch import CommandDispatcher
from kblabs.registry.setup import LazySetupGate
from kblabs.registry.state import (
    PluginsState,
    StateError,
    create_state_store,
    load_plugins_state,
)

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything one kb invocation works with."""

    settings: Settings
    loader: ModuleLoader
    manager: DiscoveryManager
    result: DiscoveryResult
    registry: CommandRegistry
    gate: LazySetupGate
    dispatcher: CommandDispatcher
    plugins_state: PluginsState = field(default_factory=PluginsState)


def discovery_options(settings: Settings) -> DiscoveryOptions:
    return DiscoveryOptions(
        roots=list(settings.roots) or [settings.cwd],
        strategies=list(settings.strategies),
        prefer_current=settings.prefer_current,
        allow_downgrade=settings.allow_downgrade,
    )


async def bootstrap(settings: Settings) -> Runtime:
    """
    Discover plugins and register their commands.

    A corrupt ``plugins.json`` is reported and treated as empty.

    Args:
        settings: Loaded settings

    Returns:
        Runtime for this invocation
    """
    loader = ModuleLoader()
    manager = DiscoveryManager(discovery_options(settings), loader=loader)
    result = await manager.discover()

    try:
        plugins_state = load_plugins_state(settings.plugins_state_path)
    except StateError as e:
        logger.warning("Ignoring plugin state: %s", e)
        plugins_state = PluginsState()

    registry = register_plugins(
        CommandRegistry(),
        result,
        loader,
        cwd=settings.cwd,
        plugins_state=plugins_state,
    )
    if registry.partial:
        logger.info("Plugin discovery was partial: %d error(s)", len(registry.errors))

    state_path = settings.state_path

    return Runtime(
        settings=settings,
        loader=loader,
        manager=manager,
        result=result,
        registry=registry,
        gate=LazySetupGate(registry, lambda: create_state_store(state_path)),
        dispatcher=CommandDispatcher(settings.plugins_state_path),
        plugins_state=plugins_state,
    )
