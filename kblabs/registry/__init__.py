"""
kb Command Registry - availability, activation and dispatch.

This module handles:
- Registering plugin commands with shadowing
- Checking that declared dependencies resolve
- One-time lazy plugin setup
- Running commands with a uniform exit code contract
"""

from kblabs.registry.availability import Availability, check_requires
from kblabs.registry.commands import (
    CollisionError,
    CommandManifest,
    CommandRegistry,
    RegisteredCommand,
    RegistryError,
    register_plugins,
)
from kblabs.registry.dispatch import (
    CommandContext,
    CommandDispatcher,
    ConsolePresenter,
    Presenter,
)
from kblabs.registry.setup import LazySetupGate, SetupOutcome, SetupPhase
from kblabs.registry.state import FileStateStore, PluginsState, StateError

__all__ = [
    "Availability",
    "CollisionError",
    "CommandContext",
    "CommandDispatcher",
    "CommandManifest",
    "CommandRegistry",
    "ConsolePresenter",
    "FileStateStore",
    "LazySetupGate",
    "PluginsState",
    "Presenter",
    "RegisteredCommand",
    "RegistryError",
    "SetupOutcome",
    "SetupPhase",
    "StateError",
    "check_requires",
    "register_plugins",
]
