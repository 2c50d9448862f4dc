"""
kblabs - plugin discovery, reconciliation and activation engine for kb.

This is the main package that exports the public API of the engine.
"""

__version__ = "0.1.0"

from kblabs.discovery import DiscoveryManager, DiscoveryOptions, DiscoveryResult
from kblabs.plugin import ModuleLoader, PluginManifest
from kblabs.registry import (
    CommandContext,
    CommandDispatcher,
    CommandRegistry,
    LazySetupGate,
    register_plugins,
)
from kblabs.runtime import Runtime, bootstrap

__all__ = [
    "__version__",
    "CommandContext",
    "CommandDispatcher",
    "CommandRegistry",
    "DiscoveryManager",
    "DiscoveryOptions",
    "DiscoveryResult",
    "LazySetupGate",
    "ModuleLoader",
    "PluginManifest",
    "Runtime",
    "bootstrap",
    "register_plugins",
]
