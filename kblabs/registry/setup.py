"""
Lazy Setup Gate.

Runs a plugin's declared setup handler once, on the first invocation of
any of its commands, and remembers that it succeeded.

Key features:
- Persisted completion marker (``plugin:{id}:setup-done``) with no expiry
- Per-process memoization of every outcome
- Degrades to "proceed" when the state backend is unavailable

The marker is read and then written without a lock. Two processes running
the same plugin for the first time at once can both run its setup; setup
handlers should be idempotent.
"""

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from kblabs.plugin.hooks import call_handler
from kblabs.plugin.manifest import PluginManifest, plugin_namespace
from kblabs.registry.commands import CommandRegistry
from kblabs.registry.state import StateStore, setup_key

logger = logging.getLogger(__name__)


class SetupPhase(Enum):
    """Terminal states of a gate evaluation."""

    SKIPPED = "skipped"
    ALREADY_DONE = "already-done"
    DONE = "done"
    FAILED = "failed"
    DEGRADED_SKIP = "degraded-skip"


@dataclass(frozen=True)
class SetupOutcome:
    ok: bool
    phase: SetupPhase
    error: str | None = None


def setup_command_id(plugin_id: str) -> str:
    """``@scope/playbooks`` -> ``playbooks:setup``"""
    return f"{plugin_namespace(plugin_id)}:setup"


class LazySetupGate:
    """
    One-time activation gate in front of plugin commands.

    Example:
        gate = LazySetupGate(registry, lambda: FileStateStore(path))
        outcome = await gate.ensure(plugin, ctx, flags)
        if not outcome.ok:
            return 1
    """

    def __init__(
        self,
        registry: CommandRegistry,
        state_store_factory: Callable[[], StateStore],
    ):
        """
        Initialize LazySetupGate.

        Args:
            registry: Registry holding the ``namespace:setup`` commands
            state_store_factory: Returns the state store; may raise when the
                backend is unavailable
        """
        self.registry = registry
        self.state_store_factory = state_store_factory
        self._outcomes: dict[str, SetupOutcome] = {}

    async def ensure(
        self,
        plugin: PluginManifest,
        ctx: Any = None,
        flags: dict[str, Any] | None = None,
    ) -> SetupOutcome:
        """
        Make sure ``plugin`` has completed setup.

        Args:
            plugin: Plugin whose command is about to run
            ctx: Context passed to the setup command
            flags: Flags passed to the setup command

        Returns:
            SetupOutcome; ``ok`` is False only when setup ran and failed or
            its command is missing
        """
        outcome = self._outcomes.get(plugin.id)
        if outcome is None:
            outcome = await self._evaluate(plugin, ctx, flags or {})
            self._outcomes[plugin.id] = outcome
        return outcome

    async def _evaluate(
        self, plugin: PluginManifest, ctx: Any, flags: dict[str, Any]
    ) -> SetupOutcome:
        if plugin.setup is None:
            return SetupOutcome(ok=True, phase=SetupPhase.SKIPPED)

        key = setup_key(plugin.id)
        try:
            store = self.state_store_factory()
            done = store.get(key)
        except Exception as e:
            logger.warning(
                "State store unavailable, skipping setup of %s: %s", plugin.id, e
            )
            return SetupOutcome(ok=True, phase=SetupPhase.DEGRADED_SKIP, error=str(e))

        if done:
            return SetupOutcome(ok=True, phase=SetupPhase.ALREADY_DONE)

        command_id = setup_command_id(plugin.id)
        command = self.registry.get(command_id)
        if command is None:
            error = f"Setup command {command_id} not found for {plugin.id}"
            logger.error(error)
            return SetupOutcome(ok=False, phase=SetupPhase.FAILED, error=error)

        logger.info("Running first-time setup for %s", plugin.id)
        try:
            implementation = command.manifest.loader()
            exit_code = await call_handler(implementation, ctx, [], flags)
        except Exception as e:
            logger.error("Setup of %s failed: %s", plugin.id, e)
            return SetupOutcome(ok=False, phase=SetupPhase.FAILED, error=str(e))

        if exit_code != 0:
            error = f"Setup of {plugin.id} exited with code {exit_code}"
            logger.error(error)
            return SetupOutcome(ok=False, phase=SetupPhase.FAILED, error=error)

        try:
            store.set(
                key,
                {"timestamp": int(time.time() * 1000), "version": plugin.version},
                ttl=math.inf,
            )
        except Exception as e:
            logger.warning(
                "Setup of %s succeeded but was not recorded: %s", plugin.id, e
            )

        logger.info("Setup of %s complete", plugin.id)
        return SetupOutcome(ok=True, phase=SetupPhase.DONE)

    def reset(self, plugin_id: str) -> bool:
        """
        Forget that ``plugin_id`` completed setup.

        Returns:
            True if a marker was removed
        """
        self._outcomes.pop(plugin_id, None)
        return self.state_store_factory().delete(setup_key(plugin_id))
