"""
Command Dispatcher.

This module runs a registered command and turns the outcome into an exit
code.

Key features:
- Refuses unavailable commands with exit code 2 (one JSON line in JSON mode)
- Loads the implementation only when the command is available
- Passes global flags through to every command
- Records crashes; a plugin is disabled after repeated crashes

Exit codes: 0 success, 1 failure, 2 unavailable.
"""

import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, TextIO

from kblabs.plugin.hooks import call_handler
from kblabs.registry.commands import RegisteredCommand
from kblabs.registry.state import StateError, record_crash

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_UNAVAILABLE = 2

GLOBAL_FLAGS = ("json", "verbose", "debug", "quiet", "dry_run")


class Presenter(Protocol):
    """Output sink handed to commands through the context."""

    def json(self, payload: dict[str, Any]) -> None: ...

    def info(self, message: str) -> None: ...

    def warn(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class ConsolePresenter:
    """
    Plain console output.

    JSON payloads and info messages go to stdout, one JSON document per
    line; warnings and errors go to stderr.
    """

    def __init__(self, stdout: TextIO | None = None, stderr: TextIO | None = None):
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr

    def json(self, payload: dict[str, Any]) -> None:
        print(json.dumps(payload, default=str), file=self.stdout)

    def info(self, message: str) -> None:
        print(message, file=self.stdout)

    def warn(self, message: str) -> None:
        print(f"Warning: {message}", file=self.stderr)

    def error(self, message: str) -> None:
        print(f"Error: {message}", file=self.stderr)


@dataclass
class CommandContext:
    """
    What a command receives as its first argument.

    Attributes:
        cwd: Working directory
        presenter: Output sink
        registry: Command registry of this run
        loader: Module loader of this run
        settings: Loaded settings
    """

    cwd: Path
    presenter: Presenter
    registry: Any = None
    loader: Any = None
    settings: Any = None


def with_global_flags(flags: dict[str, Any] | None) -> dict[str, Any]:
    """Every global flag present (False when unset), plus the command's own."""
    merged: dict[str, Any] = {name: False for name in GLOBAL_FLAGS}
    merged.update(flags or {})
    return merged


class CommandDispatcher:
    """
    Executes registered commands.

    Example:
        dispatcher = CommandDispatcher(settings.plugins_state_path)
        code = await dispatcher.run(command, ctx, argv, {"json": True})
    """

    def __init__(self, plugins_state_path: Path | None = None):
        """
        Initialize CommandDispatcher.

        Args:
            plugins_state_path: ``plugins.json`` crashes are recorded in;
                crashes are not recorded when omitted
        """
        self.plugins_state_path = plugins_state_path

    async def run(
        self,
        command: RegisteredCommand,
        ctx: CommandContext,
        argv: list[str],
        flags: dict[str, Any] | None = None,
    ) -> int:
        """
        Run a command.

        Args:
            command: Registered command
            ctx: Command context
            argv: Arguments after the command path
            flags: Parsed flags

        Returns:
            Exit code
        """
        flags = with_global_flags(flags)

        if not command.available:
            return self._refuse(command, ctx, flags)

        try:
            implementation = command.manifest.loader()
        except Exception as e:
            logger.debug("Loading %s failed", command.id, exc_info=True)
            return self._fail(command, ctx, flags, f"Failed to load command: {e}")

        try:
            return await call_handler(implementation, ctx, argv, flags)
        except Exception as e:
            logger.debug("%s raised", command.id, exc_info=True)
            self._record_crash(command)
            return self._fail(command, ctx, flags, str(e))

    def _refuse(
        self, command: RegisteredCommand, ctx: CommandContext, flags: dict[str, Any]
    ) -> int:
        if flags.get("json"):
            payload: dict[str, Any] = {
                "ok": False,
                "available": False,
                "command": command.id,
            }
            if command.unavailable_reason:
                payload["reason"] = command.unavailable_reason
            if command.hint:
                payload["hint"] = command.hint
            ctx.presenter.json(payload)
        else:
            message = f"{command.id} unavailable: {command.unavailable_reason}"
            if command.hint:
                message += f" ({command.hint})"
            ctx.presenter.warn(message)
        return EXIT_UNAVAILABLE

    def _fail(
        self,
        command: RegisteredCommand,
        ctx: CommandContext,
        flags: dict[str, Any],
        error: str,
    ) -> int:
        if flags.get("json"):
            ctx.presenter.json({"ok": False, "command": command.id, "error": error})
        else:
            ctx.presenter.error(f"{command.id}: {error}")
        return EXIT_FAILURE

    def _record_crash(self, command: RegisteredCommand) -> None:
        plugin_id = command.manifest.package
        if self.plugins_state_path is None or plugin_id is None:
            return
        try:
            record_crash(self.plugins_state_path, plugin_id)
        except StateError as e:
            logger.warning("Could not record crash of %s: %s", plugin_id, e)
