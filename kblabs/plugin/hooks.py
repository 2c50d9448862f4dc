"""
Plugin Setup Hooks.

This module builds the command that runs a plugin's declared setup handler.

Key features:
- In-process handlers (``./setup.py#run``, ``package.module:run``)
- Script handlers run as a subprocess (``.sh``, ``.bat``, ``.ps1``, ``.py``)
- Environment variable injection
- Exit code handling
"""

import asyncio
import inspect
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Any

from kblabs.plugin.loader import ModuleLoader
from kblabs.plugin.manifest import PluginManifest

logger = logging.getLogger(__name__)

HOOK_TYPE = "setup"
SCRIPT_SUFFIXES = (".sh", ".bat", ".ps1", ".py")


class HookError(Exception):
    """Base exception for hook-related errors."""

    pass


def is_script_reference(ref: str) -> bool:
    """A handler without an attribute selector that names a script file."""
    return "#" not in ref and Path(ref).suffix in SCRIPT_SUFFIXES


def _script_command(script: Path) -> list[str]:
    if script.suffix == ".py":
        return [sys.executable, str(script)]
    if script.suffix == ".sh":
        return ["sh", str(script)]
    if script.suffix == ".ps1":
        return ["powershell", "-ExecutionPolicy", "Bypass", "-File", str(script)]
    return [str(script)]


def run_setup_script(
    script: Path,
    plugin_id: str,
    plugin_dir: Path,
    env_vars: dict[str, str] | None = None,
) -> int:
    """
    Run a setup script in the plugin directory.

    Args:
        script: Script path
        plugin_id: Plugin identifier (exported as KB_PLUGIN_ID)
        plugin_dir: Plugin directory (working directory, KB_PLUGIN_DIR)
        env_vars: Additional environment variables to inject

    Returns:
        The script's exit code

    Raises:
        HookError: If the script is missing or cannot be started
    """
    if not script.is_file():
        raise HookError(f"Setup script not found: {script}")

    env = os.environ.copy()
    if env_vars:
        env.update(env_vars)

    env["KB_PLUGIN_ID"] = plugin_id
    env["KB_PLUGIN_DIR"] = str(plugin_dir)
    env["KB_HOOK_TYPE"] = HOOK_TYPE

    try:
        result = subprocess.run(
            _script_command(script),
            cwd=plugin_dir,
            env=env,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as e:
        raise HookError(f"Failed to execute setup script {script}: {e}") from e

    if result.stdout:
        logger.debug("setup %s stdout:\n%s", plugin_id, result.stdout)
    if result.returncode != 0:
        logger.error(
            "Setup script for %s exited with %d:\n%s",
            plugin_id,
            result.returncode,
            result.stderr,
        )

    return result.returncode


async def call_handler(
    handler: Any, ctx: Any, argv: list[str], flags: dict[str, Any]
) -> int:
    """
    Invoke a command implementation and normalize its result to an exit code.

    Args:
        handler: A callable, or an object or module with a callable ``run``
        ctx: Command context
        argv: Remaining arguments
        flags: Parsed flags

    Returns:
        The returned int, or 0 for any other result

    Raises:
        HookError: If no callable is found
    """
    func = getattr(handler, "run", handler)
    if not callable(func):
        raise HookError(f"{handler!r} is neither callable nor exposes a callable run")

    result = func(ctx, argv, flags)
    if inspect.isawaitable(result):
        result = await result
    if isinstance(result, int) and not isinstance(result, bool):
        return result
    return 0


def build_setup_command(manifest: PluginManifest, loader: ModuleLoader):
    """
    Build the ``run(ctx, argv, flags)`` callable for a plugin's setup.

    Args:
        manifest: Manifest declaring ``setup``
        loader: Loader used to resolve in-process handlers

    Returns:
        Async callable returning the setup exit code
    """
    if manifest.setup is None:
        raise HookError(f"Plugin {manifest.id} declares no setup handler")

    ref = manifest.setup.handler
    plugin_dir = manifest.base_dir

    async def run(ctx: Any, argv: list[str], flags: dict[str, Any]) -> int:
        if is_script_reference(ref):
            script = Path(ref)
            if not script.is_absolute():
                script = plugin_dir / script
            return await asyncio.to_thread(
                run_setup_script, script, manifest.id, plugin_dir
            )

        handler = loader.resolve_handler(ref, plugin_dir)
        return await call_handler(handler, ctx, argv, flags)

    return run
