"""
kb plugins commands.

List, diagnose, enable and disable discovered plugins, and reset their
setup state.
"""

import asyncio
import json
import sys
from argparse import Namespace
from typing import Any

from kb.commands import load_cli_settings, open_runtime
from kblabs.discovery.types import PluginBrief
from kblabs.plugin.compat import ManifestKind
from kblabs.registry.state import (
    CRASH_THRESHOLD,
    create_state_store,
    disable_plugin,
    enable_plugin,
    setup_key,
)
from kblabs.runtime import Runtime

SUBCOMMANDS = ("list", "doctor", "enable", "disable", "setup-reset")


def plugins_command(args: Namespace) -> int:
    """
    Execute a ``kb plugins`` subcommand.

    Args:
        args: Parsed global arguments; ``args.path`` holds the command line

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    subcommand = args.path[1] if len(args.path) > 1 else "list"
    targets = args.path[2:]

    if subcommand not in SUBCOMMANDS:
        print(f"Error: Unknown plugins command: {subcommand}", file=sys.stderr)
        print(f"Available: {', '.join(SUBCOMMANDS)}", file=sys.stderr)
        return 1

    if subcommand == "list":
        return asyncio.run(list_async(args))
    if subcommand == "doctor":
        return asyncio.run(doctor_async(args, targets[0] if targets else None))

    if not targets:
        print("Error: No plugin specified", file=sys.stderr)
        print(f"Usage: kb plugins {subcommand} <plugin>", file=sys.stderr)
        return 1

    settings = load_cli_settings(args)
    plugin_id = targets[0]

    if subcommand == "enable":
        enable_plugin(settings.plugins_state_path, plugin_id)
        _report(
            args, {"ok": True, "plugin": plugin_id, "enabled": True}, f"Enabled {plugin_id}"
        )
    elif subcommand == "disable":
        disable_plugin(settings.plugins_state_path, plugin_id)
        _report(
            args, {"ok": True, "plugin": plugin_id, "enabled": False}, f"Disabled {plugin_id}"
        )
    else:
        removed = create_state_store(settings.state_path).delete(setup_key(plugin_id))
        message = (
            f"Setup state of {plugin_id} reset"
            if removed
            else f"No setup state recorded for {plugin_id}"
        )
        _report(args, {"ok": True, "plugin": plugin_id, "reset": removed}, message)

    return 0


def _report(args: Namespace, payload: dict[str, Any], message: str) -> None:
    if args.json:
        print(json.dumps(payload))
    else:
        print(message)


def _brief_entry(runtime: Runtime, brief: PluginBrief) -> dict[str, Any]:
    commands = [c for c in runtime.registry.list() if c.manifest.package == brief.id]
    return {
        "id": brief.id,
        "version": brief.version,
        "kind": brief.kind.value,
        "source": {"kind": brief.source.kind.value, "path": brief.source.path},
        "display": {
            "name": brief.display.name,
            "description": brief.display.description,
        },
        "enabled": runtime.plugins_state.is_enabled(brief.id),
        "commands": [
            {
                "id": c.id,
                "describe": c.manifest.describe,
                "available": c.available,
                "reason": c.unavailable_reason,
                "hint": c.hint,
            }
            for c in commands
        ],
    }


def _resolution_entries(runtime: Runtime) -> list[dict[str, Any]]:
    return [
        {
            "id": r.id,
            "winner": {
                "version": r.winner.version,
                "source": r.winner.source.kind.value,
                "path": r.winner.source.path,
            },
            "losers": [
                {
                    "version": loser.version,
                    "source": loser.source.kind.value,
                    "path": loser.source.path,
                    "rule": rule,
                }
                for loser, rule in r.losers
            ],
        }
        for r in runtime.manager.resolutions
    ]


async def list_async(args: Namespace) -> int:
    """List plugins, their commands and, with --verbose, how conflicts were resolved."""
    runtime = await open_runtime(args)
    plugins = [
        _brief_entry(runtime, brief)
        for brief in sorted(runtime.result.plugins, key=lambda b: b.id)
    ]
    errors = [{"path": e.path, "error": e.error} for e in runtime.registry.errors]

    if args.json:
        payload = {
            "ok": True,
            "partial": runtime.registry.partial,
            "plugins": plugins,
            "errors": errors,
        }
        if args.verbose:
            payload["resolutions"] = _resolution_entries(runtime)
        print(json.dumps(payload))
        return 0

    if not plugins:
        print("No plugins found")

    for plugin in plugins:
        state = "" if plugin["enabled"] else " [disabled]"
        print(
            f"{plugin['id']}@{plugin['version']} ({plugin['kind']}, "
            f"{plugin['source']['kind']}){state}"
        )
        if args.verbose:
            print(f"    {plugin['source']['path']}")
        for command in plugin["commands"]:
            marker = ""
            if not command["available"]:
                marker = f"  (unavailable: {command['reason']})"
            print(f"    {command['id']:<28} {command['describe']}{marker}")

    if args.verbose:
        for resolution in _resolution_entries(runtime):
            winner = resolution["winner"]
            for loser in resolution["losers"]:
                print(
                    f"{resolution['id']}: {winner['version']} ({winner['source']}) "
                    f"over {loser['version']} ({loser['source']}) by {loser['rule']}"
                )

    if runtime.registry.partial:
        print(f"\nDiscovery was partial ({len(errors)} error(s)):", file=sys.stderr)
        for error in errors:
            print(f"    {error['path']}: {error['error']}", file=sys.stderr)

    return 0


def diagnose(runtime: Runtime, plugin_id: str | None = None) -> list[dict[str, Any]]:
    """
    Collect plugin problems.

    Returns:
        Issues as ``{plugin, severity, message, hint}``
    """
    issues: list[dict[str, Any]] = []
    known = {brief.id for brief in runtime.result.plugins}

    if plugin_id is not None and plugin_id not in known:
        issues.append(
            {
                "plugin": plugin_id,
                "severity": "error",
                "message": "Plugin not found",
                "hint": "Run: kb plugins list",
            }
        )
        return issues

    if plugin_id is None:
        for error in runtime.registry.errors:
            issues.append(
                {
                    "plugin": None,
                    "severity": "error",
                    "message": f"{error.path}: {error.error}",
                    "hint": None,
                }
            )

    state = runtime.plugins_state
    for brief in sorted(runtime.result.plugins, key=lambda b: b.id):
        if plugin_id is not None and brief.id != plugin_id:
            continue

        if not state.is_enabled(brief.id):
            issues.append(
                {
                    "plugin": brief.id,
                    "severity": "warning",
                    "message": "Plugin is disabled",
                    "hint": f"Run: kb plugins enable {brief.id}",
                }
            )

        crashes = state.crashes.get(brief.id, 0)
        if crashes:
            issues.append(
                {
                    "plugin": brief.id,
                    "severity": "warning",
                    "message": f"{crashes} recorded crash(es) (disabled at {CRASH_THRESHOLD})",
                    "hint": f"Run: kb plugins enable {brief.id}",
                }
            )

        if brief.kind is ManifestKind.LEGACY:
            issues.append(
                {
                    "plugin": brief.id,
                    "severity": "warning",
                    "message": "Uses the deprecated legacy manifest",
                    "hint": "Migrate to a manifest with 'id' and 'version'",
                }
            )

        for command in runtime.registry.list():
            if command.manifest.package != brief.id or command.available:
                continue
            if command.unavailable_reason and command.unavailable_reason.startswith(
                "Plugin disabled"
            ):
                continue
            issues.append(
                {
                    "plugin": brief.id,
                    "severity": "error",
                    "message": f"{command.id}: {command.unavailable_reason}",
                    "hint": command.hint,
                }
            )

    return issues


async def doctor_async(args: Namespace, plugin_id: str | None) -> int:
    """Report plugin problems; exit 1 if any is an error."""
    runtime = await open_runtime(args)
    issues = diagnose(runtime, plugin_id)
    has_errors = any(issue["severity"] == "error" for issue in issues)

    if args.json:
        print(json.dumps({"ok": not has_errors, "issues": issues}))
        return 1 if has_errors else 0

    if not issues:
        print("No problems found")
        return 0

    for issue in issues:
        prefix = f"[{issue['severity']}]"
        subject = f"{issue['plugin']}: " if issue["plugin"] else ""
        print(f"{prefix} {subject}{issue['message']}")
        if issue["hint"]:
            print(f"    {issue['hint']}")

    return 1 if has_errors else 0
