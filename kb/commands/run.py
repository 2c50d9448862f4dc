"""
kb plugin command runner.

Resolves a discovered command from the command line, activates its plugin
through the lazy setup gate and hands it to the dispatcher.
"""

import asyncio
import sys
from argparse import Namespace
from typing import Any

from kb.commands import global_flags, make_context, open_runtime
from kblabs.registry.commands import RegisteredCommand
from kblabs.registry.dispatch import EXIT_FAILURE
from kblabs.registry.setup import setup_command_id

TRUE_VALUES = ("1", "true", "yes", "on")


def _coerce(value: str, flag_type: str | None) -> Any:
    if flag_type == "number":
        try:
            return int(value)
        except ValueError:
            return float(value)
    if flag_type == "boolean":
        return value.lower() in TRUE_VALUES
    return value


def parse_command_args(
    tokens: list[str], specs: list[dict[str, Any]]
) -> tuple[list[str], dict[str, Any]]:
    """
    Split command tokens into positional arguments and flags.

    ``--name value``, ``--name=value`` and declared aliases (``-n value``)
    are accepted; boolean flags and undeclared flags without a value are
    set to True. Array flags collect every occurrence. Declared defaults
    fill flags that were not given; dashes become underscores.

    Args:
        tokens: Arguments after the command path
        specs: Flag declarations (``name``, ``type``, ``alias``, ``default``)

    Returns:
        (positional arguments, flags)

    Raises:
        ValueError: If a number flag has a non-numeric value
    """
    by_name = {spec["name"]: spec for spec in specs}
    by_alias = {spec["alias"]: spec for spec in specs if spec.get("alias")}

    argv: list[str] = []
    flags: dict[str, Any] = {}
    index = 0

    while index < len(tokens):
        token = tokens[index]
        index += 1

        if token == "--":
            argv.extend(tokens[index:])
            break

        if token.startswith("--"):
            name, sep, value = token[2:].partition("=")
            spec = by_name.get(name, {})
        elif token.startswith("-") and len(token) > 1:
            name, sep, value = token[1:].partition("=")
            spec = by_alias.get(name, {})
            name = spec.get("name", name)
        else:
            argv.append(token)
            continue

        flag_type = spec.get("type")
        if not sep:
            has_value = index < len(tokens) and not tokens[index].startswith("-")
            if flag_type == "boolean" or not has_value:
                value = True
            else:
                value = tokens[index]
                index += 1

        if isinstance(value, str):
            value = _coerce(value, flag_type)

        key = name.replace("-", "_")
        if flag_type == "array":
            flags.setdefault(key, []).append(value)
        else:
            flags[key] = value

    for spec in specs:
        key = spec["name"].replace("-", "_")
        if key not in flags and "default" in spec:
            flags[key] = spec["default"]

    return argv, flags


def run_command(args: Namespace) -> int:
    """
    Execute a discovered plugin command.

    Args:
        args: Parsed global arguments; ``args.path`` holds the command line

    Returns:
        Exit code (0 success, 1 failure, 2 unavailable)
    """
    return asyncio.run(run_async(args))


def _is_own_setup(command: RegisteredCommand) -> bool:
    return (
        command.plugin is not None
        and command.id == setup_command_id(command.plugin.id)
    )


async def run_async(args: Namespace) -> int:
    """Async run implementation."""
    runtime = await open_runtime(args)
    ctx = make_context(runtime)

    command, rest = runtime.registry.resolve(args.path)
    if command is None:
        print(f"Error: Unknown command: {' '.join(args.path)}", file=sys.stderr)
        print("Run 'kb plugins list' to see available commands", file=sys.stderr)
        return EXIT_FAILURE

    try:
        argv, flags = parse_command_args(rest, command.manifest.flags)
    except ValueError as e:
        print(f"Error: {command.id}: {e}", file=sys.stderr)
        return EXIT_FAILURE
    flags.update(global_flags(args))

    # Unavailable commands are refused by the dispatcher without activation
    if command.available and command.plugin is not None and not _is_own_setup(command):
        outcome = await runtime.gate.ensure(command.plugin, ctx, flags)
        if not outcome.ok:
            if flags["json"]:
                ctx.presenter.json(
                    {
                        "ok": False,
                        "command": command.id,
                        "error": f"Setup failed: {outcome.error}",
                    }
                )
            else:
                ctx.presenter.error(f"Setup of {command.plugin.id} failed: {outcome.error}")
            return EXIT_FAILURE

    return await runtime.dispatcher.run(command, ctx, argv, flags)
