"""
kb built-in commands.

Helpers shared by the command modules.
"""

from argparse import Namespace
from pathlib import Path
from typing import Any

from kblabs.config import Settings, load_settings
from kblabs.registry.dispatch import GLOBAL_FLAGS, CommandContext, ConsolePresenter
from kblabs.runtime import Runtime, bootstrap


def load_cli_settings(args: Namespace) -> Settings:
    """Settings for the working directory with ``--root`` applied."""
    cwd = Path.cwd()
    config_file = Path(args.config) if args.config else None
    settings = load_settings(cwd, config_file)
    if args.root:
        settings.roots = [(cwd / root).resolve() for root in args.root]
    return settings


def global_flags(args: Namespace) -> dict[str, Any]:
    return {name: bool(getattr(args, name, False)) for name in GLOBAL_FLAGS}


async def open_runtime(args: Namespace) -> Runtime:
    return await bootstrap(load_cli_settings(args))


def make_context(
    runtime: Runtime, presenter: ConsolePresenter | None = None
) -> CommandContext:
    return CommandContext(
        cwd=runtime.settings.cwd,
        presenter=presenter or ConsolePresenter(),
        registry=runtime.registry,
        loader=runtime.loader,
        settings=runtime.settings,
    )
