"""
kb config commands.

Generate the default kb.toml.
"""

import sys
from argparse import Namespace
from pathlib import Path

from kblabs.config import init_config


def config_command(args: Namespace) -> int:
    """
    Execute a ``kb config`` subcommand.

    Args:
        args: Parsed global arguments; ``args.path`` holds the command line

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    subcommand = args.path[1] if len(args.path) > 1 else None
    if subcommand != "init":
        print("Usage: kb config init [--force]", file=sys.stderr)
        return 1

    force = "--force" in args.path[2:]
    path = init_config(Path.cwd(), force=force)
    print(f"Wrote {path}")
    return 0
