"""
kb CLI - KB Labs command line.

Runs built-in plugin management commands and every command contributed by
discovered plugins.

Usage:
    kb plugins list                  List discovered plugins and commands
    kb plugins doctor [plugin]       Diagnose plugin problems
    kb plugins enable <plugin>       Enable a plugin
    kb plugins disable <plugin>      Disable a plugin
    kb plugins setup-reset <plugin>  Forget a plugin's completed setup
    kb config init [--force]         Write a default kb.toml
    kb <group> <command> [args]      Run a plugin command (or kb group:command)
"""

import argparse
import logging
import os
import sys

from kblabs.config import ConfigError
from kblabs.registry.state import StateError

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


class KBError(Exception):
    """Base exception for kb CLI errors."""

    pass


def create_parser() -> argparse.ArgumentParser:
    """
    Create the parser for global options.

    Everything it does not recognize (the command path, command arguments
    and command flags) is returned untouched by ``parse_known_args``.
    """
    parser = argparse.ArgumentParser(
        prog="kb",
        description="KB Labs command line",
        add_help=False,
        allow_abbrev=False,
    )

    parser.add_argument("-h", "--help", action="store_true", help="Show help")
    parser.add_argument("--json", action="store_true", help="Machine-readable output")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--debug", action="store_true", help="Debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Errors only")
    parser.add_argument(
        "--dry-run", action="store_true", help="Ask commands not to make changes"
    )
    parser.add_argument(
        "--root",
        action="append",
        default=[],
        metavar="PATH",
        help="Discovery root (repeatable)",
    )
    parser.add_argument("--config", metavar="FILE", help="Settings file (kb.toml)")

    return parser


def print_help():
    """Print help message."""
    help_text = """
kb - KB Labs command line

Usage:
    kb plugins list                  List discovered plugins and commands
    kb plugins doctor [plugin]       Diagnose plugin problems
    kb plugins enable <plugin>       Enable a plugin
    kb plugins disable <plugin>      Disable a plugin
    kb plugins setup-reset <plugin>  Forget a plugin's completed setup
    kb config init [--force]         Write a default kb.toml
    kb <group> <command> [args]      Run a plugin command (or kb group:command)

Options:
    --json                           Machine-readable output
    --root PATH                      Discovery root (repeatable)
    --config FILE                    Settings file (kb.toml)
    --dry-run                        Ask commands not to make changes
    -v, --verbose                    Verbose output
    --debug                          Debug logging
    -q, --quiet                      Errors only
    -h, --help                       Show this help

Exit codes:
    0 success, 1 failure, 2 command unavailable
"""
    print(help_text.strip())


def configure_logging(args: argparse.Namespace) -> None:
    """Log to stderr; KB_LOG_LEVEL overrides the flags."""
    level = logging.WARNING
    if args.quiet:
        level = logging.ERROR
    if args.verbose:
        level = logging.INFO
    if args.debug:
        level = logging.DEBUG

    env_level = os.environ.get("KB_LOG_LEVEL")
    if env_level:
        level = logging.getLevelName(env_level.upper())
        if not isinstance(level, int):
            level = logging.WARNING

    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr, force=True)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for kb CLI."""
    parser = create_parser()
    args, rest = parser.parse_known_args(argv)
    args.path = rest
    configure_logging(args)

    try:
        # Show help
        if args.help or not rest:
            print_help()
            return 0

        # Route to appropriate command
        if rest[0] == "plugins":
            from kb.commands.plugins import plugins_command

            return plugins_command(args)

        elif rest[0] == "config":
            from kb.commands.config import config_command

            return config_command(args)

        else:
            from kb.commands.run import run_command

            return run_command(args)

    except (KBError, ConfigError, StateError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        if args.verbose or args.debug:
            import traceback

            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
