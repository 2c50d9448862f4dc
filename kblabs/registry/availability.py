"""
Command Availability.

Checks whether a command's declared runtime dependencies can be resolved.
This is a presence probe only: nothing is imported, installed or modified.
"""

import importlib.machinery
import importlib.metadata
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

MISSING_DEPENDENCY_HINT = "Run: kb devlink apply"


class Requirer(Protocol):
    requires: list[str]


@dataclass(frozen=True)
class Availability:
    """
    Result of an availability check.

    ``reason`` and ``hint`` are only set when unavailable.
    """

    available: bool
    reason: str | None = None
    hint: str | None = None


AVAILABLE = Availability(available=True)


def _module_resolvable(name: str, cwd: Path) -> bool:
    top_level = name.split(".")[0]
    if not top_level.isidentifier():
        return False
    if top_level in sys.modules or top_level in sys.builtin_module_names:
        return True
    search_path = [str(cwd), *sys.path]
    return importlib.machinery.PathFinder.find_spec(top_level, search_path) is not None


def _distribution_installed(name: str) -> bool:
    try:
        importlib.metadata.distribution(name)
    except (importlib.metadata.PackageNotFoundError, ValueError):
        return False
    return True


def is_resolvable(name: str, cwd: Path) -> bool:
    """
    Whether a dependency name resolves from ``cwd``.

    A name resolves if it is an importable top-level module (searched from
    ``cwd`` then ``sys.path``) or the name of an installed distribution.
    """
    name = name.strip()
    if not name:
        return False
    return _module_resolvable(name, cwd) or _distribution_installed(name)


def check_requires(manifest: Requirer, cwd: Path | None = None) -> Availability:
    """
    Check that every entry of ``manifest.requires`` resolves.

    Args:
        manifest: Anything with a ``requires`` list
        cwd: Directory to resolve from (the working directory by default)

    Returns:
        AVAILABLE, or an unavailable result naming the first missing entry
    """
    requires = getattr(manifest, "requires", None) or []
    if not requires:
        return AVAILABLE

    cwd = cwd or Path.cwd()
    for dependency in requires:
        if not is_resolvable(dependency, cwd):
            return Availability(
                available=False,
                reason=f"Missing dependency: {dependency}",
                hint=MISSING_DEPENDENCY_HINT,
            )

    return AVAILABLE
