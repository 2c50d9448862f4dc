"""
Discovery Manager.

This module coordinates the discovery strategies.

Key features:
- Concurrent strategy execution with a barrier before merging
- Merge of plugins, manifests and errors
- Deterministic deduplication through an ordered list of comparators
- A record of which rule decided each conflict
"""

import asyncio
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from kblabs.discovery.strategies import STRATEGIES, DiscoveryStrategy
from kblabs.discovery.types import DiscoveryOptions, DiscoveryResult, PluginBrief
from kblabs.plugin.compat import ManifestKind
from kblabs.plugin.loader import ModuleLoader
from kblabs.plugin.manifest import compare_versions

logger = logging.getLogger(__name__)

Comparator = Callable[[PluginBrief, PluginBrief], int]


def prefer_current(a: PluginBrief, b: PluginBrief) -> int:
    """Current-schema briefs rank above legacy ones."""
    if a.kind is b.kind:
        return 0
    if a.kind is ManifestKind.CURRENT:
        return -1
    if b.kind is ManifestKind.CURRENT:
        return 1
    return 0


def higher_version(a: PluginBrief, b: PluginBrief) -> int:
    """Higher semantic version ranks first; invalid versions do not decide."""
    try:
        return compare_versions(b.version, a.version)
    except ValueError:
        return 0


def source_priority(a: PluginBrief, b: PluginBrief) -> int:
    return a.source.priority - b.source.priority


def source_path(a: PluginBrief, b: PluginBrief) -> int:
    return (a.source.path > b.source.path) - (a.source.path < b.source.path)


def build_rules(
    prefer_current_schema: bool = True, allow_downgrade: bool = False
) -> list[tuple[str, Comparator]]:
    """
    Ordered dedup rules.

    Without downgrades a version can only break a tie between sources of
    equal priority; with them it is consulted before source priority.
    """
    rules: list[tuple[str, Comparator]] = []
    if prefer_current_schema:
        rules.append(("schema", prefer_current))

    if allow_downgrade:
        rules.append(("version", higher_version))
        rules.append(("source", source_priority))
    else:
        rules.append(("source", source_priority))
        rules.append(("version", higher_version))

    rules.append(("path", source_path))
    return rules


def _canonical_key(brief: PluginBrief) -> tuple:
    return (
        brief.source.priority,
        brief.source.path,
        brief.version,
        brief.kind.value,
        brief.display.name or "",
        brief.display.description or "",
    )


@dataclass
class Resolution:
    """
    How one id with several candidates was resolved.

    Attributes:
        id: Plugin id
        winner: Chosen brief
        losers: (brief, rule name that ranked the winner above it)
    """

    id: str
    winner: PluginBrief
    losers: list[tuple[PluginBrief, str]] = field(default_factory=list)


class DiscoveryManager:
    """
    Runs every enabled strategy and reconciles their findings.

    Example:
        manager = DiscoveryManager(DiscoveryOptions(roots=[Path.cwd()]))
        result = await manager.discover()
    """

    def __init__(
        self,
        options: DiscoveryOptions | None = None,
        loader: ModuleLoader | None = None,
        strategies: dict[str, type[DiscoveryStrategy]] | None = None,
    ):
        """
        Initialize DiscoveryManager.

        Args:
            options: Discovery options
            loader: Loader registry for this run (a fresh one by default)
            strategies: Strategy classes by name (the built-in four by default)
        """
        self.options = options or DiscoveryOptions()
        self.loader = loader or ModuleLoader()
        self.rules = build_rules(self.options.prefer_current, self.options.allow_downgrade)
        self.resolutions: list[Resolution] = []

        available = strategies if strategies is not None else STRATEGIES
        self._strategies: list[DiscoveryStrategy] = []
        for name in self.options.strategies:
            strategy_cls = available.get(name)
            if strategy_cls is None:
                logger.warning("Unknown discovery strategy %r ignored", name)
                continue
            self._strategies.append(strategy_cls(self.loader))
        self._strategies.sort(key=lambda s: s.priority)

    @property
    def strategies(self) -> list[DiscoveryStrategy]:
        return list(self._strategies)

    def roots(self) -> list[Path]:
        return list(self.options.roots) or [Path.cwd()]

    async def discover(self) -> DiscoveryResult:
        """
        Run discovery across all enabled strategies.

        Returns:
            Merged result with at most one brief per plugin id
        """
        roots = self.roots()
        logger.debug(
            "Discovering plugins in %s with %s",
            [str(r) for r in roots],
            [s.name for s in self._strategies],
        )

        results = await asyncio.gather(
            *(strategy.discover(roots) for strategy in self._strategies)
        )

        merged = DiscoveryResult()
        for result in results:
            merged.plugins.extend(result.plugins)
            merged.manifests.update(result.manifests)
            merged.errors.extend(result.errors)

        merged.plugins = self.deduplicate(merged.plugins)

        for error in merged.errors:
            logger.warning("Discovery error at %s: %s", error.path, error.error)

        return merged

    def compare(self, a: PluginBrief, b: PluginBrief) -> int:
        """Apply the rules in order; the first non-zero result wins."""
        return self._decide(a, b)[0]

    def _decide(self, a: PluginBrief, b: PluginBrief) -> tuple[int, str | None]:
        for name, rule in self.rules:
            outcome = rule(a, b)
            if outcome:
                return outcome, name
        return 0, None

    def deduplicate(self, plugins: list[PluginBrief]) -> list[PluginBrief]:
        """
        Keep one brief per id.

        Args:
            plugins: Candidate briefs in any order

        Returns:
            Winners, in order of each id's first appearance
        """
        by_id: dict[str, list[PluginBrief]] = {}
        for brief in plugins:
            by_id.setdefault(brief.id, []).append(brief)

        self.resolutions = []
        winners: list[PluginBrief] = []

        for plugin_id, candidates in by_id.items():
            if len(candidates) == 1:
                winners.append(candidates[0])
                continue

            # Canonical order first, so the ranking never depends on which
            # strategy finished first
            ordered = sorted(candidates, key=_canonical_key)
            ranked = sorted(ordered, key=functools.cmp_to_key(self.compare))
            winner = ranked[0]

            resolution = Resolution(id=plugin_id, winner=winner)
            for loser in ranked[1:]:
                resolution.losers.append((loser, self._decide(winner, loser)[1] or "order"))
                logger.info(
                    "%s: %s@%s (%s) wins over %s@%s (%s)",
                    plugin_id,
                    winner.id,
                    winner.version,
                    winner.source.kind.value,
                    loser.id,
                    loser.version,
                    loser.source.kind.value,
                )
            self.resolutions.append(resolution)
            winners.append(winner)

        return winners
