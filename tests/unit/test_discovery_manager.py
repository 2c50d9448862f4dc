"""
Tests for Discovery Manager.

This test suite covers:
1. Dedup rules one by one (schema, source priority, version, path)
2. Downgrade handling
3. Independence from input order
4. Resolution records
5. End-to-end discovery across strategies
"""

import itertools
import json
import tempfile
from pathlib import Path

import pytest

from kblabs.discovery.manager import DiscoveryManager, build_rules
from kblabs.discovery.types import (
    DiscoveryOptions,
    PluginBrief,
    PluginSource,
    SourceKind,
)
from kblabs.plugin.compat import ManifestKind


def brief(
    version: str,
    source: SourceKind,
    kind: ManifestKind = ManifestKind.CURRENT,
    path: str | None = None,
    plugin_id: str = "@kb-labs/mind",
) -> PluginBrief:
    return PluginBrief(
        id=plugin_id,
        version=version,
        kind=kind,
        source=PluginSource(
            kind=source, path=path or f"/{source.value}/{version}/manifest.json"
        ),
    )


def winner(plugins, **options) -> PluginBrief:
    manager = DiscoveryManager(DiscoveryOptions(**options))
    result = manager.deduplicate(plugins)
    assert len(result) == 1
    return result[0]


class TestRules:
    """Test the ordered rules."""

    def test_rule_order_without_downgrade(self):
        assert [name for name, _ in build_rules()] == ["schema", "source", "version", "path"]

    def test_rule_order_with_downgrade(self):
        names = [name for name, _ in build_rules(allow_downgrade=True)]
        assert names == ["schema", "version", "source", "path"]

    def test_rule_order_without_schema_preference(self):
        names = [name for name, _ in build_rules(prefer_current_schema=False)]
        assert names == ["source", "version", "path"]


class TestDeduplication:
    """Test winner selection."""

    def test_current_beats_higher_legacy(self):
        current = brief("1.0.0", SourceKind.WORKSPACE)
        legacy = brief("2.0.0", SourceKind.PKG, ManifestKind.LEGACY)
        assert winner([legacy, current]) == current

    def test_current_beats_legacy_from_better_source(self):
        current = brief("1.0.0", SourceKind.DIR)
        legacy = brief("1.0.0", SourceKind.WORKSPACE, ManifestKind.LEGACY)
        assert winner([legacy, current]) == current

    def test_source_priority_before_version(self):
        workspace = brief("1.1.0", SourceKind.WORKSPACE)
        pkg = brief("1.2.0", SourceKind.PKG)
        assert winner([pkg, workspace]) == workspace

    def test_allow_downgrade_lets_version_decide(self):
        workspace = brief("1.1.0", SourceKind.WORKSPACE)
        pkg = brief("1.2.0", SourceKind.PKG)
        assert winner([workspace, pkg], allow_downgrade=True) == pkg

    def test_higher_version_wins_within_source(self):
        low = brief("1.0.0", SourceKind.DIR, path="/a/manifest.json")
        high = brief("1.0.1", SourceKind.DIR, path="/b/manifest.json")
        assert winner([low, high]) == high

    def test_prerelease_loses_to_release(self):
        rc = brief("2.0.0-rc.1", SourceKind.PKG, path="/a/manifest.json")
        release = brief("2.0.0", SourceKind.PKG, path="/b/manifest.json")
        assert winner([rc, release]) == release

    def test_invalid_version_falls_through_to_path(self):
        invalid = brief("latest", SourceKind.DIR, path="/a/manifest.json")
        valid = brief("9.0.0", SourceKind.DIR, path="/b/manifest.json")
        assert winner([valid, invalid]) == invalid

    def test_schema_preference_can_be_disabled(self):
        current = brief("1.0.0", SourceKind.PKG, path="/a/manifest.json")
        legacy = brief("2.0.0", SourceKind.PKG, ManifestKind.LEGACY, path="/b/manifest.json")
        assert winner([current, legacy], prefer_current=False) == legacy

    def test_distinct_ids_untouched(self):
        manager = DiscoveryManager()
        plugins = [
            brief("1.0.0", SourceKind.PKG, plugin_id="a"),
            brief("1.0.0", SourceKind.PKG, plugin_id="b"),
        ]
        assert manager.deduplicate(plugins) == plugins
        assert manager.resolutions == []


class TestDeterminism:
    """Test independence from strategy completion order."""

    @pytest.mark.parametrize("allow_downgrade", [False, True])
    def test_winner_invariant_under_reordering(self, allow_downgrade):
        candidates = [
            brief("1.0.0", SourceKind.WORKSPACE),
            brief("2.0.0", SourceKind.PKG, ManifestKind.LEGACY),
            brief("1.5.0", SourceKind.DIR, path="/x/manifest.json"),
            brief("not-semver", SourceKind.DIR, path="/y/manifest.json"),
            brief("1.5.0", SourceKind.FILE),
        ]

        winners = {
            winner(list(order), allow_downgrade=allow_downgrade)
            for order in itertools.permutations(candidates)
        }

        assert len(winners) == 1

    def test_winner_invariant_with_only_invalid_versions(self):
        candidates = [
            brief("x", SourceKind.DIR, path="/c/manifest.json"),
            brief("y", SourceKind.DIR, path="/a/manifest.json"),
            brief("z", SourceKind.DIR, path="/b/manifest.json"),
        ]
        winners = {winner(list(order)) for order in itertools.permutations(candidates)}
        assert {w.source.path for w in winners} == {"/a/manifest.json"}


class TestResolutions:
    """Test resolution records."""

    def test_records_deciding_rule(self):
        manager = DiscoveryManager()
        current = brief("1.0.0", SourceKind.WORKSPACE)
        legacy = brief("2.0.0", SourceKind.PKG, ManifestKind.LEGACY)
        pkg = brief("1.2.0", SourceKind.PKG)

        manager.deduplicate([pkg, legacy, current])

        assert len(manager.resolutions) == 1
        resolution = manager.resolutions[0]
        assert resolution.winner == current
        rules = {loser.version: rule for loser, rule in resolution.losers}
        assert rules == {"1.2.0": "source", "2.0.0": "schema"}


def write_json(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


class TestDiscover:
    """Test a full discovery run."""

    @pytest.mark.asyncio
    async def test_workspace_shadows_directory_copy(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            (root / "pnpm-workspace.yaml").write_text("packages:\n  - packages/*\n")
            member = root / "packages" / "mind"
            write_json(member / "manifest.json", {"id": "mind", "version": "1.1.0"})
            write_json(
                member / "package.json",
                {"name": "mind", "version": "1.1.0", "kbLabs": {"manifest": "./manifest.json"}},
            )
            write_json(
                root / ".kb" / "plugins" / "mind" / "manifest.json",
                {"id": "mind", "version": "1.2.0"},
            )

            manager = DiscoveryManager(DiscoveryOptions(roots=[root]))
            result = await manager.discover()

            assert [(b.id, b.version) for b in result.plugins] == [("mind", "1.1.0")]
            assert result.plugins[0].source.kind is SourceKind.WORKSPACE
            assert result.errors == []
            assert manager.resolutions[0].losers[0][1] == "source"

    @pytest.mark.asyncio
    async def test_broken_source_is_partial_not_fatal(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            write_json(
                root / ".kb" / "plugins" / "good" / "manifest.json",
                {"id": "good", "version": "1.0.0"},
            )
            (root / ".kb" / "plugins" / "bad").mkdir(parents=True)
            (root / ".kb" / "plugins" / "bad" / "manifest.json").write_text("{")
            (root / "package.json").write_text("not json")

            result = await DiscoveryManager(DiscoveryOptions(roots=[root])).discover()

            assert [b.id for b in result.plugins] == ["good"]
            assert len(result.errors) == 2

    def test_unknown_strategy_ignored(self):
        manager = DiscoveryManager(DiscoveryOptions(strategies=["dir", "bogus"]))
        assert [s.name for s in manager.strategies] == ["dir"]

    def test_strategies_run_in_priority_order(self):
        manager = DiscoveryManager(DiscoveryOptions(strategies=["file", "dir", "workspace"]))
        assert [s.name for s in manager.strategies] == ["workspace", "dir", "file"]
