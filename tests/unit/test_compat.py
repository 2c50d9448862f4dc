"""
Tests for Manifest Compatibility Layer.

This test suite covers:
1. Schema classification (current, legacy, unknown)
2. Dual manifest detection
3. Legacy migration shim
4. Supported manifest versions
"""

import pytest

from kblabs.plugin.compat import (
    ManifestKind,
    check_dual_manifest,
    deprecation_warning,
    detect_version,
    is_manifest_version_supported,
    migrate_legacy_to_current,
)


class TestDetectVersion:
    """Test manifest classification."""

    def test_id_and_version_is_current(self):
        assert detect_version({"id": "@kb/mind", "version": "1.0.0"}) is ManifestKind.CURRENT

    def test_manifest_version_is_legacy(self):
        assert detect_version({"manifestVersion": "1.0"}) is ManifestKind.LEGACY

    def test_commands_is_legacy(self):
        assert detect_version({"commands": []}) is ManifestKind.LEGACY

    def test_id_without_version_is_not_current(self):
        """Both current fields are required."""
        assert detect_version({"id": "x"}) is ManifestKind.UNKNOWN
        assert detect_version({"id": "x", "commands": []}) is ManifestKind.LEGACY

    @pytest.mark.parametrize("raw", [{}, {"name": "x"}, None, [], "manifest", 42])
    def test_unknown(self, raw):
        assert detect_version(raw) is ManifestKind.UNKNOWN

    def test_dual_manifest_classified_as_current(self):
        raw = {"id": "x", "version": "1.0.0", "commands": []}
        assert detect_version(raw) is ManifestKind.CURRENT


class TestDualManifest:
    """Test the independent dual check."""

    def test_dual(self):
        assert check_dual_manifest({"id": "x", "version": "1.0.0", "manifestVersion": "1.0"})

    def test_not_dual(self):
        assert not check_dual_manifest({"id": "x", "version": "1.0.0"})
        assert not check_dual_manifest({"commands": []})
        assert not check_dual_manifest(None)


class TestMigration:
    """Test the legacy -> current shim."""

    def test_migrate_minimal(self):
        migrated = migrate_legacy_to_current({"commands": [{"id": "a:b"}]}, "legacy-plugin")

        assert migrated["id"] == "legacy-plugin"
        assert migrated["version"] == "1.0.0"
        assert migrated["display"]["name"] == "legacy-plugin"
        assert migrated["display"]["description"] == "Migrated from legacy manifest"
        assert migrated["commands"] == []
        assert detect_version(migrated) is ManifestKind.CURRENT

    def test_migrate_keeps_description(self):
        migrated = migrate_legacy_to_current({"describe": "Old plugin"}, "p")
        assert migrated["display"]["description"] == "Old plugin"

    def test_deprecation_warning_names_plugin(self):
        assert "legacy-plugin" in deprecation_warning("legacy-plugin")


class TestManifestVersionSupport:
    """Test manifestVersion gating."""

    @pytest.mark.parametrize("version", ["1.0", "1.5", "2.0"])
    def test_supported(self, version):
        assert is_manifest_version_supported(version)

    @pytest.mark.parametrize("version", ["0.9", "3.0", "10.0", ""])
    def test_unsupported(self, version):
        assert not is_manifest_version_supported(version)
