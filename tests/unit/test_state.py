"""
Tests for Persisted Plugin State.

This test suite covers:
1. File state store get/set/delete and expiry
2. Corrupt state files
3. Plugin enable/disable
4. Crash counting and quarantine
"""

import json
import math
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from kblabs.registry.state import (
    CRASH_THRESHOLD,
    FileStateStore,
    PluginsState,
    StateError,
    disable_plugin,
    enable_plugin,
    load_plugins_state,
    record_crash,
    setup_key,
)


class TestFileStateStore:
    """Test the key-value store."""

    def test_set_get_delete(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = FileStateStore(Path(tmpdir) / ".kb" / "state.json")

            assert store.get("missing") is None
            store.set("k", {"timestamp": 1, "version": "1.0.0"})
            assert store.get("k") == {"timestamp": 1, "version": "1.0.0"}

            assert store.delete("k")
            assert store.get("k") is None
            assert not store.delete("k")

    def test_persists_across_instances(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "state.json"
            FileStateStore(path).set("k", "v", ttl=math.inf)

            assert FileStateStore(path).get("k") == "v"
            data = json.loads(path.read_text())
            assert data["entries"]["k"]["expiresAt"] is None

    def test_expired_entry(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = FileStateStore(Path(tmpdir) / "state.json")
            with patch("kblabs.registry.state.time.time", return_value=1000.0):
                store.set("k", "v", ttl=10)
            with patch("kblabs.registry.state.time.time", return_value=1005.0):
                assert store.get("k") == "v"
            with patch("kblabs.registry.state.time.time", return_value=1011.0):
                assert store.get("k") is None

    def test_corrupt_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "state.json"
            path.write_text("{ corrupt")
            with pytest.raises(StateError, match="Corrupt state file"):
                FileStateStore(path).get("k")

    def test_setup_key(self):
        assert setup_key("@kb-labs/mind") == "plugin:@kb-labs/mind:setup-done"


class TestPluginsState:
    """Test enable/disable and crash bookkeeping."""

    def test_defaults(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            state = load_plugins_state(Path(tmpdir) / "plugins.json")
            assert state == PluginsState()
            assert state.is_enabled("anything")
            assert not state.is_enabled("anything", default=False)

    def test_disable_then_enable(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / ".kb" / "plugins.json"

            disable_plugin(path, "mind")
            state = load_plugins_state(path)
            assert not state.is_enabled("mind")
            assert state.last_updated > 0

            enable_plugin(path, "mind")
            state = load_plugins_state(path)
            assert state.is_enabled("mind")
            assert state.enabled == ["mind"]
            assert state.disabled == []

    def test_file_format(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "plugins.json"
            disable_plugin(path, "mind")

            data = json.loads(path.read_text())
            assert set(data) == {"enabled", "disabled", "crashes", "lastUpdated"}

    def test_crash_quarantine(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "plugins.json"

            for expected in range(1, CRASH_THRESHOLD):
                assert record_crash(path, "flaky") == expected
                assert load_plugins_state(path).is_enabled("flaky")

            assert record_crash(path, "flaky") == CRASH_THRESHOLD
            assert not load_plugins_state(path).is_enabled("flaky")

    def test_enable_clears_crashes(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "plugins.json"
            for _ in range(CRASH_THRESHOLD):
                record_crash(path, "flaky")

            enable_plugin(path, "flaky")

            state = load_plugins_state(path)
            assert state.is_enabled("flaky")
            assert "flaky" not in state.crashes

    def test_malformed_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "plugins.json"
            path.write_text("[]")
            with pytest.raises(StateError):
                load_plugins_state(path)

    @pytest.mark.parametrize(
        "data",
        [
            {"crashes": ["x"]},
            {"crashes": {"mind": "many"}},
            {"enabled": "mind"},
            {"disabled": [1, 2]},
            {"lastUpdated": "yesterday"},
        ],
    )
    def test_malformed_fields(self, data):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "plugins.json"
            path.write_text(json.dumps(data))
            with pytest.raises(StateError, match=str(path)):
                load_plugins_state(path)

    def test_record_crash_on_malformed_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "plugins.json"
            path.write_text(json.dumps({"crashes": ["x"]}))
            with pytest.raises(StateError):
                record_crash(path, "mind")
