"""
Tests for the kb CLI.

This test suite covers:
1. Help and global options
2. Command argument parsing
3. Running discovered plugin commands (exit codes, refusals, unknown commands)
4. Lazy setup on first use
5. plugins list / doctor / enable / disable / setup-reset
6. config init
"""

import json
from pathlib import Path

import pytest

from kb.cli import main
from kb.commands.run import parse_command_args
from kblabs.registry.state import FileStateStore, load_plugins_state, setup_key

PACK_HANDLER = """\
import json
import pathlib


def run(ctx, argv, flags):
    pathlib.Path(ctx.cwd, "pack-call.json").write_text(
        json.dumps({"argv": argv, "flags": flags})
    )
    return int(flags.get("code", 0))
"""

SETUP_HANDLER = """\
import pathlib


async def run(ctx, argv, flags):
    marker = pathlib.Path(ctx.cwd, "setup-calls.txt")
    calls = int(marker.read_text()) if marker.exists() else 0
    marker.write_text(str(calls + 1))
    return 0
"""


def write_plugin(root: Path, name: str, manifest: dict, files: dict | None = None) -> Path:
    plugin_dir = root / ".kb" / "plugins" / name
    plugin_dir.mkdir(parents=True, exist_ok=True)
    (plugin_dir / "manifest.json").write_text(json.dumps(manifest), encoding="utf-8")
    for filename, content in (files or {}).items():
        (plugin_dir / filename).write_text(content, encoding="utf-8")
    return plugin_dir


def mind_manifest(**overrides) -> dict:
    manifest = {
        "id": "@kb-labs/mind",
        "version": "1.2.0",
        "display": {"name": "Mind", "description": "Context packs"},
        "cli": {
            "commands": [
                {
                    "id": "pack",
                    "describe": "Build a pack",
                    "handler": "./pack.py#run",
                    "flags": [
                        {"name": "code", "type": "number", "default": 0},
                        {"name": "out", "type": "string", "alias": "o"},
                    ],
                }
            ]
        },
    }
    manifest.update(overrides)
    return manifest


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """An empty working directory with KB_LOG_LEVEL cleared."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("KB_LOG_LEVEL", raising=False)
    return tmp_path


@pytest.fixture
def mind_workspace(workspace):
    write_plugin(workspace, "mind", mind_manifest(), {"pack.py": PACK_HANDLER})
    return workspace


class TestHelp:
    """Test help output."""

    def test_help_flag(self, workspace, capsys):
        assert main(["--help"]) == 0
        assert "kb plugins list" in capsys.readouterr().out

    def test_no_arguments(self, workspace, capsys):
        assert main([]) == 0
        assert "Exit codes" in capsys.readouterr().out


class TestParseCommandArgs:
    """Test splitting command arguments into argv and flags."""

    def test_positionals_and_values(self):
        specs = [{"name": "out", "type": "string"}]
        argv, flags = parse_command_args(["a", "--out", "x.json", "b"], specs)
        assert argv == ["a", "b"]
        assert flags == {"out": "x.json"}

    def test_equals_form_and_alias(self):
        specs = [{"name": "out", "alias": "o"}, {"name": "level", "type": "number"}]
        argv, flags = parse_command_args(["-o", "x", "--level=3"], specs)
        assert argv == []
        assert flags == {"out": "x", "level": 3}

    def test_booleans(self):
        specs = [{"name": "force", "type": "boolean"}]
        argv, flags = parse_command_args(["--force", "target", "--watch"], specs)
        assert argv == ["target"]
        assert flags == {"force": True, "watch": True}

    def test_boolean_with_value(self):
        specs = [{"name": "force", "type": "boolean"}]
        _, flags = parse_command_args(["--force=no"], specs)
        assert flags == {"force": False}

    def test_arrays_and_defaults(self):
        specs = [
            {"name": "tag", "type": "array"},
            {"name": "max-depth", "type": "number", "default": 2},
        ]
        _, flags = parse_command_args(["--tag", "a", "--tag", "b"], specs)
        assert flags == {"tag": ["a", "b"], "max_depth": 2}

    def test_double_dash(self):
        argv, flags = parse_command_args(["--", "--not-a-flag", "x"], [])
        assert argv == ["--not-a-flag", "x"]
        assert flags == {}

    def test_float_number(self):
        _, flags = parse_command_args(["--ratio", "0.5"], [{"name": "ratio", "type": "number"}])
        assert flags == {"ratio": 0.5}

    def test_bad_number(self):
        with pytest.raises(ValueError):
            parse_command_args(["--level", "high"], [{"name": "level", "type": "number"}])


class TestRunCommand:
    """Test running discovered commands."""

    def test_runs_handler(self, mind_workspace, capsys):
        code = main(["mind", "pack", "src", "-o", "out.json"])

        assert code == 0
        call = json.loads((mind_workspace / "pack-call.json").read_text())
        assert call["argv"] == ["src"]
        assert call["flags"]["out"] == "out.json"
        assert call["flags"]["json"] is False
        assert call["flags"]["dry_run"] is False

    def test_colon_form_and_global_flags(self, mind_workspace):
        assert main(["--dry-run", "mind:pack"]) == 0
        call = json.loads((mind_workspace / "pack-call.json").read_text())
        assert call["flags"]["dry_run"] is True

    def test_handler_exit_code(self, mind_workspace):
        assert main(["mind", "pack", "--code", "4"]) == 4

    def test_unknown_command(self, mind_workspace, capsys):
        assert main(["mind", "unknown"]) == 1
        assert "Unknown command" in capsys.readouterr().err

    def test_unavailable_command_json(self, workspace, capsys):
        write_plugin(
            workspace,
            "mind",
            mind_manifest(requires=["left-pad-xyz-missing"]),
            {"pack.py": PACK_HANDLER},
        )

        code = main(["--json", "mind", "pack"])

        assert code == 2
        lines = capsys.readouterr().out.splitlines()
        assert len(lines) == 1
        payload = json.loads(lines[0])
        assert payload["ok"] is False
        assert payload["available"] is False
        assert payload["command"] == "mind:pack"
        assert payload["reason"] == "Missing dependency: left-pad-xyz-missing"
        assert not (workspace / "pack-call.json").exists()

    def test_disabled_plugin_refused(self, mind_workspace, capsys):
        assert main(["plugins", "disable", "@kb-labs/mind"]) == 0
        capsys.readouterr()

        assert main(["mind", "pack"]) == 2
        assert "Plugin disabled: @kb-labs/mind" in capsys.readouterr().err

    def test_raising_handler(self, workspace, capsys):
        write_plugin(
            workspace,
            "mind",
            mind_manifest(),
            {"pack.py": "def run(ctx, argv, flags):\n    raise RuntimeError('boom')\n"},
        )

        assert main(["mind", "pack"]) == 1
        assert "boom" in capsys.readouterr().err
        state = load_plugins_state(workspace / ".kb" / "plugins.json")
        assert state.crashes == {"@kb-labs/mind": 1}


class TestLazySetup:
    """Test setup on first use."""

    def test_setup_runs_once(self, workspace):
        write_plugin(
            workspace,
            "mind",
            mind_manifest(setup={"handler": "./setup.py#run"}),
            {"pack.py": PACK_HANDLER, "setup.py": SETUP_HANDLER},
        )

        assert main(["mind", "pack"]) == 0
        assert main(["mind", "pack"]) == 0

        assert (workspace / "setup-calls.txt").read_text() == "1"
        record = FileStateStore(workspace / ".kb" / "state.json").get(
            setup_key("@kb-labs/mind")
        )
        assert record["version"] == "1.2.0"

    def test_setup_reset_reruns(self, workspace, capsys):
        write_plugin(
            workspace,
            "mind",
            mind_manifest(setup={"handler": "./setup.py#run"}),
            {"pack.py": PACK_HANDLER, "setup.py": SETUP_HANDLER},
        )

        assert main(["mind", "pack"]) == 0
        assert main(["--json", "plugins", "setup-reset", "@kb-labs/mind"]) == 0
        payload = json.loads(capsys.readouterr().out.splitlines()[-1])
        assert payload["reset"] is True

        assert main(["mind", "pack"]) == 0
        assert (workspace / "setup-calls.txt").read_text() == "2"

    def test_failing_setup_blocks_command(self, workspace, capsys):
        write_plugin(
            workspace,
            "mind",
            mind_manifest(setup={"handler": "./setup.py#run"}),
            {
                "pack.py": PACK_HANDLER,
                "setup.py": "def run(ctx, argv, flags):\n    return 3\n",
            },
        )

        assert main(["mind", "pack"]) == 1
        assert "Setup of @kb-labs/mind failed" in capsys.readouterr().err
        assert not (workspace / "pack-call.json").exists()


class TestPluginsCommands:
    """Test kb plugins subcommands."""

    def test_list_json(self, mind_workspace, capsys):
        assert main(["--json", "plugins", "list"]) == 0

        payload = json.loads(capsys.readouterr().out)
        assert payload["ok"] is True
        assert payload["partial"] is False
        assert [p["id"] for p in payload["plugins"]] == ["@kb-labs/mind"]
        plugin = payload["plugins"][0]
        assert plugin["source"]["kind"] == "dir"
        assert plugin["enabled"] is True
        assert [c["id"] for c in plugin["commands"]] == ["mind:pack"]

    def test_list_text(self, mind_workspace, capsys):
        assert main(["plugins"]) == 0
        out = capsys.readouterr().out
        assert "@kb-labs/mind@1.2.0" in out
        assert "mind:pack" in out

    def test_list_reports_partial(self, mind_workspace, capsys):
        broken = mind_workspace / ".kb" / "plugins" / "broken"
        broken.mkdir()
        (broken / "manifest.json").write_text("{ not json")

        assert main(["--json", "plugins", "list"]) == 0

        payload = json.loads(capsys.readouterr().out)
        assert payload["partial"] is True
        assert len(payload["errors"]) == 1
        assert [p["id"] for p in payload["plugins"]] == ["@kb-labs/mind"]

    def test_enable_disable(self, mind_workspace, capsys):
        assert main(["plugins", "disable", "@kb-labs/mind"]) == 0
        assert "Disabled @kb-labs/mind" in capsys.readouterr().out

        assert main(["--json", "plugins", "list"]) == 0
        assert json.loads(capsys.readouterr().out)["plugins"][0]["enabled"] is False

        assert main(["plugins", "enable", "@kb-labs/mind"]) == 0
        assert main(["mind", "pack"]) == 0

    def test_enable_requires_target(self, workspace, capsys):
        assert main(["plugins", "enable"]) == 1
        assert "No plugin specified" in capsys.readouterr().err

    def test_unknown_subcommand(self, workspace, capsys):
        assert main(["plugins", "frobnicate"]) == 1

    def test_doctor_healthy(self, mind_workspace, capsys):
        assert main(["plugins", "doctor"]) == 0
        assert "No problems found" in capsys.readouterr().out

    def test_doctor_missing_dependency(self, workspace, capsys):
        write_plugin(workspace, "mind", mind_manifest(requires=["left-pad-xyz-missing"]))

        assert main(["--json", "plugins", "doctor", "@kb-labs/mind"]) == 1

        payload = json.loads(capsys.readouterr().out)
        assert payload["ok"] is False
        assert "Missing dependency" in payload["issues"][0]["message"]

    def test_doctor_unknown_plugin(self, mind_workspace, capsys):
        assert main(["plugins", "doctor", "@kb-labs/ghost"]) == 1
        assert "Plugin not found" in capsys.readouterr().out


class TestConfigCommand:
    """Test kb config init."""

    def test_init(self, workspace, capsys):
        assert main(["config", "init"]) == 0
        assert (workspace / "kb.toml").exists()
        assert "Wrote" in capsys.readouterr().out

    def test_init_existing(self, workspace, capsys):
        (workspace / "kb.toml").write_text("")
        assert main(["config", "init"]) == 1
        assert "already exists" in capsys.readouterr().err

    def test_init_force(self, workspace):
        (workspace / "kb.toml").write_text("")
        assert main(["config", "init", "--force"]) == 0
        assert "[discovery]" in (workspace / "kb.toml").read_text()

    def test_invalid_settings(self, mind_workspace, capsys):
        (mind_workspace / "kb.toml").write_text('[discovery]\nstrategies = ["npm"]\n')
        assert main(["plugins", "list"]) == 1
        assert "Invalid settings" in capsys.readouterr().err
