"""Tests for argument parsing, YAML configuration and the CLI commands."""

import asyncio
import json
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

pytest.importorskip("aiohttp")
pytest.importorskip("httpx")

import nuiget
from args import parse_args
from cli_config import apply_cli_overrides, apply_config, configure_from, load_yaml_config, resolve_config_path
from common.errors import NuigetError
from constants import CacheTTL, Constants, ExitCodes
from orchestration.executor import ExecResult
from orchestration.service import PackageUpdate

LOCK = {
    "version": 1,
    "dependencies": {"net8.0": {
        "A": {"type": "Direct", "resolved": "1.0.0", "dependencies": {"B": "1.0.0"}},
        "B": {"type": "Direct", "resolved": "1.0.0"},
    }},
}


@pytest.fixture
def restore_constants(monkeypatch):
    """Snapshot the tunables a test may overwrite."""
    for attr in ("REQUEST_TIMEOUT", "HTTP2_ORIGINS", "METADATA_CONCURRENCY", "ICON_CONCURRENCY",
                 "WORKSPACE_CACHE_MAX_ENTRIES", "USER_AGENT"):
        monkeypatch.setattr(Constants, attr, getattr(Constants, attr))
    monkeypatch.setattr(CacheTTL, "VERSIONS", CacheTTL.VERSIONS)


class TestArgs:
    """Subcommand parsing."""

    def test_versions(self):
        """Query flags land on uppercase destinations."""
        args = parse_args(["versions", "Serilog", "-s", "nuget.org", "--prerelease", "--take", "3"])
        assert args.COMMAND == "versions"
        assert args.PACKAGE_ID == "Serilog"
        assert args.SOURCE == ["nuget.org"]
        assert args.PRERELEASE is True
        assert args.TAKE == 3
        assert args.LOG_LEVEL == "INFO"

    def test_defaults(self):
        """Takes default per command."""
        assert parse_args(["search", "json"]).TAKE == Constants.DEFAULT_SEARCH_TAKE
        assert parse_args(["autocomplete", "ne"]).TAKE == Constants.DEFAULT_AUTOCOMPLETE_TAKE

    def test_bulk_and_common_flags(self):
        """Bulk commands take several packages and the shared flags."""
        args = parse_args(["update", "App.csproj", "A@1.0.0", "B@2.0.0", "--json", "--no-cache", "-w", "/ws"])
        assert args.PACKAGES == ["A@1.0.0", "B@2.0.0"]
        assert args.JSON and args.NO_CACHE
        assert args.WORKSPACE == "/ws"

    def test_command_required(self):
        """A command must be given."""
        with pytest.raises(SystemExit):
            parse_args([])

    def test_order_action_choices(self):
        """order only accepts remove or update."""
        with pytest.raises(SystemExit):
            parse_args(["order", "install", "App.csproj", "A"])


class TestYamlConfig:
    """YAML overrides."""

    def test_load_and_apply(self, tmp_path, restore_constants):
        """Known keys are coerced and applied; unknown ones ignored."""
        path = tmp_path / "nuiget.yml"
        path.write_text(
            "http:\n  timeout: '7.5'\n  http2_origins: []\n  bogus: 1\n"
            "cache:\n  versions_ttl: 60\n  max_entries: 50\n",
            encoding="utf-8",
        )
        cfg = load_yaml_config(str(path))
        assert apply_config(cfg) == 4
        assert Constants.REQUEST_TIMEOUT == 7.5
        assert Constants.HTTP2_ORIGINS == []
        assert CacheTTL.VERSIONS == 60
        assert Constants.WORKSPACE_CACHE_MAX_ENTRIES == 50

    def test_invalid_value_skipped(self, restore_constants):
        """A value that cannot be coerced leaves the default in place."""
        before = Constants.REQUEST_TIMEOUT
        assert apply_config({"http": {"timeout": "soon"}}) == 0
        assert Constants.REQUEST_TIMEOUT == before

    def test_bad_files(self, tmp_path):
        """Missing, malformed or non-mapping files load as empty."""
        assert load_yaml_config(None) == {}
        assert load_yaml_config(str(tmp_path / "missing.yml")) == {}
        broken = tmp_path / "broken.yml"
        broken.write_text("http: [unclosed", encoding="utf-8")
        assert load_yaml_config(str(broken)) == {}
        scalar = tmp_path / "scalar.yml"
        scalar.write_text("just text", encoding="utf-8")
        assert load_yaml_config(str(scalar)) == {}

    def test_resolve_config_path(self, tmp_path, monkeypatch):
        """--config beats the environment variable."""
        monkeypatch.setenv(Constants.ENV_CONFIG, str(tmp_path / "env.yml"))
        assert resolve_config_path(str(tmp_path / "cli.yml")) == str(tmp_path / "cli.yml")
        assert resolve_config_path(None) == str(tmp_path / "env.yml")

    def test_cli_overrides_win(self, tmp_path, monkeypatch, restore_constants):
        """CLI flags are applied after the YAML file."""
        path = tmp_path / "nuiget.yml"
        path.write_text("http:\n  timeout: 30\n", encoding="utf-8")
        monkeypatch.delenv(Constants.ENV_CONFIG, raising=False)
        args = parse_args(["sources", "-c", str(path), "--timeout", "3", "--no-http2", "--concurrency", "2"])
        assert configure_from(args) == str(path)
        assert Constants.REQUEST_TIMEOUT == 3.0
        assert Constants.HTTP2_ORIGINS == []
        assert Constants.METADATA_CONCURRENCY == 2
        assert Constants.ICON_CONCURRENCY == 2

    def test_cli_overrides_tolerate_missing_flags(self, restore_constants):
        """Objects without the flags change nothing."""
        before = Constants.REQUEST_TIMEOUT
        apply_cli_overrides(object())
        assert Constants.REQUEST_TIMEOUT == before


class TestHelpers:
    """CLI helper functions."""

    def test_parse_update_targets(self):
        """ID@VERSION pairs split on the last @."""
        targets = nuiget.parse_update_targets(["Serilog@3.1.1", "Contoso.Lib@2.0.0-beta"])
        assert [(t.id, t.version) for t in targets] == [("Serilog", "3.1.1"), ("Contoso.Lib", "2.0.0-beta")]

    @pytest.mark.parametrize("item,expected", [
        ("Serilog", ("Serilog", "")),
        ("@1.0.0", ("@1.0.0", "1.0.0")),
        ("Serilog@", ("Serilog", "")),
        ("bad id@1.0.0", ("bad id", "1.0.0")),
    ])
    def test_parse_update_targets_keeps_malformed(self, item, expected):
        """Malformed pairs are passed on for per-item validation instead of raising."""
        targets = nuiget.parse_update_targets([item])
        assert [(t.id, t.version) for t in targets] == [expected]

    def test_cache_path_per_workspace(self, tmp_path, monkeypatch):
        """Each workspace gets its own cache file under XDG_CACHE_HOME."""
        monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
        one = nuiget.cache_path_for("/ws/one")
        two = nuiget.cache_path_for("/ws/two")
        assert one != two
        assert one.startswith(os.path.join(str(tmp_path), "nuiget"))
        assert one.endswith(Constants.WORKSPACE_CACHE_FILE)


def _app(tmp_path, argv):
    args = parse_args(argv + ["--no-cache", "-w", str(tmp_path)])
    return nuiget.App(args)


class TestCommands:
    """Command handlers with the network stubbed out."""

    def test_order_uses_lock_file(self, tmp_path, capsys):
        """order prints a dependency-safe sequence."""
        project = tmp_path / "App.csproj"
        project.write_text("<Project />", encoding="utf-8")
        (tmp_path / "packages.lock.json").write_text(json.dumps(LOCK), encoding="utf-8")
        app = _app(tmp_path, ["order", "remove", str(project), "B", "A", "--json"])
        assert asyncio.run(app.cmd_order()) == ExitCodes.SUCCESS.value
        assert json.loads(capsys.readouterr().out) == ["A", "B"]

    def test_missing_project(self, tmp_path):
        """A missing project file is a NuigetError."""
        app = _app(tmp_path, ["transitive", str(tmp_path / "Missing.csproj")])
        with pytest.raises(NuigetError):
            asyncio.run(app.cmd_transitive())

    def test_outdated_exit_code(self, tmp_path, capsys):
        """Available updates exit with the warnings code."""
        project = tmp_path / "App.csproj"
        project.write_text("<Project />", encoding="utf-8")
        app = _app(tmp_path, ["outdated", str(project)])
        app.service = MagicMock()
        app.service.get_installed = AsyncMock(return_value=[])
        app.service.check_updates = AsyncMock(return_value=[PackageUpdate("Serilog", "3.0.0", "3.1.1")])
        assert asyncio.run(app.cmd_outdated()) == ExitCodes.EXIT_WARNINGS.value
        assert "Serilog 3.0.0 -> 3.1.1" in capsys.readouterr().out

    def test_versions_connection_error(self, tmp_path):
        """No versions plus a failed source is a connection error."""
        app = _app(tmp_path, ["versions", "Serilog"])
        app.service = MagicMock()
        app.service.get_versions = AsyncMock(return_value=[])
        app.service.failed_sources = {"https://feed": "Connection refused."}
        assert asyncio.run(app.cmd_versions()) == ExitCodes.CONNECTION_ERROR.value

    def test_update_records_malformed_target(self, tmp_path, capsys):
        """One bad ID@VERSION fails alone; the other updates still run."""
        project = tmp_path / "App.csproj"
        project.write_text("<Project />", encoding="utf-8")
        app = _app(tmp_path, ["update", str(project), "Serilog@3.1.1", "Broken", "Newtonsoft.Json@13.0.3", "--json"])
        app.executor = MagicMock()
        app.executor.add = AsyncMock(return_value=ExecResult(stdout="ok"))
        assert asyncio.run(app._bulk()) == ExitCodes.EXIT_WARNINGS.value
        payload = json.loads(capsys.readouterr().out)
        assert payload["failed"] == ["Broken"]
        assert payload["succeeded"] == ["Serilog", "Newtonsoft.Json"]
        assert app.executor.add.await_count == 2


class TestMain:
    """Process exit codes."""

    def test_exit_code_from_command(self, tmp_path):
        """main exits with the command's code."""
        fake = MagicMock()
        fake.return_value.run = AsyncMock(return_value=ExitCodes.EXIT_WARNINGS.value)
        with patch.object(nuiget, "App", fake), patch.object(nuiget, "configure_from"):
            with pytest.raises(SystemExit) as excinfo:
                nuiget.main(["sources", "-w", str(tmp_path)])
        assert excinfo.value.code == ExitCodes.EXIT_WARNINGS.value

    def test_library_error_is_file_error(self, tmp_path):
        """Library errors map to the file error code."""
        fake = MagicMock()
        fake.return_value.run = AsyncMock(side_effect=NuigetError("Project file not found"))
        with patch.object(nuiget, "App", fake), patch.object(nuiget, "configure_from"):
            with pytest.raises(SystemExit) as excinfo:
                nuiget.main(["installed", "App.csproj"])
        assert excinfo.value.code == ExitCodes.FILE_ERROR.value
