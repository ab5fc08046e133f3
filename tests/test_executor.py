"""Tests for the dotnet executor and bulk operations."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from common.errors import ExecutorError, ValidationError
from constants import BulkAction
from depgraph.lockfile import FrameworkSlice, LockData
from orchestration.bulk import BulkRunner, UpdateTarget
from orchestration.executor import TIMEOUT_EXIT_CODE, DotnetExecutor, ExecResult


def _process(stdout=b"", stderr=b"", returncode=0):
    proc = MagicMock()
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    proc.returncode = returncode
    proc.wait = AsyncMock()
    return proc


class TestExecResult:
    """Failure detection."""

    def test_failed(self):
        """Non-zero exits and error tokens on stderr both count as failures."""
        assert ExecResult(exit_code=1).failed
        assert ExecResult(stderr="error NU1101: Unable to find package").failed
        assert not ExecResult(stderr="warning: terror-free", stdout="ok").failed
        assert not ExecResult(stdout="done").failed

    def test_message(self):
        """stderr is preferred over stdout."""
        assert ExecResult(stdout="out", stderr=" err ").message == "err"
        assert ExecResult(stdout="out\n").message == "out"


class TestDotnetExecutor:
    """Argument vectors and process handling."""

    def test_add_arguments(self):
        """Add builds a validated argv with optional flags."""
        executor = DotnetExecutor(cwd="/ws", no_restore=True)
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=_process(b"ok"))) as spawn:
            result = asyncio.run(executor.add("App.csproj", "Serilog", "3.1.1", "https://feed.example.com/index.json"))
        argv = spawn.call_args[0]
        assert argv == (
            "dotnet", "add", "App.csproj", "package", "Serilog",
            "--version", "3.1.1", "--source", "https://feed.example.com/index.json", "--no-restore",
        )
        assert spawn.call_args[1]["cwd"] == "/ws"
        assert result.stdout == "ok"

    def test_prerelease_only_without_version(self):
        """--prerelease is passed only when no version is pinned."""
        executor = DotnetExecutor()
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=_process())) as spawn:
            asyncio.run(executor.add("App.csproj", "Serilog", prerelease=True))
        assert spawn.call_args[0][-1] == "--prerelease"

    def test_rejects_unsafe_input(self):
        """Injection attempts are refused before spawning."""
        executor = DotnetExecutor()
        with patch("asyncio.create_subprocess_exec", AsyncMock()) as spawn:
            with pytest.raises(ValidationError):
                asyncio.run(executor.remove("App.csproj", "Serilog; rm -rf /"))
            with pytest.raises(ValidationError):
                asyncio.run(executor.add("App.csproj", "Serilog", "1.0 && calc"))
        spawn.assert_not_called()

    def test_missing_executable(self):
        """A dotnet that cannot be started raises ExecutorError."""
        executor = DotnetExecutor(dotnet="missing-dotnet")
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("no"))):
            with pytest.raises(ExecutorError):
                asyncio.run(executor.restore("App.csproj"))

    def test_nonzero_exit(self):
        """Exit codes and stderr are captured."""
        executor = DotnetExecutor()
        proc = _process(stderr=b"error: boom", returncode=1)
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            result = asyncio.run(executor.remove("App.csproj", "Serilog"))
        assert result.failed
        assert result.exit_code == 1
        assert result.stderr == "error: boom"

    def test_timeout_kills_process(self):
        """A command past its timeout is killed and reported."""
        executor = DotnetExecutor(timeout=0.01)
        proc = _process()

        async def hang():
            await asyncio.sleep(1)

        proc.communicate = hang
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            result = asyncio.run(executor.list_sources())
        proc.kill.assert_called_once()
        assert result.exit_code == TIMEOUT_EXIT_CODE
        assert "timed out" in result.stderr

    def test_list_packages_transitive(self):
        """Listing can include transitive packages."""
        executor = DotnetExecutor()
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=_process())) as spawn:
            asyncio.run(executor.list_packages("App.csproj", include_transitive=True))
        assert spawn.call_args[0][1:] == ("list", "App.csproj", "package", "--include-transitive")


def _lock(edges):
    fw = FrameworkSlice(target_framework="net8.0")
    for pid, deps in edges.items():
        fw.add_package(pid, "1.0.0", {d: "1.0.0" for d in deps})
    return LockData(path="packages.lock.json", kind="lock", slices=[fw])


def _executor(failing=()):
    executor = MagicMock()

    async def step(project, package_id, *rest):
        if package_id in failing:
            return ExecResult(stderr=f"error: cannot touch {package_id}", exit_code=1)
        return ExecResult(stdout="ok")

    executor.remove = AsyncMock(side_effect=step)
    executor.add = AsyncMock(side_effect=step)
    executor.restore = AsyncMock(return_value=ExecResult())
    return executor


class TestBulkRunner:
    """Sequential bulk operations with partial success."""

    def test_remove_order_and_single_restore(self):
        """Dependents go first and one restore runs at the end."""
        executor = _executor()
        runner = BulkRunner(executor, lock_reader=lambda p: _lock({"A": ["B"], "B": []}))
        result = asyncio.run(runner.remove("App.csproj", ["B", "A"]))
        assert result.action == BulkAction.REMOVE
        assert result.order == ["A", "B"]
        assert [c[0][1] for c in executor.remove.call_args_list] == ["A", "B"]
        executor.restore.assert_awaited_once_with("App.csproj")
        assert result.ok
        assert result.summary() == "Removed 2 packages."

    def test_partial_failure(self):
        """One failing package does not stop the rest."""
        executor = _executor(failing={"B"})
        runner = BulkRunner(executor, lock_reader=lambda p: None)
        result = asyncio.run(runner.remove("App.csproj", ["A", "B", "C"]))
        assert result.succeeded == ["A", "C"]
        assert result.failed == ["B"]
        assert "cannot touch B" in result.errors["B"]
        assert result.summary() == "Removed 2 packages, 1 failed."

    def test_nothing_removed_skips_restore(self):
        """No successful removal means no restore."""
        executor = _executor(failing={"A"})
        runner = BulkRunner(executor, lock_reader=lambda p: None)
        asyncio.run(runner.remove("App.csproj", ["A"]))
        executor.restore.assert_not_awaited()

    def test_invalid_ids_recorded(self):
        """Invalid ids are failures and never reach the executor."""
        executor = _executor()
        runner = BulkRunner(executor, lock_reader=lambda p: None)
        result = asyncio.run(runner.remove("App.csproj", ["bad id!", "A"]))
        assert result.failed == ["bad id!"]
        assert result.succeeded == ["A"]
        assert executor.remove.await_count == 1

    def test_update_dependencies_first(self):
        """Dependencies are updated before their dependents, once per id."""
        executor = _executor()
        runner = BulkRunner(executor, lock_reader=lambda p: _lock({"A": ["B"], "B": []}))
        result = asyncio.run(runner.update("App.csproj", [
            UpdateTarget("A", "2.0.0"),
            UpdateTarget("B", "3.0.0"),
            UpdateTarget("a", "9.9.9"),
        ]))
        assert result.order == ["B", "A"]
        assert [c[0][1:] for c in executor.add.call_args_list] == [("B", "3.0.0"), ("A", "2.0.0")]
        executor.restore.assert_not_awaited()
        assert result.summary() == "Updated 2 packages."

    def test_executor_error_is_failure(self):
        """An executor that cannot start is recorded per package."""
        executor = _executor()
        executor.add = AsyncMock(side_effect=ExecutorError("dotnet missing"))
        runner = BulkRunner(executor, lock_reader=lambda p: None)
        result = asyncio.run(runner.update("App.csproj", [UpdateTarget("A", "1.0.0")]))
        assert result.errors == {"A": "dotnet missing"}
