"""Package-manager executor: the `dotnet` CLI behind a small protocol."""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Protocol

from common.errors import ExecutorError
from common.logging_utils import Timer, extra_context, is_debug_enabled, redact
from common.validation import validate_package_id, validate_source_url, validate_version
from constants import Constants

logger = logging.getLogger(__name__)

_ERROR_TOKEN_RE = re.compile(r"\berror\b", re.IGNORECASE)
TIMEOUT_EXIT_CODE = 124


@dataclass
class ExecResult:
    """Raw outcome of one command."""
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def failed(self) -> bool:
        """Non-zero exit, or an ``error`` token on stderr (dotnet exits 0 on some failures)."""
        return self.exit_code != 0 or bool(_ERROR_TOKEN_RE.search(self.stderr or ""))

    @property
    def message(self) -> str:
        """Best diagnostic text for a failure."""
        return (self.stderr or self.stdout).strip()


class PackageExecutor(Protocol):
    """Performs the mutating package operations for a project."""

    async def add(
        self,
        project_path: str,
        package_id: str,
        version: Optional[str] = None,
        source: Optional[str] = None,
        prerelease: bool = False,
    ) -> ExecResult:
        ...

    async def remove(self, project_path: str, package_id: str) -> ExecResult:
        ...

    async def restore(self, project_path: str) -> ExecResult:
        ...


class DotnetExecutor:
    """Runs ``dotnet`` with an argument vector; inputs are validated first."""

    def __init__(
        self,
        dotnet: str = "dotnet",
        cwd: Optional[str] = None,
        timeout: float = Constants.COMMAND_TIMEOUT,
        restore_timeout: float = Constants.RESTORE_TIMEOUT,
        no_restore: bool = False,
    ):
        self._dotnet = dotnet
        self._cwd = cwd
        self._timeout = timeout
        self._restore_timeout = restore_timeout
        self._no_restore = no_restore

    async def run(self, args: List[str], timeout: Optional[float] = None) -> ExecResult:
        """Run ``dotnet <args>``.

        Raises:
            ExecutorError: when the executable cannot be started.
        """
        limit = timeout if timeout is not None else self._timeout
        argv = [self._dotnet, *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self._cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExecutorError(f"Couldn't start {self._dotnet}: {exc}") from exc

        with Timer() as t:
            try:
                out, err = await asyncio.wait_for(proc.communicate(), timeout=limit)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                return ExecResult(stderr=f"Command timed out after {limit:g} seconds", exit_code=TIMEOUT_EXIT_CODE)

        result = ExecResult(
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else 0,
        )
        command = redact(" ".join(argv))
        if result.failed:
            logger.warning("%s failed: %s", command, redact(result.message))
        elif is_debug_enabled(logger):
            logger.debug(
                "Command completed",
                extra=extra_context(
                    event="exec",
                    component="executor",
                    action=args[0] if args else None,
                    target=command,
                    outcome="success",
                    duration_ms=t.duration_ms(),
                ),
            )
        return result

    async def add(
        self,
        project_path: str,
        package_id: str,
        version: Optional[str] = None,
        source: Optional[str] = None,
        prerelease: bool = False,
    ) -> ExecResult:
        """``dotnet add <project> package <id> [--version v] [--source s] [--prerelease]``."""
        args = ["add", project_path, "package", validate_package_id(package_id)]
        if version:
            args += ["--version", validate_version(version)]
        if source:
            args += ["--source", validate_source_url(source)]
        if prerelease and not version:
            args.append("--prerelease")
        if self._no_restore:
            args.append("--no-restore")
        return await self.run(args)

    async def remove(self, project_path: str, package_id: str) -> ExecResult:
        """``dotnet remove <project> package <id>``."""
        return await self.run(["remove", project_path, "package", validate_package_id(package_id)])

    async def restore(self, project_path: str) -> ExecResult:
        """``dotnet restore <project>`` with the longer restore timeout."""
        return await self.run(["restore", project_path], timeout=self._restore_timeout)

    async def list_packages(self, project_path: str, include_transitive: bool = False) -> ExecResult:
        """``dotnet list <project> package``."""
        args = ["list", project_path, "package"]
        if include_transitive:
            args.append("--include-transitive")
        return await self.run(args)

    async def list_sources(self) -> ExecResult:
        """``dotnet nuget list source --format detailed``."""
        return await self.run(["nuget", "list", "source", "--format", "detailed"])
