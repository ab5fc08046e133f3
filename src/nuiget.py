"""nuiget - NuGet package source client.

Command-line front end over the package-source service: version lookup,
search, metadata, installed/outdated/transitive views and dependency-ordered
bulk remove/update.

    Returns:
        int: Exit code
"""
import asyncio
import hashlib
import json
import logging
import os
import sys
from dataclasses import asdict
from typing import Any, List, Optional

from args import parse_args
from caching.negative import CooldownCache
from caching.workspace import WorkspaceCache
from cli_config import configure_from
from common.errors import NuigetError
from common.logging_utils import configure_logging, extra_context, is_debug_enabled
from common.notify import Notifier
from common.validation import validate_package_id, validate_version
from constants import BulkAction, Constants, ExitCodes
from credentials.provider import CredentialProvider
from credentials.resolver import CredentialResolver
from depgraph.lockfile import read_lock_data
from depgraph.ordering import dependency_map, removal_order, update_order
from orchestration.bulk import BulkRunner, UpdateTarget
from orchestration.executor import DotnetExecutor
from orchestration.service import PackageSourceService
from registry.client import RegistryClient
from registry.config_reader import load_sources
from registry.discovery import EndpointDiscovery
from registry.sessions import MultiplexedSessionPool
from registry.transport import Transport

logger = logging.getLogger(__name__)


def _setup_logging(args: Any) -> None:
    """Configure logging based on CLI arguments."""
    configure_logging(getattr(args, "LOG_LEVEL", None))
    log_file = getattr(args, "LOG_FILE", None)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(Constants.LOG_FILE_FORMAT))
        logging.getLogger().addHandler(file_handler)
        logger.info("Logging to file: %s", log_file)


def cache_path_for(workspace: str) -> str:
    """Per-workspace cache file under the user cache directory."""
    root = os.environ.get("XDG_CACHE_HOME") or os.path.join(os.path.expanduser("~"), ".cache")
    digest = hashlib.sha1(os.path.abspath(workspace).encode("utf-8")).hexdigest()[:16]
    return os.path.join(root, "nuiget", digest, Constants.WORKSPACE_CACHE_FILE)


def _print(args: Any, payload: Any, lines: List[str]) -> None:
    if getattr(args, "JSON", False):
        sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")
        return
    for line in lines:
        sys.stdout.write(line + "\n")


def _project(path: str) -> str:
    if not os.path.isfile(path):
        raise NuigetError(f"Project file not found: {path}")
    return path


def parse_update_targets(items: List[str]) -> List[UpdateTarget]:
    """``Id@Version`` pairs into update targets.

    Nothing is rejected here; malformed items keep their raw text as the id
    and fail validation in the bulk runner, so the rest of the batch still
    runs.
    """
    targets = []
    for item in items:
        package_id, sep, version = item.rpartition("@")
        if not sep or not package_id:
            targets.append(UpdateTarget(item, version if sep else ""))
            continue
        targets.append(UpdateTarget(package_id, version))
    return targets


class App:
    """Wires the registry stack for one CLI invocation."""

    def __init__(self, args: Any):
        self.args = args
        self.workspace = os.path.abspath(getattr(args, "WORKSPACE", None) or os.getcwd())
        self.notifier = Notifier()
        self.transport = Transport(
            http2_origins=Constants.HTTP2_ORIGINS,
            session_pool=MultiplexedSessionPool(Constants.HTTP2_MAX_SESSIONS, Constants.HTTP2_IDLE_TIMEOUT_SEC),
            timeout=Constants.REQUEST_TIMEOUT,
            max_redirects=Constants.HTTP_MAX_REDIRECTS,
            pool_limit=Constants.HTTP_POOL_LIMIT,
        )
        self.credentials = CredentialResolver(
            provider=CredentialProvider(timeout=Constants.CREDENTIAL_PROVIDER_TIMEOUT),
            notifier=self.notifier,
        )
        self.discovery = EndpointDiscovery(
            self.transport,
            self.credentials,
            notifier=self.notifier,
            cooldown=CooldownCache(Constants.SOURCE_COOLDOWN_SEC),
            timeout=Constants.DISCOVERY_TIMEOUT,
        )
        self.executor = DotnetExecutor(
            cwd=self.workspace,
            timeout=Constants.COMMAND_TIMEOUT,
            restore_timeout=Constants.RESTORE_TIMEOUT,
        )
        self.store: Optional[WorkspaceCache] = None
        if not getattr(args, "NO_CACHE", False):
            self.store = WorkspaceCache(
                cache_path_for(self.workspace), Constants.WORKSPACE_CACHE_MAX_ENTRIES, autosave=False
            )
        self.service = PackageSourceService(
            RegistryClient(self.transport, self.discovery, self.credentials),
            self.discovery,
            credentials=self.credentials,
            store=self.store,
            executor=self.executor,
        )

    async def load(self) -> None:
        """Read sources and static credentials."""

        async def list_sources() -> Optional[str]:
            result = await self.executor.list_sources()
            return None if result.failed else result.stdout

        snapshot = await load_sources(self.workspace, list_sources=list_sources)
        self.credentials.set_static_credentials(snapshot.credentials)
        self.service.set_sources(snapshot.sources)
        if is_debug_enabled(logger):
            logger.debug(
                "Sources loaded",
                extra=extra_context(
                    event="config", component="cli", action="load_sources",
                    count=len(snapshot.sources), outcome="files:%d" % len(snapshot.files),
                ),
            )

    def _lookup_status(self, found: bool) -> int:
        """CONNECTION_ERROR when nothing was found and a source failed."""
        if not found and self.service.failed_sources:
            for url, message in self.service.failed_sources.items():
                logger.error("%s: %s", url, message)
            return ExitCodes.CONNECTION_ERROR.value
        return ExitCodes.SUCCESS.value

    async def cmd_versions(self) -> int:
        a = self.args
        source = a.SOURCE[0] if a.SOURCE else None
        versions = await self.service.get_versions(
            validate_package_id(a.PACKAGE_ID), source, a.PRERELEASE, a.TAKE
        )
        _print(a, versions, versions)
        return self._lookup_status(bool(versions))

    async def cmd_search(self) -> int:
        a = self.args
        results = await self.service.search(a.QUERY, a.SOURCE, a.PRERELEASE, a.SKIP, a.TAKE)
        lines = []
        for r in results:
            mark = " [verified]" if r.verified else ""
            lines.append(f"{r.id} {r.version}{mark}  {r.description.splitlines()[0] if r.description else ''}".rstrip())
        _print(a, [r.to_dict() for r in results], lines)
        return self._lookup_status(bool(results))

    async def cmd_autocomplete(self) -> int:
        a = self.args
        ids = await self.service.autocomplete(a.QUERY, a.TAKE, a.PRERELEASE, a.SOURCE)
        _print(a, ids, ids)
        return ExitCodes.SUCCESS.value

    async def cmd_info(self) -> int:
        a = self.args
        package_id = validate_package_id(a.PACKAGE_ID)
        version = validate_version(a.VERSION)
        source = a.SOURCE[0] if a.SOURCE else None
        meta = await self.service.get_metadata(package_id, version, source)
        if meta is None:
            logger.warning("No metadata found for %s %s", package_id, version)
            return self._lookup_status(False) or ExitCodes.EXIT_WARNINGS.value
        payload = asdict(meta)
        if not a.README:
            payload.pop("readme", None)
        lines = [f"{meta.id} {meta.version}", f"Authors: {meta.authors}", meta.description]
        for group in meta.dependencies:
            deps = ", ".join(f"{d.id} {d.version_range}" for d in group.dependencies) or "(none)"
            lines.append(f"  {group.target_framework}: {deps}")
        if a.README and meta.readme:
            lines.extend(["", meta.readme])
        _print(a, payload, lines)
        return ExitCodes.SUCCESS.value

    async def cmd_sources(self) -> int:
        sources = self.service.get_sources()
        lines = [
            f"{s.name} [{'Enabled' if s.enabled else 'Disabled'}] {s.url}" for s in sources
        ]
        _print(self.args, [asdict(s) for s in sources], lines)
        return ExitCodes.SUCCESS.value

    async def cmd_installed(self) -> int:
        packages = await self.service.get_installed(_project(self.args.PROJECT))
        lines = [
            f"{p.id} {p.effective_version}{' (implicit)' if p.is_implicit else ''}" for p in packages
        ]
        payload = [
            {k: v for k, v in asdict(p).items() if k != "version_spec"} for p in packages
        ]
        _print(self.args, payload, lines)
        return ExitCodes.SUCCESS.value

    async def cmd_outdated(self) -> int:
        packages = await self.service.get_installed(_project(self.args.PROJECT), enrich=False)
        updates = await self.service.check_updates(packages, self.args.PRERELEASE)
        lines = [f"{u.id} {u.installed_version} -> {u.latest_version}" for u in updates]
        _print(self.args, [asdict(u) for u in updates], lines)
        return ExitCodes.EXIT_WARNINGS.value if updates else ExitCodes.SUCCESS.value

    async def cmd_transitive(self) -> int:
        result = self.service.get_transitive(_project(self.args.PROJECT))
        if not result.data_source_available:
            logger.warning("No packages.lock.json or obj/project.assets.json; run a restore first.")
            return ExitCodes.FILE_ERROR.value
        lines = []
        for fw in result.frameworks:
            lines.append(fw.target_framework)
            for pkg in fw.packages:
                lines.append(f"  {pkg.id} {pkg.version}  <- {'; '.join(pkg.required_by)}")
        _print(self.args, [asdict(fw) for fw in result.frameworks], lines)
        return ExitCodes.SUCCESS.value

    async def cmd_order(self) -> int:
        a = self.args
        lock = read_lock_data(_project(a.PROJECT))
        deps = dependency_map(lock.slices) if lock else {}
        ids = [validate_package_id(p) for p in a.PACKAGES]
        if a.ACTION == BulkAction.REMOVE.value:
            order = removal_order(ids, deps)
        else:
            order = update_order(ids, deps)
        _print(a, order, order)
        return ExitCodes.SUCCESS.value

    async def _bulk(self) -> int:
        a = self.args
        runner = BulkRunner(self.executor)
        project = _project(a.PROJECT)
        if a.COMMAND == BulkAction.REMOVE.value:
            result = await runner.remove(project, a.PACKAGES)
        else:
            result = await runner.update(project, parse_update_targets(a.PACKAGES))
        for package_id, message in result.errors.items():
            logger.error("%s: %s", package_id, message)
        payload = {
            "action": result.action.value,
            "order": result.order,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "errors": result.errors,
        }
        _print(a, payload, [result.summary()])
        return ExitCodes.SUCCESS.value if result.ok else ExitCodes.EXIT_WARNINGS.value

    async def cmd_clear_cache(self) -> int:
        memory, persisted = self.service.clear_caches(include_persisted=self.args.PERSISTED)
        self.service.clear_source_errors()
        _print(
            self.args,
            {"memory": memory, "persisted": persisted},
            [f"Cleared {memory} memory and {persisted} persisted cache entries."],
        )
        return ExitCodes.SUCCESS.value

    async def run(self) -> int:
        """Dispatch the selected command."""
        handlers = {
            "versions": self.cmd_versions,
            "search": self.cmd_search,
            "autocomplete": self.cmd_autocomplete,
            "info": self.cmd_info,
            "sources": self.cmd_sources,
            "installed": self.cmd_installed,
            "outdated": self.cmd_outdated,
            "transitive": self.cmd_transitive,
            "order": self.cmd_order,
            BulkAction.REMOVE.value: self._bulk,
            BulkAction.UPDATE.value: self._bulk,
            "clear-cache": self.cmd_clear_cache,
        }
        async with self.transport:
            try:
                await self.load()
                return await handlers[self.args.COMMAND]()
            finally:
                if self.store is not None:
                    self.store.flush()


def main(argv: Optional[List[str]] = None) -> None:
    """Main function of the program."""
    args = parse_args(argv)
    _setup_logging(args)
    configure_from(args)

    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action=args.COMMAND)
        )

    try:
        code = asyncio.run(App(args).run())
    except NuigetError as exc:
        logger.error("%s", exc)
        code = ExitCodes.FILE_ERROR.value
    sys.exit(code)


if __name__ == "__main__":
    main()
