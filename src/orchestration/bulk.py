"""Sequential bulk remove/update in dependency order."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from common.errors import ExecutorError, ValidationError
from common.validation import validate_package_id, validate_version
from constants import BulkAction
from depgraph.lockfile import LockData, read_lock_data
from depgraph.ordering import dependency_map, removal_order, update_order

from .executor import ExecResult, PackageExecutor

logger = logging.getLogger(__name__)


@dataclass
class UpdateTarget:
    """A package and the version to move it to."""
    id: str
    version: str


@dataclass
class BulkResult:
    """Partial-success report of a bulk operation."""
    action: BulkAction
    order: List[str] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    restore: Optional[ExecResult] = None

    @property
    def ok(self) -> bool:
        return not self.failed

    def record_failure(self, package_id: str, message: str) -> None:
        self.failed.append(package_id)
        self.errors[package_id] = message

    def summary(self) -> str:
        verb = "Removed" if self.action == BulkAction.REMOVE else "Updated"
        if not self.failed:
            return f"{verb} {len(self.succeeded)} packages."
        return f"{verb} {len(self.succeeded)} packages, {len(self.failed)} failed."


class BulkRunner:
    """Runs bulk operations one package at a time.

    Each step changes what the next observes on disk, so nothing runs in
    parallel. A bulk removal ends with a single restore.
    """

    def __init__(
        self,
        executor: PackageExecutor,
        lock_reader: Callable[[str], Optional[LockData]] = read_lock_data,
    ):
        self._executor = executor
        self._lock_reader = lock_reader

    def _dependencies(self, project_path: str) -> Dict[str, List[str]]:
        lock = self._lock_reader(project_path)
        return dependency_map(lock.slices) if lock is not None else {}

    async def _step(self, result: BulkResult, package_id: str, op) -> None:
        try:
            outcome = await op()
        except (ExecutorError, ValidationError) as exc:
            result.record_failure(package_id, str(exc))
            return
        if outcome.failed:
            result.record_failure(package_id, outcome.message or f"exit code {outcome.exit_code}")
        else:
            result.succeeded.append(package_id)

    async def remove(self, project_path: str, package_ids: Sequence[str]) -> BulkResult:
        """Remove packages, dependents before their dependencies, then restore once."""
        result = BulkResult(BulkAction.REMOVE)
        valid: List[str] = []
        for package_id in package_ids:
            try:
                valid.append(validate_package_id(package_id))
            except ValidationError as exc:
                result.record_failure(package_id, str(exc))

        result.order = removal_order(valid, self._dependencies(project_path))
        logger.info("Removing %d packages from %s", len(result.order), project_path)
        for package_id in result.order:
            await self._step(result, package_id, lambda pid=package_id: self._executor.remove(project_path, pid))

        if result.succeeded:
            try:
                result.restore = await self._executor.restore(project_path)
            except ExecutorError as exc:
                logger.warning("Restore after bulk removal failed: %s", exc)
        logger.info(result.summary())
        return result

    async def update(self, project_path: str, targets: Sequence[UpdateTarget]) -> BulkResult:
        """Update packages, dependencies before their dependents."""
        result = BulkResult(BulkAction.UPDATE)
        by_id: Dict[str, UpdateTarget] = {}
        for target in targets:
            try:
                validate_package_id(target.id)
                validate_version(target.version)
            except ValidationError as exc:
                result.record_failure(target.id, str(exc))
                continue
            by_id.setdefault(target.id.lower(), target)

        ids = [t.id for t in by_id.values()]
        result.order = update_order(ids, self._dependencies(project_path))
        logger.info("Updating %d packages in %s", len(result.order), project_path)
        for package_id in result.order:
            target = by_id[package_id.lower()]
            await self._step(
                result,
                package_id,
                lambda t=target: self._executor.add(project_path, t.id, t.version),
            )
        logger.info(result.summary())
        return result
