"""Readers for restored lock data: packages.lock.json and project.assets.json."""
from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from constants import Constants

logger = logging.getLogger(__name__)

LOCK_FILE = "packages.lock.json"
ASSETS_FILE = os.path.join("obj", "project.assets.json")

_TARGET_KEY_RE = re.compile(r"^(.+?)/(.+)$")
_DIRECT_DEP_RE = re.compile(r"^([^\s>=<]+)")


@dataclass
class FrameworkSlice:
    """Resolved packages for one target framework.

    Every map is keyed by lowercased package id; ``casing`` recovers the id
    as the lock data spelled it.
    """
    target_framework: str
    versions: Dict[str, str] = field(default_factory=dict)
    dependencies: Dict[str, List[str]] = field(default_factory=dict)
    direct: Set[str] = field(default_factory=set)
    casing: Dict[str, str] = field(default_factory=dict)

    def add_package(self, package_id: str, version: str, deps: Any) -> None:
        """Record a package and its dependency ids; self-edges are dropped."""
        lower = package_id.lower()
        self.versions[lower] = version
        self.casing.setdefault(lower, package_id)
        targets = self.dependencies.setdefault(lower, [])
        if isinstance(deps, dict):
            for dep in deps:
                dep_lower = str(dep).lower()
                if dep_lower != lower and dep_lower not in targets:
                    targets.append(dep_lower)

    def display_id(self, lower_id: str) -> str:
        return self.casing.get(lower_id, lower_id)


@dataclass
class LockData:
    """Parsed lock data for one project."""
    path: str
    kind: str
    slices: List[FrameworkSlice] = field(default_factory=list)

    def resolved_versions(self) -> Dict[str, str]:
        """Lowercased id -> resolved version; earlier frameworks win."""
        resolved: Dict[str, str] = {}
        for fw in self.slices:
            for lower, version in fw.versions.items():
                resolved.setdefault(lower, version)
        return resolved


class AssetsCache:
    """Parsed project.assets.json keyed by path, valid while the mtime is unchanged.

    The file can run to tens of megabytes and is read by several operations in
    the same flow, so a parse is reused for a short TTL.
    """

    def __init__(self, ttl: float = Constants.LOCK_ASSETS_TTL_SEC, clock: Callable[[], float] = time.time):
        self._ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[float, float, Any]] = {}
        self._lock = threading.Lock()

    def load(self, path: str) -> Optional[Any]:
        """Return the parsed document, or None when missing or malformed."""
        try:
            mtime = os.stat(path).st_mtime
        except OSError:
            return None
        now = self._clock()
        with self._lock:
            cached = self._entries.get(path)
            if cached and cached[0] == mtime and now - cached[1] < self._ttl:
                return cached[2]
        data = _read_json(path)
        if data is None:
            return None
        with self._lock:
            self._entries[path] = (mtime, now, data)
            for key in [k for k, v in self._entries.items() if k != path and now - v[1] >= self._ttl]:
                del self._entries[key]
        return data

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _read_json(path: str) -> Optional[Any]:
    try:
        with open(path, "r", encoding="utf-8-sig") as fh:
            return json.load(fh)
    except (OSError, ValueError) as exc:
        logger.warning("Couldn't parse %s: %s", path, exc)
        return None


def _project_dir(project_path: str) -> str:
    if os.path.isdir(project_path):
        return project_path
    return os.path.dirname(project_path) or "."


def lock_file_path(project_path: str) -> str:
    return os.path.join(_project_dir(project_path), LOCK_FILE)


def assets_file_path(project_path: str) -> str:
    return os.path.join(_project_dir(project_path), ASSETS_FILE)


def has_lock_data(project_path: str) -> bool:
    """True when the project has been restored (either lock artifact exists)."""
    return os.path.isfile(lock_file_path(project_path)) or os.path.isfile(assets_file_path(project_path))


def parse_lock_file(data: Any, path: str = LOCK_FILE) -> Optional[LockData]:
    """Slices from a packages.lock.json document."""
    deps = data.get("dependencies") if isinstance(data, dict) else None
    if not isinstance(deps, dict):
        return None
    lock = LockData(path=path, kind="lock")
    for tfm, packages in deps.items():
        if not isinstance(packages, dict):
            continue
        fw = FrameworkSlice(target_framework=tfm)
        for package_id, info in packages.items():
            if not isinstance(info, dict):
                continue
            version = info.get("resolved")
            if not version:
                continue
            fw.add_package(package_id, str(version), info.get("dependencies"))
            if info.get("type") == "Direct":
                fw.direct.add(package_id.lower())
        lock.slices.append(fw)
    return lock if lock.slices else None


def parse_assets_file(data: Any, path: str = ASSETS_FILE) -> Optional[LockData]:
    """Slices from a project.assets.json document.

    ``targets[tfm]`` holds ``"Id/Version"`` keys; direct packages come from
    ``projectFileDependencyGroups[tfm]`` entries such as ``"Id >= 1.0.0"``.
    """
    targets = data.get("targets") if isinstance(data, dict) else None
    if not isinstance(targets, dict):
        return None
    groups = data.get("projectFileDependencyGroups") or {}
    lock = LockData(path=path, kind="assets")
    for tfm, packages in targets.items():
        if not isinstance(packages, dict):
            continue
        fw = FrameworkSlice(target_framework=tfm)
        for key, info in packages.items():
            match = _TARGET_KEY_RE.match(key)
            if not match:
                continue
            deps = info.get("dependencies") if isinstance(info, dict) else None
            fw.add_package(match.group(1), match.group(2), deps)
        for entry in groups.get(tfm.split("/", 1)[0]) or groups.get(tfm) or []:
            direct = _DIRECT_DEP_RE.match(str(entry))
            if direct:
                fw.direct.add(direct.group(1).lower())
        lock.slices.append(fw)
    return lock


def read_lock_data(project_path: str, assets_cache: Optional[AssetsCache] = None) -> Optional[LockData]:
    """Lock data for a project; packages.lock.json is preferred over the assets file.

    Returns:
        LockData, or None when the project has not been restored
    """
    lock_path = lock_file_path(project_path)
    if os.path.isfile(lock_path):
        data = _read_json(lock_path)
        lock = parse_lock_file(data, lock_path) if data is not None else None
        if lock is not None:
            return lock

    assets_path = assets_file_path(project_path)
    if assets_cache is not None:
        data = assets_cache.load(assets_path)
    else:
        data = _read_json(assets_path) if os.path.isfile(assets_path) else None
    if data is None:
        return None
    return parse_assets_file(data, assets_path)
