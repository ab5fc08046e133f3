"""Installed packages of a project: csproj PackageReferences and `dotnet list` output."""
from __future__ import annotations

import logging
import os
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple

from versioning.models import VersionSpec
from versioning.parser import parse_version_spec

from .lockfile import LockData

logger = logging.getLogger(__name__)

UNKNOWN_VERSION = "unknown"
_LIST_LINE_RE = re.compile(r"^\s*>\s+(\S+).*?(\d+\.\d+[\w.-]*)\s*$")
_PROPS_FILES = ("Directory.Build.props", "Directory.Packages.props")


@dataclass
class InstalledPackage:
    """A package referenced by a project.

    ``version_spec`` is parsed once from ``requirement_version``.
    ``is_implicit`` marks transitive or SDK-provided packages that cannot be
    removed directly.
    """
    id: str
    requirement_version: str
    resolved_version: Optional[str] = None
    is_implicit: bool = False
    authors: Optional[str] = None
    icon_url: Optional[str] = None
    verified: Optional[bool] = None
    description: Optional[str] = None
    version_spec: VersionSpec = field(init=False)

    def __post_init__(self) -> None:
        self.version_spec = parse_version_spec(self.requirement_version)

    @property
    def effective_version(self) -> str:
        """Resolved version when known, else the requirement itself."""
        return self.resolved_version or self.requirement_version


def _parse_xml(path: str) -> Optional[ET.Element]:
    try:
        root = ET.parse(path).getroot()
    except (ET.ParseError, OSError) as e:
        logger.warning("Couldn't parse project file %s: %s", path, e)
        return None
    # Remove namespace for easier parsing
    for elem in root.iter():
        if "}" in elem.tag:
            elem.tag = elem.tag.split("}")[1]
    return root


def read_package_references(project_path: str) -> List[Tuple[str, str]]:
    """(id, version) for each PackageReference in a project file.

    The version comes from the ``Version`` attribute or a nested ``<Version>``
    element; references without either report ``"unknown"``.
    """
    root = _parse_xml(project_path)
    if root is None:
        return []
    refs: List[Tuple[str, str]] = []
    for ref in root.findall(".//PackageReference"):
        package_id = ref.get("Include")
        if not package_id:
            continue
        version = ref.get("Version")
        if not version:
            child = ref.find("Version")
            version = (child.text or "").strip() if child is not None else ""
        refs.append((package_id, version or UNKNOWN_VERSION))
    return refs


def read_direct_ids(project_path: str) -> Optional[Set[str]]:
    """Lowercased ids declared by the project or its Directory.*.props files.

    Returns None when the project file itself could not be read.
    """
    project_dir = os.path.dirname(project_path)
    root = _parse_xml(project_path) if os.path.isfile(project_path) else None
    if root is None:
        return None
    ids: Set[str] = set()
    roots = [root]
    for name in _PROPS_FILES:
        props = os.path.join(project_dir, name)
        if os.path.isfile(props):
            parsed = _parse_xml(props)
            if parsed is not None:
                roots.append(parsed)
    for doc in roots:
        for tag in ("PackageReference", "PackageVersion"):
            for elem in doc.findall(f".//{tag}"):
                if elem.get("Include"):
                    ids.add(elem.get("Include").lower())
    return ids


def parse_dotnet_list_output(text: str, direct_ids: Optional[Set[str]] = None) -> List[InstalledPackage]:
    """Parse ``dotnet list package`` output.

    Lines look like ``   > Package.Id    1.0.0    1.0.1``; the last version
    is the resolved one. Packages from the "Transitive Package" section, and
    top-level ones not declared anywhere in ``direct_ids``, are implicit.
    """
    packages: List[InstalledPackage] = []
    in_transitive = False
    for line in text.splitlines():
        if "Top-level Package" in line:
            in_transitive = False
            continue
        if "Transitive Package" in line:
            in_transitive = True
            continue
        match = _LIST_LINE_RE.match(line)
        if not match:
            continue
        package_id = match.group(1)
        implicit = in_transitive or (direct_ids is not None and package_id.lower() not in direct_ids)
        packages.append(InstalledPackage(id=package_id, requirement_version=match.group(2), is_implicit=implicit))
    return packages


def installed_packages(project_path: str, lock: Optional[LockData] = None) -> List[InstalledPackage]:
    """Packages referenced by the project file, with lock-resolved versions."""
    resolved = lock.resolved_versions() if lock is not None else {}
    return [
        InstalledPackage(id=pid, requirement_version=version, resolved_version=resolved.get(pid.lower()))
        for pid, version in read_package_references(project_path)
    ]
