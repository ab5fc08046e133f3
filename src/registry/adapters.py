"""Tolerant decoding of registry payloads.

Registries disagree on field casing and shapes (``data`` vs ``Data``,
``authors`` as a list or a string, ``owner`` instead of ``authors``). Every
vendor variant is handled here so the rest of the code sees one shape.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


def first_field(obj: Any, *names: str, default: Any = None) -> Any:
    """Return the first present, non-empty field among ``names``."""
    if not isinstance(obj, dict):
        return default
    for name in names:
        value = obj.get(name)
        if value is not None and value != "":
            return value
    return default


def as_text(value: Any) -> str:
    """Join list-valued fields (authors, owners, tags) into one string."""
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value if v)
    return str(value)


@dataclass
class SearchResult:
    """One package as returned by a search query."""
    id: str
    version: str = ""
    description: str = ""
    authors: str = ""
    icon_url: Optional[str] = None
    project_url: Optional[str] = None
    license_url: Optional[str] = None
    total_downloads: Optional[int] = None
    verified: bool = False
    tags: List[str] = field(default_factory=list)
    versions: List[str] = field(default_factory=list)
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe form for the persisted cache."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchResult":
        """Inverse of ``to_dict``."""
        return cls(**data)


@dataclass
class PackageDependency:
    """A dependency declared by a package version."""
    id: str
    version_range: str = "*"


@dataclass
class DependencyGroup:
    """Dependencies for one target framework."""
    target_framework: str = "Any"
    dependencies: List[PackageDependency] = field(default_factory=list)


@dataclass
class PackageMetadata:
    """Details for one package version."""
    id: str
    version: str
    description: str = ""
    authors: str = ""
    license: Optional[str] = None
    license_url: Optional[str] = None
    project_url: Optional[str] = None
    total_downloads: Optional[int] = None
    published: Optional[str] = None
    dependencies: List[DependencyGroup] = field(default_factory=list)
    readme: Optional[str] = None


def decode_search_response(payload: Any) -> List[Dict[str, Any]]:
    """Items of a search response: ``data``, ``Data`` or a bare list."""
    if isinstance(payload, list):
        return [p for p in payload if isinstance(p, dict)]
    items = first_field(payload, "data", "Data", default=[])
    return [p for p in items if isinstance(p, dict)] if isinstance(items, list) else []


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def decode_search_item(item: Dict[str, Any], source: Optional[str] = None) -> Optional[SearchResult]:
    """Normalize one search hit; items without an id are dropped."""
    package_id = first_field(item, "id", "Id", "packageId", "PackageId")
    if not package_id:
        return None
    raw_versions = first_field(item, "versions", "Versions", default=[])
    versions: List[str] = []
    if isinstance(raw_versions, list):
        for entry in raw_versions:
            if isinstance(entry, dict):
                ver = first_field(entry, "version", "Version")
                if ver:
                    versions.append(str(ver))
            elif isinstance(entry, str):
                versions.append(entry)
    tags = first_field(item, "tags", "Tags", default=[])
    if isinstance(tags, str):
        tags = [t for t in tags.replace(",", " ").split() if t]
    return SearchResult(
        id=str(package_id),
        version=str(first_field(item, "version", "Version", default="")),
        description=str(first_field(item, "description", "Description", "summary", "Summary", default="")),
        authors=as_text(first_field(item, "authors", "Authors", "owner", "Owner", "owners", "Owners")),
        icon_url=first_field(item, "iconUrl", "IconUrl"),
        project_url=first_field(item, "projectUrl", "ProjectUrl"),
        license_url=first_field(item, "licenseUrl", "LicenseUrl"),
        total_downloads=_int_or_none(first_field(item, "totalDownloads", "TotalDownloads", "downloadCount")),
        verified=bool(first_field(item, "verified", "Verified", default=False)),
        tags=list(tags) if isinstance(tags, list) else [],
        versions=versions,
        source=source,
    )


def decode_dependency_groups(groups: Any) -> List[DependencyGroup]:
    """Registration ``dependencyGroups`` into DependencyGroup records."""
    out: List[DependencyGroup] = []
    if not isinstance(groups, list):
        return out
    for group in groups:
        if not isinstance(group, dict):
            continue
        deps = []
        for dep in group.get("dependencies") or []:
            if isinstance(dep, dict):
                deps.append(
                    PackageDependency(
                        id=str(first_field(dep, "id", "Id", default="Unknown")),
                        version_range=str(first_field(dep, "range", "version", "Range", default="*")),
                    )
                )
        out.append(DependencyGroup(str(first_field(group, "targetFramework", default="Any")), deps))
    return out


def decode_registration_entry(
    catalog: Dict[str, Any],
    registration: Dict[str, Any],
    package_id: str,
    version: str,
) -> PackageMetadata:
    """Merge a catalog entry with its registration leaf (catalog wins)."""

    def pick(*names: str) -> Any:
        return first_field(catalog, *names) or first_field(registration, *names)

    groups = pick("dependencyGroups")
    return PackageMetadata(
        id=str(pick("id", "Id") or package_id),
        version=str(pick("version", "Version") or version),
        description=str(pick("description", "Description") or ""),
        authors=as_text(pick("authors", "Authors")),
        license=pick("licenseExpression", "LicenseExpression"),
        license_url=pick("licenseUrl", "LicenseUrl"),
        project_url=pick("projectUrl", "ProjectUrl"),
        published=pick("published", "Published"),
        dependencies=decode_dependency_groups(groups),
    )


def metadata_from_search(item: SearchResult, version: str) -> PackageMetadata:
    """Build version metadata from a search hit (no dependencies)."""
    return PackageMetadata(
        id=item.id,
        version=version,
        description=item.description,
        authors=item.authors,
        license_url=item.license_url,
        project_url=item.project_url,
        total_downloads=item.total_downloads,
    )


def _strip_namespaces(root: ET.Element) -> None:
    for elem in root.iter():
        if "}" in elem.tag:
            elem.tag = elem.tag.split("}", 1)[1]


def metadata_from_nuspec(xml_text: str, package_id: str, version: str) -> Optional[PackageMetadata]:
    """Parse the interesting parts of a ``.nuspec`` manifest."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        return None
    _strip_namespaces(root)
    meta = root.find("metadata")
    if meta is None:
        return None

    def text(tag: str) -> str:
        elem = meta.find(tag)
        return (elem.text or "").strip() if elem is not None else ""

    groups: List[DependencyGroup] = []
    deps_elem = meta.find("dependencies")
    if deps_elem is not None:
        for group in deps_elem.findall("group"):
            deps = [
                PackageDependency(d.get("id", ""), d.get("version") or "*")
                for d in group.findall("dependency")
                if d.get("id")
            ]
            groups.append(DependencyGroup(group.get("targetFramework") or "Any", deps))
        if not groups:
            flat = [
                PackageDependency(d.get("id", ""), d.get("version") or "*")
                for d in deps_elem.findall("dependency")
                if d.get("id")
            ]
            if flat:
                groups.append(DependencyGroup("Any", flat))

    license_elem = meta.find("license")
    license_expr = None
    if license_elem is not None and license_elem.get("type") == "expression":
        license_expr = (license_elem.text or "").strip() or None

    return PackageMetadata(
        id=package_id,
        version=version,
        description=text("description"),
        authors=text("authors"),
        license=license_expr,
        license_url=text("licenseUrl") or None,
        project_url=text("projectUrl") or None,
        dependencies=groups,
    )
