"""Requirement-string classification and version ordering."""

import functools
import re
from typing import Iterable, List

from .models import ParsedVersion, VersionKind, VersionSpec

_FLOATING_RE = re.compile(r"^(\d+(?:\.\d+)*)\.?\*(-\*)?$")
_PRERELEASE_FLOATING_RE = re.compile(r"^(\d+\.\d+\.\d+)-(.*)?\*$")
_EXACT_RE = re.compile(r"^\[\d+(\.\d+)*(-[\w.]+)?\]$")
_RANGE_RE = re.compile(r"^[\[(].*,.*[)\]]$")


def parse_version_spec(raw: str) -> VersionSpec:
    """Classify a requirement string.

    Never raises: anything that does not look like a floating, exact or
    range expression is treated as a standard (implicit minimum) version.
    """
    original = raw if isinstance(raw, str) else ""
    trimmed = original.strip()

    if trimmed in ("*", "*-*"):
        return VersionSpec(VersionKind.FLOATING, original, floating_depth=0, is_always_latest=True)

    match = _FLOATING_RE.match(trimmed)
    if match:
        prefix = match.group(1)
        return VersionSpec(
            VersionKind.FLOATING,
            original,
            floating_prefix=prefix,
            floating_depth=len(prefix.split(".")),
        )

    match = _PRERELEASE_FLOATING_RE.match(trimmed)
    if match:
        return VersionSpec(
            VersionKind.FLOATING,
            original,
            floating_prefix=match.group(1),
            floating_depth=3,
        )

    if _EXACT_RE.match(trimmed):
        return VersionSpec(VersionKind.EXACT, original)

    if _RANGE_RE.match(trimmed):
        return VersionSpec(VersionKind.RANGE, original)

    return VersionSpec(VersionKind.STANDARD, original)


def _segment(text: str) -> int:
    """Leading integer of a segment; non-numeric segments count as zero."""
    match = re.match(r"\d+", text.strip())
    return int(match.group(0)) if match else 0


def parse_version(version: str) -> ParsedVersion:
    """Split into numeric release segments and an optional prerelease label."""
    v = (version or "").strip().lower().split("+", 1)[0]
    main, sep, prerelease = v.partition("-")
    release = tuple(_segment(p) for p in main.split("."))
    return ParsedVersion(release=release, prerelease=prerelease if sep and prerelease else None)


def compare_versions(a: str, b: str) -> int:
    """Return 1 if ``a`` is newer, -1 if older, 0 if equivalent."""
    if (a or "").lower() == (b or "").lower():
        return 0
    pa = parse_version(a)
    pb = parse_version(b)

    width = max(len(pa.release), len(pb.release))
    ra = pa.release + (0,) * (width - len(pa.release))
    rb = pb.release + (0,) * (width - len(pb.release))
    if ra != rb:
        return 1 if ra > rb else -1

    if pa.prerelease is None and pb.prerelease is not None:
        return 1
    if pa.prerelease is not None and pb.prerelease is None:
        return -1
    if pa.prerelease is not None and pb.prerelease is not None and pa.prerelease != pb.prerelease:
        return 1 if pa.prerelease > pb.prerelease else -1
    return 0


def is_newer(a: str, b: str) -> bool:
    """Return True when ``a`` is strictly newer than ``b``."""
    return compare_versions(a, b) > 0


def is_prerelease(version: str) -> bool:
    """True when the version carries a prerelease label."""
    return parse_version(version).prerelease is not None


version_sort_key = functools.cmp_to_key(compare_versions)


def sort_newest_first(versions: Iterable[str]) -> List[str]:
    """Order versions newest first, independent of registry ordering."""
    return sorted(versions, key=version_sort_key, reverse=True)
