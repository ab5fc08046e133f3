"""Resolve a requirement spec against versions reported by a registry."""

import logging
from typing import Dict, List, Optional

import semantic_version

from .models import VersionKind, VersionSpec
from .parser import is_prerelease, parse_version, sort_newest_first

logger = logging.getLogger(__name__)


def _coerce(version: str) -> Optional[semantic_version.Version]:
    """Parse leniently; NuGet allows 2 and 4 part versions."""
    try:
        return semantic_version.Version.coerce(version.strip())
    except ValueError:
        return None


def range_to_simple_spec(interval: str) -> Optional[str]:
    """Convert NuGet interval notation into a SimpleSpec clause list.

    ``[1.0,2.0)`` becomes ``>=1.0.0,<2.0.0``; open bounds are dropped.
    """
    s = interval.strip()
    if len(s) < 3 or s[0] not in "[(" or s[-1] not in ")]" or "," not in s:
        return None
    lower, upper = (part.strip() for part in s[1:-1].split(",", 1))
    clauses: List[str] = []
    if lower:
        lo = _coerce(lower)
        if lo is None:
            return None
        clauses.append(f"{'>=' if s[0] == '[' else '>'}{lo}")
    if upper:
        hi = _coerce(upper)
        if hi is None:
            return None
        clauses.append(f"{'<=' if s[-1] == ']' else '<'}{hi}")
    return ",".join(clauses) if clauses else "*"


def _matches_prefix(version: str, spec: VersionSpec) -> bool:
    """Check the leading release segments against a floating prefix."""
    if spec.is_always_latest or not spec.floating_prefix:
        return True
    prefix = tuple(int(p) for p in spec.floating_prefix.split("."))
    release = parse_version(version).release
    padded = release + (0,) * max(0, len(prefix) - len(release))
    return padded[: len(prefix)] == prefix


def resolve_best(
    spec: VersionSpec,
    versions: List[str],
    include_prerelease: bool = False,
) -> Optional[str]:
    """Pick the concrete version a restore would choose for ``spec``.

    Floating specs take the newest matching version, ranges the lowest.

    Returns None when nothing matches or the spec cannot be interpreted.
    """
    if not versions:
        return None
    allow_pre = include_prerelease or spec.allows_prerelease
    candidates = [v for v in versions if allow_pre or not is_prerelease(v)]
    ordered = sort_newest_first(candidates)

    if spec.kind == VersionKind.STANDARD:
        wanted = spec.original.strip().lower()
        return next((v for v in versions if v.lower() == wanted), None)

    if spec.kind == VersionKind.EXACT:
        wanted = spec.original.strip()[1:-1].strip().lower()
        return next((v for v in versions if v.lower() == wanted), None)

    if spec.kind == VersionKind.FLOATING:
        return next((v for v in ordered if _matches_prefix(v, spec)), None)

    clause = range_to_simple_spec(spec.original)
    if clause is None:
        logger.debug("Unparseable range %r", spec.original)
        return None
    try:
        simple = semantic_version.SimpleSpec(clause)
    except ValueError:
        logger.debug("Rejected range clause %r", clause)
        return None
    coerced: Dict[str, semantic_version.Version] = {}
    for v in ordered:
        parsed = _coerce(v)
        if parsed is not None:
            coerced[v] = parsed
    # Restore takes the lowest version inside a range
    return next((v for v in reversed(ordered) if v in coerced and simple.match(coerced[v])), None)
