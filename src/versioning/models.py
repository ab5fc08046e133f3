"""Data models for version requirements."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class VersionKind(Enum):
    """Classification of a requirement string."""
    EXACT = "exact"
    RANGE = "range"
    FLOATING = "floating"
    STANDARD = "standard"


@dataclass(frozen=True)
class VersionSpec:
    """Parsed requirement string; immutable once attached to a package."""
    kind: VersionKind
    original: str
    floating_prefix: Optional[str] = None
    floating_depth: Optional[int] = None
    is_always_latest: bool = False

    @property
    def is_pinned(self) -> bool:
        """True for specs that must never be bumped automatically."""
        return self.kind in (VersionKind.EXACT, VersionKind.RANGE, VersionKind.FLOATING)

    @property
    def allows_prerelease(self) -> bool:
        """True when a floating spec also floats over prerelease labels."""
        return self.kind == VersionKind.FLOATING and "-" in self.original


@dataclass(frozen=True)
class ParsedVersion:
    """Numeric release segments plus an optional lowercase prerelease label."""
    release: Tuple[int, ...]
    prerelease: Optional[str]
