"""Version requirement parsing, ordering and resolution."""

from .models import ParsedVersion, VersionKind, VersionSpec
from .parser import compare_versions, is_newer, parse_version_spec, sort_newest_first

__all__ = [
    "ParsedVersion",
    "VersionKind",
    "VersionSpec",
    "compare_versions",
    "is_newer",
    "parse_version_spec",
    "sort_newest_first",
]
