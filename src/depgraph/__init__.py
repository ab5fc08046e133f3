"""Dependency graph over restored lock data, transitive chains and bulk ordering."""

from .graph import (
    TransitiveFramework,
    TransitivePackage,
    build_reverse_adjacency,
    find_chains,
    transitive_packages,
)
from .lockfile import AssetsCache, FrameworkSlice, LockData, has_lock_data, read_lock_data
from .ordering import dependency_map, removal_order, update_order
from .projects import (
    InstalledPackage,
    installed_packages,
    parse_dotnet_list_output,
    read_direct_ids,
    read_package_references,
)

__all__ = [
    "AssetsCache",
    "FrameworkSlice",
    "InstalledPackage",
    "LockData",
    "TransitiveFramework",
    "TransitivePackage",
    "build_reverse_adjacency",
    "dependency_map",
    "find_chains",
    "has_lock_data",
    "installed_packages",
    "parse_dotnet_list_output",
    "read_direct_ids",
    "read_lock_data",
    "read_package_references",
    "removal_order",
    "transitive_packages",
    "update_order",
]
