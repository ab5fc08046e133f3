"""Transitive requirement chains over one framework slice."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from constants import Constants

from .lockfile import FrameworkSlice, LockData

CHAIN_SEPARATOR = " → "
_TFM_VERSION_RE = re.compile(r"net(\d+(?:\.\d+)?)", re.IGNORECASE)


@dataclass
class TransitivePackage:
    """A package pulled in indirectly, with the direct packages that require it."""
    id: str
    version: str
    required_by: List[str] = field(default_factory=list)
    full_chain: Optional[List[str]] = None


@dataclass
class TransitiveFramework:
    """Transitive packages for one target framework."""
    target_framework: str
    packages: List[TransitivePackage] = field(default_factory=list)


def build_reverse_adjacency(fw: FrameworkSlice) -> Dict[str, List[str]]:
    """Lowercased id -> ids (original casing) of the packages that require it."""
    reverse: Dict[str, List[str]] = {}
    for lower, deps in fw.dependencies.items():
        requirer = fw.display_id(lower)
        for dep in deps:
            parents = reverse.setdefault(dep, [])
            if requirer not in parents:
                parents.append(requirer)
    return reverse


def find_chains(
    fw: FrameworkSlice,
    package_id: str,
    reverse: Optional[Dict[str, List[str]]] = None,
) -> List[str]:
    """Requirement chains from direct packages down to ``package_id``.

    A direct requirer is its own chain. A transitive requirer is expanded
    upward and prefixed, giving entries such as ``"Root → Parent"``. The
    visited set is shared across the whole walk, so a requirer reached twice
    contributes only along the first path.
    """
    if reverse is None:
        reverse = build_reverse_adjacency(fw)
    visited: Set[str] = set()

    def walk(lower_id: str) -> List[str]:
        chain: List[str] = []
        for parent in reverse.get(lower_id, []):
            parent_lower = parent.lower()
            if parent_lower in visited:
                continue
            if parent_lower in fw.direct:
                chain.append(parent)
            else:
                visited.add(parent_lower)
                chain.extend(f"{root}{CHAIN_SEPARATOR}{parent}" for root in walk(parent_lower))
        return chain

    return walk(package_id.lower())


def framework_sort_key(tfm: str) -> float:
    """Numeric version of a ``netX.Y`` moniker; unknown forms sort as 0."""
    match = _TFM_VERSION_RE.search(tfm)
    return float(match.group(1)) if match else 0.0


def transitive_packages(
    lock: Optional[LockData],
    display_limit: int = Constants.TRANSITIVE_CHAIN_DISPLAY,
) -> List[TransitiveFramework]:
    """Transitive packages per target framework, newest framework first."""
    if lock is None:
        return []
    frameworks: List[TransitiveFramework] = []
    for fw in sorted(lock.slices, key=lambda s: framework_sort_key(s.target_framework), reverse=True):
        reverse = build_reverse_adjacency(fw)
        section = TransitiveFramework(target_framework=fw.target_framework)
        for lower, version in fw.versions.items():
            if lower in fw.direct:
                continue
            chain = find_chains(fw, lower, reverse)
            section.packages.append(
                TransitivePackage(
                    id=fw.display_id(lower),
                    version=version,
                    required_by=chain[:display_limit],
                    full_chain=chain if len(chain) > display_limit else None,
                )
            )
        section.packages.sort(key=lambda p: p.id.lower())
        frameworks.append(section)
    return frameworks
