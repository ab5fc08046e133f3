"""Bulk operation order for a set of selected packages (Kahn's algorithm)."""
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Mapping, Sequence

from .lockfile import FrameworkSlice


def dependency_map(slices: Iterable[FrameworkSlice]) -> Dict[str, List[str]]:
    """Union of dependency edges across every framework slice."""
    merged: Dict[str, Dict[str, None]] = {}
    for fw in slices:
        for lower, deps in fw.dependencies.items():
            targets = merged.setdefault(lower, {})
            for dep in deps:
                if dep != lower:
                    targets[dep] = None
    return {k: list(v) for k, v in merged.items()}


def _dedupe(selected: Sequence[str]) -> List[str]:
    seen = set()
    out = []
    for pkg in selected:
        lower = pkg.lower()
        if lower not in seen:
            seen.add(lower)
            out.append(pkg)
    return out


def _kahn(selected: Sequence[str], dependencies: Mapping[str, Iterable[str]], dependents_first: bool) -> List[str]:
    packages = _dedupe(selected)
    original = {p.lower(): p for p in packages}
    in_degree = {lower: 0 for lower in original}
    successors: Dict[str, List[str]] = {lower: [] for lower in original}

    for lower in original:
        for dep in dependencies.get(lower, ()):
            dep = dep.lower()
            if dep == lower or dep not in original:
                continue
            # Edge points from whatever must run first to what waits on it
            first, then = (lower, dep) if dependents_first else (dep, lower)
            if then in successors[first]:
                continue
            successors[first].append(then)
            in_degree[then] += 1

    queue = deque(lower for lower, degree in in_degree.items() if degree == 0)
    ordered: List[str] = []
    while queue:
        current = queue.popleft()
        ordered.append(current)
        for nxt in successors[current]:
            in_degree[nxt] -= 1
            if in_degree[nxt] == 0:
                queue.append(nxt)

    # Cycles leave nodes unsorted; they keep their input order
    emitted = set(ordered)
    ordered.extend(lower for lower in original if lower not in emitted)
    return [original[lower] for lower in ordered]


def removal_order(selected: Sequence[str], dependencies: Mapping[str, Iterable[str]]) -> List[str]:
    """Order for removing packages: if A depends on B, A is removed first.

    Args:
        selected: Package ids chosen by the user, in display order
        dependencies: Lowercased id -> lowercased dependency ids

    Returns:
        Every selected id exactly once, in the original casing
    """
    return _kahn(selected, dependencies, dependents_first=True)


def update_order(selected: Sequence[str], dependencies: Mapping[str, Iterable[str]]) -> List[str]:
    """Order for updating packages: if A depends on B, B is updated first."""
    return _kahn(selected, dependencies, dependents_first=False)
