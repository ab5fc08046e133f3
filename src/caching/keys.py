"""Cache key builders shared by the service layer."""

from typing import Iterable

from constants import CacheTTL

TTL = CacheTTL


def versions_key(package_id: str, source: str, prerelease: bool, take: int) -> str:
    """Key for a version list of one package from one source (or 'all')."""
    return f"versions:{package_id.lower()}:{source}:{str(prerelease).lower()}:{take}"


def verified_key(package_id: str) -> str:
    """Key for the verified-publisher flag and authors of a package."""
    return f"verified:{package_id.lower()}"


def icon_key(package_id: str, version: str) -> str:
    """Key for whether a package version ships an embedded icon."""
    return f"icon:{package_id.lower()}@{version.lower()}"


def search_key(query: str, sources: Iterable[str], prerelease: bool, skip: int = 0, take: int = 20) -> str:
    """Key for merged search results; source order does not matter."""
    joined = ",".join(sorted(sources))
    return f"search:{query.lower()}:{joined}:{str(prerelease).lower()}:{skip}:{take}"


def autocomplete_key(query: str, source: str, prerelease: bool, take: int) -> str:
    """Key for autocomplete suggestions (short-lived, memory only)."""
    return f"{query.lower()}|{source}|{'pre' if prerelease else 'stable'}|{take}"


def metadata_key(package_id: str, version: str) -> str:
    """Key for version metadata (memory only)."""
    return f"{package_id.lower()}@{version.lower()}"


def readme_key(package_id: str, version: str) -> str:
    """Key for a package version readme."""
    return f"readme:{package_id.lower()}@{version.lower()}"

