"""Package source service: fan-out queries over every configured source.

The service is constructed once per session with its collaborators injected
(transport-backed client, discovery, credentials, persisted store) and owns
the in-memory caches. Registry failures never raise out of it; callers get
empty results and the user is told once per source.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from caching.keys import (
    TTL,
    autocomplete_key,
    icon_key,
    metadata_key,
    readme_key,
    search_key,
    verified_key,
    versions_key,
)
from caching.lru import LRUCache
from caching.tiered import TieredCache
from caching.workspace import WorkspaceCache
from common.logging_utils import Timer, extra_context, is_debug_enabled
from constants import Constants
from credentials.resolver import CredentialResolver
from depgraph.graph import TransitiveFramework, transitive_packages
from depgraph.lockfile import AssetsCache, has_lock_data, read_lock_data
from depgraph.projects import (
    UNKNOWN_VERSION,
    InstalledPackage,
    installed_packages,
    parse_dotnet_list_output,
    read_direct_ids,
)
from registry.adapters import PackageMetadata, SearchResult
from registry.client import RegistryClient
from registry.discovery import EndpointDiscovery, is_public_source
from registry.sources import Source
from versioning.models import VersionKind
from versioning.parser import is_newer
from versioning.resolver import resolve_best

from .racing import QuerySession, bounded_gather, race_first

logger = logging.getLogger(__name__)

NUGET_ORG = Source(name="nuget.org", url=Constants.NUGET_ORG_INDEX)
MIN_QUERY_LENGTH = 2
_NOT_UPDATABLE = (VersionKind.FLOATING, VersionKind.RANGE, VersionKind.EXACT)
_RESOLVABLE = (VersionKind.FLOATING, VersionKind.RANGE)


@dataclass
class VerifiedInfo:
    """Publisher verification and display metadata for a package id."""
    verified: bool = False
    authors: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerifiedInfo":
        return cls(
            verified=bool(data.get("verified")),
            authors=data.get("authors"),
            description=data.get("description"),
        )


@dataclass
class SourceGroup:
    """Quick-search hits from one source."""
    source_name: str
    source_url: str
    package_ids: List[str] = field(default_factory=list)


@dataclass
class PackageUpdate:
    """An installed package with a newer version available."""
    id: str
    installed_version: str
    latest_version: str
    icon_url: Optional[str] = None
    verified: Optional[bool] = None
    authors: Optional[str] = None


@dataclass
class TransitiveResult:
    """Transitive packages per framework, and whether lock data existed at all."""
    frameworks: List[TransitiveFramework] = field(default_factory=list)
    data_source_available: bool = False


def _is_concrete(version: Optional[str]) -> bool:
    return bool(version) and version != UNKNOWN_VERSION and not any(c in version for c in "*[(")


def _rank_suggestions(ids: Sequence[str], query: str, take: int) -> List[str]:
    """De-duplicate case-insensitively; prefix matches first, then alphabetical."""
    seen = set()
    unique = []
    for pid in ids:
        lower = pid.lower()
        if lower not in seen:
            seen.add(lower)
            unique.append(pid)
    needle = query.lower()
    unique.sort(key=lambda pid: (not pid.lower().startswith(needle), pid.lower()))
    return unique[:take]


class PackageSourceService:
    """Facade over the registry client for every configured source."""

    def __init__(
        self,
        client: RegistryClient,
        discovery: EndpointDiscovery,
        sources: Sequence[Source] = (),
        credentials: Optional[CredentialResolver] = None,
        store: Optional[WorkspaceCache] = None,
        executor: Any = None,
        assets_cache: Optional[AssetsCache] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._discovery = discovery
        self._sources: List[Source] = list(sources)
        self._credentials = credentials
        self._store = store
        self._executor = executor
        self._assets_cache = assets_cache or AssetsCache()
        self._clock = clock

        self._versions = TieredCache(LRUCache(Constants.LRU_VERSIONS), store)
        self._search = TieredCache(
            LRUCache(Constants.LRU_SEARCH),
            store,
            encode=lambda results: [r.to_dict() for r in results],
            decode=lambda raw: [SearchResult.from_dict(r) for r in raw],
        )
        self._verified = TieredCache(
            LRUCache(Constants.LRU_VERIFIED),
            store,
            encode=asdict,
            decode=VerifiedInfo.from_dict,
        )
        self._icons = TieredCache(LRUCache(Constants.LRU_ICON), store)
        self._readmes = TieredCache(LRUCache(Constants.LRU_METADATA), store)
        self._metadata = LRUCache(Constants.LRU_METADATA)
        self._autocomplete = LRUCache(Constants.LRU_AUTOCOMPLETE)
        self._live_search = QuerySession()
        self._live_autocomplete = QuerySession()

    # Sources

    def get_sources(self) -> List[Source]:
        """Configured sources, enabled or not."""
        return list(self._sources)

    def set_sources(self, sources: Sequence[Source]) -> None:
        """Replace the configured sources (after a config reload)."""
        self._sources = list(sources)

    def enabled_sources(self) -> List[Source]:
        return [s for s in self._sources if s.enabled]

    @property
    def failed_sources(self) -> Dict[str, str]:
        """Source URL -> message for sources whose discovery failed."""
        return dict(self._discovery.failed_sources)

    def _targets(self, source: Optional[str]) -> List[Source]:
        """Sources addressed by a name or URL; None or "all" means every enabled one."""
        if not source or source == "all":
            return self.enabled_sources()
        wanted = source.strip().lower()
        for candidate in self._sources:
            if candidate.key == wanted or candidate.name.lower() == wanted:
                return [candidate]
        return [Source(name=source, url=source)]

    async def prewarm(self) -> None:
        """Discover endpoints and credentials for every enabled source up front."""
        enabled = [s for s in self.enabled_sources() if s.is_remote]
        if self._credentials is not None:
            await self._credentials.prewarm(
                {s.url: s.name for s in enabled if not is_public_source(s.url)}
            )
        await self._discovery.prewarm(enabled)

    # Versions

    async def _versions_from(self, source: Source, package_id: str, prerelease: bool, take: int) -> List[str]:
        if not source.is_remote:
            return []
        key = versions_key(package_id, source.key, prerelease, take)
        return await self._versions.get_or_fetch(
            key,
            lambda: self._client.versions(source, package_id, prerelease, take),
            TTL.VERSIONS,
        )

    async def get_versions(
        self,
        package_id: str,
        source: Optional[str] = None,
        prerelease: bool = False,
        take: int = Constants.DEFAULT_VERSIONS_TAKE,
    ) -> List[str]:
        """Versions of a package, newest first.

        With no explicit source every enabled source is queried and the first
        non-empty answer wins; slower sources are not awaited.
        """
        targets = self._targets(source)
        if len(targets) == 1:
            try:
                return await self._versions_from(targets[0], package_id, prerelease, take)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                logger.debug("Version lookup failed for %s: %s", package_id, exc)
                return []
        with Timer() as t:
            result = await race_first(
                [lambda s=s: self._versions_from(s, package_id, prerelease, take) for s in targets],
                default=[],
            )
        if is_debug_enabled(logger):
            logger.debug(
                "Version race finished",
                extra=extra_context(
                    event="versions",
                    component="service",
                    action="race",
                    target=package_id,
                    count=len(result or []),
                    duration_ms=t.duration_ms(),
                ),
            )
        return result or []

    # Search

    async def search(
        self,
        query: str,
        sources: Optional[Sequence[str]] = None,
        prerelease: bool = False,
        skip: int = 0,
        take: int = Constants.DEFAULT_SEARCH_TAKE,
    ) -> List[SearchResult]:
        """Search every selected source; results are merged by id, first source wins."""
        targets: List[Source] = []
        for name in sources or [None]:
            for candidate in self._targets(name):
                if candidate.is_remote and candidate not in targets:
                    targets.append(candidate)
        if not targets:
            targets = [NUGET_ORG]

        key = search_key(query, [s.key for s in targets], prerelease, skip, take)

        async def fetch() -> List[SearchResult]:
            batches = await asyncio.gather(
                *(self._client.search(s, query, prerelease, skip, take) for s in targets),
                return_exceptions=True,
            )
            merged: Dict[str, SearchResult] = {}
            for batch in batches:
                if isinstance(batch, BaseException):
                    logger.debug("Search failed on one source: %s", batch)
                    continue
                for item in batch:
                    merged.setdefault(item.id.lower(), item)
            results = list(merged.values())
            await self._decorate(results)
            return results

        return await self._search.get_or_fetch(key, fetch, TTL.SEARCH_RESULTS)

    async def _decorate(self, results: List[SearchResult]) -> None:
        """Embedded icons and verified flags for results that lack them."""

        async def one(item: SearchResult) -> None:
            if not item.icon_url and _is_concrete(item.version):
                item.icon_url = await self.icon_url(item.id, item.version)
            if item.source and not is_public_source(item.source):
                info = await self.verified_info(item.id)
                if info is not None:
                    item.verified = info.verified
                    item.authors = item.authors or (info.authors or "")

        await bounded_gather(results, one, Constants.ICON_CONCURRENCY)

    async def autocomplete(
        self,
        query: str,
        take: int = Constants.DEFAULT_AUTOCOMPLETE_TAKE,
        prerelease: bool = False,
        sources: Optional[Sequence[str]] = None,
    ) -> List[str]:
        """Typeahead package ids.

        One explicit remote source is queried directly; any other selection
        goes to nuget.org only, for speed.
        """
        text = (query or "").strip()
        if len(text) < MIN_QUERY_LENGTH:
            return []
        remote = [s for name in (sources or []) for s in self._targets(name) if s.is_remote]
        target = remote[0] if len(remote) == 1 else NUGET_ORG

        key = autocomplete_key(text, target.url, prerelease, take)
        cached = self._autocomplete.get(key)
        now = self._clock()
        if cached is not None and now - cached[0] < TTL.AUTOCOMPLETE:
            return list(cached[1])

        try:
            ids = await self._client.autocomplete(target, text, take, prerelease)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.debug("Autocomplete failed: %s", exc)
            ids = []
        ranked = _rank_suggestions(ids, text, take)
        self._autocomplete.set(key, (now, ranked))
        return ranked

    async def quick_search_grouped(
        self,
        query: str,
        take: int = Constants.DEFAULT_AUTOCOMPLETE_TAKE,
        prerelease: bool = False,
    ) -> List[SourceGroup]:
        """Quick search grouped per source; nuget.org uses autocomplete, others search."""
        text = (query or "").strip()
        if len(text) < MIN_QUERY_LENGTH:
            return []
        remote = [s for s in self.enabled_sources() if s.is_remote] or [NUGET_ORG]
        public = [s for s in remote if is_public_source(s.url)]
        private = [s for s in remote if not is_public_source(s.url)]

        async def from_public() -> Optional[SourceGroup]:
            ids = await self._client.autocomplete(NUGET_ORG, text, take, prerelease)
            return SourceGroup(NUGET_ORG.name, NUGET_ORG.url, ids[:take])

        async def from_source(src: Source) -> Optional[SourceGroup]:
            hits = await self._client.search(src, text, prerelease, 0, take)
            return SourceGroup(src.name, src.url, [h.id for h in hits][:take])

        calls = ([from_public()] if public else []) + [from_source(s) for s in private]
        groups = await asyncio.gather(*calls, return_exceptions=True)
        return [g for g in groups if isinstance(g, SourceGroup) and g.package_ids]

    # Search-as-you-type

    async def live_search(
        self,
        query: str,
        sources: Optional[Sequence[str]] = None,
        prerelease: bool = False,
        take: int = Constants.DEFAULT_SEARCH_TAKE,
    ) -> Optional[List[SearchResult]]:
        """Search for an input that re-queries on every keystroke.

        Returns the results, or None when a newer ``live_search`` started
        while this one was in flight. Superseded results never replace
        ``latest_search``.
        """
        applied = await self._live_search.run(lambda: self.search(query, sources, prerelease, 0, take))
        return self._live_search.result if applied else None

    @property
    def latest_search(self) -> Optional[List[SearchResult]]:
        """Results of the newest ``live_search`` that completed."""
        return self._live_search.result

    async def live_autocomplete(
        self,
        query: str,
        take: int = Constants.DEFAULT_AUTOCOMPLETE_TAKE,
        prerelease: bool = False,
        sources: Optional[Sequence[str]] = None,
    ) -> Optional[List[str]]:
        """Typeahead for an input field; None when superseded by a newer query."""
        applied = await self._live_autocomplete.run(lambda: self.autocomplete(query, take, prerelease, sources))
        return self._live_autocomplete.result if applied else None

    @property
    def latest_suggestions(self) -> Optional[List[str]]:
        return self._live_autocomplete.result

    # Per-package details

    async def get_metadata(
        self, package_id: str, version: str, source: Optional[str] = None
    ) -> Optional[PackageMetadata]:
        """Version metadata; with no source, the first source (in config order) that has it."""
        key = metadata_key(package_id, version)
        cached = self._metadata.get(key)
        if cached is not None:
            return cached
        targets = [s for s in self._targets(source) if s.is_remote]
        results = await asyncio.gather(
            *(self._client.metadata(s, package_id, version) for s in targets),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, PackageMetadata):
                self._metadata.set(key, result)
                return result
        return None

    async def get_readme(self, package_id: str, version: str, source: Optional[str] = None) -> Optional[str]:
        """Embedded readme of a package version."""
        targets = [s for s in self._targets(source) if s.is_remote] or [NUGET_ORG]

        async def fetch() -> Optional[str]:
            return await race_first(
                [lambda s=s: self._client.package_readme(s, package_id, version) for s in targets],
                accept=bool,
            )

        return await self._readmes.get_or_fetch(readme_key(package_id, version), fetch, TTL.README)

    async def icon_url(self, package_id: str, version: str) -> Optional[str]:
        """Embedded icon URL on nuget.org; the answer is cached for good."""

        async def fetch() -> str:
            return await self._client.icon_exists(NUGET_ORG, package_id, version) or ""

        found = await self._icons.get_or_fetch(
            icon_key(package_id, version), fetch, TTL.ICON_EXISTS, accept=lambda v: v is not None
        )
        return found or None

    async def verified_info(self, package_id: str) -> Optional[VerifiedInfo]:
        """Verified flag and authors, from nuget.org or else the first private source that knows the id."""

        async def fetch() -> Optional[VerifiedInfo]:
            hit = await self._client.find_package(NUGET_ORG, package_id)
            if hit is not None:
                return VerifiedInfo(hit.verified, hit.authors or None, hit.description or None)
            for src in self.enabled_sources():
                if not src.is_remote or is_public_source(src.url):
                    continue
                hit = await self._client.find_package(src, package_id)
                if hit is not None:
                    return VerifiedInfo(False, hit.authors or None, hit.description or None)
            return None

        return await self._verified.get_or_fetch(verified_key(package_id), fetch, TTL.VERIFIED_STATUS)

    # Installed packages

    async def enrich_installed(
        self,
        packages: Sequence[InstalledPackage],
        concurrency: int = Constants.METADATA_CONCURRENCY,
    ) -> List[InstalledPackage]:
        """Fill icon, verified flag, authors and description in place."""

        async def one(pkg: InstalledPackage) -> None:
            version = pkg.effective_version
            if _is_concrete(version):
                pkg.icon_url = await self.icon_url(pkg.id, version)
            info = await self.verified_info(pkg.id)
            if info is not None:
                pkg.verified = info.verified
                pkg.authors = pkg.authors or info.authors
                pkg.description = pkg.description or info.description
            if pkg.icon_url or not _is_concrete(version):
                return
            for src in self.enabled_sources():
                if src.is_remote and not is_public_source(src.url):
                    pkg.icon_url = await self._client.icon_exists(src, pkg.id, version)
                    if pkg.icon_url:
                        return

        await bounded_gather(packages, one, concurrency)
        return list(packages)

    async def resolve_requirements(
        self, packages: Sequence[InstalledPackage], prerelease: bool = False
    ) -> int:
        """Fill ``resolved_version`` for floating and range requirements.

        Used when the project has no lock data; the versions the sources
        report stand in for a restore.

        Returns:
            How many packages were resolved
        """
        pending = [p for p in packages if not p.resolved_version and p.version_spec.kind in _RESOLVABLE]

        async def one(pkg: InstalledPackage) -> Optional[str]:
            versions = await self.get_versions(pkg.id, None, True, Constants.RESOLVE_VERSIONS_TAKE)
            best = resolve_best(pkg.version_spec, versions, prerelease)
            if best:
                pkg.resolved_version = best
            return best

        results = await bounded_gather(pending, one, Constants.METADATA_CONCURRENCY)
        return sum(1 for r in results if r)

    async def get_installed(self, project_path: str, enrich: bool = True) -> List[InstalledPackage]:
        """Packages of a project from its PackageReferences, else from ``dotnet list package``.

        Without lock data, floating and range requirements are resolved
        against the configured sources.
        """
        lock = read_lock_data(project_path, self._assets_cache)
        packages = installed_packages(project_path, lock)
        if not packages and self._executor is not None:
            listing = await self._executor.list_packages(project_path)
            if not listing.failed:
                packages = parse_dotnet_list_output(listing.stdout, read_direct_ids(project_path))
        if lock is None and packages:
            await self.resolve_requirements(packages)
        if enrich and packages:
            await self.enrich_installed(packages)
        return packages

    async def check_updates(
        self, packages: Sequence[InstalledPackage], prerelease: bool = False
    ) -> List[PackageUpdate]:
        """Installed packages with a newer version on any enabled source.

        Floating, range and exact requirements are never offered updates.
        """

        async def one(pkg: InstalledPackage) -> Optional[PackageUpdate]:
            if pkg.version_spec.kind in _NOT_UPDATABLE:
                return None
            current = pkg.effective_version
            if not _is_concrete(current):
                return None
            versions = await self.get_versions(pkg.id, None, prerelease, 1)
            if not versions or not is_newer(versions[0], current):
                return None
            latest = versions[0]
            info = await self.verified_info(pkg.id)
            return PackageUpdate(
                id=pkg.id,
                installed_version=current,
                latest_version=latest,
                icon_url=await self.icon_url(pkg.id, latest),
                verified=info.verified if info else None,
                authors=info.authors if info else None,
            )

        results = await bounded_gather(packages, one, Constants.METADATA_CONCURRENCY)
        return [r for r in results if r is not None]

    def get_transitive(self, project_path: str) -> TransitiveResult:
        """Transitive packages per framework from the project's lock data."""
        if not has_lock_data(project_path):
            return TransitiveResult([], False)
        lock = read_lock_data(project_path, self._assets_cache)
        return TransitiveResult(transitive_packages(lock), True)

    # Maintenance

    def clear_source_errors(self) -> None:
        """Retry failed sources immediately and allow warnings again."""
        self._discovery.clear_failures()

    def clear_caches(self, include_persisted: bool = False) -> Tuple[int, int]:
        """Drop cached data.

        Returns:
            (memory entries dropped, persisted entries dropped)
        """
        memory = 0
        for tier in (self._versions, self._search, self._verified, self._icons, self._readmes):
            memory += len(tier.lru)
            tier.clear_memory()
        for lru in (self._metadata, self._autocomplete):
            memory += len(lru)
            lru.clear()
        persisted = 0
        if include_persisted and self._store is not None:
            persisted = len(self._store)
            self._store.clear()
        self._discovery.clear()
        self._assets_cache.clear()
        if self._credentials is not None:
            self._credentials.clear_cache()
        return memory, persisted
