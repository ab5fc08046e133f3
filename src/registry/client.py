"""Per-source registry queries over the V3 sub-services.

Each call discovers the source's endpoints (cached), obtains an auth header
when the source is private, and degrades to an empty result when the source
lacks the needed capability or the request fails.
"""

from __future__ import annotations

import logging
import urllib.parse
from typing import Any, Dict, List, Optional, Tuple

from common.logging_utils import extra_context, is_debug_enabled, safe_url
from constants import Constants
from credentials.resolver import CredentialResolver
from versioning.parser import is_prerelease, sort_newest_first

from .adapters import (
    PackageMetadata,
    SearchResult,
    decode_registration_entry,
    decode_search_item,
    decode_search_response,
    first_field,
    metadata_from_nuspec,
    metadata_from_search,
)
from .discovery import EndpointDiscovery, is_public_source
from .sources import ServiceEndpoints, Source
from .transport import Transport

logger = logging.getLogger(__name__)


def _flag(value: bool) -> str:
    return "true" if value else "false"


def _with_query(base: str, params: Dict[str, str]) -> str:
    sep = "&" if "?" in base else "?"
    return f"{base}{sep}{urllib.parse.urlencode(params)}"


def _base(url: Optional[str]) -> Optional[str]:
    return url.rstrip("/") if url else None


class RegistryClient:
    """Registry operations against a single source at a time."""

    def __init__(
        self,
        transport: Transport,
        discovery: EndpointDiscovery,
        credentials: Optional[CredentialResolver] = None,
    ):
        self._transport = transport
        self._discovery = discovery
        self._credentials = credentials

    async def auth_header(self, source: Source) -> Optional[str]:
        """Auth header for a private source; None for public registries."""
        if self._credentials is None or is_public_source(source.url):
            return None
        return await self._credentials.get_auth_header(source.url, source.name)

    async def _context(self, source: Source) -> Tuple[ServiceEndpoints, Optional[str]]:
        if not source.is_remote:
            return ServiceEndpoints(), None
        endpoints = await self._discovery.discover(source.url, source.name)
        if endpoints.is_empty():
            return endpoints, None
        return endpoints, await self.auth_header(source)

    async def versions(
        self,
        source: Source,
        package_id: str,
        prerelease: bool = False,
        take: int = Constants.DEFAULT_VERSIONS_TAKE,
    ) -> List[str]:
        """Versions of a package on one source, newest first.

        Reads the flat container index, falling back to the search service for
        feeds (Nexus, ProGet) whose flat container is incomplete.
        """
        endpoints, auth = await self._context(source)
        flat = _base(endpoints.package_base_address)
        if not flat:
            return []

        versions: Optional[List[str]] = None
        payload = await self._transport.get_json(f"{flat}/{package_id.lower()}/index.json", auth)
        raw = first_field(payload, "versions")
        if isinstance(raw, list):
            versions = [str(v) for v in raw]

        if versions is None and endpoints.search_query_service:
            match = await self._find_by_id(
                endpoints.search_query_service, package_id, prerelease, auth
            )
            if match is not None and match.versions:
                versions = match.versions

        if not versions:
            return []
        if not prerelease:
            versions = [v for v in versions if not is_prerelease(v)]
        return sort_newest_first(versions)[:take]

    async def _find_by_id(
        self,
        search_url: str,
        package_id: str,
        prerelease: bool,
        auth: Optional[str],
        source_url: Optional[str] = None,
    ) -> Optional[SearchResult]:
        """``packageid:`` search; only an exact (case-insensitive) id counts."""
        url = _with_query(
            search_url,
            {"q": f"packageid:{package_id}", "take": "1", "prerelease": _flag(prerelease)},
        )
        payload = await self._transport.get_json(url, auth)
        for item in decode_search_response(payload):
            result = decode_search_item(item, source_url)
            if result is not None and result.id.lower() == package_id.lower():
                return result
        return None

    async def find_package(self, source: Source, package_id: str) -> Optional[SearchResult]:
        """Search-service record for one package id, prereleases included."""
        endpoints, auth = await self._context(source)
        if not endpoints.search_query_service:
            return None
        return await self._find_by_id(
            endpoints.search_query_service, package_id, True, auth, source.url
        )

    async def search(
        self,
        source: Source,
        query: str,
        prerelease: bool = False,
        skip: int = 0,
        take: int = Constants.DEFAULT_SEARCH_TAKE,
    ) -> List[SearchResult]:
        """Full search on one source."""
        endpoints, auth = await self._context(source)
        if not endpoints.search_query_service:
            return []
        url = _with_query(
            endpoints.search_query_service,
            {
                "q": query,
                "skip": str(skip),
                "take": str(take),
                "prerelease": _flag(prerelease),
                "semVerLevel": "2.0.0",
            },
        )
        payload = await self._transport.get_json(url, auth)
        results = []
        for item in decode_search_response(payload):
            decoded = decode_search_item(item, source.url)
            if decoded is not None:
                results.append(decoded)
        if is_debug_enabled(logger):
            logger.debug(
                "Search completed",
                extra=extra_context(
                    event="search", component="registry_client", action="search",
                    target=safe_url(source.url), count=len(results),
                ),
            )
        return results

    async def autocomplete(
        self,
        source: Source,
        query: str,
        take: int = Constants.DEFAULT_AUTOCOMPLETE_TAKE,
        prerelease: bool = False,
    ) -> List[str]:
        """Package-id completions from the autocomplete service."""
        endpoints, auth = await self._context(source)
        if not endpoints.search_autocomplete_service:
            return []
        params = {"q": query, "take": str(take), "semVerLevel": "2.0.0"}
        if prerelease:
            params["prerelease"] = "true"
        payload = await self._transport.get_json(
            _with_query(endpoints.search_autocomplete_service, params), auth
        )
        data = first_field(payload, "data", "Data", default=[])
        return [str(pid) for pid in data if isinstance(pid, str)] if isinstance(data, list) else []

    async def metadata(self, source: Source, package_id: str, version: str) -> Optional[PackageMetadata]:
        """Details for one package version.

        Order: registration leaf, registration index (with paged items),
        nuspec from the flat container, then the search service.
        """
        endpoints, auth = await self._context(source)
        registrations = _base(endpoints.registrations_base_url)
        flat = _base(endpoints.package_base_address)
        search = endpoints.search_query_service
        if not registrations and not search:
            return None

        lower_id = package_id.lower()
        lower_version = version.lower()
        registration: Optional[Dict[str, Any]] = None
        if registrations:
            leaf = await self._transport.get_json(f"{registrations}/{lower_id}/{lower_version}.json", auth)
            if isinstance(leaf, dict):
                registration = leaf
            else:
                registration = await self._registration_from_index(
                    f"{registrations}/{lower_id}/index.json", lower_version, auth
                )

        if registration is None:
            if flat:
                nuspec = await self._transport.fetch_text(
                    f"{flat}/{lower_id}/{lower_version}/{lower_id}.nuspec", auth
                )
                parsed = metadata_from_nuspec(nuspec, package_id, version) if nuspec else None
                if parsed is not None:
                    return parsed
            if search:
                hit = await self._find_by_id(search, package_id, True, auth, source.url)
                return metadata_from_search(hit, version) if hit else None
            return None

        catalog = registration
        catalog_ref = registration.get("catalogEntry")
        if isinstance(catalog_ref, str):
            fetched = await self._transport.get_json(catalog_ref, auth)
            if isinstance(fetched, dict):
                catalog = fetched
        elif isinstance(catalog_ref, dict):
            catalog = catalog_ref

        result = decode_registration_entry(catalog, registration, package_id, version)
        if not result.description and search:
            hit = await self._find_by_id(search, package_id, True, auth, source.url)
            if hit is not None:
                merged = metadata_from_search(hit, version)
                merged.dependencies = result.dependencies or merged.dependencies
                return merged

        if flat:
            result.readme = await self.readme(flat, package_id, version, auth)
        return result

    async def _registration_from_index(
        self, index_url: str, lower_version: str, auth: Optional[str]
    ) -> Optional[Dict[str, Any]]:
        """Find a version inside a registration index, fetching pages as needed."""
        index = await self._transport.get_json(index_url, auth)
        pages = first_field(index, "items", default=[])
        if not isinstance(pages, list):
            return None
        for page in pages:
            if not isinstance(page, dict):
                continue
            items = page.get("items")
            if not items and isinstance(page.get("@id"), str):
                fetched = await self._transport.get_json(page["@id"], auth)
                items = first_field(fetched, "items", default=[])
            for item in items or []:
                if not isinstance(item, dict):
                    continue
                entry = item.get("catalogEntry")
                entry = entry if isinstance(entry, dict) else item
                item_version = first_field(entry, "version") or first_field(item, "version")
                if isinstance(item_version, str) and item_version.lower() == lower_version:
                    return entry
        return None

    async def readme(
        self, flat_base: str, package_id: str, version: str, auth: Optional[str] = None
    ) -> Optional[str]:
        """Embedded readme from the flat container, if the package ships one."""
        return await self._transport.fetch_text(
            f"{flat_base.rstrip('/')}/{package_id.lower()}/{version.lower()}/readme", auth
        )

    async def package_readme(self, source: Source, package_id: str, version: str) -> Optional[str]:
        """Readme of a package version on one source."""
        endpoints, auth = await self._context(source)
        flat = _base(endpoints.package_base_address)
        if not flat:
            return None
        return await self.readme(flat, package_id, version, auth)

    @staticmethod
    def icon_url(flat_base: str, package_id: str, version: str) -> str:
        """Flat-container URL of an embedded icon."""
        return f"{flat_base.rstrip('/')}/{package_id.lower()}/{version.lower()}/icon"

    async def icon_exists(self, source: Source, package_id: str, version: str) -> Optional[str]:
        """Icon URL when the package version embeds one, else None."""
        endpoints, auth = await self._context(source)
        flat = _base(endpoints.package_base_address)
        if not flat:
            return None
        url = self.icon_url(flat, package_id, version)
        return url if await self._transport.exists(url, auth) else None
