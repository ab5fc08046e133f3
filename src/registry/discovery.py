"""V3 service-index discovery with success and negative caching."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from caching.lru import LRUCache
from caching.negative import CooldownCache
from common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from common.notify import Notifier
from constants import Constants
from credentials.resolver import CredentialResolver

from .sources import ServiceEndpoints, Source, is_local_source
from .transport import FetchErrorKind, Transport

logger = logging.getLogger(__name__)

NOTIFY_CATEGORY = "discovery"


class DiscoveryError(Exception):
    """Service index missing, unreachable or unusable."""


def normalize_index_url(source_url: str) -> str:
    """Point a source root at its ``index.json`` service index."""
    url = source_url.strip()
    if url.endswith("index.json"):
        return url
    if url.endswith("/"):
        return url + "index.json"
    return url + "/index.json"


def is_public_source(source_url: str) -> bool:
    """Well-known public registries never get an auth header."""
    return Constants.PUBLIC_SOURCE_MARKER in source_url.lower()


def _types(resource: Dict[str, Any]) -> List[str]:
    raw = resource.get("@type")
    values = raw if isinstance(raw, list) else [raw]
    return [t for t in values if isinstance(t, str)]


def extract_endpoints(index: Any) -> ServiceEndpoints:
    """Pick the four known capabilities out of a parsed service index.

    Raises:
        DiscoveryError: when the document has no usable ``resources`` list.
    """
    if not isinstance(index, dict):
        raise DiscoveryError("Empty response from service index.")
    resources = index.get("resources")
    if not isinstance(resources, list):
        raise DiscoveryError("Invalid NuGet V3 service index. Missing resources array.")
    if not resources:
        raise DiscoveryError("NuGet V3 service index has no resources. The feed may be misconfigured.")

    found: Dict[str, Optional[str]] = {
        "package_base_address": None,
        "registrations_base_url": None,
        "search_query_service": None,
        "search_autocomplete_service": None,
    }
    for resource in resources:
        if not isinstance(resource, dict) or not isinstance(resource.get("@id"), str):
            continue
        types = _types(resource)
        endpoint = resource["@id"]
        # Later entries override earlier ones, as NuGet clients do
        if any("PackageBaseAddress" in t for t in types):
            found["package_base_address"] = endpoint
        if any("RegistrationsBaseUrl" in t and "gz" not in t for t in types):
            found["registrations_base_url"] = endpoint
        if any("SearchQueryService" in t for t in types):
            found["search_query_service"] = endpoint
        if any("SearchAutocompleteService" in t for t in types):
            found["search_autocomplete_service"] = endpoint
    return ServiceEndpoints(**found)


class EndpointDiscovery:
    """Resolves a source root into its capability endpoints.

    Successful discoveries are cached per lowercased source URL. Failures are
    never cached as data; instead the source enters a cooldown so a batch of
    lookups does not pay a connection timeout per package, and the user is
    warned once per source per session.
    """

    def __init__(
        self,
        transport: Transport,
        credentials: Optional[CredentialResolver] = None,
        notifier: Optional[Notifier] = None,
        cache: Optional[LRUCache] = None,
        cooldown: Optional[CooldownCache] = None,
        timeout: float = Constants.DISCOVERY_TIMEOUT,
    ):
        self._transport = transport
        self._credentials = credentials
        self._notifier = notifier or Notifier()
        self._cache: LRUCache = cache or LRUCache(Constants.LRU_SERVICE_INDEX)
        self._cooldown = cooldown or CooldownCache(Constants.SOURCE_COOLDOWN_SEC)
        self._timeout = timeout
        self.failed_sources: Dict[str, str] = {}
        self._inflight: Dict[str, "asyncio.Task[ServiceEndpoints]"] = {}

    def cached(self, source_url: str) -> Optional[ServiceEndpoints]:
        """Cached endpoints for a source, if discovery already succeeded."""
        return self._cache.get(source_url.lower())

    def in_cooldown(self, source_url: str) -> bool:
        """True while a recent failure suppresses new attempts."""
        return self._cooldown.in_cooldown(source_url)

    async def discover(self, source_url: str, source_name: Optional[str] = None) -> ServiceEndpoints:
        """Return endpoints for a source; empty on failure, never raises."""
        if is_local_source(source_url):
            return ServiceEndpoints()
        key = source_url.lower()
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        if self._cooldown.in_cooldown(key):
            return ServiceEndpoints()

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._discover(source_url, source_name))
            self._inflight[key] = task
            try:
                return await task
            finally:
                self._inflight.pop(key, None)
        return await task

    async def _discover(self, source_url: str, source_name: Optional[str]) -> ServiceEndpoints:
        key = source_url.lower()
        index_url = normalize_index_url(source_url)
        auth_header = None
        if self._credentials is not None and not is_public_source(source_url):
            auth_header = await self._credentials.get_auth_header(source_url, source_name)

        with Timer() as t:
            result = await self._transport.fetch_json(index_url, auth_header, self._timeout)
        try:
            error = result.error
            if error is not None:
                message = error.message
                if error.kind == FetchErrorKind.NOT_FOUND:
                    message = "Service index not found. This may not be a valid NuGet V3 feed."
                elif error.kind == FetchErrorKind.PARSE:
                    message = "Invalid response. This does not appear to be a valid NuGet V3 feed."
                raise DiscoveryError(message)
            endpoints = extract_endpoints(result.data)
            if endpoints.is_empty():
                raise DiscoveryError("Service index advertises no supported resources.")
        except DiscoveryError as exc:
            self._record_failure(source_url, source_name, str(exc))
            return ServiceEndpoints()

        self._cache.set(key, endpoints)
        self._cooldown.clear(key)
        self.failed_sources.pop(key, None)
        if is_debug_enabled(logger):
            logger.debug(
                "Discovered service endpoints",
                extra=extra_context(
                    event="discovery",
                    component="discovery",
                    action="discover",
                    target=safe_url(source_url),
                    outcome="success",
                    duration_ms=t.duration_ms(),
                ),
            )
        return endpoints

    def _record_failure(self, source_url: str, source_name: Optional[str], message: str) -> None:
        key = source_url.lower()
        logger.info("Failed to discover service endpoints for %s: %s", safe_url(source_url), message)
        self._cooldown.mark_failed(key)
        self.failed_sources[key] = message
        label = source_name or safe_url(source_url)
        self._notifier.warn_once(
            NOTIFY_CATEGORY, key, f"Unable to connect to NuGet source {label}: {message}"
        )

    def clear_failures(self) -> None:
        """Forget failures so a fixed configuration is retried immediately."""
        self._cooldown.clear()
        self.failed_sources.clear()
        self._notifier.reset(NOTIFY_CATEGORY)

    def clear(self) -> None:
        """Drop cached endpoints and failure state."""
        self._cache.clear()
        self.clear_failures()

    async def prewarm(self, sources: Iterable[Source]) -> None:
        """Discover every enabled remote source concurrently."""
        targets = [s for s in sources if s.enabled and s.is_remote]
        await asyncio.gather(*(self.discover(s.url, s.name) for s in targets))
