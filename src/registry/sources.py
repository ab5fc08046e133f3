"""Configured package sources and their discovered capabilities."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class Source:
    """A configured registry. Identity is the URL, compared case-insensitively."""
    name: str
    url: str
    enabled: bool = True
    origin_config_file: Optional[str] = None

    @property
    def key(self) -> str:
        """Normalized identity used for caches and de-duplication."""
        return self.url.strip().lower()

    @property
    def is_remote(self) -> bool:
        """True for http(s) feeds; local folders have no API endpoints."""
        return not is_local_source(self.url)


@dataclass(frozen=True)
class ServiceEndpoints:
    """Sub-service URLs advertised by a V3 service index; any may be absent."""
    package_base_address: Optional[str] = None
    registrations_base_url: Optional[str] = None
    search_query_service: Optional[str] = None
    search_autocomplete_service: Optional[str] = None

    def is_empty(self) -> bool:
        """True when the index advertised none of the known capabilities."""
        return not any(
            (
                self.package_base_address,
                self.registrations_base_url,
                self.search_query_service,
                self.search_autocomplete_service,
            )
        )


def is_local_source(url: str) -> bool:
    """Anything that is not an http(s) URL is a local folder feed."""
    lower = url.strip().lower()
    return not (lower.startswith("http://") or lower.startswith("https://"))
