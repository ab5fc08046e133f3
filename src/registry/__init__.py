"""NuGet V3 registry access: transport, discovery, config and queries."""

from .adapters import DependencyGroup, PackageDependency, PackageMetadata, SearchResult
from .client import RegistryClient
from .config_reader import ConfigSnapshot, load_config, load_sources, parse_dotnet_source_list
from .discovery import EndpointDiscovery, extract_endpoints, normalize_index_url
from .sessions import MultiplexedSessionPool
from .sources import ServiceEndpoints, Source, is_local_source
from .transport import FetchError, FetchErrorKind, FetchResult, Transport

__all__ = [
    "ConfigSnapshot",
    "DependencyGroup",
    "EndpointDiscovery",
    "FetchError",
    "FetchErrorKind",
    "FetchResult",
    "MultiplexedSessionPool",
    "PackageDependency",
    "PackageMetadata",
    "RegistryClient",
    "SearchResult",
    "ServiceEndpoints",
    "Source",
    "Transport",
    "extract_endpoints",
    "is_local_source",
    "load_config",
    "load_sources",
    "normalize_index_url",
    "parse_dotnet_source_list",
]
