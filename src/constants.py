"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    CONNECTION_ERROR = 2
    FILE_ERROR = 1
    EXIT_WARNINGS = 3


class BulkAction(Enum):
    """Bulk operations that need a dependency-aware order.

    Args:
        Enum (string): Bulk operation names accepted by the CLI.
    """

    REMOVE = "remove"
    UPDATE = "update"


class CacheTTL:  # pylint: disable=too-few-public-methods
    """Time-to-live values (seconds) for persisted cache entries.

    Zero means the entry never expires; used for facts that are immutable
    for a given package version.
    """

    VERSIONS = 180
    VERIFIED_STATUS = 300
    ICON_EXISTS = 0
    SEARCH_RESULTS = 120
    README = 0
    AUTOCOMPLETE = 30


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    LOG_FORMAT = "[%(levelname)s] %(message)s"
    LOG_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
    ENV_LOG_LEVEL = "NUIGET_LOG_LEVEL"
    ENV_CONFIG = "NUIGET_CONFIG"
    DEFAULT_CONFIG_PATHS = [
        "~/.config/nuiget/nuiget.yml",
        "~/.config/nuiget/nuiget.yaml",
    ]
    USER_AGENT = "nuiget-core/1.0"

    # Registry endpoints
    NUGET_ORG_INDEX = "https://api.nuget.org/v3/index.json"
    PUBLIC_SOURCE_MARKER = ".nuget.org"
    HTTP2_ORIGINS = ["https://api.nuget.org"]

    # Timeouts in seconds
    REQUEST_TIMEOUT = 10
    DISCOVERY_TIMEOUT = 5
    COMMAND_TIMEOUT = 60
    RESTORE_TIMEOUT = 120
    CREDENTIAL_PROVIDER_TIMEOUT = 10

    # Transport pools
    HTTP2_MAX_SESSIONS = 10
    HTTP2_IDLE_TIMEOUT_SEC = 60
    HTTP_POOL_LIMIT = 50
    HTTP_MAX_REDIRECTS = 10

    # Cache sizing
    WORKSPACE_CACHE_MAX_ENTRIES = 500
    WORKSPACE_CACHE_FILE = "nuiget-cache.json"
    SOURCE_COOLDOWN_SEC = 60
    LOCK_ASSETS_TTL_SEC = 30
    LRU_SERVICE_INDEX = 50
    LRU_METADATA = 200
    LRU_ICON = 500
    LRU_VERSIONS = 200
    LRU_VERIFIED = 300
    LRU_SEARCH = 100
    LRU_AUTOCOMPLETE = 50

    # Credential cache TTLs
    CREDENTIAL_SUCCESS_TTL_SEC = 30 * 60
    CREDENTIAL_FAILURE_TTL_SEC = 5 * 60
    DEFAULT_FEED_USERNAME = "VssSessionToken"

    # Fan-out limits
    ICON_CONCURRENCY = 6
    METADATA_CONCURRENCY = 8
    DEFAULT_VERSIONS_TAKE = 20
    RESOLVE_VERSIONS_TAKE = 200
    DEFAULT_SEARCH_TAKE = 20
    DEFAULT_AUTOCOMPLETE_TAKE = 5
    TRANSITIVE_CHAIN_DISPLAY = 5
