"""Exception types raised at the library boundary.

Registry and network failures are not exceptions: they are reported through
``FetchResult`` / ``CredentialResult`` values. These types cover caller
mistakes and local environment problems only.
"""


class NuigetError(Exception):
    """Base class for all errors raised by this package."""


class ValidationError(NuigetError, ValueError):
    """Input (package id, version, source name or URL) failed validation."""

    def __init__(self, field: str, value: str, reason: str = "contains invalid characters"):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} {value!r}: {reason}")


class ConfigError(NuigetError):
    """A configuration file could not be read or parsed."""


class ExecutorError(NuigetError):
    """The package-manager executable could not be started."""
