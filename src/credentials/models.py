"""Credential data types and nuget.config name matching."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional


class CredentialErrorKind(Enum):
    """Why no credentials could be produced for a source."""
    NOT_FOUND = "not-found"
    DECRYPT_FAILED = "decrypt-failed"
    PROVIDER_NOT_INSTALLED = "provider-not-installed"
    NEEDS_INTERACTIVE = "needs-interactive"
    UNKNOWN = "unknown"


class Provenance(Enum):
    """Which step of the chain produced the credentials."""
    NUGET_CONFIG = "nuget.config"
    CREDENTIAL_PROVIDER = "credential-provider"
    ENVIRONMENT_ENDPOINTS = "environment-endpoints"
    ENVIRONMENT_TOKEN = "environment-token"


@dataclass(frozen=True)
class SourceCredentials:
    """Username/password pair; the password never appears in repr()."""
    username: str
    password: str = field(repr=False)
    provenance: Provenance = Provenance.NUGET_CONFIG


@dataclass(frozen=True)
class CredentialError:
    """Typed failure with a user-facing message."""
    kind: CredentialErrorKind
    message: str
    suggested_action: Optional[str] = None


@dataclass(frozen=True)
class CredentialResult:
    """Outcome of one lookup: credentials, or an error explaining why not."""
    credentials: Optional[SourceCredentials] = None
    error: Optional[CredentialError] = None

    @property
    def ok(self) -> bool:
        """True when credentials were found."""
        return self.credentials is not None

    @classmethod
    def found(cls, username: str, password: str, provenance: Provenance) -> "CredentialResult":
        """Build a successful result."""
        return cls(credentials=SourceCredentials(username, password, provenance))

    @classmethod
    def failed(
        cls,
        kind: CredentialErrorKind,
        message: str,
        suggested_action: Optional[str] = None,
    ) -> "CredentialResult":
        """Build a failed result."""
        return cls(error=CredentialError(kind, message, suggested_action))


@dataclass(frozen=True)
class StaticCredential:
    """A ``packageSourceCredentials`` entry as read from nuget.config."""
    username: Optional[str]
    password: str = field(repr=False)
    is_encrypted: bool = False


def find_static_credential(
    table: Mapping[str, StaticCredential], source_name: str
) -> Optional[StaticCredential]:
    """Look up credentials by source name, tolerating element-name encodings.

    XML element names cannot contain spaces, so nuget.config writes them as
    ``_x0020_`` (or, by hand, ``_``). Tries exact, both encodings, then a
    case-insensitive comparison of the decoded names.
    """
    if not source_name:
        return None
    if source_name in table:
        return table[source_name]
    encoded = source_name.replace(" ", "_x0020_")
    if encoded in table:
        return table[encoded]
    underscored = source_name.replace(" ", "_")
    if underscored in table:
        return table[underscored]

    lower = source_name.lower()
    decoded_wanted = lower.replace("_x0020_", " ")
    loose_wanted = lower.replace("_", " ")
    for name, cred in table.items():
        lower_name = name.lower()
        if lower_name.replace("_x0020_", " ") == decoded_wanted:
            return cred
        if lower_name.replace("_", " ") == loose_wanted:
            return cred
    return None
