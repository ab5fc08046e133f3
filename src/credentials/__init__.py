"""Credential acquisition for authenticated package sources."""

from .models import (
    CredentialError,
    CredentialErrorKind,
    CredentialResult,
    Provenance,
    SourceCredentials,
    StaticCredential,
    find_static_credential,
)
from .provider import CredentialProvider
from .resolver import CredentialResolver, basic_auth_header

__all__ = [
    "CredentialError",
    "CredentialErrorKind",
    "CredentialProvider",
    "CredentialResolver",
    "CredentialResult",
    "Provenance",
    "SourceCredentials",
    "StaticCredential",
    "basic_auth_header",
    "find_static_credential",
]
