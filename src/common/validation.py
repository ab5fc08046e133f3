"""Input validation for anything that reaches a subprocess or a URL template."""

import re
import urllib.parse

from common.errors import ValidationError

_PACKAGE_ID_RE = re.compile(r"^[a-zA-Z0-9._-]+$")
_VERSION_RE = re.compile(r"^[a-zA-Z0-9._+-]+$")
_SOURCE_NAME_RE = re.compile(r"^[a-zA-Z0-9._\- ]+$")
_URL_DANGEROUS_RE = re.compile(r"[\"'`\\|><;{}\r\n\t&$!#()]")
_LOCAL_PATH_RE = re.compile(r"^[a-zA-Z0-9.:/_\- \\]+$")
_ALLOWED_SCHEMES = ("http", "https", "file")


def is_valid_package_id(package_id: str) -> bool:
    """Package ids: alphanumerics, dots, underscores, hyphens."""
    return bool(package_id) and bool(_PACKAGE_ID_RE.match(package_id))


def is_valid_version(version: str) -> bool:
    """SemVer-like strings, including build metadata."""
    return bool(version) and bool(_VERSION_RE.match(version))


def is_valid_source_name(name: str) -> bool:
    """Source names may contain spaces but no shell metacharacters."""
    return bool(name) and len(name) <= 256 and bool(_SOURCE_NAME_RE.match(name))


def is_valid_source_url(url: str) -> bool:
    """Accept http(s)/file URLs, or a plain local feed path.

    A single-letter scheme is a Windows drive letter, so it is checked as a
    path rather than rejected as an unknown scheme.
    """
    if not url or _URL_DANGEROUS_RE.search(url):
        return False
    scheme = urllib.parse.urlsplit(url).scheme.lower()
    if len(scheme) > 1:
        return scheme in _ALLOWED_SCHEMES
    return bool(_LOCAL_PATH_RE.match(url))


def validate_package_id(package_id: str) -> str:
    """Return ``package_id`` or raise ValidationError."""
    if not is_valid_package_id(package_id):
        raise ValidationError("package id", package_id)
    return package_id


def validate_version(version: str) -> str:
    """Return ``version`` or raise ValidationError."""
    if not is_valid_version(version):
        raise ValidationError("version", version)
    return version


def validate_source_name(name: str) -> str:
    """Return ``name`` or raise ValidationError."""
    if not is_valid_source_name(name):
        raise ValidationError("source name", name, "must be 1-256 safe characters")
    return name


def validate_source_url(url: str) -> str:
    """Return ``url`` or raise ValidationError."""
    if not is_valid_source_url(url):
        raise ValidationError("source url", url, "unsupported scheme or unsafe characters")
    return url


def is_valid_feed_location(location: str) -> bool:
    """A source URL as written in nuget.config.

    Same rules as ``is_valid_source_url``, except that local feed paths may
    use Windows backslash separators.
    """
    if is_valid_source_url(location):
        return True
    if not location or "\\" not in location:
        return False
    as_posix = location.replace("\\", "/")
    return len(urllib.parse.urlsplit(as_posix).scheme) <= 1 and is_valid_source_url(as_posix)
