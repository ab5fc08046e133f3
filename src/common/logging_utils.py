"""Logging helpers shared by every component.

Provides a single place to configure the root logger, build structured
``extra=`` payloads, and scrub credentials from anything that may end up in
a log line (URLs, command lines, config snippets).
"""
from __future__ import annotations

import logging
import os
import re
import time
import urllib.parse
from typing import Any, Dict, Optional

from constants import Constants

_SECRET_QUERY_KEYS = {"apikey", "api_key", "token", "access_token", "password", "sig", "secret"}

_REDACTIONS = [
    # user:pass@ in URLs
    (re.compile(r"(https?://)[^/\s:@]+:[^/\s@]+@", re.IGNORECASE), r"\1***:***@"),
    # --password value / -p value
    (re.compile(r"(--password|-p)(\s+|=)(\S+)", re.IGNORECASE), r"\1\2***"),
    # apikey=..., token: ..., password=..., secret=...
    (re.compile(r"\b(api[-_]?key|token|password|secret)(\s*[=:]\s*)([^\s&,;\"']+)", re.IGNORECASE), r"\1\2***"),
    # Authorization / API key headers
    (re.compile(r"\b(Authorization|X-Api-Key|X-NuGet-ApiKey)(\s*:\s*)(.+)$", re.IGNORECASE | re.MULTILINE), r"\1\2***"),
    # nuget.config credential values
    (re.compile(r"(key\s*=\s*\"(?:ClearTextPassword|Password)\"\s+value\s*=\s*\")([^\"]*)(\")", re.IGNORECASE), r"\1***\3"),
]


def configure_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once using the project format.

    The level is taken from ``level`` or the ``NUIGET_LOG_LEVEL`` environment
    variable, defaulting to INFO.
    """
    level_name = (level or os.environ.get(Constants.ENV_LOG_LEVEL) or "INFO").upper()
    level_value = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(Constants.LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level_value)


def is_debug_enabled(logger: logging.Logger) -> bool:
    """Return True when DEBUG records would be emitted by ``logger``."""
    return logger.isEnabledFor(logging.DEBUG)


def extra_context(**fields: Any) -> Dict[str, Any]:
    """Build a structured ``extra`` payload, dropping None values."""
    return {k: v for k, v in fields.items() if v is not None}


def safe_url(url: Optional[str]) -> str:
    """Strip userinfo and secret query parameters from a URL for logging."""
    if not url:
        return ""
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return redact(url)
    netloc = parts.netloc
    if "@" in netloc:
        netloc = "***@" + netloc.rsplit("@", 1)[1]
    query = parts.query
    if query:
        pairs = urllib.parse.parse_qsl(query, keep_blank_values=True)
        query = urllib.parse.urlencode(
            [(k, "***" if k.lower() in _SECRET_QUERY_KEYS else v) for k, v in pairs],
            safe="*:,",
        )
    return urllib.parse.urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


def redact(text: Optional[str]) -> str:
    """Mask credentials, tokens and auth headers inside free-form text."""
    if not text:
        return ""
    out = text
    for pattern, replacement in _REDACTIONS:
        out = pattern.sub(replacement, out)
    return out


class Timer:
    """Context manager measuring elapsed wall time."""

    def __init__(self) -> None:
        self._start = 0.0
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, *exc: Any) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> int:
        """Elapsed milliseconds; still running timers report time so far."""
        end = self._end if self._end is not None else time.perf_counter()
        return int((end - self._start) * 1000)
