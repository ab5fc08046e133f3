"""HTTP transport for registry traffic.

Origins on the multiplexed allow-list go through a pooled HTTP/2 session
(httpx); everything else uses a shared keep-alive aiohttp session. Both paths
follow redirects manually so an ``Authorization`` header is only replayed
against the origin it was issued for.
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket
import ssl
import urllib.parse
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Optional

import aiohttp
import httpx

from common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from constants import Constants

from .sessions import MultiplexedSessionPool

logger = logging.getLogger(__name__)

REDIRECT_CODES = (301, 302, 303, 307, 308)
ACCEPT_JSON = "application/json"

# Failures that mean the multiplexed connection itself is unusable
SESSION_ERRORS = (httpx.ConnectError, httpx.RemoteProtocolError, httpx.LocalProtocolError)


class FetchErrorKind(Enum):
    """Failure classes; each drives a different user-facing message."""
    NETWORK = "network"
    AUTH = "auth"
    NOT_FOUND = "not-found"
    SERVER_ERROR = "server-error"
    HTTP = "http"
    PARSE = "parse"


@dataclass(frozen=True)
class FetchError:
    """Classified failure with a message safe to show to users."""
    kind: FetchErrorKind
    message: str
    status: Optional[int] = None


@dataclass
class FetchResult:
    """Uniform outcome of a JSON fetch."""
    data: Any = None
    status: int = 0
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        """True when the payload was fetched and parsed."""
        return self.error is None


@dataclass
class RawResponse:
    """Status, lowercase headers and body of a final (non-redirect) response."""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    url: str = ""


class TransportError(Exception):
    """Network-level failure (connect, DNS, TLS, timeout, reset)."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


def origin_of(url: str) -> str:
    """``scheme://host[:port]`` in lowercase."""
    parts = urllib.parse.urlsplit(url)
    return f"{parts.scheme.lower()}://{parts.netloc.lower().rsplit('@', 1)[-1]}"


def status_error(status: int) -> FetchError:
    """Classify a non-2xx status."""
    if status == 401:
        return FetchError(
            FetchErrorKind.AUTH,
            "Authentication required. Check credentials in nuget.config or the credential provider.",
            status,
        )
    if status == 403:
        return FetchError(
            FetchErrorKind.AUTH,
            "Access denied. You may not have permission to access this feed.",
            status,
        )
    if status == 404:
        return FetchError(FetchErrorKind.NOT_FOUND, "Resource not found (HTTP 404).", status)
    if status >= 500:
        return FetchError(
            FetchErrorKind.SERVER_ERROR,
            f"Server error (HTTP {status}). The feed may be temporarily unavailable.",
            status,
        )
    return FetchError(FetchErrorKind.HTTP, f"Unexpected response (HTTP {status}).", status)


def _exception_chain(exc: BaseException) -> Iterable[BaseException]:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def describe_network_error(exc: BaseException, timeout: Optional[float] = None) -> str:
    """Friendlier messages for the common connection failures."""
    for err in _exception_chain(exc):
        text = str(err).lower()
        if isinstance(err, (asyncio.TimeoutError, httpx.TimeoutException, socket.timeout)) or "timed out" in text:
            if timeout:
                return f"Connection timed out after {timeout:g}s. The server may be slow or unreachable."
            return "Connection timed out. The server may be slow or unreachable."
        if isinstance(err, ConnectionRefusedError) or "refused" in text:
            return "Connection refused. The server may be down or blocking connections."
        if isinstance(err, socket.gaierror) or "name or service not known" in text \
                or "nodename nor servname" in text or "name resolution" in text or "getaddrinfo" in text:
            return "DNS resolution failed. Check the URL or your network connection."
        if isinstance(err, ConnectionResetError) or "reset" in text:
            return "Connection reset. The server closed the connection unexpectedly."
        if isinstance(err, ssl.SSLError) or "certificate" in text or "ssl" in text or "tls" in text:
            return "SSL/TLS certificate error. The server certificate may be invalid or untrusted."
    return f"Network error: {exc}" if str(exc) else f"Network error: {type(exc).__name__}"


class Transport:
    """Sends registry requests over the multiplexed pool or the pooled fallback."""

    def __init__(
        self,
        http2_origins: Optional[Iterable[str]] = None,
        session_pool: Optional[MultiplexedSessionPool] = None,
        timeout: float = Constants.REQUEST_TIMEOUT,
        max_redirects: int = Constants.HTTP_MAX_REDIRECTS,
        pool_limit: int = Constants.HTTP_POOL_LIMIT,
    ):
        origins = Constants.HTTP2_ORIGINS if http2_origins is None else http2_origins
        self._http2_origins = {o.rstrip("/").lower() for o in origins}
        self._pool = session_pool or MultiplexedSessionPool()
        self._timeout = timeout
        self._max_redirects = max_redirects
        self._pool_limit = pool_limit
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def timeout(self) -> float:
        """Default per-request timeout in seconds."""
        return self._timeout

    def uses_multiplexed(self, url: str) -> bool:
        """True when the URL's origin is on the HTTP/2 allow-list."""
        try:
            return origin_of(url) in self._http2_origins
        except ValueError:
            return False

    async def start(self) -> None:
        """Start the pooled keep-alive session."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=self._pool_limit, keepalive_timeout=30)
            self._session = aiohttp.ClientSession(
                connector=connector,
                headers={"User-Agent": Constants.USER_AGENT},
            )

    async def aclose(self) -> None:
        """Close both connection pools."""
        if self._session is not None:
            await self._session.close()
            self._session = None
        await self._pool.aclose()

    async def __aenter__(self) -> "Transport":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def _send_multiplexed(
        self, method: str, url: str, headers: Dict[str, str], timeout: float
    ) -> RawResponse:
        """One request over the origin's HTTP/2 session.

        Only connection-level failures drop the session; a timeout or read
        error fails this request and leaves its siblings on the stream alone.
        """
        origin = origin_of(url)
        async with self._pool.lease(origin) as client:
            try:
                response = await client.request(method, url, headers=headers, timeout=timeout)
            except SESSION_ERRORS as exc:
                await self._pool.discard(origin, client)
                raise TransportError(describe_network_error(exc, timeout), exc) from exc
            except httpx.HTTPError as exc:
                raise TransportError(describe_network_error(exc, timeout), exc) from exc
        return RawResponse(
            status=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            body=response.content,
            url=url,
        )

    async def _send_pooled(
        self, method: str, url: str, headers: Dict[str, str], timeout: float
    ) -> RawResponse:
        """One request over the keep-alive fallback session."""
        await self.start()
        session = self._session
        if session is None:
            raise TransportError("HTTP session is not available")
        try:
            async with session.request(
                method,
                url,
                headers=headers,
                allow_redirects=False,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                body = await response.read()
                return RawResponse(
                    status=response.status,
                    headers={k.lower(): v for k, v in response.headers.items()},
                    body=body,
                    url=url,
                )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise TransportError(describe_network_error(exc, timeout), exc) from exc

    async def request(
        self,
        method: str,
        url: str,
        auth_header: Optional[str] = None,
        accept: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> RawResponse:
        """Send a request, following redirects up to ``max_redirects``.

        Raises:
            TransportError: on network failures or too many redirects.
        """
        effective_timeout = timeout if timeout is not None else self._timeout
        current_url = url
        current_method = method
        auth = auth_header
        for _ in range(self._max_redirects + 1):
            headers: Dict[str, str] = {}
            if accept:
                headers["Accept"] = accept
            if auth:
                headers["Authorization"] = auth
            send = self._send_multiplexed if self.uses_multiplexed(current_url) else self._send_pooled
            with Timer() as t:
                response = await send(current_method, current_url, headers, effective_timeout)
            if is_debug_enabled(logger):
                logger.debug(
                    "HTTP response",
                    extra=extra_context(
                        event="http_response",
                        component="transport",
                        action=current_method,
                        target=safe_url(current_url),
                        status_code=response.status,
                        duration_ms=t.duration_ms(),
                    ),
                )

            location = response.headers.get("location")
            if response.status not in REDIRECT_CODES or not location:
                return response

            next_url = urllib.parse.urljoin(current_url, location)
            if origin_of(next_url) != origin_of(current_url):
                auth = None
            if response.status == 303 and current_method != "HEAD":
                current_method = "GET"
            current_url = next_url

        raise TransportError(f"Too many redirects fetching {safe_url(url)}")

    async def fetch_json(
        self,
        url: str,
        auth_header: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> FetchResult:
        """GET and parse JSON; never raises."""
        try:
            response = await self.request("GET", url, auth_header, ACCEPT_JSON, timeout)
        except TransportError as exc:
            return FetchResult(error=FetchError(FetchErrorKind.NETWORK, str(exc)))
        if not 200 <= response.status < 300:
            if response.status != 404:
                logger.debug("HTTP %s fetching %s", response.status, safe_url(url))
            return FetchResult(status=response.status, error=status_error(response.status))
        try:
            data = json.loads(response.body.decode("utf-8-sig"))
        except (UnicodeDecodeError, ValueError):
            return FetchResult(
                status=response.status,
                error=FetchError(FetchErrorKind.PARSE, "Failed to parse JSON response", response.status),
            )
        return FetchResult(data=data, status=response.status)

    async def get_json(
        self,
        url: str,
        auth_header: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Optional[Any]:
        """Parsed JSON or None on any failure."""
        result = await self.fetch_json(url, auth_header, timeout)
        return result.data if result.ok else None

    async def fetch_text(
        self,
        url: str,
        auth_header: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Optional[str]:
        """GET a text body; None on non-2xx or network failure."""
        try:
            response = await self.request("GET", url, auth_header, None, timeout)
        except TransportError as exc:
            logger.debug("Text fetch failed for %s: %s", safe_url(url), exc)
            return None
        if not 200 <= response.status < 300:
            return None
        return response.body.decode("utf-8-sig", errors="replace")

    async def exists(
        self,
        url: str,
        auth_header: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> bool:
        """HEAD probe; True only for a 2xx final response."""
        try:
            response = await self.request("HEAD", url, auth_header, None, timeout)
        except TransportError:
            return False
        return 200 <= response.status < 300
