"""Credential chain with an asymmetric-TTL cache per source URL."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import re
import time
from typing import Awaitable, Callable, Dict, Mapping, Optional, Tuple

from common.logging_utils import safe_url
from common.notify import Notifier
from constants import Constants

from .models import (
    CredentialErrorKind,
    CredentialResult,
    Provenance,
    SourceCredentials,
    StaticCredential,
    find_static_credential,
)
from .provider import (
    CredentialProvider,
    decrypt_dpapi,
    is_azure_artifacts_url,
    is_supported_provider_host,
)

logger = logging.getLogger(__name__)

NOTIFY_CATEGORY = "credentials"
_ENV_PLACEHOLDER_RE = re.compile(r"%([^%]+)%")

# Lower number wins when several steps fail
_ERROR_PRIORITY = {
    CredentialErrorKind.NEEDS_INTERACTIVE: 0,
    CredentialErrorKind.DECRYPT_FAILED: 1,
    CredentialErrorKind.PROVIDER_NOT_INSTALLED: 2,
    CredentialErrorKind.UNKNOWN: 3,
    CredentialErrorKind.NOT_FOUND: 4,
}


def basic_auth_header(credentials: SourceCredentials) -> str:
    """``Basic base64(user:password)``."""
    raw = f"{credentials.username}:{credentials.password}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


def resolve_env_placeholders(value: str, env: Mapping[str, str]) -> str:
    """Expand ``%VAR%``; unknown variables are left in place."""
    return _ENV_PLACEHOLDER_RE.sub(lambda m: env.get(m.group(1), m.group(0)), value)


def _endpoint_matches(source_url: str, endpoint: str) -> bool:
    """Same URL, or one is a path prefix of the other."""
    src = source_url.lower()
    ep = endpoint.lower()
    return (
        src == ep
        or src.startswith(ep.rstrip("/") + "/")
        or ep.startswith(src.rstrip("/") + "/")
    )


class CredentialResolver:
    """Resolves credentials for a source through an ordered chain.

    1. nuget.config ``packageSourceCredentials`` (by source name)
    2. the Azure Artifacts credential provider (non-interactive)
    3. ``ARTIFACTS_CREDENTIALPROVIDER_EXTERNAL_FEED_ENDPOINTS`` JSON
    4. ``ARTIFACTS_CREDENTIALPROVIDER_ACCESSTOKEN`` for Azure hosts only

    Every outcome is cached per lowercased URL: successes for 30 minutes,
    failures for 5, so a fixed configuration is picked up reasonably soon.
    """

    def __init__(
        self,
        static_credentials: Optional[Mapping[str, StaticCredential]] = None,
        provider: Optional[CredentialProvider] = None,
        notifier: Optional[Notifier] = None,
        env: Optional[Mapping[str, str]] = None,
        clock: Callable[[], float] = time.monotonic,
        decrypt: Callable[[str], Awaitable[Optional[str]]] = decrypt_dpapi,
        success_ttl: float = Constants.CREDENTIAL_SUCCESS_TTL_SEC,
        failure_ttl: float = Constants.CREDENTIAL_FAILURE_TTL_SEC,
    ):
        self._static: Dict[str, StaticCredential] = dict(static_credentials or {})
        self._env = env if env is not None else os.environ
        self._provider = provider or CredentialProvider(env=self._env)
        self._notifier = notifier or Notifier()
        self._clock = clock
        self._decrypt = decrypt
        self._success_ttl = success_ttl
        self._failure_ttl = failure_ttl
        self._cache: Dict[str, Tuple[CredentialResult, float]] = {}
        self._inflight: Dict[str, "asyncio.Task[CredentialResult]"] = {}

    def set_static_credentials(self, table: Mapping[str, StaticCredential]) -> None:
        """Replace the nuget.config credential table and drop cached results."""
        self._static = dict(table)
        self.clear_cache()

    def clear_cache(self) -> None:
        """Forget cached results and the needs-interactive warnings."""
        self._cache.clear()
        self._notifier.reset(NOTIFY_CATEGORY)

    def cached(self, source_url: str) -> Optional[CredentialResult]:
        """Return a live cached result without triggering a lookup."""
        key = source_url.lower()
        entry = self._cache.get(key)
        if entry is None:
            return None
        result, stored_at = entry
        ttl = self._success_ttl if result.ok else self._failure_ttl
        if self._clock() - stored_at < ttl:
            return result
        del self._cache[key]
        return None

    async def get_credentials(self, source_url: str, source_name: Optional[str] = None) -> CredentialResult:
        """Return credentials for ``source_url``, consulting the cache first."""
        key = source_url.lower()
        hit = self.cached(source_url)
        if hit is not None:
            return hit

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._acquire(source_url, source_name))
            self._inflight[key] = task
            try:
                result = await task
            finally:
                self._inflight.pop(key, None)
            self._cache[key] = (result, self._clock())
            self._report(source_url, source_name, result)
            return result
        return await task

    async def get_auth_header(self, source_url: str, source_name: Optional[str] = None) -> Optional[str]:
        """Basic auth header for the source, or None."""
        result = await self.get_credentials(source_url, source_name)
        if result.credentials is None:
            return None
        return basic_auth_header(result.credentials)

    async def prewarm(self, sources: Mapping[str, str]) -> None:
        """Resolve ``{url: name}`` concurrently; failures are cached as usual."""
        await asyncio.gather(
            *(self.get_credentials(url, name) for url, name in sources.items()),
            return_exceptions=True,
        )

    async def _acquire(self, source_url: str, source_name: Optional[str]) -> CredentialResult:
        """Walk the chain; never consults the cache."""
        failures = []

        static_result = await self._from_static(source_name)
        if static_result is not None:
            if static_result.ok:
                return static_result
            failures.append(static_result)

        provider_result = await self._provider.acquire(source_url)
        if provider_result.ok:
            return provider_result
        failures.append(provider_result)

        endpoints_result = self._from_feed_endpoints(source_url)
        if endpoints_result is not None:
            return endpoints_result

        token_result = self._from_access_token(source_url)
        if token_result is not None:
            return token_result

        failures.sort(key=lambda r: _ERROR_PRIORITY.get(r.error.kind, 99) if r.error else 99)
        return failures[0]

    async def _from_static(self, source_name: Optional[str]) -> Optional[CredentialResult]:
        """Step 1: nuget.config; None when nothing is configured."""
        if not source_name:
            return None
        cred = find_static_credential(self._static, source_name)
        if cred is None or not cred.password:
            return None

        password = resolve_env_placeholders(cred.password, self._env)
        if cred.is_encrypted:
            decrypted = await self._decrypt(password)
            if not decrypted:
                logger.warning('Failed to decrypt password for source "%s"', source_name)
                return CredentialResult.failed(
                    CredentialErrorKind.DECRYPT_FAILED,
                    f'Could not decrypt the stored password for source "{source_name}"',
                )
            password = decrypted

        if not password or password.startswith("%"):
            logger.debug('Unresolved environment placeholder for source "%s"', source_name)
            return None
        logger.debug('Using nuget.config credentials for "%s"', source_name)
        return CredentialResult.found(
            cred.username or Constants.DEFAULT_FEED_USERNAME, password, Provenance.NUGET_CONFIG
        )

    def _from_feed_endpoints(self, source_url: str) -> Optional[CredentialResult]:
        """Step 3: per-endpoint JSON from the environment."""
        raw = self._env.get("ARTIFACTS_CREDENTIALPROVIDER_EXTERNAL_FEED_ENDPOINTS") or self._env.get(
            "VSS_NUGET_EXTERNAL_FEED_ENDPOINTS"
        )
        if not raw:
            return None
        try:
            config = json.loads(raw)
        except ValueError as exc:
            logger.debug("Failed to parse external feed endpoints: %s", exc)
            return None
        entries = config.get("endpointCredentials") if isinstance(config, dict) else None
        if not isinstance(entries, list):
            return None
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            endpoint = entry.get("endpoint")
            password = entry.get("password")
            if endpoint and password and _endpoint_matches(source_url, endpoint):
                logger.debug("Using external feed endpoint credentials for %s", safe_url(source_url))
                return CredentialResult.found(
                    entry.get("username") or Constants.DEFAULT_FEED_USERNAME,
                    password,
                    Provenance.ENVIRONMENT_ENDPOINTS,
                )
        return None

    def _from_access_token(self, source_url: str) -> Optional[CredentialResult]:
        """Step 4: a bare token, only for the provider's host family."""
        token = self._env.get("ARTIFACTS_CREDENTIALPROVIDER_ACCESSTOKEN") or self._env.get(
            "VSS_NUGET_ACCESSTOKEN"
        )
        if not token:
            return None
        if not (is_azure_artifacts_url(source_url) or is_supported_provider_host(source_url, self._env)):
            return None
        logger.debug("Using environment token for %s", safe_url(source_url))
        return CredentialResult.found(
            Constants.DEFAULT_FEED_USERNAME, token, Provenance.ENVIRONMENT_TOKEN
        )

    def _report(self, source_url: str, source_name: Optional[str], result: CredentialResult) -> None:
        """Log or notify according to how actionable the failure is."""
        if result.ok or result.error is None:
            return
        label = source_name or safe_url(source_url)
        kind = result.error.kind
        if kind == CredentialErrorKind.NEEDS_INTERACTIVE:
            remedy = result.error.suggested_action
            message = f'Source "{label}" needs interactive sign-in.'
            if remedy:
                message += f' Run "{remedy}" to authenticate.'
            self._notifier.warn_once(NOTIFY_CATEGORY, source_url, message)
        elif kind == CredentialErrorKind.NOT_FOUND:
            logger.debug("No credentials configured for %s", label)
        elif kind == CredentialErrorKind.PROVIDER_NOT_INSTALLED:
            logger.info("%s: %s", label, result.error.message)
        else:
            logger.warning("%s: %s", label, result.error.message)
