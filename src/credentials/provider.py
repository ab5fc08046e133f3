"""Azure Artifacts credential provider invocation and DPAPI decryption.

Both helpers shell out, so every argument is validated first and passed as
an argument vector (never through a shell).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import sys
import urllib.parse
from typing import Callable, List, Mapping, Optional

from common.logging_utils import extra_context, is_debug_enabled, redact, safe_url
from constants import Constants

from .models import CredentialErrorKind, CredentialResult, Provenance

logger = logging.getLogger(__name__)

PROVIDER_NAME = "CredentialProvider.Microsoft"
INTERACTIVE_REMEDY = "dotnet restore --interactive"
_INTERACTIVE_MESSAGE = (
    'Authentication required. Please run "dotnet restore --interactive" '
    "in the terminal to authenticate."
)
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+=*$")
_URL_UNSAFE_RE = re.compile(r"[\"'`\\|><;{}\r\n\t]")
_INTERACTIVE_HINTS = ("interactive", "device flow", "device code", "login")


def is_valid_base64(value: str) -> bool:
    """Only base64 characters; rejects anything that could escape a script."""
    return bool(value) and bool(_BASE64_RE.match(value))


def is_provider_safe_url(url: str) -> bool:
    """http(s) URL without shell-dangerous characters."""
    try:
        scheme = urllib.parse.urlsplit(url).scheme.lower()
    except ValueError:
        return False
    return scheme in ("http", "https") and not _URL_UNSAFE_RE.search(url)


def is_azure_artifacts_url(url: str) -> bool:
    """Azure DevOps / Azure Artifacts feed URLs."""
    lower = url.lower()
    return (
        "pkgs.dev.azure.com" in lower
        or ".pkgs.visualstudio.com" in lower
        or "/_packaging/" in lower
    )


def is_supported_provider_host(url: str, env: Mapping[str, str]) -> bool:
    """Hosts opted into the provider via environment variables."""
    hosts = env.get("ARTIFACTS_CREDENTIALPROVIDER_HOSTS") or env.get(
        "NUGET_CREDENTIALPROVIDER_VSTS_HOSTS"
    )
    if not hosts:
        return False
    lower = url.lower()
    return any(h.strip().lower() in lower for h in hosts.split(";") if h.strip())


def provider_candidates(
    env: Mapping[str, str],
    home: str,
    platform: str = sys.platform,
) -> List[str]:
    """Candidate provider paths in NuGet's precedence order."""
    candidates: List[str] = []
    is_windows = platform.startswith("win")
    netcore_paths = env.get("NUGET_NETCORE_PLUGIN_PATHS")
    netfx_paths = env.get("NUGET_NETFX_PLUGIN_PATHS") if is_windows else None
    plugin_paths = env.get("NUGET_PLUGIN_PATHS")

    if netcore_paths:
        candidates.extend(p for p in netcore_paths.split(os.pathsep) if p)
    if netfx_paths:
        candidates.extend(p for p in netfx_paths.split(os.pathsep) if p)
    if plugin_paths and not netcore_paths and not netfx_paths:
        candidates.extend(p for p in plugin_paths.split(os.pathsep) if p)

    plugins = os.path.join(home, ".nuget", "plugins")
    if is_windows:
        candidates.append(os.path.join(plugins, "netfx", PROVIDER_NAME, f"{PROVIDER_NAME}.exe"))
        candidates.append(os.path.join(plugins, "netcore", PROVIDER_NAME, f"{PROVIDER_NAME}.exe"))
    else:
        candidates.append(os.path.join(plugins, "netcore", PROVIDER_NAME, f"{PROVIDER_NAME}.dll"))
    return candidates


def _resolve_candidate(path: str) -> Optional[str]:
    """Accept a provider file, or a directory containing one."""
    if os.path.isfile(path):
        return path
    if os.path.isdir(path):
        for ext in (".exe", ".dll", ""):
            inner = os.path.join(path, f"{PROVIDER_NAME}{ext}")
            if os.path.isfile(inner):
                return inner
    return None


def _parse_provider_output(stdout: str) -> Optional[dict]:
    """Find the JSON object in provider output (log lines may precede it)."""
    for line in reversed(stdout.strip().splitlines()):
        line = line.strip()
        if line.startswith("{"):
            try:
                parsed = json.loads(line)
            except ValueError:
                continue
            if isinstance(parsed, dict):
                return parsed
    return None


class CredentialProvider:
    """Runs the credential provider non-interactively (``-N -F Json``)."""

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        home: Optional[str] = None,
        timeout: float = Constants.CREDENTIAL_PROVIDER_TIMEOUT,
        platform: str = sys.platform,
        exists: Callable[[str], Optional[str]] = _resolve_candidate,
    ):
        self._env = env if env is not None else os.environ
        self._home = home or os.path.expanduser("~")
        self._timeout = timeout
        self._platform = platform
        self._exists = exists
        self._path: Optional[str] = None
        self._searched = False

    def find(self) -> Optional[str]:
        """Locate the provider once; the result is remembered."""
        if self._searched:
            return self._path
        self._searched = True
        for candidate in provider_candidates(self._env, self._home, self._platform):
            found = self._exists(candidate)
            if found:
                self._path = found
                logger.debug("Found credential provider at %s", found)
                break
        else:
            logger.debug("Azure Artifacts Credential Provider not found")
        return self._path

    def command_for(self, provider_path: str, url: str) -> List[str]:
        """Argument vector; .dll builds run through the dotnet host."""
        args = ["-U", url, "-N", "-F", "Json"]
        if provider_path.lower().endswith(".dll"):
            return ["dotnet", provider_path] + args
        return [provider_path] + args

    async def acquire(self, url: str) -> CredentialResult:
        """Ask the provider for credentials for ``url``."""
        if not is_provider_safe_url(url):
            logger.warning("Invalid URL format for credential provider: %s", safe_url(url))
            return CredentialResult.failed(CredentialErrorKind.UNKNOWN, "Invalid URL format")

        if not is_azure_artifacts_url(url) and not is_supported_provider_host(url, self._env):
            return CredentialResult.failed(
                CredentialErrorKind.NOT_FOUND, "No credentials configured for this source"
            )

        provider_path = self.find()
        if not provider_path:
            return CredentialResult.failed(
                CredentialErrorKind.PROVIDER_NOT_INSTALLED,
                "Azure Artifacts Credential Provider not installed",
            )

        argv = self.command_for(provider_path, url)
        if is_debug_enabled(logger):
            logger.debug(
                "Invoking credential provider",
                extra=extra_context(
                    event="subprocess", component="credential_provider",
                    action="acquire", target=safe_url(url),
                ),
            )
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return CredentialResult.failed(
                CredentialErrorKind.PROVIDER_NOT_INSTALLED,
                "Azure Artifacts Credential Provider not installed",
            )
        except OSError as exc:
            return CredentialResult.failed(
                CredentialErrorKind.UNKNOWN, f"Credential provider failed: {exc}"
            )

        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return CredentialResult.failed(
                CredentialErrorKind.UNKNOWN,
                f"Credential provider timed out after {self._timeout} seconds",
            )

        stdout = out.decode("utf-8", errors="replace")
        stderr = err.decode("utf-8", errors="replace")
        return self._interpret(proc.returncode, stdout, stderr)

    def _interpret(self, returncode: Optional[int], stdout: str, stderr: str) -> CredentialResult:
        """Map provider exit status and output to a result."""
        if returncode == 0:
            payload = _parse_provider_output(stdout) or {}
            username = payload.get("Username")
            password = payload.get("Password")
            if username and password:
                return CredentialResult.found(username, password, Provenance.CREDENTIAL_PROVIDER)
            return CredentialResult.failed(
                CredentialErrorKind.NEEDS_INTERACTIVE, _INTERACTIVE_MESSAGE, INTERACTIVE_REMEDY
            )

        message = (stderr or stdout).strip()
        if any(hint in message.lower() for hint in _INTERACTIVE_HINTS):
            return CredentialResult.failed(
                CredentialErrorKind.NEEDS_INTERACTIVE, _INTERACTIVE_MESSAGE, INTERACTIVE_REMEDY
            )
        logger.debug("Credential provider error: %s", redact(message))
        return CredentialResult.failed(
            CredentialErrorKind.UNKNOWN, f"Credential provider failed: {redact(message)}"
        )


_DPAPI_SCRIPT = (
    "Add-Type -AssemblyName System.Security; "
    "$encrypted = [Convert]::FromBase64String('{payload}'); "
    "$decrypted = [System.Security.Cryptography.ProtectedData]::Unprotect("
    "$encrypted, $null, [System.Security.Cryptography.DataProtectionScope]::CurrentUser); "
    "[System.Text.Encoding]::UTF8.GetString($decrypted)"
)


async def decrypt_dpapi(
    encrypted_base64: str,
    platform: str = sys.platform,
    timeout: float = 5,
) -> Optional[str]:
    """Decrypt a nuget.config ``Password`` value (Windows only).

    Returns None off Windows, on invalid input, or when PowerShell fails.
    """
    if not platform.startswith("win"):
        logger.debug("DPAPI decryption only available on Windows")
        return None
    if not is_valid_base64(encrypted_base64):
        logger.warning("Invalid base64 format in encrypted password")
        return None
    script = _DPAPI_SCRIPT.replace("{payload}", encrypted_base64)
    try:
        proc = await asyncio.create_subprocess_exec(
            "powershell", "-NoProfile", "-NonInteractive", "-Command", script,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        logger.debug("DPAPI decryption failed: %s", exc)
        return None
    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.debug("DPAPI decryption timed out")
        return None
    if proc.returncode != 0:
        return None
    decrypted = out.decode("utf-8", errors="replace").strip()
    return decrypted or None
