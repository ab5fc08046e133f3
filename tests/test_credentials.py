"""Tests for the credential chain, its cache and the provider wrapper."""

import asyncio
import base64
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from credentials.models import (
    CredentialErrorKind,
    CredentialResult,
    Provenance,
    SourceCredentials,
    StaticCredential,
    find_static_credential,
)
from credentials.provider import (
    CredentialProvider,
    is_azure_artifacts_url,
    is_provider_safe_url,
    is_valid_base64,
    provider_candidates,
)
from credentials.resolver import CredentialResolver, basic_auth_header, resolve_env_placeholders

AZURE_URL = "https://pkgs.dev.azure.com/org/_packaging/feed/nuget/v3/index.json"
PRIVATE_URL = "https://nexus.example.com/repository/nuget/index.json"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def _provider(result):
    provider = MagicMock()
    provider.acquire = AsyncMock(return_value=result)
    return provider


def _not_found():
    return CredentialResult.failed(CredentialErrorKind.NOT_FOUND, "none")


class TestCredentialChain:
    """Order and outcomes of the lookup chain."""

    def test_static_credentials_win(self):
        """nuget.config credentials short-circuit the provider."""
        provider = _provider(_not_found())
        resolver = CredentialResolver(
            {"MyFeed": StaticCredential("alice", "s3cret")}, provider=provider, env={}
        )
        result = asyncio.run(resolver.get_credentials(PRIVATE_URL, "MyFeed"))
        assert result.ok
        assert result.credentials.username == "alice"
        assert result.credentials.provenance == Provenance.NUGET_CONFIG
        provider.acquire.assert_not_awaited()

    def test_missing_username_uses_default(self):
        """A password-only entry gets the default feed username."""
        resolver = CredentialResolver(
            {"MyFeed": StaticCredential(None, "pat")}, provider=_provider(_not_found()), env={}
        )
        result = asyncio.run(resolver.get_credentials(PRIVATE_URL, "MyFeed"))
        assert result.credentials.username == "VssSessionToken"

    def test_env_placeholder_resolved(self):
        """%VAR% in a stored password is expanded from the environment."""
        resolver = CredentialResolver(
            {"MyFeed": StaticCredential("u", "%FEED_PAT%")},
            provider=_provider(_not_found()),
            env={"FEED_PAT": "from-env"},
        )
        result = asyncio.run(resolver.get_credentials(PRIVATE_URL, "MyFeed"))
        assert result.credentials.password == "from-env"

    def test_unresolved_placeholder_falls_through(self):
        """An unset variable is treated as no static credential."""
        provider = _provider(_not_found())
        resolver = CredentialResolver(
            {"MyFeed": StaticCredential("u", "%MISSING%")}, provider=provider, env={}
        )
        result = asyncio.run(resolver.get_credentials(PRIVATE_URL, "MyFeed"))
        assert not result.ok
        provider.acquire.assert_awaited_once()

    def test_decrypt_failure_reported(self):
        """A password that cannot be decrypted outranks not-found."""
        resolver = CredentialResolver(
            {"MyFeed": StaticCredential("u", "AAAA", is_encrypted=True)},
            provider=_provider(_not_found()),
            env={},
            decrypt=AsyncMock(return_value=None),
        )
        result = asyncio.run(resolver.get_credentials(PRIVATE_URL, "MyFeed"))
        assert result.error.kind == CredentialErrorKind.DECRYPT_FAILED

    def test_decrypted_password_used(self):
        """Decrypted values replace the stored ciphertext."""
        resolver = CredentialResolver(
            {"MyFeed": StaticCredential("u", "AAAA", is_encrypted=True)},
            provider=_provider(_not_found()),
            env={},
            decrypt=AsyncMock(return_value="plain"),
        )
        result = asyncio.run(resolver.get_credentials(PRIVATE_URL, "MyFeed"))
        assert result.credentials.password == "plain"

    def test_provider_used_before_environment(self):
        """Provider results come before environment fallbacks."""
        found = CredentialResult.found("vss", "tok", Provenance.CREDENTIAL_PROVIDER)
        resolver = CredentialResolver(
            provider=_provider(found),
            env={"ARTIFACTS_CREDENTIALPROVIDER_ACCESSTOKEN": "env-token"},
        )
        result = asyncio.run(resolver.get_credentials(AZURE_URL, "Azure"))
        assert result.credentials.provenance == Provenance.CREDENTIAL_PROVIDER

    def test_feed_endpoints_json(self):
        """Endpoint JSON matches by URL prefix."""
        endpoints = {
            "endpointCredentials": [
                {"endpoint": "https://nexus.example.com/repository/", "username": "ci", "password": "pw"}
            ]
        }
        resolver = CredentialResolver(
            provider=_provider(_not_found()),
            env={"ARTIFACTS_CREDENTIALPROVIDER_EXTERNAL_FEED_ENDPOINTS": json.dumps(endpoints)},
        )
        result = asyncio.run(resolver.get_credentials(PRIVATE_URL))
        assert result.credentials.username == "ci"
        assert result.credentials.provenance == Provenance.ENVIRONMENT_ENDPOINTS

    def test_access_token_only_for_azure_hosts(self):
        """The bare token is never sent to unrelated hosts."""
        env = {"ARTIFACTS_CREDENTIALPROVIDER_ACCESSTOKEN": "env-token"}
        resolver = CredentialResolver(provider=_provider(_not_found()), env=env)
        assert not asyncio.run(resolver.get_credentials(PRIVATE_URL)).ok

        azure = asyncio.run(resolver.get_credentials(AZURE_URL))
        assert azure.credentials.password == "env-token"
        assert azure.credentials.provenance == Provenance.ENVIRONMENT_TOKEN

    def test_access_token_for_listed_hosts(self):
        """Hosts opted in through the environment also receive the token."""
        env = {
            "ARTIFACTS_CREDENTIALPROVIDER_ACCESSTOKEN": "env-token",
            "ARTIFACTS_CREDENTIALPROVIDER_HOSTS": "nexus.example.com",
        }
        resolver = CredentialResolver(provider=_provider(_not_found()), env=env)
        assert asyncio.run(resolver.get_credentials(PRIVATE_URL)).ok

    def test_auth_header(self):
        """Auth header is HTTP Basic over user:password."""
        resolver = CredentialResolver(
            {"MyFeed": StaticCredential("alice", "pw")}, provider=_provider(_not_found()), env={}
        )
        header = asyncio.run(resolver.get_auth_header(PRIVATE_URL, "MyFeed"))
        assert header == "Basic " + base64.b64encode(b"alice:pw").decode("ascii")
        assert asyncio.run(resolver.get_auth_header("https://other.example/index.json")) is None


class TestCredentialCache:
    """Asymmetric TTL caching per source URL."""

    def test_success_not_requeried_within_ttl(self):
        """A success is served from cache until its TTL elapses."""
        clock = FakeClock()
        provider = _provider(CredentialResult.found("u", "p", Provenance.CREDENTIAL_PROVIDER))
        resolver = CredentialResolver(provider=provider, env={}, clock=clock)

        asyncio.run(resolver.get_credentials(AZURE_URL))
        clock.now += 29 * 60
        asyncio.run(resolver.get_credentials(AZURE_URL.upper()))
        assert provider.acquire.await_count == 1

        clock.now += 2 * 60
        asyncio.run(resolver.get_credentials(AZURE_URL))
        assert provider.acquire.await_count == 2

    def test_failure_requeried_after_short_ttl(self):
        """Failures expire after five minutes."""
        clock = FakeClock()
        provider = _provider(CredentialResult.failed(CredentialErrorKind.UNKNOWN, "boom"))
        resolver = CredentialResolver(provider=provider, env={}, clock=clock)

        asyncio.run(resolver.get_credentials(AZURE_URL))
        clock.now += 60
        asyncio.run(resolver.get_credentials(AZURE_URL))
        assert provider.acquire.await_count == 1

        clock.now += 5 * 60
        asyncio.run(resolver.get_credentials(AZURE_URL))
        assert provider.acquire.await_count == 2

    def test_concurrent_lookups_share_one_acquisition(self):
        """Parallel callers for the same source wait on one lookup."""
        provider = _provider(CredentialResult.found("u", "p", Provenance.CREDENTIAL_PROVIDER))
        resolver = CredentialResolver(provider=provider, env={})

        async def run():
            return await asyncio.gather(*(resolver.get_credentials(AZURE_URL) for _ in range(5)))

        results = asyncio.run(run())
        assert all(r.ok for r in results)
        assert provider.acquire.await_count == 1

    def test_set_static_credentials_clears_cache(self):
        """Reloading config forgets earlier outcomes."""
        provider = _provider(_not_found())
        resolver = CredentialResolver(provider=provider, env={})
        assert not asyncio.run(resolver.get_credentials(PRIVATE_URL, "MyFeed")).ok
        resolver.set_static_credentials({"MyFeed": StaticCredential("u", "p")})
        assert resolver.cached(PRIVATE_URL) is None
        assert asyncio.run(resolver.get_credentials(PRIVATE_URL, "MyFeed")).ok

    def test_needs_interactive_warned_once(self):
        """The interactive remedy is surfaced once per source."""
        notifier = MagicMock()
        clock = FakeClock()
        failure = CredentialResult.failed(
            CredentialErrorKind.NEEDS_INTERACTIVE, "sign in", "dotnet restore --interactive"
        )
        resolver = CredentialResolver(provider=_provider(failure), notifier=notifier, env={}, clock=clock)
        asyncio.run(resolver.get_credentials(AZURE_URL, "Azure"))
        notifier.warn_once.assert_called_once()
        category, key, message = notifier.warn_once.call_args[0]
        assert category == "credentials"
        assert key == AZURE_URL
        assert "dotnet restore --interactive" in message


class TestStaticCredentialLookup:
    """Source-name matching against nuget.config element names."""

    TABLE = {
        "My_x0020_Feed": StaticCredential("a", "1"),
        "Other_Feed": StaticCredential("b", "2"),
    }

    def test_encoded_space(self):
        """Spaces match the _x0020_ encoding."""
        assert find_static_credential(self.TABLE, "My Feed").username == "a"

    def test_underscore_space(self):
        """Spaces also match a plain underscore."""
        assert find_static_credential(self.TABLE, "Other Feed").username == "b"

    def test_case_insensitive(self):
        """Decoded names compare case-insensitively."""
        assert find_static_credential(self.TABLE, "my feed").username == "a"

    def test_missing(self):
        """Unknown names return None."""
        assert find_static_credential(self.TABLE, "Nope") is None
        assert find_static_credential(self.TABLE, "") is None


class TestCredentialProvider:
    """Provider discovery, argument vectors and output interpretation."""

    def test_interpret_success(self):
        """JSON credentials on the last line are used."""
        provider = CredentialProvider(env={})
        stdout = 'log line\n{"Username": "vss", "Password": "tok"}\n'
        result = provider._interpret(0, stdout, "")
        assert result.ok
        assert result.credentials.password == "tok"

    def test_interpret_success_without_credentials(self):
        """Exit 0 without credentials means an interactive login is needed."""
        result = CredentialProvider(env={})._interpret(0, "{}", "")
        assert result.error.kind == CredentialErrorKind.NEEDS_INTERACTIVE
        assert result.error.suggested_action == "dotnet restore --interactive"

    def test_interpret_device_flow_hint(self):
        """Interactive hints in stderr map to needs-interactive."""
        result = CredentialProvider(env={})._interpret(1, "", "Use device flow to sign in")
        assert result.error.kind == CredentialErrorKind.NEEDS_INTERACTIVE

    def test_interpret_other_failure(self):
        """Other failures are unknown, with secrets redacted."""
        result = CredentialProvider(env={})._interpret(1, "", "bad token=abc123")
        assert result.error.kind == CredentialErrorKind.UNKNOWN
        assert "abc123" not in result.error.message

    def test_command_for_dll(self):
        """.dll providers run through dotnet with non-interactive JSON flags."""
        argv = CredentialProvider(env={}).command_for("/p/CredentialProvider.Microsoft.dll", AZURE_URL)
        assert argv == ["dotnet", "/p/CredentialProvider.Microsoft.dll", "-U", AZURE_URL, "-N", "-F", "Json"]

    def test_non_azure_url_not_found(self):
        """Unrelated hosts never start the provider."""
        exists = MagicMock(return_value=None)
        result = asyncio.run(CredentialProvider(env={}, exists=exists).acquire(PRIVATE_URL))
        assert result.error.kind == CredentialErrorKind.NOT_FOUND
        exists.assert_not_called()

    def test_provider_not_installed(self):
        """Azure hosts without a provider report it missing."""
        provider = CredentialProvider(env={}, home="/home/u", platform="linux", exists=lambda p: None)
        result = asyncio.run(provider.acquire(AZURE_URL))
        assert result.error.kind == CredentialErrorKind.PROVIDER_NOT_INSTALLED

    def test_unsafe_url_rejected(self):
        """Shell metacharacters are refused before anything runs."""
        result = asyncio.run(CredentialProvider(env={}).acquire(AZURE_URL + ";rm -rf"))
        assert result.error.kind == CredentialErrorKind.UNKNOWN

    def test_candidates_order(self):
        """Explicit netcore paths come before the default plugin folder."""
        env = {"NUGET_NETCORE_PLUGIN_PATHS": "/custom/provider.dll", "NUGET_PLUGIN_PATHS": "/ignored"}
        candidates = provider_candidates(env, "/home/u", platform="linux")
        assert candidates[0] == "/custom/provider.dll"
        assert "/ignored" not in candidates
        assert candidates[-1].endswith("CredentialProvider.Microsoft.dll")

    @pytest.mark.parametrize("url,expected", [
        (AZURE_URL, True),
        ("https://contoso.pkgs.visualstudio.com/_packaging/f/nuget/v3/index.json", True),
        (PRIVATE_URL, False),
    ])
    def test_azure_detection(self, url, expected):
        """Azure Artifacts feeds are recognised by host or path."""
        assert is_azure_artifacts_url(url) is expected

    def test_safe_url_and_base64(self):
        """Helper validators reject unsafe input."""
        assert is_provider_safe_url(AZURE_URL)
        assert not is_provider_safe_url("file:///etc/passwd")
        assert is_valid_base64("QUJD==")
        assert not is_valid_base64("abc'; rm")


class TestHelpers:
    """Small credential helpers."""

    def test_basic_auth_header(self):
        """Header is base64 of user:password."""
        header = basic_auth_header(SourceCredentials("u", "p"))
        assert header == "Basic dTpw"

    def test_password_hidden_from_repr(self):
        """Passwords never show up in repr()."""
        assert "hunter2" not in repr(SourceCredentials("u", "hunter2"))

    def test_resolve_env_placeholders(self):
        """Known variables expand and unknown ones stay."""
        assert resolve_env_placeholders("%A%-%B%", {"A": "x"}) == "x-%B%"
