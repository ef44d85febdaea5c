"""Tests for the Azure AD client: browser, device-code and silent logins."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import socket
import threading
from http.client import HTTPConnection
from pathlib import Path
from typing import Callable
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from patbroker.authority import azure as azure_module
from patbroker.authority.azure import AzureIdentityProvider, generate_pkce_pair
from patbroker.exceptions import AuthorityRejectedError, TransportError
from patbroker.models import TokenType
from patbroker.store import SessionCache

AUTHORITY = "https://login.microsoftonline.com/common"
CLIENT_ID = "client-id"
RESOURCE = "resource-id"
REDIRECT = "http://127.0.0.1/"

Handler = Callable[[httpx.Request], httpx.Response]


def _form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode("utf-8")).items()}


def _token_endpoint(
    requests: list[httpx.Request],
    payload: dict[str, object] | None = None,
    status: int = 200,
) -> Handler:
    if payload is None:
        payload = {"access_token": "aad-access", "refresh_token": "refresh-2", "expires_in": 3600}

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status, json=payload)

    return handler


def _make_provider(
    handler: Handler,
    cache: SessionCache | None = None,
    **kwargs: object,
) -> AzureIdentityProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AzureIdentityProvider(client, session_cache=cache, **kwargs)  # type: ignore[arg-type]


def _browser_sending(query_for: Callable[[str], str], seen: list[str]) -> Callable[[str], None]:
    """A fake browser that follows the authorize URL straight to the redirect."""

    def open_browser(url: str) -> None:
        seen.append(url)
        params = parse_qs(urlsplit(url).query)
        redirect = urlsplit(params["redirect_uri"][0])
        conn = HTTPConnection(redirect.hostname, redirect.port, timeout=5)
        conn.request("GET", f"{redirect.path}?{query_for(params['state'][0])}")
        conn.getresponse().read()
        conn.close()

    return open_browser


@pytest.fixture()
def cache(tmp_path: Path) -> SessionCache:
    return SessionCache(tmp_path / "sessions")


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------


class TestHelpers:
    def test_pkce_pair(self) -> None:
        verifier, challenge = generate_pkce_pair()
        assert 43 <= len(verifier) <= 128
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=")
        assert challenge == expected.decode()

    def test_authorize_url_appends_query_verbatim(self) -> None:
        query = "domain_hint=contoso.com&login_hint=a%40b.com&x=%20y"
        url = AzureIdentityProvider.build_authorize_url(
            AUTHORITY, CLIENT_ID, RESOURCE, REDIRECT, "challenge", "state", query
        )
        assert url.startswith(f"{AUTHORITY}/oauth2/authorize?")
        assert url.endswith("&" + query)

    def test_authorize_url_without_query(self) -> None:
        url = AzureIdentityProvider.build_authorize_url(
            AUTHORITY, CLIENT_ID, RESOURCE, REDIRECT, "challenge", "state"
        )
        params = parse_qs(urlsplit(url).query)
        assert params["client_id"] == [CLIENT_ID]
        assert params["resource"] == [RESOURCE]
        assert params["code_challenge_method"] == ["S256"]

    @pytest.mark.parametrize(
        ("authority", "federated"),
        [
            ("https://login.microsoftonline.com/common", False),
            ("https://sts.contoso.com/adfs", True),
            ("https://sts.contoso.com/ADFS/", True),
        ],
    )
    def test_is_federated(self, authority: str, federated: bool) -> None:
        assert AzureIdentityProvider.is_federated(authority) is federated

    def test_unknown_flow_rejected(self) -> None:
        with pytest.raises(ValueError):
            _make_provider(_token_endpoint([]), interactive_flow="telepathy")


# -------------------------------------------------------------------------
# Silent login
# -------------------------------------------------------------------------


class TestAcquireSilent:
    @pytest.mark.asyncio
    async def test_no_cache_configured(self) -> None:
        requests: list[httpx.Request] = []
        provider = _make_provider(_token_endpoint(requests))
        assert await provider.acquire_silent(AUTHORITY, CLIENT_ID, RESOURCE) is None
        assert requests == []

    @pytest.mark.asyncio
    async def test_no_cached_session(self, cache: SessionCache) -> None:
        requests: list[httpx.Request] = []
        provider = _make_provider(_token_endpoint(requests), cache)
        assert await provider.acquire_silent(AUTHORITY, CLIENT_ID, RESOURCE) is None
        assert requests == []

    @pytest.mark.asyncio
    async def test_refresh_grant(self, cache: SessionCache) -> None:
        key = AzureIdentityProvider.session_key(AUTHORITY, CLIENT_ID, RESOURCE)
        cache.set(key, "refresh-1")
        requests: list[httpx.Request] = []
        provider = _make_provider(_token_endpoint(requests), cache)

        token = await provider.acquire_silent(AUTHORITY, CLIENT_ID, RESOURCE)

        assert token is not None
        assert token.type is TokenType.AZURE_ACCESS
        assert token.value == "aad-access"
        (request,) = requests
        assert str(request.url) == f"{AUTHORITY}/oauth2/token"
        form = _form(request)
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-1"
        assert cache.get(key) == "refresh-2"

    @pytest.mark.asyncio
    async def test_federated_authority(self, cache: SessionCache) -> None:
        authority = "https://sts.contoso.com/adfs"
        cache.set(AzureIdentityProvider.session_key(authority, CLIENT_ID, RESOURCE), "refresh-1")
        provider = _make_provider(_token_endpoint([]), cache)
        token = await provider.acquire_silent(authority, CLIENT_ID, RESOURCE)
        assert token is not None and token.type is TokenType.AZURE_FEDERATED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", ["invalid_grant", "interaction_required"])
    async def test_stale_session_is_a_miss(self, cache: SessionCache, error: str) -> None:
        key = AzureIdentityProvider.session_key(AUTHORITY, CLIENT_ID, RESOURCE)
        cache.set(key, "refresh-1")
        provider = _make_provider(_token_endpoint([], {"error": error}, status=400), cache)
        assert await provider.acquire_silent(AUTHORITY, CLIENT_ID, RESOURCE) is None
        assert cache.get(key) is None

    @pytest.mark.asyncio
    async def test_other_refusal_raises(self, cache: SessionCache) -> None:
        cache.set(AzureIdentityProvider.session_key(AUTHORITY, CLIENT_ID, RESOURCE), "refresh-1")
        provider = _make_provider(
            _token_endpoint([], {"error": "invalid_client", "error_description": "bad client"}, 401),
            cache,
        )
        with pytest.raises(AuthorityRejectedError, match="bad client") as exc_info:
            await provider.acquire_silent(AUTHORITY, CLIENT_ID, RESOURCE)
        assert exc_info.value.error_code == "invalid_client"

    @pytest.mark.asyncio
    async def test_server_error_is_transport(self, cache: SessionCache) -> None:
        cache.set(AzureIdentityProvider.session_key(AUTHORITY, CLIENT_ID, RESOURCE), "refresh-1")
        provider = _make_provider(_token_endpoint([], {}, status=502), cache)
        with pytest.raises(TransportError):
            await provider.acquire_silent(AUTHORITY, CLIENT_ID, RESOURCE)

    @pytest.mark.asyncio
    async def test_missing_access_token(self, cache: SessionCache) -> None:
        cache.set(AzureIdentityProvider.session_key(AUTHORITY, CLIENT_ID, RESOURCE), "refresh-1")
        provider = _make_provider(_token_endpoint([], {"token_type": "Bearer"}), cache)
        with pytest.raises(AuthorityRejectedError, match="access_token"):
            await provider.acquire_silent(AUTHORITY, CLIENT_ID, RESOURCE)


# -------------------------------------------------------------------------
# Browser login
# -------------------------------------------------------------------------


class TestBrowserFlow:
    @pytest.mark.asyncio
    async def test_code_exchanged_for_token(self, cache: SessionCache) -> None:
        seen: list[str] = []
        requests: list[httpx.Request] = []
        provider = _make_provider(
            _token_endpoint(requests),
            cache,
            open_browser=_browser_sending(lambda state: f"code=auth-code&state={state}", seen),
            consent_timeout=10,
        )
        query = "domain_hint=contoso.com"

        token = await provider.acquire_interactive(AUTHORITY, CLIENT_ID, RESOURCE, REDIRECT, query)

        assert token is not None
        assert token.type is TokenType.AZURE_ACCESS
        assert seen[0].endswith("&" + query)
        form = _form(requests[0])
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "auth-code"
        assert form["code_verifier"]
        assert form["redirect_uri"].startswith("http://127.0.0.1:")
        assert cache.get(AzureIdentityProvider.session_key(AUTHORITY, CLIENT_ID, RESOURCE)) == "refresh-2"

    @pytest.mark.asyncio
    async def test_declined_returns_none(self, cache: SessionCache) -> None:
        requests: list[httpx.Request] = []
        provider = _make_provider(
            _token_endpoint(requests),
            cache,
            open_browser=_browser_sending(lambda state: f"error=access_denied&state={state}", []),
            consent_timeout=10,
        )
        assert await provider.acquire_interactive(AUTHORITY, CLIENT_ID, RESOURCE, REDIRECT) is None
        assert requests == []

    @pytest.mark.asyncio
    async def test_provider_error_raises(self) -> None:
        provider = _make_provider(
            _token_endpoint([]),
            open_browser=_browser_sending(
                lambda state: f"error=server_error&error_description=broken&state={state}", []
            ),
            consent_timeout=10,
        )
        with pytest.raises(AuthorityRejectedError, match="broken"):
            await provider.acquire_interactive(AUTHORITY, CLIENT_ID, RESOURCE, REDIRECT)

    @pytest.mark.asyncio
    async def test_state_mismatch_raises(self) -> None:
        provider = _make_provider(
            _token_endpoint([]),
            open_browser=_browser_sending(lambda state: "code=auth-code&state=forged", []),
            consent_timeout=10,
        )
        with pytest.raises(AuthorityRejectedError, match="state"):
            await provider.acquire_interactive(AUTHORITY, CLIENT_ID, RESOURCE, REDIRECT)

    @pytest.mark.asyncio
    async def test_consent_timeout_returns_none(self) -> None:
        requests: list[httpx.Request] = []
        provider = _make_provider(
            _token_endpoint(requests), open_browser=lambda url: None, consent_timeout=0.2
        )
        assert await provider.acquire_interactive(AUTHORITY, CLIENT_ID, RESOURCE, REDIRECT) is None
        assert requests == []

    @pytest.mark.asyncio
    async def test_listener_closed_off_event_loop(self, monkeypatch: pytest.MonkeyPatch) -> None:
        closed_on: list[threading.Thread] = []
        original_close = azure_module._RedirectListener.close

        def close(listener: azure_module._RedirectListener) -> None:
            closed_on.append(threading.current_thread())
            original_close(listener)

        monkeypatch.setattr(azure_module._RedirectListener, "close", close)
        provider = _make_provider(
            _token_endpoint([]), open_browser=lambda url: None, consent_timeout=0.2
        )
        assert await provider.acquire_interactive(AUTHORITY, CLIENT_ID, RESOURCE, REDIRECT) is None
        assert len(closed_on) == 1
        assert closed_on[0] is not threading.current_thread()

    @pytest.mark.asyncio
    async def test_non_loopback_redirect_rejected(self) -> None:
        provider = _make_provider(_token_endpoint([]), open_browser=lambda url: None)
        with pytest.raises(AuthorityRejectedError, match="loopback"):
            await provider.acquire_interactive(
                AUTHORITY, CLIENT_ID, RESOURCE, "https://example.com/callback"
            )

    @pytest.mark.asyncio
    async def test_cancellation_shuts_listener(self, cache: SessionCache) -> None:
        seen: list[str] = []
        opened = threading.Event()

        def open_browser(url: str) -> None:
            seen.append(url)
            opened.set()

        requests: list[httpx.Request] = []
        provider = _make_provider(
            _token_endpoint(requests), cache, open_browser=open_browser, consent_timeout=30
        )
        task = asyncio.ensure_future(
            provider.acquire_interactive(AUTHORITY, CLIENT_ID, RESOURCE, REDIRECT)
        )
        assert await asyncio.to_thread(opened.wait, 5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        redirect = urlsplit(parse_qs(urlsplit(seen[0]).query)["redirect_uri"][0])
        with pytest.raises(OSError):
            socket.create_connection((redirect.hostname, redirect.port), timeout=1).close()
        assert requests == []
        assert cache.get(AzureIdentityProvider.session_key(AUTHORITY, CLIENT_ID, RESOURCE)) is None


# -------------------------------------------------------------------------
# Device-code login
# -------------------------------------------------------------------------


def _device_endpoint(
    requests: list[httpx.Request], token_responses: list[tuple[int, dict[str, object]]]
) -> Handler:
    responses = iter(token_responses)

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path.endswith("/oauth2/devicecode"):
            return httpx.Response(
                200,
                json={
                    "device_code": "device-123",
                    "user_code": "ABCD-EFGH",
                    "verification_uri": "https://microsoft.com/devicelogin",
                    "interval": 0,
                    "expires_in": 60,
                },
            )
        status, payload = next(responses)
        return httpx.Response(status, json=payload)

    return handler


class TestDeviceCodeFlow:
    @pytest.mark.asyncio
    async def test_polls_until_authorized(self, cache: SessionCache) -> None:
        requests: list[httpx.Request] = []
        messages: list[str] = []
        provider = _make_provider(
            _device_endpoint(
                requests,
                [
                    (400, {"error": "authorization_pending"}),
                    (400, {"error": "authorization_pending"}),
                    (200, {"access_token": "aad-access", "refresh_token": "refresh-9"}),
                ],
            ),
            cache,
            interactive_flow="device_code",
            notify=messages.append,
            min_poll_interval=0.0,
        )

        token = await provider.acquire_interactive(
            AUTHORITY, CLIENT_ID, RESOURCE, REDIRECT, "domain_hint=contoso.com"
        )

        assert token is not None and token.value == "aad-access"
        assert "ABCD-EFGH" in messages[0]
        assert str(requests[0].url) == f"{AUTHORITY}/oauth2/devicecode?domain_hint=contoso.com"
        assert len(requests) == 4
        assert _form(requests[-1])["device_code"] == "device-123"
        assert cache.get(AzureIdentityProvider.session_key(AUTHORITY, CLIENT_ID, RESOURCE)) == "refresh-9"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", ["authorization_declined", "access_denied", "expired_token"])
    async def test_declined_or_expired_returns_none(self, error: str) -> None:
        provider = _make_provider(
            _device_endpoint([], [(400, {"error": error})]),
            interactive_flow="device_code",
            notify=lambda message: None,
            min_poll_interval=0.0,
        )
        assert await provider.acquire_interactive(AUTHORITY, CLIENT_ID, RESOURCE, REDIRECT) is None

    @pytest.mark.asyncio
    async def test_unexpected_error_raises(self) -> None:
        provider = _make_provider(
            _device_endpoint([], [(400, {"error": "invalid_client"})]),
            interactive_flow="device_code",
            notify=lambda message: None,
            min_poll_interval=0.0,
        )
        with pytest.raises(AuthorityRejectedError):
            await provider.acquire_interactive(AUTHORITY, CLIENT_ID, RESOURCE, REDIRECT)

    @pytest.mark.asyncio
    async def test_device_authorization_refused(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_request"})

        provider = _make_provider(handler, interactive_flow="device_code", notify=lambda m: None)
        with pytest.raises(AuthorityRejectedError, match="Device authorization"):
            await provider.acquire_interactive(AUTHORITY, CLIENT_ID, RESOURCE, REDIRECT)
