"""Azure Active Directory client used by the VSTS authority.

This module provides :class:`AzureIdentityProvider`, which obtains access
tokens from an Azure AD (or on-premises ADFS) authority three ways:

1. **Browser** -- OAuth2 Authorization Code grant with PKCE (:rfc:`7636`).
   Opens the authorization URL in the user's browser, listens on a loopback
   HTTP server for the redirect, then exchanges the code for tokens.
2. **Device code** -- OAuth2 Device Authorization Grant (:rfc:`8628`) for
   headless terminals.  Prints a code for the user to enter on another
   device and polls until the user responds.
3. **Silent** -- ``refresh_token`` grant against the session cache written
   by an earlier interactive login.

Waiting for the user is expressed as awaiting a coroutine, so the caller can
cancel a pending consent with :meth:`asyncio.Task.cancel`.  Cancellation
shuts the loopback listener down and nothing is written to the session cache.

Declined consent is not an error: the interactive methods return ``None``.

See Also:
    :class:`~patbroker.authority.vsts.VstsAuthority` -- the authority built
    on top of this client.
    :class:`~patbroker.store.SessionCache` -- where refresh tokens live.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import secrets
import sys
import threading
import time
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx

from patbroker.exceptions import AuthorityRejectedError, TransportError
from patbroker.models import Token, TokenType
from patbroker.store import SessionCache

logger = logging.getLogger(__name__)

DECLINED_ERRORS = frozenset(
    {"access_denied", "consent_required", "authorization_declined", "user_cancelled"}
)
"""OAuth ``error`` values meaning the user said no."""

SILENT_MISS_ERRORS = frozenset(
    {"invalid_grant", "interaction_required", "login_required", "consent_required"}
)
"""OAuth ``error`` values meaning silent login needs a fresh interactive login."""

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code_verifier and code_challenge (S256).

    Returns:
        A tuple of ``(code_verifier, code_challenge)``.
    """
    # RFC 7636: 43-128 characters from unreserved character set
    code_verifier = secrets.token_urlsafe(64)[:128]
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    code_challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return code_verifier, code_challenge


class _RedirectServer(HTTPServer):
    def __init__(self, server_address: tuple[str, int], callback_path: str) -> None:
        super().__init__(server_address, _RedirectHandler)
        self.callback_path = callback_path
        self.code: Optional[str] = None
        self.error: Optional[str] = None
        self.error_description: Optional[str] = None
        self.state: Optional[str] = None
        self.event = threading.Event()


class _RedirectHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
        parsed = urlsplit(self.path)
        server = self.server
        assert isinstance(server, _RedirectServer)
        if parsed.path.rstrip("/") != server.callback_path.rstrip("/"):
            self.send_response(404)
            self.end_headers()
            return

        params = parse_qs(parsed.query)
        server.state = params.get("state", [None])[0]
        if "error" in params:
            server.error = params["error"][0]
            server.error_description = params.get("error_description", [None])[0]
            body = f"Authorization failed: {server.error}"
        elif "code" in params:
            server.code = params["code"][0]
            body = "Authorization successful! You can close this window and return to git."
        else:
            server.error = "no_code"
            body = "No authorization code received."

        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.end_headers()
        self.wfile.write(f"<html><body><h2>{body}</h2></body></html>".encode("utf-8"))
        server.event.set()

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        # Suppress default logging
        pass


class _RedirectListener:
    """Loopback listener bound to the host and port of a redirect URI.

    A port of ``0`` (or none) binds a free port; :attr:`redirect_uri` reports
    the address actually listened on.
    """

    def __init__(self, redirect_uri: str) -> None:
        parsed = urlsplit(redirect_uri)
        if parsed.scheme != "http" or parsed.hostname not in ("127.0.0.1", "localhost", "::1"):
            raise AuthorityRejectedError(
                f"Interactive login needs a loopback http redirect address, got '{redirect_uri}'"
            )
        self._host = parsed.hostname
        self._path = parsed.path or "/"
        self._server = _RedirectServer((self._host, parsed.port or 0), self._path)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    @property
    def redirect_uri(self) -> str:
        port = self._server.server_address[1]
        return f"http://{self._host}:{port}{self._path}"

    @property
    def server(self) -> _RedirectServer:
        return self._server

    def start(self) -> None:
        self._thread.start()

    def close(self) -> None:
        """Stop serving and release the port.  Blocks; run it off the event loop."""
        # Release any thread still blocked in event.wait() before shutting down.
        self._server.event.set()
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=1)


def _write_device_instructions(message: str) -> None:
    sys.stderr.write(f"\n{message}\n\nWaiting for authorization...\n")
    sys.stderr.flush()


class AzureIdentityProvider:
    """OAuth2 client for an Azure AD / ADFS authority.

    Holds only transport resources (an HTTP client) and collaborators; the
    authority URL is passed on every call so one provider can serve targets
    living in different tenants.

    Args:
        http_client: Client used for token and device-code requests.
        session_cache: Where refresh tokens are kept for silent login.
            ``None`` disables silent login.
        consent_timeout: Upper bound, in seconds, on how long to wait for the
            user.  When it elapses the login counts as declined.
        interactive_flow: ``"browser"`` or ``"device_code"``.
        open_browser: Callable used to open the authorization URL.  Runs in a
            worker thread.
        notify: Callable used to show device-code instructions.
        min_poll_interval: Lower bound for the device-code polling interval.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        session_cache: Optional[SessionCache] = None,
        consent_timeout: float = 300.0,
        interactive_flow: str = "browser",
        open_browser: Callable[[str], Any] = webbrowser.open,
        notify: Callable[[str], None] = _write_device_instructions,
        min_poll_interval: float = 1.0,
    ) -> None:
        if interactive_flow not in ("browser", "device_code"):
            raise ValueError(f"Unknown interactive flow '{interactive_flow}'")
        self._http = http_client
        self._session_cache = session_cache
        self._consent_timeout = consent_timeout
        self._interactive_flow = interactive_flow
        self._open_browser = open_browser
        self._notify = notify
        self._min_poll_interval = min_poll_interval

    @staticmethod
    def is_federated(authority_url: str) -> bool:
        """Whether *authority_url* points at an on-premises ADFS authority."""
        return urlsplit(authority_url).path.rstrip("/").lower().endswith("/adfs")

    @staticmethod
    def session_key(authority_url: str, client_id: str, resource: str) -> str:
        """Key under which the refresh token for this login is cached."""
        return f"{authority_url.rstrip('/').lower()}|{client_id}|{resource}"

    @staticmethod
    def build_authorize_url(
        authority_url: str,
        client_id: str,
        resource: str,
        redirect_uri: str,
        code_challenge: str,
        state: str,
        query_parameters: Optional[str] = None,
    ) -> str:
        """Build the ``/oauth2/authorize`` URL for the browser flow.

        *query_parameters* is appended verbatim after the encoded standard
        parameters, so provider-specific hints such as ``login_hint`` or
        ``domain_hint`` reach the authority exactly as given.
        """
        params = {
            "response_type": "code",
            "client_id": client_id,
            "resource": resource,
            "redirect_uri": redirect_uri,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "state": state,
        }
        url = f"{authority_url.rstrip('/')}/oauth2/authorize?{urlencode(params)}"
        if query_parameters:
            url = f"{url}&{query_parameters}"
        return url

    # ------------------------------------------------------------------ #
    # Public acquisition methods
    # ------------------------------------------------------------------ #

    async def acquire_interactive(
        self,
        authority_url: str,
        client_id: str,
        resource: str,
        redirect_uri: str,
        query_parameters: Optional[str] = None,
    ) -> Optional[Token]:
        """Obtain an access token with the user's participation.

        Returns:
            The access token, or ``None`` if the user declined or did not
            respond within the consent timeout.

        Raises:
            TransportError: If the authority cannot be reached.
            AuthorityRejectedError: If the authority refuses for any reason
                other than declined consent.
        """
        if self._interactive_flow == "device_code":
            payload = await self._device_code_flow(
                authority_url, client_id, resource, query_parameters
            )
        else:
            payload = await self._authorization_code_flow(
                authority_url, client_id, resource, redirect_uri, query_parameters
            )
        if payload is None:
            return None
        return self._accept(payload, authority_url, client_id, resource)

    async def acquire_silent(
        self,
        authority_url: str,
        client_id: str,
        resource: str,
    ) -> Optional[Token]:
        """Obtain an access token from the cached session without prompting.

        Returns:
            The access token, or ``None`` when there is no cached session or
            the authority requires a fresh interactive login.

        Raises:
            TransportError: If the authority cannot be reached.
            AuthorityRejectedError: For refusals other than "log in again".
        """
        if self._session_cache is None:
            return None
        key = self.session_key(authority_url, client_id, resource)
        refresh_token = self._session_cache.get(key)
        if not refresh_token:
            logger.debug("No cached session for %s", authority_url)
            return None

        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
            "resource": resource,
        }
        try:
            payload = await self._token_request(authority_url, data)
        except AuthorityRejectedError as exc:
            if exc.error_code in SILENT_MISS_ERRORS:
                logger.warning("Cached session for %s is no longer usable: %s", authority_url, exc)
                self._session_cache.delete(key)
                return None
            raise
        return self._accept(payload, authority_url, client_id, resource)

    # ------------------------------------------------------------------ #
    # Flows
    # ------------------------------------------------------------------ #

    async def _authorization_code_flow(
        self,
        authority_url: str,
        client_id: str,
        resource: str,
        redirect_uri: str,
        query_parameters: Optional[str],
    ) -> Optional[dict[str, Any]]:
        code_verifier, code_challenge = generate_pkce_pair()
        state = secrets.token_urlsafe(16)

        listener = _RedirectListener(redirect_uri)
        listener.start()
        try:
            actual_redirect = listener.redirect_uri
            auth_url = self.build_authorize_url(
                authority_url,
                client_id,
                resource,
                actual_redirect,
                code_challenge,
                state,
                query_parameters,
            )
            logger.debug("Waiting for browser consent on %s", actual_redirect)
            await asyncio.to_thread(self._open_browser, auth_url)
            received = await asyncio.to_thread(listener.server.event.wait, self._consent_timeout)
            server = listener.server
            if not received:
                logger.warning("No consent received within %.0f seconds", self._consent_timeout)
                return None
            if server.error in DECLINED_ERRORS:
                logger.warning("User declined consent: %s", server.error)
                return None
            if server.error:
                raise AuthorityRejectedError(
                    f"Authorization failed: {server.error_description or server.error}",
                    error_code=server.error,
                )
            if server.state != state:
                raise AuthorityRejectedError("Authorization response state does not match request")
            code = server.code
        finally:
            await asyncio.to_thread(listener.close)

        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": client_id,
            "resource": resource,
            "redirect_uri": actual_redirect,
            "code_verifier": code_verifier,
        }
        return await self._token_request(authority_url, data)

    async def _device_code_flow(
        self,
        authority_url: str,
        client_id: str,
        resource: str,
        query_parameters: Optional[str],
    ) -> Optional[dict[str, Any]]:
        url = f"{authority_url.rstrip('/')}/oauth2/devicecode"
        if query_parameters:
            url = f"{url}?{query_parameters}"
        response = await self._post(url, {"client_id": client_id, "resource": resource})
        device_data = self._parse_payload(response, "Device authorization")
        for field_name in ("device_code", "user_code"):
            if field_name not in device_data:
                raise AuthorityRejectedError(
                    f"Device authorization response missing '{field_name}'"
                )

        verification_uri = device_data.get(
            "verification_uri", device_data.get("verification_url", "")
        )
        message = device_data.get("message") or (
            f"Go to: {verification_uri}\nEnter code: {device_data['user_code']}"
        )
        self._notify(message)

        interval = max(float(device_data.get("interval", 5)), self._min_poll_interval)
        expires_in = float(device_data.get("expires_in", self._consent_timeout))
        deadline = time.monotonic() + min(expires_in, self._consent_timeout)
        data = {
            "grant_type": DEVICE_CODE_GRANT,
            "device_code": device_data["device_code"],
            "code": device_data["device_code"],
            "client_id": client_id,
            "resource": resource,
        }

        while time.monotonic() < deadline:
            await asyncio.sleep(interval)
            try:
                return await self._token_request(authority_url, data)
            except AuthorityRejectedError as exc:
                if exc.error_code == "authorization_pending":
                    continue
                if exc.error_code == "slow_down":
                    interval += 5
                    continue
                if exc.error_code in DECLINED_ERRORS:
                    logger.warning("User declined device authorization")
                    return None
                if exc.error_code in ("expired_token", "code_expired"):
                    logger.warning("Device code expired before the user responded")
                    return None
                raise

        logger.warning("Device code flow timed out")
        return None

    # ------------------------------------------------------------------ #
    # HTTP helpers
    # ------------------------------------------------------------------ #

    async def _post(self, url: str, data: dict[str, str]) -> httpx.Response:
        try:
            response = await self._http.post(
                url, data=data, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"Identity provider unreachable: {exc}") from exc
        if response.status_code >= 500:
            raise TransportError(
                f"Identity provider returned HTTP {response.status_code}"
            )
        return response

    async def _token_request(self, authority_url: str, data: dict[str, Any]) -> dict[str, Any]:
        url = f"{authority_url.rstrip('/')}/oauth2/token"
        response = await self._post(url, data)
        payload = self._parse_payload(response, "Token request")
        if "access_token" not in payload:
            raise AuthorityRejectedError(
                "Token response missing 'access_token' field",
                status_code=response.status_code,
            )
        return payload

    @staticmethod
    def _parse_payload(response: httpx.Response, what: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.status_code >= 400 or "error" in payload:
            error_code = payload.get("error")
            description = payload.get("error_description") or error_code or response.text[:200]
            raise AuthorityRejectedError(
                f"{what} failed with status {response.status_code}: {description}",
                status_code=response.status_code,
                error_code=error_code,
            )
        return payload

    def _accept(
        self,
        payload: dict[str, Any],
        authority_url: str,
        client_id: str,
        resource: str,
    ) -> Token:
        access_token = payload.get("access_token")
        if not access_token:
            raise AuthorityRejectedError("Token response contained an empty access token")
        refresh_token = payload.get("refresh_token")
        if refresh_token and self._session_cache is not None:
            self._session_cache.set(
                self.session_key(authority_url, client_id, resource), refresh_token
            )
        token_type = (
            TokenType.AZURE_FEDERATED
            if self.is_federated(authority_url)
            else TokenType.AZURE_ACCESS
        )
        return Token(value=access_token, type=token_type)
