"""Azure DevOps / VSTS authority.

:class:`VstsAuthority` is the production implementation of
:class:`~patbroker.authority.base.Authority`.  Token acquisition is
delegated to :class:`~patbroker.authority.azure.AzureIdentityProvider`; this
module adds what is specific to Azure DevOps:

* **Tenant detection** -- an anonymous request to the account answers with
  an ``X-VSS-ResourceTenant`` header naming the Azure AD tenant that backs
  it, so logins go to that tenant rather than ``/common``.
* **PAT minting** -- ``POST /_apis/token/sessiontokens`` on the identity
  service, authorised with the access token.
* **Validation** -- ``GET /_apis/connectiondata`` on the account.

HTTP errors are mapped to the contract's exception types the same way for
every call: connection failures, timeouts and 5xx become
:class:`~patbroker.exceptions.TransportError`; explicit refusals become
:class:`~patbroker.exceptions.AuthorityRejectedError` or, for validation,
``False``.  Nothing is retried here.

Example::

    async with VstsAuthority(load_settings()) as authority:
        ok = await authority.validate_token(target, token)
"""

from __future__ import annotations

import logging
import platform
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlsplit

import httpx

from patbroker.authority.azure import AzureIdentityProvider
from patbroker.authority.base import (
    require_credential,
    require_scope,
    require_target,
    require_token,
)
from patbroker.exceptions import AuthorityRejectedError, InvalidInputError, TransportError
from patbroker.models import Credential, Settings, TargetUri, Token, TokenScope, TokenType
from patbroker.store import SessionCache

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-VSS-ResourceTenant"
_EMPTY_TENANT = "00000000-0000-0000-0000-000000000000"

_REJECTED_STATUSES = frozenset({401, 403})
# Azure DevOps answers 203 with a sign-in page when credentials are not accepted.
_SIGN_IN_STATUSES = frozenset({203})


class VstsAuthority:
    """Authority for targets hosted on Azure DevOps.

    Args:
        settings: Identity-provider coordinates and timeouts.
        http_client: Client for all requests.  When omitted a client is
            created from ``settings.request_timeout`` and closed by
            :meth:`aclose`.
        identity_provider: Client used for token acquisition.  When omitted
            one is built on *http_client* with a :class:`SessionCache` in the
            data directory.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        identity_provider: Optional[AzureIdentityProvider] = None,
    ) -> None:
        self._settings = settings or Settings()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self._settings.request_timeout)
        self._identity = identity_provider or AzureIdentityProvider(
            self._http,
            session_cache=SessionCache(),
            consent_timeout=self._settings.consent_timeout,
            interactive_flow=self._settings.interactive_flow,
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    # ------------------------------------------------------------------ #
    # Async context manager
    # ------------------------------------------------------------------ #

    async def __aenter__(self) -> VstsAuthority:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if this authority created it."""
        if self._owns_client:
            await self._http.aclose()

    # ------------------------------------------------------------------ #
    # Authority operations
    # ------------------------------------------------------------------ #

    async def generate_personal_access_token(
        self,
        target: TargetUri,
        access_token: Token,
        scope: TokenScope,
        require_compact_token: bool,
        token_duration: Optional[timedelta] = None,
    ) -> Token:
        """Exchange an Azure access token for a personal access token.

        Args:
            target: The resource the PAT is being requested for.
            access_token: Token from the identity provider.
            scope: Scopes the PAT should carry.  Must not be empty.
            require_compact_token: Request the compact (shorter) format.
            token_duration: Requested lifetime, sent as ``validTo``.  The
                service may grant a different one.

        Returns:
            A ``PERSONAL`` :class:`~patbroker.models.Token`.

        Raises:
            InvalidInputError: For a missing token, an empty scope, or an
                access token that is itself a PAT.
            AuthorityRejectedError: If the identity service refuses or
                answers without a token.
            TransportError: If the identity service cannot be reached.
        """
        require_target(target)
        require_token(access_token)
        require_scope(scope)
        if access_token.type == TokenType.PERSONAL:
            raise InvalidInputError("a personal access token cannot be exchanged for another")

        url = self.session_token_url(require_compact_token)
        body: dict[str, Any] = {
            "scope": str(scope),
            "displayName": self.token_display_name(target),
        }
        if token_duration is not None:
            valid_to = datetime.now(timezone.utc) + token_duration
            body["validTo"] = valid_to.isoformat()

        logger.debug("Requesting personal access token for %s (scope: %s)", target, scope)
        response = await self._send(
            "POST",
            url,
            headers={"Authorization": access_token.authorization_header()},
            json=body,
        )
        if response.status_code >= 400:
            raise AuthorityRejectedError(
                f"Personal access token request refused: {_describe(response)}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None
        value = payload.get("token") if isinstance(payload, dict) else None
        if not value:
            raise AuthorityRejectedError(
                "Personal access token response did not contain a token",
                status_code=response.status_code,
            )
        return Token(value=value, type=TokenType.PERSONAL)

    async def interactive_acquire_token(
        self,
        target: TargetUri,
        client_id: str,
        resource: str,
        redirect_uri: str,
        query_parameters: Optional[str] = None,
    ) -> Optional[Token]:
        require_target(target)
        authority_url = await self.detect_authority(target)
        logger.debug("Interactive login for %s against %s", target, authority_url)
        return await self._identity.acquire_interactive(
            authority_url, client_id, resource, redirect_uri, query_parameters
        )

    async def noninteractive_acquire_token(
        self,
        target: TargetUri,
        client_id: str,
        resource: str,
        redirect_uri: str,
    ) -> Optional[Token]:
        require_target(target)
        authority_url = await self.detect_authority(target)
        logger.debug("Silent login for %s against %s", target, authority_url)
        return await self._identity.acquire_silent(authority_url, client_id, resource)

    async def validate_credentials(self, target: TargetUri, credential: Credential) -> bool:
        """Check a username/password pair against the account.

        Returns:
            ``True`` if the account accepts it, ``False`` if access was refused.

        Raises:
            InvalidInputError: If *credential* is missing or has no secret.
            TransportError: If the account cannot be reached.
        """
        require_target(target)
        require_credential(credential)
        return await self._validate(target, credential.authorization_header())

    async def validate_token(self, target: TargetUri, token: Token) -> bool:
        """Check a token against the account.  Same outcomes as :meth:`validate_credentials`."""
        require_target(target)
        require_token(token)
        return await self._validate(target, token.authorization_header())

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def session_token_url(self, require_compact_token: bool) -> str:
        """The identity service endpoint that mints personal access tokens."""
        base = self._settings.identity_service_url.rstrip("/")
        url = f"{base}/_apis/token/sessiontokens?api-version=1.0"
        if require_compact_token:
            url += "&tokentype=compact"
        return url

    @staticmethod
    def token_display_name(target: TargetUri) -> str:
        """Name shown for minted tokens in the user's Azure DevOps profile."""
        return f"Git: {target.url} on {platform.node()}"

    async def detect_authority(self, target: TargetUri) -> str:
        """Find the Azure AD authority URL that backs *target*.

        Falls back to the configured ``authority_url`` when detection is
        disabled, the target is not on Azure DevOps, or the account is backed
        by Microsoft accounts rather than a tenant.

        Raises:
            TransportError: If the account cannot be reached.
        """
        if not self._settings.detect_tenant or not target.is_vsts:
            return self._settings.authority_url

        response = await self._send("HEAD", target.account_url)
        tenant = response.headers.get(TENANT_HEADER, "").split(",")[0].strip()
        if not tenant or tenant == _EMPTY_TENANT:
            return self._settings.authority_url

        configured = urlsplit(self._settings.authority_url)
        return f"{configured.scheme}://{configured.netloc}/{tenant}"

    async def _validate(self, target: TargetUri, authorization: str) -> bool:
        url = target.resolve("_apis/connectiondata")
        response = await self._send("GET", url, headers={"Authorization": authorization})
        status = response.status_code
        if status in _REJECTED_STATUSES or status in _SIGN_IN_STATUSES:
            logger.debug("Access to %s refused (HTTP %d)", target, status)
            return False
        if status >= 400:
            raise AuthorityRejectedError(
                f"Validation against {target} failed: {_describe(response)}",
                status_code=status,
            )
        return True

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send one request, mapping transport failures and 5xx to :class:`TransportError`."""
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc
        if response.status_code >= 500:
            raise TransportError(f"{method} {url} failed: {_describe(response)}")
        return response


def _describe(response: httpx.Response) -> str:
    """Short ``HTTP <status>: <message>`` summary of an error response."""
    try:
        detail = response.json()
        if isinstance(detail, dict):
            msg = detail.get("message") or detail.get("error") or ""
        else:
            msg = str(detail)
    except ValueError:
        msg = response.text[:200] if response.text else ""
    prefix = f"HTTP {response.status_code}"
    return f"{prefix}: {msg}" if msg else prefix
