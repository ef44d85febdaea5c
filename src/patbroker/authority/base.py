"""The authentication authority contract.

An *authority* is anything that can acquire access tokens from an identity
provider, exchange them for personal access tokens, and check whether a
credential or token still grants access to a target.  The contract is a
:class:`typing.Protocol` rather than a base class: callers such as
:class:`~patbroker.broker.TokenBroker` depend only on the operation set, and
any object providing these five coroutines conforms, whether it talks to
Azure (:class:`~patbroker.authority.vsts.VstsAuthority`) or returns fixed
answers (:class:`~patbroker.authority.fake.AuthorityFake`).

Conforming implementations hold no mutable state between calls; every call
is addressed solely by its :class:`~patbroker.models.TargetUri` and explicit
arguments, so one instance can serve many targets concurrently.

Outcome conventions shared by every implementation:

* Acquisition returns ``None`` when the user declines consent or a silent
  login is not possible.  That is a normal outcome, not an error.
* :class:`~patbroker.exceptions.InvalidInputError` for absent or empty
  inputs.  Never collapsed into ``False``.
* :class:`~patbroker.exceptions.TransportError` when the remote side is
  unreachable (retriable).
* :class:`~patbroker.exceptions.AuthorityRejectedError` when the authority
  refuses (not retriable without fresh credentials).
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional, Protocol, runtime_checkable

from patbroker.exceptions import InvalidInputError
from patbroker.models import Credential, TargetUri, Token, TokenScope


@runtime_checkable
class Authority(Protocol):
    """Operations every authentication authority must provide."""

    async def generate_personal_access_token(
        self,
        target: TargetUri,
        access_token: Token,
        scope: TokenScope,
        require_compact_token: bool,
        token_duration: Optional[timedelta] = None,
    ) -> Token:
        """Exchange *access_token* for a personal access token.

        Args:
            target: The resource the PAT is being requested for.
            access_token: Access token granted by the identity authority.
            scope: The access scopes to be granted to the PAT.
            require_compact_token: ``True`` for the compact token format.
            token_duration: Requested lifetime.  Advisory only: the authority
                decides the actual lifetime.

        Returns:
            A :class:`~patbroker.models.Token` of type ``PERSONAL``.
        """
        ...

    async def interactive_acquire_token(
        self,
        target: TargetUri,
        client_id: str,
        resource: str,
        redirect_uri: str,
        query_parameters: Optional[str] = None,
    ) -> Optional[Token]:
        """Acquire an access token through a flow requiring user presence.

        Args:
            target: The resource access tokens are being requested for.
            client_id: Identifier of the client requesting the token.
            resource: Identifier of the resource that receives the token.
            redirect_uri: Address the authority returns to after consent.
            query_parameters: Appended as-is to the query string of the
                authentication request.

        Returns:
            The access token, or ``None`` if consent was declined.
        """
        ...

    async def noninteractive_acquire_token(
        self,
        target: TargetUri,
        client_id: str,
        resource: str,
        redirect_uri: str,
    ) -> Optional[Token]:
        """Acquire an access token without user interaction.

        Returns:
            The access token, or ``None`` if silent login is not possible.
        """
        ...

    async def validate_credentials(self, target: TargetUri, credential: Credential) -> bool:
        """Check that *credential* still grants access to *target*."""
        ...

    async def validate_token(self, target: TargetUri, token: Token) -> bool:
        """Check that *token* still grants access to *target*."""
        ...


def require_credential(credential: Optional[Credential]) -> Credential:
    """Return *credential*, or raise if it is absent or has an empty secret.

    Raises:
        InvalidInputError: If *credential* is ``None`` or its password is empty.
    """
    if credential is None:
        raise InvalidInputError("credential must not be None")
    if not credential.password:
        raise InvalidInputError("credential secret must not be empty")
    return credential


def require_token(token: Optional[Token]) -> Token:
    """Return *token*, or raise if it is absent or empty.

    Raises:
        InvalidInputError: If *token* is ``None`` or its value is empty.
    """
    if token is None:
        raise InvalidInputError("token must not be None")
    if not token.value:
        raise InvalidInputError("token value must not be empty")
    return token


def require_target(target: Optional[TargetUri]) -> TargetUri:
    """Return *target*, or raise if it is absent.

    Raises:
        InvalidInputError: If *target* is ``None``.
    """
    if target is None:
        raise InvalidInputError("target must not be None")
    return target


def require_scope(scope: Optional[TokenScope]) -> TokenScope:
    """Return *scope*, or raise if it would mint a token that grants nothing.

    The empty :class:`~patbroker.models.TokenScope` is a valid value for
    composing scopes, but minting a personal access token with it is a
    caller error.

    Raises:
        InvalidInputError: If *scope* is ``None`` or empty.
    """
    if scope is None or not scope:
        raise InvalidInputError("a personal access token requires at least one scope")
    return scope
