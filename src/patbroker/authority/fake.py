"""Fixed-response authority for tests and offline use.

:class:`AuthorityFake` satisfies the :class:`~patbroker.authority.base.Authority`
protocol without any network access.  Each operation returns a canned
answer that the test controls through constructor arguments and public
attributes, and every call is appended to :attr:`AuthorityFake.calls` so
tests can assert on ordering and forwarded arguments.

Unlike a naive double it applies the same input rules as the real
authority: validating ``None`` raises
:class:`~patbroker.exceptions.InvalidInputError` instead of answering
``False``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

from patbroker.authority.base import (
    require_credential,
    require_scope,
    require_target,
    require_token,
)
from patbroker.exceptions import InvalidInputError
from patbroker.models import Credential, TargetUri, Token, TokenScope, TokenType

# Default interactive answer; an explicit None means consent was declined.
_DEFAULT_ACCESS_TOKEN = Token(value="token-access", type=TokenType.AZURE_ACCESS)


@dataclass
class FakeCall:
    """One recorded call on an :class:`AuthorityFake`."""

    operation: str
    target: TargetUri
    arguments: dict[str, Any] = field(default_factory=dict)


class AuthorityFake:
    """An authority that answers from configuration instead of the network.

    Args:
        expected_query_parameters: When not ``None``, interactive acquisition
            raises :class:`AssertionError` unless it receives exactly this
            string.
        credentials_are_valid: Answer returned by :meth:`validate_credentials`.
        tokens_are_valid: Answer returned by :meth:`validate_token`.
        silent_token: Value returned by :meth:`noninteractive_acquire_token`.
        interactive_token: Value returned by :meth:`interactive_acquire_token`.
            Pass ``None`` to simulate a user who declines consent.
        personal_access_token: Value returned by PAT generation.
        pat_error: If set, PAT generation raises this exception instead.
        consent_gate: If set, interactive acquisition waits on this event
            before answering, simulating a user who has not responded yet.

    Example::

        fake = AuthorityFake(expected_query_parameters="domain_hint=contoso.com")
        token = await fake.interactive_acquire_token(
            target, "client", "resource", "http://127.0.0.1/", "domain_hint=contoso.com"
        )
        assert token.type is TokenType.AZURE_ACCESS
    """

    def __init__(
        self,
        expected_query_parameters: Optional[str] = None,
        credentials_are_valid: bool = True,
        tokens_are_valid: bool = True,
        silent_token: Optional[Token] = None,
        interactive_token: Optional[Token] = _DEFAULT_ACCESS_TOKEN,
        personal_access_token: Optional[Token] = None,
        pat_error: Optional[BaseException] = None,
        consent_gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.expected_query_parameters = expected_query_parameters
        self.credentials_are_valid = credentials_are_valid
        self.tokens_are_valid = tokens_are_valid
        self.silent_token = silent_token
        self.interactive_token = interactive_token
        self.personal_access_token = personal_access_token or Token(
            value="personal-access-token", type=TokenType.PERSONAL
        )
        self.pat_error = pat_error
        self.consent_gate = consent_gate
        self.calls: list[FakeCall] = []
        self.pending_prompts = 0
        self.max_pending_prompts = 0

    def operations(self) -> list[str]:
        """Names of the recorded operations, in call order."""
        return [call.operation for call in self.calls]

    def _record(self, operation: str, target: TargetUri, **arguments: Any) -> None:
        self.calls.append(FakeCall(operation, target, arguments))

    async def generate_personal_access_token(
        self,
        target: TargetUri,
        access_token: Token,
        scope: TokenScope,
        require_compact_token: bool,
        token_duration: Optional[timedelta] = None,
    ) -> Token:
        require_target(target)
        require_token(access_token)
        require_scope(scope)
        if access_token.type == TokenType.PERSONAL:
            raise InvalidInputError("a personal access token cannot be exchanged for another")
        self._record(
            "generate_personal_access_token",
            target,
            access_token=access_token,
            scope=scope,
            require_compact_token=require_compact_token,
            token_duration=token_duration,
        )
        await asyncio.sleep(0)
        if self.pat_error is not None:
            raise self.pat_error
        return self.personal_access_token

    async def interactive_acquire_token(
        self,
        target: TargetUri,
        client_id: str,
        resource: str,
        redirect_uri: str,
        query_parameters: Optional[str] = None,
    ) -> Optional[Token]:
        require_target(target)
        self._record(
            "interactive_acquire_token",
            target,
            client_id=client_id,
            resource=resource,
            redirect_uri=redirect_uri,
            query_parameters=query_parameters,
        )
        if (
            self.expected_query_parameters is not None
            and query_parameters != self.expected_query_parameters
        ):
            raise AssertionError(
                f"expected query parameters {self.expected_query_parameters!r}, "
                f"got {query_parameters!r}"
            )

        self.pending_prompts += 1
        self.max_pending_prompts = max(self.max_pending_prompts, self.pending_prompts)
        try:
            if self.consent_gate is not None:
                await self.consent_gate.wait()
            else:
                await asyncio.sleep(0)
        finally:
            self.pending_prompts -= 1
        return self.interactive_token

    async def noninteractive_acquire_token(
        self,
        target: TargetUri,
        client_id: str,
        resource: str,
        redirect_uri: str,
    ) -> Optional[Token]:
        require_target(target)
        self._record(
            "noninteractive_acquire_token",
            target,
            client_id=client_id,
            resource=resource,
            redirect_uri=redirect_uri,
        )
        await asyncio.sleep(0)
        return self.silent_token

    async def validate_credentials(self, target: TargetUri, credential: Credential) -> bool:
        require_target(target)
        require_credential(credential)
        self._record("validate_credentials", target)
        await asyncio.sleep(0)
        return self.credentials_are_valid

    async def validate_token(self, target: TargetUri, token: Token) -> bool:
        require_target(target)
        require_token(token)
        self._record("validate_token", target)
        await asyncio.sleep(0)
        return self.tokens_are_valid
