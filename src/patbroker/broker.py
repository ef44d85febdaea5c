"""Call-sequencing policy that turns logins into stored personal access tokens.

:class:`TokenBroker` composes the four :class:`~patbroker.authority.base.Authority`
operations into one decision procedure per target::

    START -> VALIDATING -> VALID
                        -> INVALID -> ACQUIRING_SILENT -> EXCHANGING -> VALID
                                   -> ACQUIRING_SILENT -> ACQUIRING_INTERACTIVE -> EXCHANGING -> VALID
                                                                                -> FAILED

A cached value is validated first; an absent one goes straight to
``INVALID``.  Silent acquisition is always tried before interactive
acquisition; a silent attempt that finds no session or is refused by the
authority falls through to the interactive one.  The access token obtained either way is exchanged for a
personal access token that is written to the store.  ``FAILED`` is terminal
and nothing is retried.

Only one interactive prompt runs per target at a time.  Callers arriving
while a prompt is on screen wait for it and share its outcome.  A waiting
caller that is cancelled leaves the prompt running for the others; the
prompt itself is cancelled only when its last waiter goes away.

Example::

    broker = TokenBroker(authority, settings, store=TokenStore())
    result = await broker.acquire(TargetUri.from_url("https://dev.azure.com/contoso"))
    print(result.token.value)
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from patbroker.authority.base import Authority, require_target
from patbroker.exceptions import AcquisitionFailedError, AuthorityRejectedError, PatbrokerError
from patbroker.models import Credential, Settings, TargetUri, Token, TokenType
from patbroker.store import Store, Stored

logger = logging.getLogger(__name__)


class BrokerState(str, enum.Enum):
    """States of a single :meth:`TokenBroker.acquire` call."""

    START = "start"
    VALIDATING = "validating"
    VALID = "valid"
    INVALID = "invalid"
    ACQUIRING_SILENT = "acquiring_silent"
    ACQUIRING_INTERACTIVE = "acquiring_interactive"
    EXCHANGING = "exchanging"
    FAILED = "failed"


@dataclass(frozen=True)
class BrokerResult:
    """Outcome of a successful :meth:`TokenBroker.acquire` call.

    Attributes:
        state: Always :attr:`BrokerState.VALID`.
        value: The usable secret: a freshly minted personal access token, or
            the cached token or credential that passed validation.
        transitions: Every state the call went through, in order.
        from_cache: ``True`` when *value* is the validated cached value.
    """

    state: BrokerState
    value: Stored
    transitions: tuple[BrokerState, ...]
    from_cache: bool = False

    @property
    def token(self) -> Optional[Token]:
        """*value* when it is a :class:`Token`, else ``None``."""
        return self.value if isinstance(self.value, Token) else None

    @property
    def password(self) -> str:
        """The secret to hand to git as the password."""
        if isinstance(self.value, Credential):
            return self.value.password
        return self.value.value


class _Trail:
    """Records and logs the transitions of one call."""

    def __init__(self, target: TargetUri) -> None:
        self._target = target
        self._states: list[BrokerState] = [BrokerState.START]

    @property
    def states(self) -> tuple[BrokerState, ...]:
        return tuple(self._states)

    @property
    def current(self) -> BrokerState:
        return self._states[-1]

    def enter(self, state: BrokerState) -> None:
        logger.debug("%s: %s -> %s", self._target, self.current.value, state.value)
        self._states.append(state)


class _SharedPrompt:
    """An in-flight interactive acquisition and the number of callers awaiting it."""

    def __init__(self, task: asyncio.Task) -> None:
        self.task = task
        self.waiters = 0


class TokenBroker:
    """Validates, acquires, exchanges and stores tokens for targets.

    The broker holds no per-target state other than the interactive
    prompts currently in flight, so one instance can serve any number of
    targets concurrently.

    Args:
        authority: Anything satisfying the :class:`Authority` protocol.
        settings: Client id, resource, redirect address and PAT defaults.
        store: Where cached values are read from and minted tokens written
            to.  ``None`` disables caching.
    """

    def __init__(
        self,
        authority: Authority,
        settings: Optional[Settings] = None,
        store: Optional[Store] = None,
    ) -> None:
        self._authority = authority
        self._settings = settings or Settings()
        self._store = store
        self._prompts: dict[TargetUri, _SharedPrompt] = {}

    async def acquire(
        self,
        target: TargetUri,
        cached: Optional[Stored] = None,
        query_parameters: Optional[str] = None,
    ) -> BrokerResult:
        """Return a usable secret for *target*, logging in if necessary.

        Args:
            target: The resource to authenticate against.
            cached: A previously stored token or credential.  When omitted
                the store (if any) is consulted.
            query_parameters: Passed through unchanged to interactive
                acquisition.  Ignored when joining a prompt another caller
                already started.

        Returns:
            A :class:`BrokerResult` in the ``VALID`` state.

        Raises:
            AcquisitionFailedError: If no access token could be obtained
                (consent declined or timed out).
            TransportError: If the authority could not be reached at any step.
            AuthorityRejectedError: If the authority refused the exchange.
            InvalidInputError: If *target* is missing.

        Every error raised carries the visited states in ``transitions``.
        """
        require_target(target)
        trail = _Trail(target)
        try:
            return await self._run(target, cached, query_parameters, trail)
        except PatbrokerError as exc:
            if trail.current is not BrokerState.FAILED:
                trail.enter(BrokerState.FAILED)
            exc.transitions = trail.states
            raise

    async def erase(self, target: TargetUri) -> None:
        """Forget whatever is stored for *target*."""
        require_target(target)
        if self._store is not None:
            self._store.delete(target)

    async def _run(
        self,
        target: TargetUri,
        cached: Optional[Stored],
        query_parameters: Optional[str],
        trail: _Trail,
    ) -> BrokerResult:
        if cached is None and self._store is not None:
            cached = self._store.read(target)

        if cached is not None:
            trail.enter(BrokerState.VALIDATING)
            if await self._validate(target, cached):
                trail.enter(BrokerState.VALID)
                return BrokerResult(BrokerState.VALID, cached, trail.states, from_cache=True)
            logger.info("Cached secret for %s is no longer valid", target)

        trail.enter(BrokerState.INVALID)
        settings = self._settings

        trail.enter(BrokerState.ACQUIRING_SILENT)
        try:
            access_token = await self._authority.noninteractive_acquire_token(
                target, settings.client_id, settings.resource, settings.redirect_uri
            )
        except AuthorityRejectedError as exc:
            # TransportError is not caught: an unreachable provider fails the call.
            logger.info("Silent login for %s was refused: %s", target, exc)
            access_token = None
        if access_token is None:
            trail.enter(BrokerState.ACQUIRING_INTERACTIVE)
            access_token = await self._interactive(target, query_parameters)
        if access_token is None:
            trail.enter(BrokerState.FAILED)
            raise AcquisitionFailedError(
                f"Could not obtain an access token for {target}: consent was not given",
                transitions=trail.states,
            )

        trail.enter(BrokerState.EXCHANGING)
        duration = (
            timedelta(days=settings.token_duration_days)
            if settings.token_duration_days
            else None
        )
        pat = await self._authority.generate_personal_access_token(
            target,
            access_token,
            settings.token_scope,
            settings.require_compact_token,
            duration,
        )
        if pat is None or pat.type != TokenType.PERSONAL:
            raise AuthorityRejectedError(
                f"Token exchange for {target} did not produce a personal access token"
            )

        if self._store is not None:
            self._store.write(target, pat)
        trail.enter(BrokerState.VALID)
        return BrokerResult(BrokerState.VALID, pat, trail.states)

    async def _validate(self, target: TargetUri, cached: Stored) -> bool:
        if isinstance(cached, Credential):
            return await self._authority.validate_credentials(target, cached)
        return await self._authority.validate_token(target, cached)

    async def _interactive(
        self, target: TargetUri, query_parameters: Optional[str]
    ) -> Optional[Token]:
        shared = self._prompts.get(target)
        if shared is None:
            settings = self._settings
            task = asyncio.ensure_future(
                self._authority.interactive_acquire_token(
                    target,
                    settings.client_id,
                    settings.resource,
                    settings.redirect_uri,
                    query_parameters,
                )
            )
            shared = _SharedPrompt(task)
            self._prompts[target] = shared
            task.add_done_callback(lambda _task: self._forget_prompt(target, shared))
        else:
            logger.debug("Joining interactive login already in progress for %s", target)

        shared.waiters += 1
        try:
            return await asyncio.shield(shared.task)
        finally:
            shared.waiters -= 1
            if shared.waiters == 0 and not shared.task.done():
                logger.debug("Last caller left; cancelling interactive login for %s", target)
                shared.task.cancel()

    def _forget_prompt(self, target: TargetUri, shared: _SharedPrompt) -> None:
        if self._prompts.get(target) is shared:
            del self._prompts[target]
