"""Exception hierarchy for patbroker.

All exceptions inherit from :class:`PatbrokerError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`patbroker.exit_codes`.
The top-level error handler in :func:`patbroker.app.main` catches
``PatbrokerError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

The split between :class:`TransportError` and :class:`AuthorityRejectedError`
is part of the authority contract: callers may retry the former, and must
not retry the latter without fresh credentials.

Subclass hierarchy::

    PatbrokerError (exit 1)
    +-- InvalidInputError       (exit 2)
    +-- AuthorityRejectedError  (exit 3)
    +-- AcquisitionFailedError  (exit 4)
    +-- TransportError          (exit 6)
    +-- ConfigError             (exit 1)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

from patbroker.exit_codes import (
    EXIT_ACQUISITION_FAILED,
    EXIT_AUTHORITY_REJECTED,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_INPUT,
    EXIT_TRANSPORT_ERROR,
)

if TYPE_CHECKING:
    from patbroker.broker import BrokerState


class PatbrokerError(Exception):
    """Base exception for all patbroker errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`patbroker.exit_codes`.  Errors escaping
    :meth:`~patbroker.broker.TokenBroker.acquire` also carry the broker
    states visited before the failure in ``transitions``.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE
    transitions: Sequence["BrokerState"] = ()

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidInputError(PatbrokerError, ValueError):
    """Raised for an absent or empty credential/token, or a malformed target.

    Validation calls raise this instead of answering ``False`` so that a
    programming error is never mistaken for revoked access.
    """

    exit_code = EXIT_INVALID_INPUT


class AuthorityRejectedError(PatbrokerError):
    """Raised when the identity authority explicitly refuses a request.

    Typical causes are a revoked or expired access token, an invalid scope,
    or a response without a token.  Not retriable without fresh credentials.

    Args:
        message: Human-readable error description.
        status_code: HTTP status returned by the authority, when known.
        error_code: OAuth ``error`` value returned by the authority, when known.
    """

    exit_code = EXIT_AUTHORITY_REJECTED

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class TransportError(PatbrokerError):
    """Raised on network-level failures (timeout, DNS, connection refused, 5xx).

    Retriable at the caller's discretion.  The authority never retries
    internally.
    """

    exit_code = EXIT_TRANSPORT_ERROR


class AcquisitionFailedError(PatbrokerError):
    """Raised when the call-sequencing policy ends in the ``FAILED`` state.

    Args:
        message: Human-readable error description.
        transitions: The states visited before failing, in order.
    """

    exit_code = EXIT_ACQUISITION_FAILED

    def __init__(self, message: str, transitions: Sequence["BrokerState"] = ()):
        super().__init__(message)
        self.transitions = tuple(transitions)


class ConfigError(PatbrokerError):
    """Raised for configuration problems (invalid JSON, bad credential sources)."""

    exit_code = EXIT_GENERIC_FAILURE
