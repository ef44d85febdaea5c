"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~patbroker.exceptions.PatbrokerError` subclass.
Git invokes the credential helper as a subprocess and only looks at whether
it succeeded, but wrapper scripts can inspect the exit code to tell a
retriable network failure apart from revoked access.

Example::

    $ printf 'protocol=https\\nhost=dev.azure.com\\n' | patbroker get
    $ echo $?
    6   # EXIT_TRANSPORT_ERROR -- the identity provider was unreachable
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_INPUT = 2
"""The command was given an absent credential, a malformed target, or bad arguments."""

EXIT_AUTHORITY_REJECTED = 3
"""The identity authority explicitly refused the request (revoked access, invalid scope)."""

EXIT_ACQUISITION_FAILED = 4
"""No usable token could be obtained (consent declined or PAT exchange failed)."""

EXIT_TRANSPORT_ERROR = 6
"""A network-level error occurred (timeout, DNS failure, connection refused, 5xx)."""
