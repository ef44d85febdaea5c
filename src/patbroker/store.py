"""Persistent token storage keyed by target.

Two stores live here, both writing one JSON file per key under the data
directory (typically ``~/.local/share/patbroker/``):

* :class:`TokenStore` -- the caller-side store for minted personal access
  tokens and user-supplied credentials, addressed by
  :class:`~patbroker.models.TargetUri`.  It satisfies the :class:`Store`
  protocol consumed by :class:`~patbroker.broker.TokenBroker`.
* :class:`SessionCache` -- the identity provider's session cache holding
  refresh tokens, used by silent acquisition.

Files are written atomically via :func:`~patbroker.config.atomic_write` with
``0o600`` permissions so that secrets are never world-readable, even
momentarily.  File names are the SHA-256 of the key, so arbitrary target URLs
map to safe paths.

See Also:
    :class:`~patbroker.broker.TokenBroker` -- reads and writes the token store.
    :class:`~patbroker.authority.azure.AzureIdentityProvider` -- uses the
    session cache.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional, Protocol, Union, runtime_checkable

from pydantic import BaseModel, Field, ValidationError

from patbroker.config import atomic_write, get_data_dir
from patbroker.models import Credential, TargetUri, Token, TokenType

logger = logging.getLogger(__name__)

Stored = Union[Token, Credential]


@runtime_checkable
class Store(Protocol):
    """The narrow interface the broker uses to cache results per target."""

    def read(self, target: TargetUri) -> Optional[Stored]:
        """Return the cached token or credential for *target*, if any."""
        ...

    def write(self, target: TargetUri, token: Token) -> None:
        """Cache *token* for *target*, replacing any previous value."""
        ...

    def delete(self, target: TargetUri) -> None:
        """Forget whatever is cached for *target*."""
        ...


class StoredEntry(BaseModel):
    """A single stored secret.

    Attributes:
        key: The storage key the entry was written under.
        kind: ``"token"`` or ``"credential"``.
        secret: The token value or password.
        token_type: Classification of a stored token.
        username: User name of a stored credential.
        created_at: UTC time the entry was written.
    """

    key: str
    kind: Literal["token", "credential"]
    secret: str = Field(min_length=1)
    token_type: Optional[TokenType] = None
    username: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_value(self) -> Stored:
        """Rebuild the :class:`Token` or :class:`Credential` this entry holds."""
        if self.kind == "credential":
            return Credential(username=self.username or "", password=self.secret)
        return Token(value=self.secret, type=self.token_type or TokenType.PERSONAL)


class _EntryFiles:
    """One JSON file per key inside *directory*."""

    def __init__(self, directory: Path) -> None:
        self._directory = directory

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._directory / f"{digest}.json"

    def save(self, entry: StoredEntry) -> None:
        text = json.dumps(entry.model_dump(mode="json"), indent=2) + "\n"
        atomic_write(self.path_for(entry.key), text, mode=0o600)

    def load(self, key: str) -> Optional[StoredEntry]:
        path = self.path_for(key)
        if not path.is_file():
            return None
        try:
            entry = StoredEntry.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError, OSError) as exc:
            logger.warning("Ignoring unreadable entry %s: %s", path.name, exc)
            return None
        if entry.key != key:
            return None
        return entry

    def remove(self, key: str) -> bool:
        path = self.path_for(key)
        if path.is_file():
            path.unlink()
            return True
        return False


class TokenStore:
    """File-backed :class:`Store` for personal access tokens and credentials.

    Args:
        directory: Where entry files live.  Defaults to
            ``<data dir>/tokens``.

    Example::

        store = TokenStore()
        store.write(target, Token(value="pat", type=TokenType.PERSONAL))
        assert store.read(target).value == "pat"
    """

    def __init__(self, directory: Optional[Path] = None) -> None:
        self._files = _EntryFiles(directory or get_data_dir() / "tokens")

    @property
    def directory(self) -> Path:
        """The directory entry files are written to."""
        return self._files.directory

    def read(self, target: TargetUri) -> Optional[Stored]:
        """Return the cached value for *target*, or ``None``."""
        entry = self._files.load(target.key)
        if entry is None:
            return None
        return entry.to_value()

    def write(self, target: TargetUri, token: Token) -> None:
        """Persist *token* for *target* atomically with ``0o600`` permissions."""
        self._files.save(
            StoredEntry(
                key=target.key,
                kind="token",
                secret=token.value,
                token_type=token.type,
            )
        )
        logger.debug("Stored %s token for %s", token.type.value, target.key)

    def write_credential(self, target: TargetUri, credential: Credential) -> None:
        """Persist a username/password pair for *target*."""
        self._files.save(
            StoredEntry(
                key=target.key,
                kind="credential",
                secret=credential.password,
                username=credential.username,
            )
        )
        logger.debug("Stored credential for %s", target.key)

    def delete(self, target: TargetUri) -> None:
        """Delete the entry for *target*.  A no-op when nothing is stored."""
        if self._files.remove(target.key):
            logger.debug("Erased stored value for %s", target.key)


class SessionCache:
    """The identity provider's refresh-token cache used for silent login.

    Keys are opaque strings built by
    :meth:`~patbroker.authority.azure.AzureIdentityProvider.session_key`
    (authority, client id, resource).

    Args:
        directory: Where entry files live.  Defaults to
            ``<data dir>/sessions``.
    """

    def __init__(self, directory: Optional[Path] = None) -> None:
        self._files = _EntryFiles(directory or get_data_dir() / "sessions")

    def get(self, key: str) -> Optional[str]:
        """Return the refresh token stored under *key*, or ``None``."""
        entry = self._files.load(key)
        return entry.secret if entry is not None else None

    def set(self, key: str, refresh_token: str) -> None:
        """Store *refresh_token* under *key*."""
        self._files.save(
            StoredEntry(
                key=key,
                kind="token",
                secret=refresh_token,
                token_type=TokenType.AZURE_REFRESH,
            )
        )

    def delete(self, key: str) -> None:
        """Forget the refresh token stored under *key*."""
        self._files.remove(key)
