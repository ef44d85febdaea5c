"""Canonical Pydantic models shared across all patbroker modules.

This is the single source of truth for data shapes in the project. Every other
module imports from here rather than defining its own models. The models fall
into two groups:

**Value objects** -- immutable, hashable, compared structurally:
    :class:`TargetUri`, :class:`TokenType`, :class:`Token`,
    :class:`TokenScope`, and :class:`Credential`.

**Configuration models** -- serialised as JSON in the user's config directory:
    :class:`Settings`.

Value objects are declared with ``frozen=True`` so they can be used as
dictionary keys (a :class:`TargetUri` addresses every other component) and
shared freely between concurrent tasks.  Secret fields are excluded from
``repr()`` so tokens never leak into logs or tracebacks.
"""

from __future__ import annotations

import base64
import enum
from typing import Any, ClassVar, Literal, Mapping, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

from patbroker.exceptions import InvalidInputError

_DEFAULT_PORTS = {"http": 80, "https": 443}

_VSTS_HOST = "dev.azure.com"
_VSTS_LEGACY_SUFFIX = ".visualstudio.com"


# --- Target descriptor ---


class TargetUri(BaseModel):
    """Immutable identifier of the remote resource being authenticated against.

    Equality is structural, so two descriptors built from differently cased
    hosts or with and without an explicit default port compare equal and
    address the same cached credential.

    Example::

        target = TargetUri.from_url("https://dev.azure.com/contoso/_git/repo")
        assert target.account == "contoso"
        assert target.account_url == "https://dev.azure.com/contoso"
    """

    model_config = ConfigDict(frozen=True)

    scheme: str
    host: str
    port: int = Field(gt=0, lt=65536)
    path: str = "/"

    @field_validator("scheme", "host")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.lower()

    @field_validator("path")
    @classmethod
    def _leading_slash(cls, value: str) -> str:
        if not value.startswith("/"):
            return "/" + value
        return value

    @classmethod
    def from_url(cls, url: str) -> TargetUri:
        """Build a descriptor from a request URL.

        Query strings and fragments are dropped; only the path prefix is kept.

        Args:
            url: An absolute ``http`` or ``https`` URL.

        Returns:
            The parsed :class:`TargetUri`.

        Raises:
            InvalidInputError: If the URL has no host, an unsupported
                scheme, or an invalid port.
        """
        if not url or not url.strip():
            raise InvalidInputError("Target URL must not be empty")
        try:
            parts = urlsplit(url.strip())
            port = parts.port
        except ValueError as exc:
            raise InvalidInputError(f"Malformed target URL '{url}': {exc}") from exc

        scheme = parts.scheme.lower()
        if scheme not in _DEFAULT_PORTS:
            raise InvalidInputError(
                f"Unsupported scheme in target URL '{url}': expected http or https"
            )
        if not parts.hostname:
            raise InvalidInputError(f"Target URL '{url}' has no host")

        return cls(
            scheme=scheme,
            host=parts.hostname,
            port=port if port is not None else _DEFAULT_PORTS[scheme],
            path=parts.path or "/",
        )

    @classmethod
    def from_git_attributes(cls, attributes: Mapping[str, str]) -> TargetUri:
        """Build a descriptor from git credential-helper attributes.

        Git sends ``protocol``, ``host`` (optionally with ``:port``) and,
        when ``credential.useHttpPath`` is set, ``path``.

        Raises:
            InvalidInputError: If ``protocol`` or ``host`` is missing.
        """
        protocol = attributes.get("protocol")
        host = attributes.get("host")
        if not protocol or not host:
            raise InvalidInputError("git credential request requires 'protocol' and 'host'")
        path = attributes.get("path", "")
        return cls.from_url(f"{protocol}://{host}/{path.lstrip('/')}")

    @property
    def authority(self) -> str:
        """``host`` or ``host:port`` when the port is not the scheme default."""
        if _DEFAULT_PORTS.get(self.scheme) == self.port:
            return self.host
        return f"{self.host}:{self.port}"

    @property
    def url(self) -> str:
        """The canonical URL for this target."""
        return f"{self.scheme}://{self.authority}{self.path}"

    @property
    def key(self) -> str:
        """Stable storage key, e.g. ``git:https://dev.azure.com/contoso``."""
        base = f"git:{self.scheme}://{self.authority}"
        path = self.path.rstrip("/")
        return f"{base}{path}" if path else base

    @property
    def is_vsts(self) -> bool:
        """Whether the host belongs to Azure DevOps / Visual Studio Team Services."""
        return self.host == _VSTS_HOST or self.host.endswith(_VSTS_LEGACY_SUFFIX)

    @property
    def account(self) -> Optional[str]:
        """The organisation name, or ``None`` when it cannot be determined."""
        if self.host == _VSTS_HOST:
            segments = [s for s in self.path.split("/") if s]
            return segments[0] if segments else None
        if self.host.endswith(_VSTS_LEGACY_SUFFIX):
            return self.host.split(".", 1)[0]
        return None

    @property
    def account_url(self) -> str:
        """Root URL of the organisation that owns the target."""
        root = f"{self.scheme}://{self.authority}"
        if self.host == _VSTS_HOST and self.account:
            return f"{root}/{self.account}"
        return root

    def resolve(self, relative: str) -> str:
        """Join *relative* onto :attr:`account_url`."""
        return f"{self.account_url}/{relative.lstrip('/')}"

    def __str__(self) -> str:
        return self.url


# --- Tokens ---


class TokenType(str, enum.Enum):
    """Classification of a :class:`Token`.

    ``PERSONAL`` tokens are minted by PAT generation; ``AZURE_ACCESS`` and
    ``AZURE_FEDERATED`` tokens come from the identity provider and are only
    ever used to mint a PAT.
    """

    PERSONAL = "personal"
    AZURE_ACCESS = "azure_access"
    AZURE_FEDERATED = "azure_federated"
    AZURE_REFRESH = "azure_refresh"
    TEST = "test"


class Token(BaseModel):
    """A classified secret: a token kind plus its opaque value.

    The value must be non-empty and the type is fixed at construction.
    """

    model_config = ConfigDict(frozen=True)

    value: str = Field(min_length=1, repr=False)
    type: TokenType

    @property
    def is_access_token(self) -> bool:
        """Whether this token came from the identity provider."""
        return self.type in (TokenType.AZURE_ACCESS, TokenType.AZURE_FEDERATED)

    def authorization_header(self) -> str:
        """Render the HTTP ``Authorization`` header value for this token.

        Personal access tokens go over HTTP basic auth with an empty user
        name, the way Azure DevOps expects them; every other kind is sent as
        a bearer token.
        """
        if self.type == TokenType.PERSONAL:
            encoded = base64.b64encode(f":{self.value}".encode("utf-8")).decode("ascii")
            return f"Basic {encoded}"
        return f"Bearer {self.value}"


class TokenScope(BaseModel):
    """A composable set of requested permissions.

    Scopes combine with ``|`` and the empty set (:attr:`NONE`) is valid.
    ``str()`` renders the space-separated form sent on the wire.

    Example::

        scope = TokenScope.CODE_WRITE | TokenScope.PACKAGING_READ
        assert str(scope) == "vso.code_write vso.packaging"
    """

    model_config = ConfigDict(frozen=True)

    scopes: frozenset[str] = frozenset()

    NONE: ClassVar[TokenScope]
    BUILD_ACCESS: ClassVar[TokenScope]
    BUILD_EXECUTE: ClassVar[TokenScope]
    CHAT_WRITE: ClassVar[TokenScope]
    CHAT_MANAGE: ClassVar[TokenScope]
    CODE_READ: ClassVar[TokenScope]
    CODE_WRITE: ClassVar[TokenScope]
    CODE_MANAGE: ClassVar[TokenScope]
    CODE_STATUS: ClassVar[TokenScope]
    ENTITLEMENTS_READ: ClassVar[TokenScope]
    IDENTITY_READ: ClassVar[TokenScope]
    PACKAGING_READ: ClassVar[TokenScope]
    PACKAGING_WRITE: ClassVar[TokenScope]
    PACKAGING_MANAGE: ClassVar[TokenScope]
    PROFILE_READ: ClassVar[TokenScope]
    PROFILE_WRITE: ClassVar[TokenScope]
    RELEASE_READ: ClassVar[TokenScope]
    WORK_READ: ClassVar[TokenScope]
    WORK_WRITE: ClassVar[TokenScope]

    @field_validator("scopes", mode="before")
    @classmethod
    def _drop_blank(cls, value: Any) -> Any:
        if isinstance(value, str):
            return frozenset(value.split())
        if isinstance(value, (set, frozenset, list, tuple)):
            return frozenset(s.strip() for s in value if s and s.strip())
        return value

    @classmethod
    def of(cls, *names: str) -> TokenScope:
        """Build a scope set from raw scope strings."""
        return cls(scopes=frozenset(names))

    @classmethod
    def parse(cls, text: str) -> TokenScope:
        """Parse the space-separated wire form produced by ``str()``."""
        return cls(scopes=text)

    @property
    def names(self) -> tuple[str, ...]:
        """Scope strings in sorted order."""
        return tuple(sorted(self.scopes))

    def __or__(self, other: TokenScope) -> TokenScope:
        if not isinstance(other, TokenScope):
            return NotImplemented
        return TokenScope(scopes=self.scopes | other.scopes)

    def __and__(self, other: TokenScope) -> TokenScope:
        if not isinstance(other, TokenScope):
            return NotImplemented
        return TokenScope(scopes=self.scopes & other.scopes)

    def __sub__(self, other: TokenScope) -> TokenScope:
        if not isinstance(other, TokenScope):
            return NotImplemented
        return TokenScope(scopes=self.scopes - other.scopes)

    def __contains__(self, item: object) -> bool:
        if isinstance(item, TokenScope):
            return item.scopes <= self.scopes
        return item in self.scopes

    def __len__(self) -> int:
        return len(self.scopes)

    def __bool__(self) -> bool:
        return bool(self.scopes)

    def __str__(self) -> str:
        return " ".join(self.names)


TokenScope.NONE = TokenScope()
TokenScope.BUILD_ACCESS = TokenScope.of("vso.build")
TokenScope.BUILD_EXECUTE = TokenScope.of("vso.build_execute")
TokenScope.CHAT_WRITE = TokenScope.of("vso.chat_write")
TokenScope.CHAT_MANAGE = TokenScope.of("vso.chat_manage")
TokenScope.CODE_READ = TokenScope.of("vso.code")
TokenScope.CODE_WRITE = TokenScope.of("vso.code_write")
TokenScope.CODE_MANAGE = TokenScope.of("vso.code_manage")
TokenScope.CODE_STATUS = TokenScope.of("vso.code_status")
TokenScope.ENTITLEMENTS_READ = TokenScope.of("vso.entitlements")
TokenScope.IDENTITY_READ = TokenScope.of("vso.identity")
TokenScope.PACKAGING_READ = TokenScope.of("vso.packaging")
TokenScope.PACKAGING_WRITE = TokenScope.of("vso.packaging_write")
TokenScope.PACKAGING_MANAGE = TokenScope.of("vso.packaging_manage")
TokenScope.PROFILE_READ = TokenScope.of("vso.profile")
TokenScope.PROFILE_WRITE = TokenScope.of("vso.profile_write")
TokenScope.RELEASE_READ = TokenScope.of("vso.release")
TokenScope.WORK_READ = TokenScope.of("vso.work")
TokenScope.WORK_WRITE = TokenScope.of("vso.work_write")


# --- Credentials ---


class Credential(BaseModel):
    """A username/secret pair supplied by the caller.

    The user name may be empty (Azure DevOps accepts a PAT with any user
    name); the secret may not.
    """

    model_config = ConfigDict(frozen=True)

    username: str = ""
    password: str = Field(min_length=1, repr=False)

    def authorization_header(self) -> str:
        """Render an HTTP basic ``Authorization`` header value."""
        raw = f"{self.username}:{self.password}".encode("utf-8")
        return f"Basic {base64.b64encode(raw).decode('ascii')}"


# --- Configuration ---


DEFAULT_CLIENT_ID = "872cd9fa-d31f-45e0-9eab-6e460a02d1f1"
"""Public client id registered for Visual Studio / git credential managers."""

DEFAULT_RESOURCE = "499b84ac-1321-427f-aa17-267ca6975798"
"""Azure AD resource id of Azure DevOps."""


class Settings(BaseModel):
    """User-wide configuration persisted at ``~/.config/patbroker/config.json``.

    Loaded by :func:`~patbroker.config.load_settings`; environment variables
    named ``PATBROKER_<FIELD>`` override values from the file.
    """

    authority_url: str = Field(
        default="https://login.microsoftonline.com/common",
        description="OAuth2 authority (tenant) base URL",
    )
    identity_service_url: str = Field(
        default="https://app.vssps.visualstudio.com",
        description="Azure DevOps identity service that mints personal access tokens",
    )
    client_id: str = DEFAULT_CLIENT_ID
    resource: str = DEFAULT_RESOURCE
    redirect_uri: str = Field(
        default="http://127.0.0.1/",
        description="Loopback redirect address; a free port is chosen when none is given",
    )
    scope: str = Field(
        default="vso.code_write vso.packaging",
        description="Space-separated scopes requested for minted PATs",
    )
    require_compact_token: bool = False
    token_duration_days: Optional[int] = Field(default=None, gt=0)
    interactive_flow: Literal["browser", "device_code"] = "browser"
    request_timeout: float = Field(default=30.0, gt=0)
    consent_timeout: float = Field(default=300.0, gt=0)
    detect_tenant: bool = Field(
        default=True,
        description="Ask the target which Azure AD tenant backs it before logging in",
    )

    @property
    def token_scope(self) -> TokenScope:
        """:attr:`scope` parsed into a :class:`TokenScope`."""
        return TokenScope.parse(self.scope)
