"""Where patbroker keeps its files, and how settings and secrets are resolved.

* **Directories** -- :func:`get_config_dir` holds ``config.json``;
  :func:`get_data_dir` holds stored tokens, identity-provider sessions and
  crash logs.  Linux and the BSDs follow the XDG base directory layout;
  other platforms use ``~/.patbroker``.
* **Settings** -- :func:`load_settings` starts from the defaults on
  :class:`~patbroker.models.Settings`, applies ``config.json`` and then any
  ``PATBROKER_<FIELD>`` environment variable.
* **Secrets for human commands** -- :func:`resolve_credential` reads a
  secret from ``env:NAME``, ``file:PATH`` or an interactive prompt.

Every file patbroker writes goes through :func:`atomic_write`, so a crash
never leaves a half-written token or settings file behind.
"""

from __future__ import annotations

import getpass
import json
import os
import platform
import sys
import tempfile
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from patbroker.exceptions import ConfigError
from patbroker.models import Settings

_APP_NAME = "patbroker"
_CONFIG_FILENAME = "config.json"
_ENV_PREFIX = "PATBROKER_"


# --- Directories ---


def _is_xdg_platform() -> bool:
    system = platform.system()
    return system == "Linux" or system.endswith("BSD")


def _app_dir(xdg_var: str, xdg_default: tuple[str, ...], fallback: tuple[str, ...]) -> Path:
    if _is_xdg_platform():
        base = os.environ.get(xdg_var) or str(Path.home().joinpath(*xdg_default))
        path = Path(base) / _APP_NAME
    else:
        path = Path.home().joinpath(f".{_APP_NAME}", *fallback)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_config_dir() -> Path:
    """Directory holding ``config.json``; created on first use.

    ``$XDG_CONFIG_HOME/patbroker`` (default ``~/.config/patbroker``) on
    Linux/BSD, ``~/.patbroker`` elsewhere.
    """
    return _app_dir("XDG_CONFIG_HOME", (".config",), ())


def get_data_dir() -> Path:
    """Directory holding tokens, sessions and logs; created on first use.

    ``$XDG_DATA_HOME/patbroker`` (default ``~/.local/share/patbroker``) on
    Linux/BSD, ``~/.patbroker/data`` elsewhere.
    """
    return _app_dir("XDG_DATA_HOME", (".local", "share"), ("data",))


# --- Atomic writes ---


def atomic_write(path: Path, data: str, mode: Optional[int] = None) -> None:
    """Replace *path* with *data* in one rename.

    The text goes to a temporary file beside *path* (same file system, so
    ``os.replace`` is atomic), is flushed to disk and then renamed over the
    target.  If anything fails, including ``KeyboardInterrupt``, the
    temporary file is removed and *path* is left as it was.

    Args:
        path: File to create or replace.
        data: Text content.
        mode: Permission bits set on the temporary file before anything is
            written to it, e.g. ``0o600`` for secrets.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    handle, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        if mode is not None:
            os.chmod(tmp_name, mode)
        with os.fdopen(handle, "w", encoding="utf-8") as stream:
            stream.write(data)
            stream.flush()
            os.fsync(stream.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


# --- Settings ---


def settings_path() -> Path:
    """Location of ``config.json``."""
    return get_config_dir() / _CONFIG_FILENAME


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name in Settings.model_fields:
        value = os.environ.get(_ENV_PREFIX + name.upper())
        if value:
            overrides[name] = value
    return overrides


def load_settings() -> Settings:
    """Return the effective settings.

    Later sources win: defaults, then ``config.json``, then
    ``PATBROKER_<FIELD>`` environment variables (``PATBROKER_SCOPE``,
    ``PATBROKER_INTERACTIVE_FLOW``, ...).

    Raises:
        ConfigError: If ``config.json`` is not a JSON object, or a value
            does not validate.
    """
    data = read_settings_file()
    data.update(_env_overrides())

    try:
        return Settings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid settings: {exc}") from exc


def read_settings_file() -> dict[str, Any]:
    """Return the raw contents of ``config.json``, or ``{}`` if it is absent.

    Environment overrides are not applied.

    Raises:
        ConfigError: If the file is not a JSON object.
    """
    path = settings_path()
    if not path.is_file():
        return {}
    try:
        loaded = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid settings file at {path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigError(f"Invalid settings file at {path}: expected a JSON object")
    return loaded


def save_settings(settings: Settings) -> None:
    """Write *settings* to ``config.json``."""
    text = json.dumps(settings.model_dump(mode="json"), indent=2) + "\n"
    atomic_write(settings_path(), text)


# --- Secrets ---


def resolve_credential(source: str) -> str:
    """Read a secret described by *source*.

    ``env:NAME`` reads an environment variable, ``file:PATH`` reads a file
    (surrounding whitespace stripped) and ``prompt`` asks on the terminal.

    Raises:
        ConfigError: If the variable is unset, the file is missing or
            unreadable, stdin is not a terminal for ``prompt``, or the
            source has an unknown form.
    """
    kind, _, value = source.partition(":")

    if kind == "env" and value:
        secret = os.environ.get(value)
        if secret is None:
            raise ConfigError(f"Environment variable '{value}' is not set (source: {source})")
        return secret

    if kind == "file" and value:
        path = Path(value).expanduser()
        if not path.is_file():
            raise ConfigError(f"Credential file not found: {path} (source: {source})")
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"Cannot read credential file {path}: {exc}") from exc

    if source == "prompt":
        if not sys.stdin.isatty():
            raise ConfigError("Cannot prompt for a secret: stdin is not a TTY (source: prompt)")
        return getpass.getpass("Secret: ")

    raise ConfigError(f"Unknown credential source format: {source}")
