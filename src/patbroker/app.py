"""Typer application and CLI entry point for patbroker.

patbroker is a git credential helper.  Git runs it as
``git credential-patbroker <action>`` (configure with
``git config --global credential.helper patbroker``) and talks to it over
stdin/stdout:

* ``get`` -- git writes ``protocol=``/``host=``/``path=`` lines; patbroker
  answers with ``username=`` and ``password=`` holding a personal access
  token, logging in first when nothing valid is stored.
* ``store`` -- git reports a credential that worked; patbroker keeps it.
* ``erase`` -- git reports a credential that was refused; patbroker forgets it.

Additional commands (``validate``, ``installations``, ``config``) are for
people, not git.

:func:`main` backs both console scripts declared in
``pyproject.toml`` and writes a crash log under the data directory for
any exception that is not a patbroker error.

See Also:
    :mod:`patbroker.broker`: The decision procedure behind ``get``.
    :mod:`patbroker.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Optional, TextIO, TypeVar

import typer

from patbroker import __version__
from patbroker.exit_codes import EXIT_AUTHORITY_REJECTED, EXIT_GENERIC_FAILURE, EXIT_INVALID_INPUT
from patbroker.output import (
    error,
    format_response,
    info,
    print_attributes,
    print_data,
    print_table,
    success,
    suggest,
)

T = TypeVar("T")

PAT_USERNAME = "PersonalAccessToken"
"""User name reported to git alongside a minted token (Azure DevOps ignores it)."""


app = typer.Typer(
    name="patbroker",
    help="Git credential helper that mints Azure DevOps personal access tokens.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)

config_app = typer.Typer(no_args_is_help=True)
app.add_typer(config_app, name="config", help="Configuration management.")


def _show_version(value: bool) -> None:
    if value:
        typer.echo(f"patbroker {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False, "--version", callback=_show_version, is_eager=True, help="Print the version."
    ),
    json_output: bool = typer.Option(False, "--json", help="Render data as JSON."),
    plain_output: bool = typer.Option(False, "--plain", help="Render data as plain text."),
    no_color: bool = typer.Option(False, "--no-color", help="Never use colour."),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Only report warnings and errors on stderr."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Log broker transitions and HTTP calls to stderr."
    ),
) -> None:
    """Set up output and logging from the global flags before any command runs."""
    from patbroker.output import OutputFormat, OutputManager, set_output

    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN
    else:
        fmt = OutputFormat.AUTO

    output = OutputManager(format=fmt, no_color=no_color, quiet=quiet, verbose=verbose)
    output.configure_logging()
    set_output(output)


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def read_git_attributes(stream: TextIO) -> dict[str, str]:
    """Read ``key=value`` lines from git until a blank line or end of input.

    Later values for the same key replace earlier ones.  Lines without ``=``
    are ignored.
    """
    attributes: dict[str, str] = {}
    for raw in stream:
        line = raw.rstrip("\r\n")
        if not line:
            break
        key, sep, value = line.partition("=")
        if sep:
            attributes[key] = value
    return attributes


def create_authority(settings: Any) -> Any:
    """Build the authority used by the credential-helper commands."""
    from patbroker.authority.vsts import VstsAuthority

    return VstsAuthority(settings)


async def _close(authority: Any) -> None:
    aclose = getattr(authority, "aclose", None)
    if aclose is not None:
        await aclose()


def _run(awaitable: Awaitable[T]) -> T:
    """Run *awaitable*, turning patbroker errors into a clean exit."""
    from patbroker.exceptions import PatbrokerError

    try:
        return asyncio.run(awaitable)  # type: ignore[arg-type]
    except PatbrokerError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None


def _target_from_stdin() -> Any:
    from patbroker.exceptions import PatbrokerError
    from patbroker.models import TargetUri

    attributes = read_git_attributes(sys.stdin)
    try:
        return TargetUri.from_git_attributes(attributes), attributes
    except PatbrokerError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None


def _load_settings() -> Any:
    from patbroker.config import load_settings
    from patbroker.exceptions import ConfigError

    try:
        return load_settings()
    except ConfigError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None


# ------------------------------------------------------------------ #
# Git credential-helper commands
# ------------------------------------------------------------------ #


@app.command("get")
def get_command(
    query_parameters: Optional[str] = typer.Option(
        None,
        "--query-parameters",
        help="Extra query string appended verbatim to the login request.",
    ),
) -> None:
    """Answer git's request for a credential.

    Reads the request from stdin and prints ``username=`` and ``password=``
    lines to stdout.  Targets that are not hosted on Azure DevOps get no
    answer, so git moves on to its next helper.

    Example::

        printf 'protocol=https\\nhost=dev.azure.com\\npath=contoso\\n\\n' | patbroker get
    """
    from patbroker.broker import TokenBroker
    from patbroker.models import Credential
    from patbroker.store import TokenStore

    target, _attributes = _target_from_stdin()
    if not target.is_vsts:
        info(f"{target.host} is not an Azure DevOps host; skipping.")
        return

    settings = _load_settings()

    async def _acquire() -> Any:
        authority = create_authority(settings)
        try:
            broker = TokenBroker(authority, settings, store=TokenStore())
            return await broker.acquire(target, query_parameters=query_parameters)
        finally:
            await _close(authority)

    result = _run(_acquire())
    username = (
        result.value.username
        if isinstance(result.value, Credential) and result.value.username
        else PAT_USERNAME
    )
    print_attributes({"username": username, "password": result.password})


@app.command("store")
def store_command() -> None:
    """Remember a credential git reports as working.

    A credential matching what is already stored is left alone, so the
    token minted by ``get`` keeps its classification.
    """
    from patbroker.exceptions import InvalidInputError
    from patbroker.models import Credential, Token
    from patbroker.store import TokenStore

    target, attributes = _target_from_stdin()
    password = attributes.get("password")
    if not password:
        error("git did not send a password to store")
        raise typer.Exit(code=InvalidInputError.exit_code)

    store = TokenStore()
    existing = store.read(target)
    if isinstance(existing, Token) and existing.value == password:
        return
    if isinstance(existing, Credential) and existing.password == password:
        return
    store.write_credential(
        target, Credential(username=attributes.get("username", ""), password=password)
    )


@app.command("erase")
def erase_command() -> None:
    """Forget the credential stored for the target git names."""
    from patbroker.store import TokenStore

    target, _attributes = _target_from_stdin()
    TokenStore().delete(target)


# ------------------------------------------------------------------ #
# Human-facing commands
# ------------------------------------------------------------------ #


@app.command("validate")
def validate_command(
    url: str = typer.Argument(help="URL of the Azure DevOps organisation or repository."),
    source: str = typer.Option(
        "prompt",
        "--source",
        "-s",
        help="Where to read the secret: env:VAR, file:/path, or prompt.",
    ),
    username: str = typer.Option("", "--username", "-u", help="User name for basic auth."),
) -> None:
    """Check whether a credential still grants access to URL.

    Exits 0 when access is granted and with the authority-rejected code
    when it is not.

    Example::

        patbroker validate https://dev.azure.com/contoso --source env:AZDO_PAT
    """
    from patbroker.config import resolve_credential
    from patbroker.exceptions import PatbrokerError
    from patbroker.models import Credential, TargetUri

    settings = _load_settings()
    try:
        target = TargetUri.from_url(url)
        credential = Credential(username=username, password=resolve_credential(source))
    except PatbrokerError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    except ValueError as exc:
        error(f"Invalid credential: {exc}")
        raise typer.Exit(code=EXIT_INVALID_INPUT) from None

    async def _validate() -> bool:
        authority = create_authority(settings)
        try:
            return await authority.validate_credentials(target, credential)
        finally:
            await _close(authority)

    if _run(_validate()):
        success(f"Credential is valid for {target}.")
    else:
        error(f"Credential was refused by {target}.")
        suggest("Run `git credential reject` for the URL so the next fetch mints a new token.")
        raise typer.Exit(code=EXIT_AUTHORITY_REJECTED)


@app.command("installations")
def installations_command(
    roots: list[Path] = typer.Argument(help="Candidate installation directories."),
) -> None:
    """List the distinct git installations found under ROOTS.

    Roots differing only in letter case count once.
    """
    from patbroker.git.installation import GitInstallationRegistry

    registry = GitInstallationRegistry()
    registry.discover(roots)
    if not len(registry):
        info("No git installations found.")
        return
    rows = [
        [str(inst.path), inst.distribution.value, str(inst.git), str(inst.config)]
        for inst in registry
    ]
    print_table(["Path", "Distribution", "Git", "Config"], rows, title="Git installations")


@config_app.command("show")
def config_show() -> None:
    """Show the effective settings.

    Example::

        patbroker config show --json
    """
    from patbroker.config import settings_path

    settings = _load_settings()
    info(f"Settings file: {settings_path()}")
    format_response(settings.model_dump(mode="json"))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(help="Setting name, e.g. 'interactive_flow'."),
    value: str = typer.Argument(help="New value.  An empty string restores the default."),
) -> None:
    """Change one setting in the settings file.

    The value is converted to the setting's type and the whole file is
    validated before it is written.  Environment overrides are neither
    applied nor saved.

    Example::

        patbroker config set interactive_flow device_code
        patbroker config set token_duration_days 30
    """
    from patbroker.config import read_settings_file, save_settings
    from patbroker.exceptions import ConfigError
    from patbroker.models import Settings

    if key not in Settings.model_fields:
        error(f"Unknown setting: {key}")
        raise typer.Exit(code=EXIT_INVALID_INPUT)

    try:
        data = read_settings_file()
    except ConfigError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    if value:
        data[key] = value
    else:
        data.pop(key, None)

    try:
        settings = Settings.model_validate(data)
    except ValueError as exc:
        error(f"Invalid value for {key}: {exc}")
        raise typer.Exit(code=EXIT_INVALID_INPUT) from None

    save_settings(settings)
    success(f"Set {key} = {getattr(settings, key)}")


@config_app.command("path")
def config_path() -> None:
    """Print the path of the settings file."""
    from patbroker.config import settings_path

    print_data(str(settings_path()))


# ------------------------------------------------------------------ #
# Entry point
# ------------------------------------------------------------------ #


_EXIT_INTERRUPTED = 130


def _exit_on_interrupt() -> None:
    """Make Ctrl-C end the process quietly, even while a login is pending."""

    def _handler(signum: int, frame: Any) -> None:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(_EXIT_INTERRUPTED)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log() -> Path:
    """Save the traceback being handled under ``<data dir>/logs`` and return its path."""
    from patbroker.config import atomic_write, get_data_dir

    stamp = f"{datetime.now():%Y%m%d-%H%M%S}-{os.getpid()}"
    path = get_data_dir() / "logs" / f"crash-{stamp}.log"
    atomic_write(path, traceback.format_exc())
    return path


def main() -> None:
    """Console-script entry point for ``patbroker`` and ``git-credential-patbroker``.

    A :class:`~patbroker.exceptions.PatbrokerError` that escapes a command
    ends the process with that error's ``exit_code``.  Anything else is a
    bug: the traceback goes to a crash log and the exit code is
    :data:`~patbroker.exit_codes.EXIT_GENERIC_FAILURE`.
    """
    from patbroker.exceptions import PatbrokerError

    _exit_on_interrupt()
    try:
        app()
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(_EXIT_INTERRUPTED)
    except PatbrokerError as exc:
        error(str(exc))
        sys.exit(exc.exit_code)
    except Exception:
        log_path = _write_crash_log()
        error(f"Unexpected error; traceback saved to {log_path}")
        sys.exit(EXIT_GENERIC_FAILURE)
