"""Fixtures shared by every patbroker test module.

Nothing here touches the real user environment: configuration and token
storage are redirected into ``tmp_path`` by :func:`isolated_config`, and the
process-wide output manager and ``patbroker`` logger are restored after
each test.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

import pytest

from patbroker.models import Credential, Settings, TargetUri, Token, TokenType
from patbroker.output import reset_output


@pytest.fixture(autouse=True)
def _restore_process_state() -> Iterator[None]:
    """Drop the global OutputManager and the handlers on the ``patbroker`` logger.

    Both hold on to whatever ``sys.stdout``/``sys.stderr`` were when the CLI
    callback ran; under CliRunner those streams are closed once the test
    ends.
    """
    yield
    reset_output()
    logger = logging.getLogger("patbroker")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point config and data directories at ``tmp_path``.

    ``XDG_CONFIG_HOME`` becomes ``tmp_path/config`` and ``XDG_DATA_HOME``
    ``tmp_path/data`` on every platform, and any ``PATBROKER_*`` override
    from the developer's shell is removed.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setattr("patbroker.config._is_xdg_platform", lambda: True)
    for name in Settings.model_fields:
        monkeypatch.delenv(f"PATBROKER_{name.upper()}", raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def target() -> TargetUri:
    return TargetUri.from_url("https://dev.azure.com/contoso")


@pytest.fixture
def other_target() -> TargetUri:
    return TargetUri.from_url("https://fabrikam.visualstudio.com")


@pytest.fixture
def access_token() -> Token:
    return Token(value="aad-access-token", type=TokenType.AZURE_ACCESS)


@pytest.fixture
def personal_token() -> Token:
    return Token(value="minted-pat", type=TokenType.PERSONAL)


@pytest.fixture
def credential() -> Credential:
    return Credential(username="alice", password="hunter2")


@pytest.fixture
def cli_runner():
    from typer.testing import CliRunner

    return CliRunner()
