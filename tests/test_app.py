"""Tests for the Typer application: the git credential-helper protocol and human commands."""

from __future__ import annotations

import io
import json
from pathlib import Path, PureWindowsPath

import pytest
from typer.testing import CliRunner

from patbroker import __version__
from patbroker.app import PAT_USERNAME, app, main, read_git_attributes
from patbroker.authority.fake import AuthorityFake
from patbroker.config import load_settings, settings_path
from patbroker.exit_codes import (
    EXIT_ACQUISITION_FAILED,
    EXIT_AUTHORITY_REJECTED,
    EXIT_INVALID_INPUT,
    EXIT_TRANSPORT_ERROR,
)
from patbroker.exceptions import TransportError
from patbroker.git import KnownDistribution
from patbroker.models import Credential, Settings, TargetUri, Token, TokenType
from patbroker.store import TokenStore

AZURE_REQUEST = "protocol=https\nhost=dev.azure.com\npath=contoso/_git/repo\n\n"
TARGET = TargetUri.from_url("https://dev.azure.com/contoso/_git/repo")


@pytest.fixture()
def fake(monkeypatch: pytest.MonkeyPatch) -> AuthorityFake:
    """An AuthorityFake handed to every command that builds an authority."""
    authority = AuthorityFake()
    monkeypatch.setattr("patbroker.app.create_authority", lambda settings: authority)
    return authority


class TestReadGitAttributes:
    def test_stops_at_blank_line(self) -> None:
        stream = io.StringIO("protocol=https\nhost=dev.azure.com\n\nignored=yes\n")
        assert read_git_attributes(stream) == {"protocol": "https", "host": "dev.azure.com"}

    def test_end_of_input(self) -> None:
        assert read_git_attributes(io.StringIO("host=example.com")) == {"host": "example.com"}

    def test_value_may_contain_equals(self) -> None:
        attributes = read_git_attributes(io.StringIO("password=a=b==\r\n"))
        assert attributes == {"password": "a=b=="}

    def test_malformed_lines_ignored_and_last_value_wins(self) -> None:
        attributes = read_git_attributes(io.StringIO("junk\nhost=a\nhost=b\n"))
        assert attributes == {"host": "b"}


class TestGet:
    def test_mints_and_stores_token(
        self, cli_runner: CliRunner, isolated_config: Path, fake: AuthorityFake
    ) -> None:
        result = cli_runner.invoke(app, ["get"], input=AZURE_REQUEST)

        assert result.exit_code == 0, result.output
        assert result.output.splitlines() == [
            f"username={PAT_USERNAME}",
            "password=personal-access-token",
        ]
        assert TokenStore().read(TARGET) == fake.personal_access_token
        assert fake.operations() == [
            "noninteractive_acquire_token",
            "interactive_acquire_token",
            "generate_personal_access_token",
        ]

    def test_reuses_valid_stored_token(
        self, cli_runner: CliRunner, isolated_config: Path, fake: AuthorityFake
    ) -> None:
        TokenStore().write(TARGET, Token(value="stored-pat", type=TokenType.PERSONAL))
        result = cli_runner.invoke(app, ["get"], input=AZURE_REQUEST)

        assert result.exit_code == 0, result.output
        assert "password=stored-pat" in result.output.splitlines()
        assert fake.operations() == ["validate_token"]

    def test_stored_credential_keeps_username(
        self, cli_runner: CliRunner, isolated_config: Path, fake: AuthorityFake
    ) -> None:
        TokenStore().write_credential(TARGET, Credential(username="alice", password="hunter2"))
        result = cli_runner.invoke(app, ["get"], input=AZURE_REQUEST)

        assert result.exit_code == 0, result.output
        assert result.output.splitlines() == ["username=alice", "password=hunter2"]
        assert fake.operations() == ["validate_credentials"]

    def test_query_parameters_forwarded(
        self, cli_runner: CliRunner, isolated_config: Path, fake: AuthorityFake
    ) -> None:
        query = "domain_hint=contoso.com&prompt=select_account"
        fake.expected_query_parameters = query
        result = cli_runner.invoke(app, ["get", "--query-parameters", query], input=AZURE_REQUEST)
        assert result.exit_code == 0, result.output
        assert fake.calls[1].arguments["query_parameters"] == query

    def test_other_hosts_get_no_answer(
        self, cli_runner: CliRunner, isolated_config: Path, fake: AuthorityFake
    ) -> None:
        result = cli_runner.invoke(
            app, ["--quiet", "get"], input="protocol=https\nhost=github.com\n\n"
        )
        assert result.exit_code == 0
        assert result.output == ""
        assert fake.calls == []

    def test_declined_consent(
        self, cli_runner: CliRunner, isolated_config: Path, fake: AuthorityFake
    ) -> None:
        fake.interactive_token = None
        result = cli_runner.invoke(app, ["--no-color", "get"], input=AZURE_REQUEST)

        assert result.exit_code == EXIT_ACQUISITION_FAILED
        assert "consent was not given" in result.output
        assert "password=" not in result.output
        assert TokenStore().read(TARGET) is None

    def test_transport_error_exit_code(
        self, cli_runner: CliRunner, isolated_config: Path, fake: AuthorityFake
    ) -> None:
        fake.pat_error = TransportError("Could not reach https://app.vssps.visualstudio.com")
        result = cli_runner.invoke(app, ["--no-color", "get"], input=AZURE_REQUEST)
        assert result.exit_code == EXIT_TRANSPORT_ERROR
        assert "Could not reach" in result.output

    def test_missing_host(self, cli_runner: CliRunner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["get"], input="protocol=https\n\n")
        assert result.exit_code == EXIT_INVALID_INPUT

    def test_bad_settings_file(self, cli_runner: CliRunner, isolated_config: Path) -> None:
        config = isolated_config / "config" / "patbroker" / "config.json"
        config.parent.mkdir(parents=True, exist_ok=True)
        config.write_text("{not json")
        result = cli_runner.invoke(app, ["--no-color", "get"], input=AZURE_REQUEST)
        assert result.exit_code == 1
        assert "Invalid settings file" in result.output


class TestStoreErase:
    def test_store_keeps_credential(self, cli_runner: CliRunner, isolated_config: Path) -> None:
        result = cli_runner.invoke(
            app, ["store"], input=AZURE_REQUEST.rstrip("\n") + "\nusername=bob\npassword=pw\n\n"
        )
        assert result.exit_code == 0, result.output
        assert TokenStore().read(TARGET) == Credential(username="bob", password="pw")

    def test_store_leaves_matching_token_alone(
        self, cli_runner: CliRunner, isolated_config: Path
    ) -> None:
        minted = Token(value="minted", type=TokenType.PERSONAL)
        TokenStore().write(TARGET, minted)
        request = AZURE_REQUEST.rstrip("\n") + f"\nusername={PAT_USERNAME}\npassword=minted\n\n"
        result = cli_runner.invoke(app, ["store"], input=request)
        assert result.exit_code == 0, result.output
        assert TokenStore().read(TARGET) == minted

    def test_store_requires_password(self, cli_runner: CliRunner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["store"], input=AZURE_REQUEST)
        assert result.exit_code == EXIT_INVALID_INPUT

    def test_erase(self, cli_runner: CliRunner, isolated_config: Path) -> None:
        TokenStore().write(TARGET, Token(value="minted", type=TokenType.PERSONAL))
        result = cli_runner.invoke(app, ["erase"], input=AZURE_REQUEST)
        assert result.exit_code == 0, result.output
        assert TokenStore().read(TARGET) is None


class TestValidate:
    def test_valid(
        self,
        cli_runner: CliRunner,
        isolated_config: Path,
        fake: AuthorityFake,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("AZDO_PAT", "secret")
        result = cli_runner.invoke(
            app, ["validate", "https://dev.azure.com/contoso", "--source", "env:AZDO_PAT"]
        )
        assert result.exit_code == 0, result.output
        assert "valid" in result.output
        assert fake.operations() == ["validate_credentials"]

    def test_refused(
        self,
        cli_runner: CliRunner,
        isolated_config: Path,
        fake: AuthorityFake,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        fake.credentials_are_valid = False
        monkeypatch.setenv("AZDO_PAT", "secret")
        result = cli_runner.invoke(
            app, ["validate", "https://dev.azure.com/contoso", "-s", "env:AZDO_PAT"]
        )
        assert result.exit_code == EXIT_AUTHORITY_REJECTED

    def test_unresolvable_source(
        self, cli_runner: CliRunner, isolated_config: Path, fake: AuthorityFake
    ) -> None:
        result = cli_runner.invoke(
            app, ["validate", "https://dev.azure.com/contoso", "-s", "env:PATBROKER_UNSET_VAR"]
        )
        assert result.exit_code == 1
        assert fake.calls == []

    def test_empty_secret(
        self, cli_runner: CliRunner, isolated_config: Path, fake: AuthorityFake, tmp_path: Path
    ) -> None:
        secret = tmp_path / "pat.txt"
        secret.write_text("  \n", encoding="utf-8")
        result = cli_runner.invoke(
            app, ["--no-color", "validate", "https://dev.azure.com/contoso", "-s", f"file:{secret}"]
        )
        assert result.exit_code == EXIT_INVALID_INPUT
        assert "Invalid credential" in result.output
        assert fake.calls == []

    def test_bad_url(self, cli_runner: CliRunner, isolated_config: Path, fake: AuthorityFake) -> None:
        result = cli_runner.invoke(app, ["validate", "ftp://example.com", "-s", "file:/nonexistent"])
        assert result.exit_code == EXIT_INVALID_INPUT


class TestInstallations:
    def _layout(self, root: Path, distribution: KnownDistribution) -> Path:
        git = root.joinpath(*PureWindowsPath(distribution.layout["git"]).parts)
        git.parent.mkdir(parents=True)
        git.write_bytes(b"")
        return root

    def test_lists_installations(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        first = self._layout(tmp_path / "a", KnownDistribution.GIT_FOR_WINDOWS_64_V2)
        second = self._layout(tmp_path / "b", KnownDistribution.GIT_FOR_WINDOWS_32_V1)
        result = cli_runner.invoke(
            app, ["--json", "installations", str(first), str(second), str(first)]
        )

        assert result.exit_code == 0, result.output
        rows = json.loads(result.output)
        assert [row["Distribution"] for row in rows] == [
            "git-for-windows-64-v2",
            "git-for-windows-32-v1",
        ]

    def test_nothing_found(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        result = cli_runner.invoke(app, ["installations", str(tmp_path)])
        assert result.exit_code == 0
        assert "No git installations found." in result.output


class TestConfigCommands:
    def test_show(self, cli_runner: CliRunner, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PATBROKER_SCOPE", "vso.code")
        result = cli_runner.invoke(app, ["--json", "--quiet", "config", "show"])
        assert result.exit_code == 0, result.output
        shown = json.loads(result.output)
        assert shown["scope"] == "vso.code"
        assert shown["interactive_flow"] == "browser"

    def test_set(self, cli_runner: CliRunner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["config", "set", "interactive_flow", "device_code"])
        assert result.exit_code == 0, result.output
        result = cli_runner.invoke(app, ["config", "set", "token_duration_days", "30"])
        assert result.exit_code == 0, result.output

        settings = load_settings()
        assert settings.interactive_flow == "device_code"
        assert settings.token_duration_days == 30

    def test_set_empty_restores_default(self, cli_runner: CliRunner, isolated_config: Path) -> None:
        cli_runner.invoke(app, ["config", "set", "scope", "vso.code"])
        result = cli_runner.invoke(app, ["config", "set", "scope", ""])
        assert result.exit_code == 0, result.output
        assert load_settings().scope == Settings().scope

    def test_set_does_not_save_env_overrides(
        self, cli_runner: CliRunner, isolated_config: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("PATBROKER_CLIENT_ID", "from-env")
        result = cli_runner.invoke(app, ["config", "set", "require_compact_token", "true"])
        assert result.exit_code == 0, result.output
        saved = json.loads(settings_path().read_text(encoding="utf-8"))
        assert saved["require_compact_token"] is True
        assert saved["client_id"] == Settings().client_id

    def test_set_unknown_key(self, cli_runner: CliRunner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["--no-color", "config", "set", "colour", "blue"])
        assert result.exit_code == EXIT_INVALID_INPUT
        assert "Unknown setting: colour" in result.output
        assert not settings_path().exists()

    def test_set_invalid_value(self, cli_runner: CliRunner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["--no-color", "config", "set", "interactive_flow", "smoke"])
        assert result.exit_code == EXIT_INVALID_INPUT
        assert "Invalid value for interactive_flow" in result.output
        assert not settings_path().exists()

    def test_path(self, cli_runner: CliRunner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["config", "path"])
        assert result.exit_code == 0
        assert result.output.strip() == str(
            isolated_config / "config" / "patbroker" / "config.json"
        )


class TestEntryPoint:
    def test_version(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert result.output.strip() == f"patbroker {__version__}"

    def test_crash_log(
        self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture
    ) -> None:
        def _explode() -> None:
            raise RuntimeError("boom")

        monkeypatch.setattr("patbroker.app._exit_on_interrupt", lambda: None)
        monkeypatch.setattr("patbroker.app.app", _explode)
        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 1
        (log,) = (isolated_config / "data" / "patbroker" / "logs").iterdir()
        assert "RuntimeError: boom" in log.read_text()
        assert "Unexpected error" in capsys.readouterr().err
