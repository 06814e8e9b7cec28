"""
Tests for the jet-access command line.

Tests cover:
- Target parsing for direct connections
- Subcommand parsing and option defaults
- list / show against a mocked Vault
- Exit codes: errors, propagated remote status
- Host verification selection
"""
from __future__ import annotations

import textwrap
from pathlib import Path
from types import SimpleNamespace
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock

import pytest
import yaml

from jet_access import __main__ as cli
from jet_access.errors import RemoteExitError
from jet_access.host_key import HostKeyPolicy, HostKeyVerifier, InsecureHostKeyAcceptor
from jet_access.session import ExitStatusPolicy

if TYPE_CHECKING:
    from conftest import FakeVault

SECRET_PATH = "secret/data/servers/prod/web-01"


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "jet-access.yaml"
    path.write_text(textwrap.dedent("""
        default:
          address: https://vault.test:8200
          token: s.test-token
        environments:
          staging:
            address: https://vault.staging.test:8200
            token: s.staging
    """), encoding="utf-8")
    return path


@pytest.fixture
def mocked_vault(fake_vault: "FakeVault", monkeypatch: pytest.MonkeyPatch) -> "FakeVault":
    """Route every VaultClient the CLI creates to the in-memory Vault."""
    monkeypatch.setattr(cli, "VaultClient", SimpleNamespace(
        from_environment=lambda env: fake_vault.client(),
    ))
    return fake_vault


class TestParseTarget:
    @pytest.mark.parametrize("target,expected", [
        ("host", (None, "host", 22)),
        ("admin@host", ("admin", "host", 22)),
        ("admin@host:2222", ("admin", "host", 2222)),
        ("admin@[::1]:2222", ("admin", "::1", 2222)),
        ("[2001:db8::1]", (None, "2001:db8::1", 22)),
        ("2001:db8::1", (None, "2001:db8::1", 22)),
        ("user@corp@host", ("user@corp", "host", 22)),
    ])
    def test_valid(self, target: str, expected: tuple) -> None:
        assert cli.parse_target(target) == expected

    @pytest.mark.parametrize("target", ["admin@", "host:port", "[]:22"])
    def test_invalid(self, target: str) -> None:
        with pytest.raises(ValueError):
            cli.parse_target(target)


class TestParser:
    def test_connect_defaults(self) -> None:
        args = cli.create_parser().parse_args(["connect", SECRET_PATH])

        assert args.path == SECRET_PATH
        assert args.env is None
        assert args.strict_host_key_checking == "accept-new"
        assert args.connect_timeout == 30.0
        assert args.timeout is None
        assert not args.propagate_exit_status

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            cli.create_parser().parse_args([])

    def test_direct_rejects_bad_target(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["direct", "admin@"])
        assert exc_info.value.code == 2

    def test_engine_options(self) -> None:
        args = cli.create_parser().parse_args([
            "direct", "--propagate-exit-status", "--connect-timeout", "5",
            "--insecure-ignore-host-key", "host",
        ])
        options = cli.engine_options(args, None)

        assert options["exit_status_policy"] == ExitStatusPolicy.RAISE
        assert options["connect_timeout"] == 5.0
        assert isinstance(options["host_key_verifier"], InsecureHostKeyAcceptor)


class TestBuildVerifier:
    def test_known_hosts_and_strict(self, tmp_path: Path) -> None:
        known_hosts = tmp_path / "known_hosts"
        args = cli.create_parser().parse_args([
            "connect", "--known-hosts", str(known_hosts),
            "--strict-host-key-checking", "yes", SECRET_PATH,
        ])
        verifier = cli.build_verifier(args)

        assert isinstance(verifier, HostKeyVerifier)
        assert verifier.policy == HostKeyPolicy.STRICT

    def test_insecure_warns(self, capsys: pytest.CaptureFixture[str]) -> None:
        args = cli.create_parser().parse_args(["connect", "--insecure-ignore-host-key", SECRET_PATH])
        assert isinstance(cli.build_verifier(args), InsecureHostKeyAcceptor)
        assert "WARNING" in capsys.readouterr().err


class TestVaultCommands:
    def test_list(
        self,
        config_file: Path,
        mocked_vault: "FakeVault",
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        mocked_vault.add_keys("secret/metadata/servers/prod", ["web-01", "web-02"])

        code = cli.main(["list", "--config", str(config_file), "secret/metadata/servers/prod"])

        assert code == 0
        assert capsys.readouterr().out.splitlines() == ["web-01", "web-02"]

    def test_show_redacts(
        self,
        config_file: Path,
        mocked_vault: "FakeVault",
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        mocked_vault.add_secret(SECRET_PATH, {
            "hostname": "web-01", "ip": "10.0.0.5", "port": "2222",
            "username": "admin", "password": "hunter2",
        })

        code = cli.main(["show", "--config", str(config_file), SECRET_PATH])

        out = capsys.readouterr().out
        shown = yaml.safe_load(out)
        assert code == 0
        assert shown["address"] == "10.0.0.5:2222"
        assert shown["has_password"] is True
        assert "hunter2" not in out

    def test_missing_secret(
        self,
        config_file: Path,
        mocked_vault: "FakeVault",
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        code = cli.main(["show", "--config", str(config_file), "secret/data/nothing"])

        assert code == cli.EXIT_ERROR
        assert "Error: no secret found" in capsys.readouterr().err

    def test_unknown_environment(
        self,
        config_file: Path,
        mocked_vault: "FakeVault",
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        code = cli.main(["list", "--config", str(config_file), "--env", "prod", "secret/metadata"])

        assert code == cli.EXIT_ERROR
        assert "unknown environment 'prod'" in capsys.readouterr().err

    def test_events_printed(
        self,
        config_file: Path,
        mocked_vault: "FakeVault",
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        mocked_vault.add_keys("secret/metadata/servers", ["prod/"])

        cli.main(["list", "--events", "--config", str(config_file), "secret/metadata/servers"])

        assert '"event_type": "SECRET_LIST"' in capsys.readouterr().err


class TestExitCodes:
    def test_remote_status_propagated(
        self,
        config_file: Path,
        mocked_vault: "FakeVault",
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        shell = AsyncMock(side_effect=RemoteExitError("exited 7", exit_status=7))
        monkeypatch.setattr(cli, "resolve_and_shell", shell)

        code = cli.main(["connect", "--propagate-exit-status", "--config", str(config_file),
                         SECRET_PATH])

        assert code == 7
        assert shell.await_args.args[1] == SECRET_PATH
        assert shell.await_args.kwargs["exit_status_policy"] == ExitStatusPolicy.RAISE

    def test_missing_identity_file(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        code = cli.main(["direct", "-i", str(tmp_path / "no-such-key"), "admin@10.0.0.5"])

        assert code == cli.EXIT_ERROR
        assert "Private key file not found" in capsys.readouterr().err

    def test_direct_without_credentials(self, capsys: pytest.CaptureFixture[str]) -> None:
        code = cli.main(["direct", "admin@10.0.0.5"])

        assert code == cli.EXIT_ERROR
        assert "missing credential" in capsys.readouterr().err
