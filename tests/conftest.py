"""
Pytest fixtures for jet-access tests.

Provides:
- Mock SSH server fixtures (MockSSHServer-based, no real host required)
- Client key material (plain and passphrase-encrypted)
- A Vault HTTP double built on httpx.MockTransport
- Terminal doubles for PTY negotiation tests
- Event capture fixtures
"""
from __future__ import annotations

import io
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Iterator

import asyncssh
import httpx
import pytest

from jet_access.events import EventCollector
from jet_access.terminal import LocalTerminal, RawTerminal
from jet_access.testing.mock_server import MockServerConfig, MockSSHServer
from jet_access.vault import VaultClient

KEY_PASSPHRASE = "correct horse battery staple"
VAULT_ADDRESS = "https://vault.test:8200"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@pytest.fixture
def event_collector() -> EventCollector:
    """Fresh in-memory event collector."""
    return EventCollector()


@pytest.fixture
def temp_jsonl_path(tmp_path: Path) -> Path:
    """Path for a JSONL event log inside the test's temporary directory."""
    return tmp_path / "events.jsonl"


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def client_key() -> asyncssh.SSHKey:
    """Ed25519 client key shared by the whole session."""
    return asyncssh.generate_private_key("ssh-ed25519")


@pytest.fixture(scope="session")
def client_key_bytes(client_key: asyncssh.SSHKey) -> bytes:
    """Unencrypted OpenSSH private key text."""
    return client_key.export_private_key("openssh")


@pytest.fixture(scope="session")
def key_passphrase() -> str:
    return KEY_PASSPHRASE


@pytest.fixture(scope="session", params=["pkcs8-pem", "openssh"])
def encrypted_key_bytes(request: pytest.FixtureRequest, client_key: asyncssh.SSHKey) -> bytes:
    """
    The client key encrypted with KEY_PASSPHRASE.

    Parametrised over PKCS#8 PEM and the OpenSSH format ssh-keygen writes
    by default (bcrypt KDF).
    """
    return client_key.export_private_key(request.param, passphrase=KEY_PASSPHRASE)


# ---------------------------------------------------------------------------
# SSH servers
# ---------------------------------------------------------------------------

@pytest.fixture
async def password_server() -> AsyncGenerator[MockSSHServer, None]:
    """Server accepting only password auth (test/test)."""
    async with MockSSHServer(MockServerConfig(username="test", password="test")) as server:
        yield server


@pytest.fixture
def start_server() -> Callable[..., MockSSHServer]:
    """
    Factory for configured servers.

    Usage:
        async with start_server(exit_status=1, password=None,
                                authorized_keys=[key]) as server:
            ...
    """
    def factory(**config: Any) -> MockSSHServer:
        return MockSSHServer(MockServerConfig(**config))

    return factory


# ---------------------------------------------------------------------------
# Terminals
# ---------------------------------------------------------------------------

class FakeTerminal(LocalTerminal):
    """
    Interactive terminal double.

    Reports itself as a terminal but cannot answer size queries unless a
    size is given. Raw mode is attempted on /dev/null and so always falls
    back to cooked mode.
    """

    def __init__(self, size: tuple[int, int] | None = None) -> None:
        self._devnull = open(os.devnull, "rb")
        super().__init__(self._devnull)
        self._size = size
        self.raw_terminals: list[RawTerminal] = []

    def is_interactive(self) -> bool:
        return True

    def query_size(self) -> tuple[int, int]:
        if self._size is None:
            raise OSError("Inappropriate ioctl for device")
        return self._size

    def raw_mode(self) -> RawTerminal:
        raw = super().raw_mode()
        self.raw_terminals.append(raw)
        return raw

    def close(self) -> None:
        self._devnull.close()


@pytest.fixture
def fake_terminal() -> Iterator[FakeTerminal]:
    """Interactive terminal whose size is unavailable (falls back to 80x24)."""
    terminal = FakeTerminal()
    yield terminal
    terminal.close()


@pytest.fixture
def pipe_terminal() -> LocalTerminal:
    """Non-interactive terminal: no PTY is requested."""
    return LocalTerminal(io.BytesIO())


@dataclass
class LocalStdio:
    """Byte streams standing in for the operator's stdin/stdout/stderr."""
    stdin: io.BytesIO = field(default_factory=io.BytesIO)
    stdout: io.BytesIO = field(default_factory=io.BytesIO)
    stderr: io.BytesIO = field(default_factory=io.BytesIO)

    def engine_kwargs(self) -> dict[str, Any]:
        return {"stdin": self.stdin, "stdout": self.stdout, "stderr": self.stderr}


@pytest.fixture
def stdio() -> LocalStdio:
    """Empty stdin plus capturing stdout/stderr."""
    return LocalStdio()


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------

class FakeVault:
    """
    In-memory Vault HTTP API served through httpx.MockTransport.

    Routes are keyed by (method, path without /v1/). Unrouted requests get
    a 404 with an empty errors list, like Vault.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], httpx.Response | Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, status: int = 200, body: Any = None) -> None:
        self.routes[(method, path)] = httpx.Response(
            status,
            content=json.dumps(body).encode() if body is not None else b"",
            headers={"Content-Type": "application/json"},
        )

    def add_secret(self, path: str, data: dict[str, Any], nested: bool = True) -> None:
        """Serve a GET for `path` in nested (KV v2) or flat (KV v1) shape."""
        body = {"data": {"data": data, "metadata": {"version": 1}}} if nested else {"data": data}
        self.add("GET", path, body=body)

    def add_keys(self, path: str, keys: Any) -> None:
        self.add("LIST", path, body={"data": {"keys": keys}})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/v1/")
        route = self.routes.get((request.method, path))
        if route is None:
            return httpx.Response(404, json={"errors": []})
        if callable(route):
            return route(request)
        return route

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self, **kwargs: Any) -> VaultClient:
        return VaultClient(VAULT_ADDRESS, "s.test-token", transport=self.transport(), **kwargs)


@pytest.fixture
def fake_vault() -> FakeVault:
    return FakeVault()
