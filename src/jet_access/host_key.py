"""
Host identity verification against OpenSSH known_hosts files.

Provides:
- HostKeyPolicy: STRICT (reject unknown hosts) or ACCEPT_NEW (trust on first use)
- HostKeyResult: TRUSTED, UNKNOWN, CHANGED, REVOKED
- HostKeyVerifier: known_hosts-backed verification, the default
- InsecureHostKeyAcceptor: accepts any identity; opt-in only
- HostKeyCheckingClient: asyncssh client routing host key checks to a verifier

known_hosts format handled:
- hostname key (port 22)
- [hostname]:port key (other ports)
- |1|salt|hash key (hashed hostnames, read and optionally written)
- @revoked hostname key
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import re
import secrets
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol, Sequence

import asyncssh

from jet_access.errors import ErrorContext, HostKeyRejected

log = logging.getLogger(__name__)

_BRACKETED = re.compile(r"^\[([^\]]+)\]:(\d+)$")


class HostKeyPolicy(str, Enum):
    """How a host missing from known_hosts is treated. Changed keys are always rejected."""
    STRICT = "strict"
    ACCEPT_NEW = "accept_new"


class HostKeyResult(str, Enum):
    """Outcome of looking a host key up in known_hosts."""
    TRUSTED = "trusted"
    UNKNOWN = "unknown"
    CHANGED = "changed"
    REVOKED = "revoked"


@dataclass
class HostKeyEntry:
    """One parsed known_hosts line."""
    hostnames: list[str]
    key_type: str
    key_data: str
    is_revoked: bool = False
    is_hashed: bool = False


def hash_hostname(hostname: str, salt: bytes | None = None) -> str:
    """Hash a hostname the way OpenSSH's HashKnownHosts does (|1|salt|hmac-sha1)."""
    if salt is None:
        salt = secrets.token_bytes(20)
    digest = hmac.new(salt, hostname.encode("utf-8"), hashlib.sha1).digest()
    return "|1|{}|{}".format(
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(digest).decode("ascii"),
    )


def _matches_hashed(pattern: str, hostname: str) -> bool:
    parts = pattern.split("|")
    if len(parts) != 4 or parts[1] != "1":
        return False
    try:
        salt = base64.b64decode(parts[2])
        stored = base64.b64decode(parts[3])
    except (ValueError, binascii.Error):
        return False
    computed = hmac.new(salt, hostname.encode("utf-8"), hashlib.sha1).digest()
    return hmac.compare_digest(stored, computed)


def format_known_hosts_host(host: str, port: int) -> str:
    """Host field for a known_hosts line: bare for port 22, [host]:port otherwise."""
    if port == 22:
        return host
    return f"[{host}]:{port}"


def host_matches(host: str, port: int, pattern: str) -> bool:
    """Check whether host:port is covered by one known_hosts host pattern."""
    if pattern.startswith("|1|"):
        return _matches_hashed(pattern, format_known_hosts_host(host, port))

    match = _BRACKETED.match(pattern)
    if match:
        return host.lower() == match.group(1).lower() and port == int(match.group(2))

    return port == 22 and host.lower() == pattern.lower()


def get_key_fingerprint(key: asyncssh.SSHKey, hash_algo: str = "sha256") -> str:
    """
    Fingerprint a key in OpenSSH notation.

    Returns:
        "SHA256:<base64>" or "MD5:<hex pairs>"
    """
    return fingerprint_blob(key.public_data, hash_algo)


def fingerprint_blob(public_data: bytes, hash_algo: str = "sha256") -> str:
    if hash_algo == "sha256":
        digest = hashlib.sha256(public_data).digest()
        return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")
    if hash_algo == "md5":
        digest = hashlib.md5(public_data).digest()
        return "MD5:" + ":".join(f"{b:02x}" for b in digest)
    raise ValueError(f"Unknown hash algorithm: {hash_algo}")


def _key_type(key: asyncssh.SSHKey) -> str:
    algorithm = key.algorithm
    return algorithm.decode("ascii") if isinstance(algorithm, bytes) else algorithm


def parse_known_hosts_line(line: str) -> HostKeyEntry | None:
    """Parse one known_hosts line; returns None for comments, blanks and junk."""
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    is_revoked = False
    if line.startswith("@revoked "):
        is_revoked = True
        line = line[len("@revoked "):].lstrip()
    elif line.startswith("@"):
        # @cert-authority and other markers are not host keys
        return None

    parts = line.split()
    if len(parts) < 3:
        return None

    hostnames = [h for h in parts[0].split(",") if h]
    return HostKeyEntry(
        hostnames=hostnames,
        key_type=parts[1],
        key_data=parts[2],
        is_revoked=is_revoked,
        is_hashed=any(h.startswith("|1|") for h in hostnames),
    )


def format_changed_key_message(
    host: str,
    port: int,
    server_fingerprint: str,
    stored_fingerprints: Sequence[tuple[str, str]],
) -> str:
    """Build the OpenSSH-style warning for a changed host key."""
    lines = [
        "@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@",
        "@    WARNING: REMOTE HOST IDENTIFICATION HAS CHANGED!     @",
        "@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@",
        "IT IS POSSIBLE THAT SOMEONE IS DOING SOMETHING NASTY!",
        f"The host key for {format_known_hosts_host(host, port)} has changed.",
        "",
        "Server's current key fingerprint:",
        f"  {server_fingerprint}",
        "",
        "Expected fingerprint(s) from known_hosts:",
    ]
    lines.extend(f"  {key_type}: {fp}" for key_type, fp in stored_fingerprints)
    lines.extend([
        "",
        "If the change is expected, remove the old entry from known_hosts and try again.",
    ])
    return "\n".join(lines)


class HostIdentityVerifier(Protocol):
    """Anything that can decide whether to trust a server's host key."""

    def verify(self, host: str, port: int, key: asyncssh.SSHKey) -> bool: ...

    def rejection(self, host: str, port: int) -> HostKeyRejected: ...


class HostKeyVerifier:
    """
    Known_hosts-backed host key verification.

    Unknown hosts are rejected under STRICT and trusted (and appended to
    the write file) under ACCEPT_NEW. Changed and revoked keys are always
    rejected.

    Usage:
        verifier = HostKeyVerifier(
            known_hosts_paths=get_known_hosts_read_paths(),
            write_path=get_known_hosts_write_path(),
        )
        if not verifier.verify(host, port, server_key):
            raise verifier.rejection(host, port)
    """

    def __init__(
        self,
        known_hosts_paths: Sequence[Path | str],
        write_path: Path | str | None = None,
        policy: HostKeyPolicy = HostKeyPolicy.ACCEPT_NEW,
        hash_known_hosts: bool = False,
    ) -> None:
        """
        Initialise the verifier and load known_hosts.

        Args:
            known_hosts_paths: known_hosts files to consult (missing files are skipped)
            write_path: File newly trusted keys are appended to (None: never save)
            policy: Treatment of unknown hosts
            hash_known_hosts: Hash hostnames when saving
        """
        self._paths = [Path(p) for p in known_hosts_paths]
        self._write_path = Path(write_path) if write_path is not None else None
        self._policy = policy
        self._hash_known_hosts = hash_known_hosts
        self._entries: list[HostKeyEntry] = []

        self.last_result: HostKeyResult | None = None
        self.last_fingerprint: str | None = None

        for path in self._paths:
            self._load(path)

    @property
    def policy(self) -> HostKeyPolicy:
        return self._policy

    @property
    def entries(self) -> list[HostKeyEntry]:
        return list(self._entries)

    def _load(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    entry = parse_known_hosts_line(line)
                    if entry is not None:
                        self._entries.append(entry)
        except OSError as e:
            log.warning("Could not read known_hosts file %s: %s", path, e)

    def add_entry_line(self, line: str) -> None:
        """Trust one known_hosts line in memory, without touching any file."""
        entry = parse_known_hosts_line(line)
        assert entry is not None, f"Not a known_hosts host key line: {line!r}"
        self._entries.append(entry)

    def _matching(self, host: str, port: int) -> list[HostKeyEntry]:
        return [
            entry for entry in self._entries
            if any(host_matches(host, port, pattern) for pattern in entry.hostnames)
        ]

    def check(self, host: str, port: int, key: asyncssh.SSHKey) -> HostKeyResult:
        """Look a server key up in the loaded known_hosts entries."""
        key_type = _key_type(key)
        key_data = base64.b64encode(key.public_data).decode("ascii")

        matching = self._matching(host, port)
        if not matching:
            return HostKeyResult.UNKNOWN

        for entry in matching:
            if entry.key_type == key_type and entry.key_data == key_data:
                return HostKeyResult.REVOKED if entry.is_revoked else HostKeyResult.TRUSTED

        return HostKeyResult.CHANGED

    def verify(self, host: str, port: int, key: asyncssh.SSHKey) -> bool:
        """
        Decide whether to trust `key` for host:port under the policy.

        Records the outcome in last_result / last_fingerprint.
        """
        result = self.check(host, port, key)
        self.last_result = result
        self.last_fingerprint = get_key_fingerprint(key)

        if result == HostKeyResult.TRUSTED:
            return True

        if result == HostKeyResult.UNKNOWN and self._policy == HostKeyPolicy.ACCEPT_NEW:
            log.info("Permanently adding %s (%s) to the list of known hosts",
                     format_known_hosts_host(host, port), self.last_fingerprint)
            if self._write_path is not None:
                self.save(host, port, key)
            return True

        log.warning("Rejecting host key for %s: %s",
                    format_known_hosts_host(host, port), result.value)
        return False

    def save(self, host: str, port: int, key: asyncssh.SSHKey) -> None:
        """
        Append a key for host:port to the write file.

        Raises:
            RuntimeError: If no write path was configured
        """
        if self._write_path is None:
            raise RuntimeError("No write path configured for host key saving")

        key_type, key_data = key.export_public_key("openssh").decode("utf-8").split()[:2]
        host_field = format_known_hosts_host(host, port)
        if self._hash_known_hosts:
            host_field = hash_hostname(host_field)

        try:
            self._write_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            with open(self._write_path, "a", encoding="utf-8") as f:
                f.write(f"{host_field} {key_type} {key_data}\n")
        except OSError as e:
            log.warning("Could not save host key to %s: %s", self._write_path, e)
            return

        self._entries.append(HostKeyEntry(
            hostnames=[host_field],
            key_type=key_type,
            key_data=key_data,
            is_hashed=self._hash_known_hosts,
        ))

    def stored_fingerprints(self, host: str, port: int) -> list[tuple[str, str]]:
        """(key_type, fingerprint) of every stored key for host:port."""
        fingerprints: list[tuple[str, str]] = []
        for entry in self._matching(host, port):
            try:
                blob = base64.b64decode(entry.key_data)
            except (ValueError, binascii.Error):
                continue
            fingerprints.append((entry.key_type, fingerprint_blob(blob)))
        return fingerprints

    def rejection(self, host: str, port: int) -> HostKeyRejected:
        """Build the error describing the most recent rejection."""
        ctx = ErrorContext(host=host, port=port)
        fingerprint = self.last_fingerprint

        if self.last_result == HostKeyResult.CHANGED:
            message = format_changed_key_message(
                host, port, fingerprint or "unknown", self.stored_fingerprints(host, port),
            )
            reason = "changed"
        elif self.last_result == HostKeyResult.REVOKED:
            message = f"Host key for {host}:{port} is marked as revoked ({fingerprint})"
            reason = "revoked"
        else:
            message = (
                f"Host key for {host}:{port} is not in known_hosts and "
                f"strict checking is enabled ({fingerprint})"
            )
            reason = "unknown"

        return HostKeyRejected(message, fingerprint=fingerprint, reason=reason, context=ctx)


class InsecureHostKeyAcceptor:
    """
    Accepts every host key without checking it.

    Only for disposable test hosts. Never used unless passed explicitly.
    """

    def __init__(self) -> None:
        self.last_fingerprint: str | None = None

    def verify(self, host: str, port: int, key: asyncssh.SSHKey) -> bool:
        self.last_fingerprint = get_key_fingerprint(key)
        log.warning(
            "Host key verification is DISABLED: accepting %s for %s without checking",
            self.last_fingerprint, format_known_hosts_host(host, port),
        )
        return True

    def rejection(self, host: str, port: int) -> HostKeyRejected:
        raise AssertionError("InsecureHostKeyAcceptor never rejects a host key")


class HostKeyCheckingClient(asyncssh.SSHClient):
    """
    asyncssh client that delegates host key validation to a verifier.

    Connect with an empty known_hosts so asyncssh has no trusted keys of its own
    and always calls validate_host_public_key.
    """

    def __init__(self, verifier: HostIdentityVerifier, host: str, port: int) -> None:
        super().__init__()
        self._verifier = verifier
        self._host = host
        self._port = port
        self.rejected: HostKeyRejected | None = None

    def validate_host_public_key(
        self,
        host: str,
        addr: tuple[str, int],
        port: int,
        key: asyncssh.SSHKey,
    ) -> bool:
        if self._verifier.verify(self._host, self._port, key):
            return True
        self.rejected = self._verifier.rejection(self._host, self._port)
        return False
