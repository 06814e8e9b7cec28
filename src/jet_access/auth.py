"""
Authentication strategy building.

Turns raw credential material (private key bytes, optional passphrase,
optional password) into the ordered list of strategies offered to the
remote host.

Provides:
- AuthKind enum: PUBLIC_KEY, PASSWORD
- AuthStrategy dataclass: one strategy with its material
- build_auth_strategies(): key first (with passphrase fallback), then password
- read_key_file(): load private key bytes from disk for direct connections
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import asyncssh

from jet_access.errors import AuthConfigError, ErrorContext
from jet_access.events import EventEmitter, EventType
from jet_access.host_key import get_key_fingerprint
from jet_access.platform import expand_path

if TYPE_CHECKING:
    from jet_access.session import ConnectionTarget

log = logging.getLogger(__name__)


class AuthKind(str, Enum):
    """Supported authentication strategies, in the order they are offered."""
    PUBLIC_KEY = "publickey"
    PASSWORD = "password"


@dataclass(frozen=True)
class AuthStrategy:
    """
    One way of proving identity to the remote host.

    PUBLIC_KEY strategies carry a decoded asyncssh key; PASSWORD
    strategies carry the password.
    """
    kind: AuthKind
    key: asyncssh.SSHKey | None = None
    password: str | None = None

    def __post_init__(self) -> None:
        if self.kind == AuthKind.PUBLIC_KEY:
            assert self.key is not None, "key required for PUBLIC_KEY strategy"
        if self.kind == AuthKind.PASSWORD:
            assert self.password, "password required for PASSWORD strategy"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging (excludes secrets)."""
        result: dict[str, Any] = {"kind": self.kind.value}
        if self.key is not None:
            result["algorithm"] = self.key.get_algorithm()
            result["fingerprint"] = get_key_fingerprint(self.key)
        return result


def _import_key(key: bytes, passphrase: str | None) -> asyncssh.SSHKey:
    return asyncssh.import_private_key(key, passphrase)


def build_auth_strategies(
    key: bytes | str | None,
    passphrase: str | None = None,
    password: str | None = None,
    emitter: EventEmitter | None = None,
) -> list[AuthStrategy]:
    """
    Build the ordered authentication strategies for one connection.

    The key is first decoded without a passphrase. If that fails and a
    passphrase is available, decoding is retried with it. The password,
    when present, is always appended after any key strategy.

    Args:
        key: Private key material (PEM/OpenSSH text), or None/empty
        passphrase: Passphrase for an encrypted key
        password: Password for password authentication
        emitter: Optional event emitter (AUTH_BUILD)

    Returns:
        Non-empty list of strategies, key strategies first

    Raises:
        AuthConfigError: If the key cannot be decoded or nothing usable remains
    """
    if isinstance(key, str):
        key = key.encode("utf-8")

    strategies: list[AuthStrategy] = []

    if key:
        try:
            decoded = _import_key(key, None)
        except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as first_error:
            if not passphrase:
                raise AuthConfigError(
                    f"failed to parse private key: {first_error}",
                    reason="invalid_format",
                    context=ErrorContext(original_error=str(first_error)),
                ) from first_error

            log.debug("Private key did not decode without a passphrase, retrying with one")
            try:
                decoded = _import_key(key, passphrase)
            except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
                raise AuthConfigError(
                    f"failed to parse private key with passphrase: {e}",
                    reason="wrong_passphrase",
                    context=ErrorContext(original_error=str(e)),
                ) from e

        strategies.append(AuthStrategy(kind=AuthKind.PUBLIC_KEY, key=decoded))

    if password:
        strategies.append(AuthStrategy(kind=AuthKind.PASSWORD, password=password))

    if not strategies:
        raise AuthConfigError(
            "no authentication methods successfully configured: "
            "neither a private key nor a password was provided",
            reason="no_methods",
        )

    if emitter:
        emitter.emit(EventType.AUTH_BUILD, strategies=[s.to_dict() for s in strategies])
    log.debug("Built authentication strategies: %s",
              ", ".join(s.kind.value for s in strategies))

    return strategies


def strategies_for_target(
    target: "ConnectionTarget",
    emitter: EventEmitter | None = None,
) -> list[AuthStrategy]:
    """Build strategies from the credentials carried by a ConnectionTarget."""
    try:
        return build_auth_strategies(
            target.key or None,
            passphrase=target.key_passphrase or None,
            password=target.password or None,
            emitter=emitter,
        )
    except AuthConfigError as e:
        e.context.address = target.address
        e.context.username = target.user or None
        raise


def read_key_file(key_path: Path | str) -> bytes:
    """
    Read private key material from a file.

    Raises:
        AuthConfigError: If the file is missing or unreadable
    """
    key_path = expand_path(key_path)
    ctx = ErrorContext(extra={"key_path": str(key_path)})

    if not key_path.exists():
        raise AuthConfigError(
            f"Private key file not found: {key_path}",
            reason="file_not_found",
            context=ctx,
        )
    if not os.access(key_path, os.R_OK):
        raise AuthConfigError(
            f"Private key file not readable: {key_path}",
            reason="permission_denied",
            context=ctx,
        )

    try:
        return key_path.read_bytes()
    except OSError as e:
        ctx.original_error = str(e)
        raise AuthConfigError(
            f"Failed to read private key {key_path}: {e}",
            reason="permission_denied",
            context=ctx,
        ) from e
