"""
Error taxonomy with structured data for JSONL logging.

Provides specific error types for each stage of the pipeline, enabling:
- Programmatic error handling with specific exception types
- Rich context (secret path, target address) for diagnosis without source access
- Structured data for JSONL event logging

Error hierarchy:
- JetAccessError (base)
  - ConfigError (malformed secret record, invalid configuration file)
  - SecretStoreError (store-level read/list failure)
    - SecretNotFound
  - AuthConfigError (no usable authentication strategy)
  - TransportError (dial or session-open failure)
    - ConnectionRefused
    - ConnectionTimeout
    - HostUnreachable
    - AuthenticationFailed (credentials rejected by the remote host)
    - HostKeyRejected (host identity verification failed)
  - SessionError (PTY / shell / wait failures after authentication)
    - SessionCancelled
  - RemoteExitError (non-zero remote exit, only under ExitStatusPolicy.RAISE)
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any


@dataclass
class ErrorContext:
    """
    Structured context for errors.

    Carries what is needed to diagnose a failure:
    - the secret path being resolved
    - the address/host/port/user being connected to
    - the underlying cause
    """
    path: str | None = None
    address: str | None = None
    host: str | None = None
    port: int | None = None
    username: str | None = None
    original_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate invariants after initialisation."""
        # Invariant: port must be in valid TCP range if specified
        if self.port is not None:
            assert isinstance(self.port, int) and 1 <= self.port <= 65535, (
                f"Port must be between 1 and 65535, got {self.port}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is not None:
                if key == "extra" and isinstance(value, dict):
                    # Precondition: extra keys must not collide with
                    # dataclass field names, even if those fields are None.
                    field_names = {f.name for f in fields(self)} - {"extra"}
                    collisions = field_names & value.keys()
                    assert not collisions, (
                        f"Extra keys collision with dataclass field names: "
                        f"{collisions}. Use distinct key names in extra."
                    )
                    result.update(value)
                else:
                    result[key] = value
        return result


class JetAccessError(Exception):
    """
    Base exception for all jet-access errors.

    All errors carry structured context for logging and debugging.
    """

    def __init__(self, message: str, context: ErrorContext | None = None) -> None:
        # Precondition: message must be non-empty
        assert isinstance(message, str) and message.strip(), (
            f"JetAccessError message must be a non-empty string, "
            f"got {message!r}"
        )
        super().__init__(message)
        self.context = context or ErrorContext()

    @property
    def error_type(self) -> str:
        """Return the error type name for logging."""
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSONL logging."""
        return {
            "error_type": self.error_type,
            "message": str(self),
            **self.context.to_dict(),
        }


def _with_reason(context: ErrorContext | None, reason: str | None) -> ErrorContext:
    if context is None:
        context = ErrorContext()
    if reason:
        context.extra["reason"] = reason
    return context


# ---------------------------------------------------------------------------
# Secret resolution
# ---------------------------------------------------------------------------

class ConfigError(JetAccessError):
    """
    Configuration is malformed or incomplete.

    This is raised when:
    - A secret record has an unsupported shape
    - A secret record carries neither a password nor a key
    - The configuration file is unreadable or fails validation
    """

    def __init__(
        self,
        message: str,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        super().__init__(message, _with_reason(context, reason))


class SecretStoreError(JetAccessError):
    """
    The secret store could not serve a read or list request.

    Carries the HTTP status (when there was one) in the context.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if status is not None:
            context.extra["status"] = status
        super().__init__(message, context)


class SecretNotFound(SecretStoreError):
    """No secret exists at the requested path."""
    pass


# ---------------------------------------------------------------------------
# Authentication setup
# ---------------------------------------------------------------------------

class AuthConfigError(JetAccessError):
    """
    No usable authentication strategy could be built.

    This is raised before any network activity when:
    - The private key cannot be parsed
    - The key is encrypted and the passphrase is missing or wrong
    - Neither a key nor a password was supplied
    """

    def __init__(
        self,
        message: str,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        super().__init__(message, _with_reason(context, reason))


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class TransportError(JetAccessError):
    """Dialing, authenticating or opening a session on the remote host failed."""
    pass


class ConnectionRefused(TransportError):
    """Server actively refused the connection."""
    pass


class ConnectionTimeout(TransportError):
    """Connection attempt timed out."""
    pass


class HostUnreachable(TransportError):
    """Host could not be reached (network error)."""
    pass


class AuthenticationFailed(TransportError):
    """
    The remote host rejected every offered authentication strategy.

    This is raised when:
    - Password is incorrect
    - Private key is not accepted by server
    """
    pass


class HostKeyRejected(TransportError):
    """
    Host identity verification failed.

    The server's host key is unknown under a strict policy, revoked, or
    differs from the trusted known_hosts entry.
    """

    def __init__(
        self,
        message: str,
        fingerprint: str | None = None,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        context = _with_reason(context, reason)
        if fingerprint:
            context.extra["fingerprint"] = fingerprint
        super().__init__(message, context)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class SessionError(JetAccessError):
    """PTY negotiation, shell start or session wait failed."""
    pass


class SessionCancelled(SessionError):
    """The session was force-closed by a cancellation signal or timeout."""
    pass


class RemoteExitError(JetAccessError):
    """
    The remote shell exited with a non-zero status or a signal.

    Only raised when the engine runs with ExitStatusPolicy.RAISE; the
    default policy reports such exits as success.
    """

    def __init__(
        self,
        message: str,
        exit_status: int,
        exit_signal: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        context.extra["exit_status"] = exit_status
        if exit_signal:
            context.extra["exit_signal"] = exit_signal
        super().__init__(message, context)
        self.exit_status = exit_status
        self.exit_signal = exit_signal
