"""jet-access: interactive SSH sessions with credentials resolved from Vault."""

__version__ = "0.1.0"

from jet_access.auth import (
    AuthKind,
    AuthStrategy,
    build_auth_strategies,
    read_key_file,
    strategies_for_target,
)
from jet_access.config import (
    EnvironmentConfig,
    JetAccessConfig,
    RetryConfig,
    TLSConfig,
    get_config_path,
    load_config,
)
from jet_access.errors import (
    AuthConfigError,
    AuthenticationFailed,
    ConfigError,
    ConnectionRefused,
    ConnectionTimeout,
    ErrorContext,
    HostKeyRejected,
    HostUnreachable,
    JetAccessError,
    RemoteExitError,
    SecretNotFound,
    SecretStoreError,
    SessionCancelled,
    SessionError,
    TransportError,
)
from jet_access.events import Event, EventCollector, EventEmitter, EventType
from jet_access.host_key import (
    HostKeyCheckingClient,
    HostKeyPolicy,
    HostKeyResult,
    HostKeyVerifier,
    InsecureHostKeyAcceptor,
    get_key_fingerprint,
)
from jet_access.session import (
    ConnectionTarget,
    ExitStatusPolicy,
    SessionEngine,
    SessionState,
    connect_and_shell,
    resolve_and_shell,
)
from jet_access.terminal import LocalTerminal, RawTerminal
from jet_access.vault import CredentialRecord, SecretResolver, VaultClient

__all__ = [
    # Auth
    "AuthKind",
    "AuthStrategy",
    "build_auth_strategies",
    "read_key_file",
    "strategies_for_target",
    # Config
    "EnvironmentConfig",
    "JetAccessConfig",
    "RetryConfig",
    "TLSConfig",
    "get_config_path",
    "load_config",
    # Errors
    "AuthConfigError",
    "AuthenticationFailed",
    "ConfigError",
    "ConnectionRefused",
    "ConnectionTimeout",
    "ErrorContext",
    "HostKeyRejected",
    "HostUnreachable",
    "JetAccessError",
    "RemoteExitError",
    "SecretNotFound",
    "SecretStoreError",
    "SessionCancelled",
    "SessionError",
    "TransportError",
    # Events
    "Event",
    "EventCollector",
    "EventEmitter",
    "EventType",
    # Host keys
    "HostKeyCheckingClient",
    "HostKeyPolicy",
    "HostKeyResult",
    "HostKeyVerifier",
    "InsecureHostKeyAcceptor",
    "get_key_fingerprint",
    # Session
    "ConnectionTarget",
    "ExitStatusPolicy",
    "SessionEngine",
    "SessionState",
    "connect_and_shell",
    "resolve_and_shell",
    # Terminal
    "LocalTerminal",
    "RawTerminal",
    # Vault
    "CredentialRecord",
    "SecretResolver",
    "VaultClient",
]
