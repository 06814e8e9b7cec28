"""
Configuration file loading for jet-access.

Provides:
- TLSConfig, RetryConfig, EnvironmentConfig: how to reach one Vault
- JetAccessConfig: the default environment plus named overrides
- get_config_path(): locate the configuration file
- load_config(): read, parse and validate a configuration file

File format (YAML):

    default:
      address: https://vault.example.com:8200
      token: s.xxxx
      timeout: 10
      tls:
        verify: true
        ca_cert: /etc/ssl/vault-ca.pem
      retry:
        max_attempts: 3
        initial_interval: 1
        max_interval: 5
    environments:
      staging:
        address: https://vault.staging.example.com:8200
        ...

An empty token is filled from the VAULT_TOKEN environment variable.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from jet_access.errors import ConfigError, ErrorContext
from jet_access.platform import APP_NAME, get_user_config_dir

log = logging.getLogger(__name__)

CONFIG_FILENAME = f"{APP_NAME}.yaml"
DEV_CONFIG_PATH = Path("config") / CONFIG_FILENAME
TOKEN_ENV_VAR = "VAULT_TOKEN"


def _section(raw: Any, name: str) -> Mapping[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigError(f"'{name}' must be a mapping", reason="invalid_type")
    return raw


@dataclass
class TLSConfig:
    """
    TLS settings for the Vault connection.

    With verify enabled and no ca_cert, the system trust store is used.
    """
    verify: bool = True
    ca_cert: str = ""
    client_cert: str = ""
    client_key: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> "TLSConfig":
        data = _section(raw, "tls")
        return cls(
            verify=bool(data.get("verify", True)),
            ca_cert=str(data.get("ca_cert") or ""),
            client_cert=str(data.get("client_cert") or ""),
            client_key=str(data.get("client_key") or ""),
        )

    def validate(self) -> None:
        if self.ca_cert and not self.verify:
            log.warning("tls.ca_cert is ignored because tls.verify is false")
        if self.client_cert and not self.client_key:
            raise ConfigError("client certificate is provided but no client key")
        if self.client_key and not self.client_cert:
            raise ConfigError("client key is provided but no client certificate")


@dataclass
class RetryConfig:
    """
    Retry behaviour for Vault requests.

    Intervals are in seconds; the delay doubles after each failed attempt
    and is capped at max_interval.
    """
    max_attempts: int = 1
    initial_interval: int = 1
    max_interval: int = 1

    @classmethod
    def from_dict(cls, raw: Any) -> "RetryConfig":
        data = _section(raw, "retry")
        try:
            return cls(
                max_attempts=int(data.get("max_attempts", 1)),
                initial_interval=int(data.get("initial_interval", 1)),
                max_interval=int(data.get("max_interval", data.get("initial_interval", 1))),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"retry settings must be integers: {e}", reason="invalid_type") from e

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be greater than 0")
        if self.initial_interval < 1:
            raise ConfigError("initial_interval must be greater than 0")
        if self.max_interval < self.initial_interval:
            raise ConfigError("max_interval must be greater than or equal to initial_interval")

    def delay_for(self, attempt: int) -> float:
        """Backoff delay in seconds before retrying after `attempt` failures."""
        assert attempt >= 1, f"attempt must be >= 1, got {attempt}"
        return float(min(self.initial_interval * (2 ** (attempt - 1)), self.max_interval))


@dataclass
class EnvironmentConfig:
    """Everything needed to talk to one Vault deployment."""
    address: str = ""
    token: str = ""
    timeout: int = 30
    tls: TLSConfig = field(default_factory=TLSConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_dict(cls, raw: Any) -> "EnvironmentConfig":
        data = _section(raw, "environment")
        try:
            timeout = int(data.get("timeout", 30))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"timeout must be an integer: {e}", reason="invalid_type") from e

        token = str(data.get("token") or "") or os.environ.get(TOKEN_ENV_VAR, "")
        return cls(
            address=str(data.get("address") or ""),
            token=token,
            timeout=timeout,
            tls=TLSConfig.from_dict(data.get("tls")),
            retry=RetryConfig.from_dict(data.get("retry")),
        )

    def validate(self) -> None:
        if not self.address:
            raise ConfigError("address is required")
        if not self.address.startswith(("http://", "https://")):
            raise ConfigError("address must start with http:// or https://")
        if not self.token:
            raise ConfigError(f"token is required (set it in the file or via {TOKEN_ENV_VAR})")
        if self.timeout < 1:
            raise ConfigError("timeout must be greater than 0")

        try:
            self.tls.validate()
        except ConfigError as e:
            raise ConfigError(f"TLS validation failed: {e}") from e
        try:
            self.retry.validate()
        except ConfigError as e:
            raise ConfigError(f"retry validation failed: {e}") from e


@dataclass
class JetAccessConfig:
    """
    Top-level configuration: a default environment and named overrides.

    Named environments are complete configurations in their own right;
    they do not inherit unset keys from the default.
    """
    default: EnvironmentConfig = field(default_factory=EnvironmentConfig)
    environments: dict[str, EnvironmentConfig] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any) -> "JetAccessConfig":
        data = _section(raw, "configuration")
        environments = {
            str(name): EnvironmentConfig.from_dict(env)
            for name, env in _section(data.get("environments"), "environments").items()
        }
        return cls(
            default=EnvironmentConfig.from_dict(data.get("default")),
            environments=environments,
        )

    def validate(self) -> None:
        try:
            self.default.validate()
        except ConfigError as e:
            raise ConfigError(f"default configuration validation failed: {e}") from e

        for name, env in self.environments.items():
            try:
                env.validate()
            except ConfigError as e:
                raise ConfigError(f"environment '{name}' validation failed: {e}") from e

    def environment(self, name: str | None = None) -> EnvironmentConfig:
        """Return the named environment, or the default when name is None."""
        if name is None:
            return self.default
        try:
            return self.environments[name]
        except KeyError:
            known = ", ".join(sorted(self.environments)) or "none"
            raise ConfigError(
                f"unknown environment '{name}' (configured: {known})",
                reason="unknown_environment",
            ) from None


def get_config_path() -> Path:
    """
    Locate the configuration file.

    Search order:
    1. config/jet-access.yaml in the current directory (development checkouts)
    2. <user config dir>/jet-access/jet-access.yaml, creating the directory
    """
    if DEV_CONFIG_PATH.exists():
        return DEV_CONFIG_PATH

    log.debug("Development config %s not found, using user config directory", DEV_CONFIG_PATH)

    config_dir = get_user_config_dir()
    try:
        config_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(
            f"error creating config directory {config_dir}: {e}",
            context=ErrorContext(path=str(config_dir), original_error=str(e)),
        ) from e
    return config_dir / CONFIG_FILENAME


def load_config(path: Path | str | None = None) -> JetAccessConfig:
    """
    Read, parse and validate a configuration file.

    Args:
        path: Configuration file (default: get_config_path())

    Returns:
        The validated configuration

    Raises:
        ConfigError: If the file cannot be read, parsed or validated
    """
    config_path = Path(path) if path is not None else get_config_path()
    ctx = ErrorContext(path=str(config_path))

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except OSError as e:
        ctx.original_error = str(e)
        raise ConfigError(f"error reading config file {config_path}: {e}", context=ctx) from e
    except yaml.YAMLError as e:
        ctx.original_error = str(e)
        raise ConfigError(f"error parsing config file {config_path}: {e}", context=ctx) from e

    try:
        config = JetAccessConfig.from_dict(raw)
        config.validate()
    except ConfigError as e:
        raise ConfigError(
            f"configuration validation failed for {config_path}: {e}",
            context=ctx,
        ) from e

    log.debug("Loaded configuration from %s (%d named environments)",
              config_path, len(config.environments))
    return config
