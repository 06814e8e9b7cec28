"""
Credential resolution from HashiCorp Vault.

Provides:
- VaultClient: minimal async Vault HTTP client (read and list) with retry
- CredentialRecord: normalised connection credentials
- SecretResolver: reads records in either storage shape and lists directories

Storage shapes:
- Nested (KV v2): fields live under body["data"]["data"]
- Flat (KV v1): fields live directly under body["data"]

Usage:
    async with VaultClient.from_environment(config.environment()) as client:
        resolver = SecretResolver(client)
        record = await resolver.read("secret/data/servers/prod/web-01")
        names = await resolver.list("secret/metadata/servers/prod")
"""
from __future__ import annotations

import asyncio
import logging
import ssl
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from jet_access.config import EnvironmentConfig, RetryConfig, TLSConfig
from jet_access.errors import (
    ConfigError,
    ErrorContext,
    SecretNotFound,
    SecretStoreError,
)
from jet_access.events import EventCollector, EventEmitter, EventType

log = logging.getLogger(__name__)

TOKEN_HEADER = "X-Vault-Token"


def build_ssl_context(tls: TLSConfig) -> ssl.SSLContext | bool:
    """
    Build the `verify` argument for httpx from TLS settings.

    Returns False when verification is disabled and no client certificate
    is needed, otherwise an SSLContext.

    Raises:
        ConfigError: If a certificate or key file cannot be loaded
    """
    if not tls.verify and not tls.client_cert:
        return False

    try:
        if tls.verify:
            context = ssl.create_default_context(cafile=tls.ca_cert or None)
        else:
            context = ssl.create_default_context()
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        if tls.client_cert:
            context.load_cert_chain(tls.client_cert, tls.client_key)
    except (OSError, ssl.SSLError) as e:
        raise ConfigError(
            f"failed to configure TLS for Vault client: {e}",
            reason="tls",
            context=ErrorContext(original_error=str(e)),
        ) from e

    return context


class VaultClient:
    """
    Async client for the subset of the Vault HTTP API jet-access needs.

    Transport errors and 5xx responses are retried with exponential
    backoff per RetryConfig. A 404 is reported as None so callers can
    decide what "missing" means for them.
    """

    def __init__(
        self,
        address: str,
        token: str,
        timeout: float = 30.0,
        verify: ssl.SSLContext | bool = True,
        retry: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialise the client.

        Args:
            address: Vault server URL (http:// or https://)
            token: Vault token sent with every request
            timeout: Request timeout in seconds
            verify: TLS verification (SSLContext, or a bool)
            retry: Retry settings (default: single attempt)
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        assert address, "Vault address must be specified"

        self._address = address.rstrip("/")
        self._retry = retry or RetryConfig()
        self._client = httpx.AsyncClient(
            base_url=f"{self._address}/v1/",
            headers={TOKEN_HEADER: token},
            timeout=httpx.Timeout(timeout),
            verify=verify,
            transport=transport,
        )

    @classmethod
    def from_environment(
        cls,
        env: EnvironmentConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "VaultClient":
        """Create a client from a validated EnvironmentConfig."""
        return cls(
            address=env.address,
            token=env.token,
            timeout=float(env.timeout),
            verify=build_ssl_context(env.tls),
            retry=env.retry,
            transport=transport,
        )

    @property
    def address(self) -> str:
        return self._address

    async def __aenter__(self) -> "VaultClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def read(self, path: str) -> dict[str, Any] | None:
        """
        Read the raw secret at `path`.

        Returns:
            Decoded JSON body, or None if nothing exists at the path

        Raises:
            SecretStoreError: On transport errors or unexpected responses
        """
        return await self._call("GET", "read", path)

    async def list(self, path: str) -> dict[str, Any] | None:
        """
        List the children of `path` (HTTP LIST).

        Returns:
            Decoded JSON body, or None if the path does not exist

        Raises:
            SecretStoreError: On transport errors or unexpected responses
        """
        return await self._call("LIST", "list", path)

    async def _call(self, method: str, verb: str, path: str) -> dict[str, Any] | None:
        ctx = ErrorContext(path=path, address=self._address)
        response = await self._request(method, verb, path, ctx)

        if response.status_code == 404:
            return None

        if response.status_code >= 400:
            ctx.extra["vault_errors"] = _vault_errors(response)
            detail = "; ".join(ctx.extra["vault_errors"]) or response.reason_phrase
            raise SecretStoreError(
                f"failed to {verb} path '{path}': HTTP {response.status_code}: {detail}",
                status=response.status_code,
                context=ctx,
            )

        if response.status_code == 204 or not response.content:
            return None

        try:
            body = response.json()
        except ValueError as e:
            ctx.original_error = str(e)
            raise SecretStoreError(
                f"failed to {verb} path '{path}': response is not valid JSON",
                status=response.status_code,
                context=ctx,
            ) from e

        if not isinstance(body, dict):
            raise SecretStoreError(
                f"failed to {verb} path '{path}': response body is not a JSON object",
                status=response.status_code,
                context=ctx,
            )
        return body

    async def _request(
        self,
        method: str,
        verb: str,
        path: str,
        ctx: ErrorContext,
    ) -> httpx.Response:
        """Send a request, retrying transport errors and 5xx responses."""
        url = path.lstrip("/")
        attempts = self._retry.max_attempts

        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.request(method, url)
            except httpx.TransportError as e:
                if attempt < attempts:
                    delay = self._retry.delay_for(attempt)
                    log.warning("Vault %s %s failed (%s), retrying in %.0fs", method, path, e, delay)
                    await asyncio.sleep(delay)
                    continue
                ctx.original_error = str(e)
                raise SecretStoreError(
                    f"failed to {verb} path '{path}': {e}",
                    context=ctx,
                ) from e

            if response.status_code >= 500 and attempt < attempts:
                delay = self._retry.delay_for(attempt)
                log.warning("Vault %s %s returned HTTP %d, retrying in %.0fs",
                            method, path, response.status_code, delay)
                await asyncio.sleep(delay)
                continue

            return response

        raise AssertionError("unreachable: retry loop always returns or raises")


def _vault_errors(response: httpx.Response) -> list[str]:
    try:
        body = response.json()
    except ValueError:
        return [response.text.strip()] if response.text.strip() else []
    errors = body.get("errors") if isinstance(body, dict) else None
    if isinstance(errors, list):
        return [str(e) for e in errors]
    return []


# ---------------------------------------------------------------------------
# Credential records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CredentialRecord:
    """
    Normalised credentials for one target host.

    Unset fields are empty. At least one of password or key is non-empty;
    SecretResolver never returns a record that violates this.
    """
    hostname: str = ""
    ip: str = ""
    port: str = ""
    username: str = ""
    password: str = ""
    key: bytes = b""
    key_passphrase: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging (excludes secrets)."""
        return {
            "hostname": self.hostname,
            "ip": self.ip,
            "port": self.port,
            "username": self.username,
            "has_password": bool(self.password),
            "has_key": bool(self.key),
            "has_key_passphrase": bool(self.key_passphrase),
        }


# Store key -> CredentialRecord attribute. Only these keys are read.
SECRET_FIELDS: tuple[tuple[str, str], ...] = (
    ("hostname", "hostname"),
    ("ip", "ip"),
    ("port", "port"),
    ("username", "username"),
    ("password", "password"),
    ("key", "key"),
    ("key_passphrase", "key_passphrase"),
)


def select_secret_data(body: Mapping[str, Any] | None, path: str) -> tuple[str, Mapping[str, Any]]:
    """
    Pick the field map out of a raw Vault response.

    Returns:
        ("nested" | "flat", field map)

    Raises:
        SecretNotFound: If the response carries no data at all
        ConfigError: If neither storage shape applies
    """
    ctx = ErrorContext(path=path)
    data = body.get("data") if body else None
    if not isinstance(data, Mapping):
        raise SecretNotFound(f"no secret found at path '{path}'", context=ctx)

    nested = data.get("data")
    if isinstance(nested, Mapping):
        return "nested", nested

    hostname = data.get("hostname")
    if isinstance(hostname, str) and hostname:
        return "flat", data

    raise ConfigError(
        f"unsupported secret shape at path '{path}': no nested 'data' map "
        f"and no top-level 'hostname'",
        reason="unsupported_shape",
        context=ctx,
    )


def parse_credential_record(fields: Mapping[str, Any], path: str) -> CredentialRecord:
    """
    Map a secret's fields onto a CredentialRecord.

    Values that are present but not strings are skipped. Unknown keys are
    ignored.

    Raises:
        ConfigError: If neither password nor key is set
    """
    values: dict[str, Any] = {}
    for store_key, attribute in SECRET_FIELDS:
        if store_key not in fields:
            continue
        value = fields[store_key]
        if not isinstance(value, str):
            log.debug("Skipping non-string field %r at %s (%s)",
                      store_key, path, type(value).__name__)
            continue
        values[attribute] = value.encode("utf-8") if attribute == "key" else value

    record = CredentialRecord(**values)

    if not record.password and not record.key:
        raise ConfigError(
            f"missing credential at path '{path}': either 'password' or 'key' must be provided",
            reason="missing_credential",
            context=ErrorContext(path=path, username=record.username or None),
        )

    return record


class SecretResolver:
    """
    Resolves credential records and secret listings from Vault.

    All operations emit SECRET_READ / SECRET_LIST events.
    """

    def __init__(
        self,
        client: VaultClient,
        event_collector: EventCollector | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        self._client = client
        self._emitter = emitter or EventEmitter(collector=event_collector)

    async def read(self, path: str) -> CredentialRecord:
        """
        Read and normalise the credential record at `path`.

        Raises:
            SecretNotFound: If nothing exists at the path
            SecretStoreError: If the store request fails
            ConfigError: If the record has an unsupported shape or no credential
        """
        assert path, "Secret path must be specified"

        with self._emitter.timed_event(EventType.SECRET_READ, path=path) as event_data:
            try:
                body = await self._client.read(path)
                shape, fields = select_secret_data(body, path)
                record = parse_credential_record(fields, path)
            except (SecretStoreError, ConfigError) as e:
                event_data["status"] = "failed"
                event_data["error_type"] = e.error_type
                raise

            event_data["status"] = "success"
            event_data["shape"] = shape
            event_data.update(record.to_dict())

        log.debug("Resolved %s secret at %s for %s", shape, path, record.username)
        return record

    async def list(self, path: str) -> list[str]:
        """
        List child keys at `path`.

        Returns:
            Child keys in store order ([] when the path has no children)

        Raises:
            SecretNotFound: If the path does not exist
            SecretStoreError: If the request fails or the keys are malformed
        """
        assert path, "Secret path must be specified"
        ctx = ErrorContext(path=path)

        with self._emitter.timed_event(EventType.SECRET_LIST, path=path) as event_data:
            try:
                body = await self._client.list(path)
                if body is None:
                    raise SecretNotFound(f"failed to list path '{path}': path not found",
                                         status=404, context=ctx)
                keys = _parse_keys(body, path)
            except SecretStoreError as e:
                event_data["status"] = "failed"
                event_data["error_type"] = e.error_type
                raise

            event_data["status"] = "success"
            event_data["count"] = len(keys)

        return keys


def _parse_keys(body: Mapping[str, Any], path: str) -> list[str]:
    data = body.get("data")
    if data is None:
        return []
    if not isinstance(data, Mapping):
        raise SecretStoreError(
            f"failed to parse keys from path '{path}': 'data' field is not an object",
            context=ErrorContext(path=path),
        )

    raw_keys = data.get("keys")
    if raw_keys is None:
        return []
    if not isinstance(raw_keys, list):
        raise SecretStoreError(
            f"failed to parse keys from path '{path}': 'keys' field is not a list",
            context=ErrorContext(path=path),
        )

    keys: list[str] = []
    for item in raw_keys:
        if not isinstance(item, str):
            raise SecretStoreError(
                f"failed to parse keys from path '{path}': item in 'keys' is not a string",
                context=ErrorContext(path=path),
            )
        keys.append(item)
    return keys
