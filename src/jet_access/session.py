"""
Interactive SSH session establishment.

Drives one session from dial to remote termination:

    DISCONNECTED -> DIALING -> AUTHENTICATED -> [TERMINAL_NEGOTIATED]
                 -> SHELL_RUNNING -> CLOSED | FAILED

Provides:
- SessionState, ExitStatusPolicy
- ConnectionTarget: address, user and credential material for one host
- SessionEngine: runs the session, wiring local stdio to the remote shell
- connect_and_shell(), resolve_and_shell(): one-call entry points

Error types are imported from jet_access.errors for programmatic handling.
"""
from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import os
import socket
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Any, AsyncIterator, Sequence

import asyncssh
from asyncssh.constants import OPEN_REQUEST_PTY_FAILED, OPEN_REQUEST_SESSION_FAILED

from jet_access.auth import AuthKind, AuthStrategy, strategies_for_target
from jet_access.errors import (
    AuthenticationFailed,
    ConfigError,
    ConnectionRefused,
    ConnectionTimeout,
    ErrorContext,
    HostKeyRejected,
    HostUnreachable,
    JetAccessError,
    RemoteExitError,
    SessionCancelled,
    SessionError,
    TransportError,
)
from jet_access.events import EventCollector, EventEmitter, EventType
from jet_access.host_key import (
    HostIdentityVerifier,
    HostKeyCheckingClient,
    HostKeyPolicy,
    HostKeyVerifier,
)
from jet_access.platform import get_known_hosts_read_paths, get_known_hosts_write_path
from jet_access.terminal import PTY_MODES, TERM_TYPE, LocalTerminal
from jet_access.vault import CredentialRecord, SecretResolver

log = logging.getLogger(__name__)

DEFAULT_PORT = 22
READ_SIZE = 4096
# Reported as the exit status when the remote shell was killed by a signal
SIGNAL_EXIT_STATUS = 255


class SessionState(str, Enum):
    """Session lifecycle states, in the only order they may be visited."""
    DISCONNECTED = "disconnected"
    DIALING = "dialing"
    AUTHENTICATED = "authenticated"
    TERMINAL_NEGOTIATED = "terminal_negotiated"
    SHELL_RUNNING = "shell_running"
    CLOSED = "closed"
    FAILED = "failed"


_STATE_ORDER = {state: index for index, state in enumerate(SessionState)}
_FINAL_STATES = frozenset({SessionState.CLOSED, SessionState.FAILED})


class ExitStatusPolicy(str, Enum):
    """What a non-zero remote exit means to the caller."""
    SUPPRESS = "suppress"   # return normally with the status
    RAISE = "raise"         # raise RemoteExitError


def format_address(host: str, port: int | str) -> str:
    """Join host and port, bracketing IPv6 literals."""
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"{host}:{port}"


def _split_address(address: str) -> tuple[str, int]:
    if address.startswith("["):
        host, sep, rest = address[1:].partition("]")
        if not sep:
            raise ValueError(f"unterminated IPv6 literal in '{address}'")
        port_str = rest[1:] if rest.startswith(":") else ""
    elif address.count(":") == 1:
        host, port_str = address.split(":")
    else:
        host, port_str = address, ""

    if not host:
        raise ValueError(f"no host in '{address}'")
    port = int(port_str) if port_str else DEFAULT_PORT
    if not 1 <= port <= 65535:
        raise ValueError(f"port {port} out of range")
    return host, port


@dataclass(frozen=True)
class ConnectionTarget:
    """
    Where to connect and with what credentials.

    At least one of password or key must be set.
    """
    address: str
    user: str = ""
    password: str = ""
    key: bytes = b""
    key_passphrase: str = ""

    def __post_init__(self) -> None:
        if not self.password and not self.key:
            raise ConfigError(
                f"missing credential for {self.address}: either a password or a key must be provided",
                reason="missing_credential",
                context=ErrorContext(address=self.address, username=self.user or None),
            )
        try:
            _split_address(self.address)
        except ValueError as e:
            raise ConfigError(
                f"invalid address '{self.address}': {e}",
                reason="invalid_address",
                context=ErrorContext(address=self.address),
            ) from e

    @classmethod
    def from_credential(cls, record: CredentialRecord) -> "ConnectionTarget":
        """
        Derive a target from a resolved credential record.

        The host is the record's ip when set, else its hostname; the port
        defaults to 22.
        """
        host = record.ip or record.hostname
        if not host:
            raise ConfigError(
                "credential record has neither 'ip' nor 'hostname'",
                reason="missing_host",
                context=ErrorContext(username=record.username or None),
            )
        return cls(
            address=format_address(host, record.port or DEFAULT_PORT),
            user=record.username,
            password=record.password,
            key=record.key,
            key_passphrase=record.key_passphrase,
        )

    @property
    def host(self) -> str:
        return _split_address(self.address)[0]

    @property
    def port(self) -> int:
        return _split_address(self.address)[1]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging (excludes secrets)."""
        return {
            "address": self.address,
            "user": self.user,
            "has_password": bool(self.password),
            "has_key": bool(self.key),
        }


def default_host_key_verifier() -> HostKeyVerifier:
    """Trust-on-first-use verifier over the user's and system known_hosts."""
    return HostKeyVerifier(
        known_hosts_paths=get_known_hosts_read_paths(),
        write_path=get_known_hosts_write_path(),
        policy=HostKeyPolicy.ACCEPT_NEW,
    )


def _fileno(stream: Any) -> int | None:
    try:
        return stream.fileno()
    except (AttributeError, ValueError, OSError):
        return None


class SessionEngine:
    """
    Runs one interactive shell session on a remote host.

    Usage:
        engine = SessionEngine(target, build_auth_strategies(key, None, password))
        status = await engine.run()

    Local resources (raw terminal mode, connection, remote process) are
    released on every exit path, including cancellation.
    """

    def __init__(
        self,
        target: ConnectionTarget,
        strategies: Sequence[AuthStrategy],
        host_key_verifier: HostIdentityVerifier | None = None,
        terminal: LocalTerminal | None = None,
        stdin: IO[bytes] | None = None,
        stdout: IO[bytes] | None = None,
        stderr: IO[bytes] | None = None,
        exit_status_policy: ExitStatusPolicy = ExitStatusPolicy.SUPPRESS,
        connect_timeout: float = 30.0,
        event_collector: EventCollector | None = None,
        event_log_path: Path | str | None = None,
    ) -> None:
        """
        Initialise the engine.

        Args:
            target: Host and credentials
            strategies: Ordered authentication strategies (non-empty)
            host_key_verifier: Host identity check (default: known_hosts, accept-new)
            terminal: Local terminal (default: the process's stdin)
            stdin: Byte stream forwarded to the remote shell (default: sys.stdin)
            stdout: Byte stream receiving remote stdout (default: sys.stdout)
            stderr: Byte stream receiving remote stderr (default: sys.stderr)
            exit_status_policy: Treatment of a non-zero remote exit
            connect_timeout: Seconds allowed for dial and authentication
            event_collector: Optional in-memory event collector
            event_log_path: Optional JSONL event log file
        """
        assert strategies, "At least one authentication strategy is required"
        assert connect_timeout > 0, f"connect_timeout must be positive, got {connect_timeout}"

        self._target = target
        self._strategies = list(strategies)
        self._verifier = host_key_verifier or default_host_key_verifier()
        self._terminal = terminal or LocalTerminal()
        self._stdin = stdin if stdin is not None else sys.stdin.buffer
        self._stdout = stdout if stdout is not None else sys.stdout.buffer
        self._stderr = stderr if stderr is not None else sys.stderr.buffer
        self._exit_status_policy = exit_status_policy
        self._connect_timeout = connect_timeout
        self._emitter = EventEmitter(collector=event_collector, jsonl_path=event_log_path)

        self._state = SessionState.DISCONNECTED
        self._conn: asyncssh.SSHClientConnection | None = None
        self._process: asyncssh.SSHClientProcess | None = None
        self._pty_size: tuple[int, int] | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pty_size(self) -> tuple[int, int] | None:
        """Size of the negotiated PTY, or None if no PTY was requested."""
        return self._pty_size

    def _context(self, **extra: Any) -> ErrorContext:
        return ErrorContext(
            address=self._target.address,
            host=self._target.host,
            port=self._target.port,
            username=self._target.user or None,
            extra=extra,
        )

    def _transition(self, new_state: SessionState) -> None:
        old_state = self._state
        assert old_state not in _FINAL_STATES, \
            f"Session already finished ({old_state.value}), cannot move to {new_state.value}"
        assert _STATE_ORDER[new_state] > _STATE_ORDER[old_state], \
            f"Illegal session transition {old_state.value} -> {new_state.value}"

        self._state = new_state
        log.debug("Session %s: %s -> %s", self._target.address, old_state.value, new_state.value)
        self._emitter.emit(
            EventType.STATE,
            address=self._target.address,
            from_state=old_state.value,
            to_state=new_state.value,
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        cancel: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> int:
        """
        Run the session to completion.

        Args:
            cancel: Setting this event force-closes the session
            timeout: Overall time limit in seconds for the whole session

        Returns:
            The remote exit status (255 when the shell was killed by a signal)

        Raises:
            TransportError: Dial, authentication, host identity or channel failures
            SessionError: PTY, shell start or wait failures
            SessionCancelled: The cancel event fired or the timeout elapsed
            RemoteExitError: Non-zero exit under ExitStatusPolicy.RAISE
        """
        assert self._state == SessionState.DISCONNECTED, "SessionEngine.run() may only be called once"

        try:
            return await self._supervise(cancel, timeout)
        finally:
            self._emitter.close()

    async def _supervise(self, cancel: asyncio.Event | None, timeout: float | None) -> int:
        main = asyncio.ensure_future(self._run())
        waiters: set[asyncio.Future[Any]] = {main}
        cancel_waiter: asyncio.Future[Any] | None = None
        if cancel is not None:
            cancel_waiter = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            main.cancel()
            await asyncio.gather(main, return_exceptions=True)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if main in done:
            return main.result()

        reason = "cancelled" if cancel is not None and cancel.is_set() else "timeout"
        log.info("Session %s %s, closing", self._target.address, reason)
        if self._conn is not None:
            self._conn.close()
        main.cancel()
        await asyncio.gather(main, return_exceptions=True)

        message = (
            f"session to {self._target.address} was cancelled"
            if reason == "cancelled"
            else f"session to {self._target.address} timed out after {timeout}s"
        )
        error = SessionCancelled(message, context=self._context(reason=reason))
        self._emitter.emit(EventType.ERROR, **error.to_dict())
        raise error

    async def _run(self) -> int:
        try:
            await self._dial()
            return await self._shell()
        except JetAccessError as e:
            self._emitter.emit(EventType.ERROR, **e.to_dict())
            raise
        finally:
            if self._state not in _FINAL_STATES:
                self._transition(SessionState.FAILED)
            await self._release()

    # ------------------------------------------------------------------
    # Dialing and authentication
    # ------------------------------------------------------------------

    def _connect_options(self) -> dict[str, Any]:
        keys = [s.key for s in self._strategies if s.kind == AuthKind.PUBLIC_KEY]
        passwords = [s.password for s in self._strategies if s.kind == AuthKind.PASSWORD]

        preferred_auth: list[str] = []
        for strategy in self._strategies:
            if strategy.kind.value not in preferred_auth:
                preferred_auth.append(strategy.kind.value)

        options: dict[str, Any] = {
            "host": self._target.host,
            "port": self._target.port,
            "client_keys": keys or None,
            "password": passwords[0] if passwords else None,
            "preferred_auth": preferred_auth,
            "agent_path": None,
            "config": None,
            "known_hosts": asyncssh.import_known_hosts(""),
            "connect_timeout": self._connect_timeout,
        }
        if self._target.user:
            options["username"] = self._target.user
        return options

    async def _dial(self) -> None:
        self._transition(SessionState.DIALING)

        host, port = self._target.host, self._target.port
        client = HostKeyCheckingClient(self._verifier, host, port)
        options = self._connect_options()

        with self._emitter.timed_event(
            EventType.CONNECT,
            address=self._target.address,
            username=self._target.user,
            strategies=[s.kind.value for s in self._strategies],
        ) as event_data:
            try:
                self._conn = await asyncssh.connect(client_factory=lambda: client, **options)
            except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
                error = self._map_connect_error(e, client)
                event_data["status"] = "failed"
                event_data["error_type"] = error.error_type
                if isinstance(error, AuthenticationFailed):
                    self._emitter.emit(EventType.AUTH, status="failed",
                                       address=self._target.address,
                                       methods=options["preferred_auth"])
                raise error from e
            event_data["status"] = "connected"

        self._emitter.emit(EventType.AUTH, status="success",
                           address=self._target.address,
                           methods=options["preferred_auth"])
        self._transition(SessionState.AUTHENTICATED)

    def _map_connect_error(
        self,
        exc: BaseException,
        client: HostKeyCheckingClient,
    ) -> TransportError:
        """Map asyncssh and socket exceptions to the transport error taxonomy."""
        address = self._target.address
        ctx = self._context()
        ctx.original_error = str(exc)

        if client.rejected is not None:
            rejected = client.rejected
            rejected.context.address = address
            rejected.context.original_error = str(exc)
            return rejected

        if isinstance(exc, asyncssh.HostKeyNotVerifiable):
            return HostKeyRejected(f"host key verification failed for {address}: {exc}", context=ctx)

        if isinstance(exc, asyncssh.PermissionDenied):
            return AuthenticationFailed(f"authentication failed for {address}: {exc}", context=ctx)

        if isinstance(exc, asyncssh.Error):
            return TransportError(f"failed to connect to {address}: {exc}", context=ctx)

        if isinstance(exc, (asyncio.TimeoutError, socket.timeout)):
            return ConnectionTimeout(f"connection to {address} timed out", context=ctx)

        if isinstance(exc, ConnectionRefusedError):
            return ConnectionRefused(f"connection to {address} refused: {exc}", context=ctx)

        if isinstance(exc, socket.gaierror) or (
            isinstance(exc, OSError)
            and exc.errno in (errno.EHOSTUNREACH, errno.ENETUNREACH)
        ):
            return HostUnreachable(f"host {address} unreachable: {exc}", context=ctx)

        return TransportError(f"failed to connect to {address}: {exc}", context=ctx)

    # ------------------------------------------------------------------
    # Terminal, shell and wait
    # ------------------------------------------------------------------

    async def _shell(self) -> int:
        interactive = self._terminal.is_interactive()
        raw_mode = self._terminal.raw_mode() if interactive else contextlib.nullcontext()

        with raw_mode:
            process = await self._open_process(interactive)
            self._transition(SessionState.SHELL_RUNNING)
            self._emitter.emit(EventType.SHELL, status="started",
                               address=self._target.address, pty=interactive)

            resize = (
                self._terminal.watch_resize(process.change_terminal_size)
                if interactive else contextlib.nullcontext()
            )
            with resize:
                await self._pump(process)

        return self._interpret_exit(process)

    async def _open_process(self, interactive: bool) -> asyncssh.SSHClientProcess:
        assert self._conn is not None
        address = self._target.address

        kwargs: dict[str, Any] = {"encoding": None}
        if interactive:
            self._pty_size = self._terminal.size()
            kwargs.update(term_type=TERM_TYPE, term_size=self._pty_size, term_modes=PTY_MODES)

        try:
            self._process = await self._conn.create_process(**kwargs)
        except asyncssh.ChannelOpenError as e:
            ctx = self._context(channel_error_code=e.code)
            ctx.original_error = e.reason
            if e.code == OPEN_REQUEST_PTY_FAILED:
                self._emitter.emit(EventType.PTY, status="failed", address=address)
                raise SessionError(f"failed to request PTY on {address}: {e.reason}", context=ctx) from e
            if e.code == OPEN_REQUEST_SESSION_FAILED:
                raise SessionError(f"failed to start shell on {address}: {e.reason}", context=ctx) from e
            raise TransportError(f"failed to open session on {address}: {e.reason}", context=ctx) from e
        except (OSError, asyncssh.Error) as e:
            ctx = self._context()
            ctx.original_error = str(e)
            raise TransportError(f"failed to open session on {address}: {e}", context=ctx) from e

        if interactive:
            columns, rows = self._pty_size
            self._emitter.emit(EventType.PTY, status="granted", address=address,
                               term_type=TERM_TYPE, columns=columns, rows=rows)
            self._transition(SessionState.TERMINAL_NEGOTIATED)

        return self._process

    async def _pump(self, process: asyncssh.SSHClientProcess) -> None:
        """Copy stdio in both directions until the remote side closes."""
        stdin_task = asyncio.ensure_future(self._copy_stdin(process))
        output_tasks = [
            asyncio.ensure_future(self._copy_output(process.stdout, self._stdout)),
            asyncio.ensure_future(self._copy_output(process.stderr, self._stderr)),
        ]

        try:
            await process.wait_closed()
            # Remaining buffered output drains to EOF once the channel is closed
            await asyncio.gather(*output_tasks, return_exceptions=True)
        except (OSError, asyncssh.Error) as e:
            ctx = self._context()
            ctx.original_error = str(e)
            raise SessionError(
                f"error while waiting for shell on {self._target.address}: {e}",
                context=ctx,
            ) from e
        finally:
            for task in [stdin_task, *output_tasks]:
                task.cancel()
            await asyncio.gather(stdin_task, *output_tasks, return_exceptions=True)

    async def _copy_stdin(self, process: asyncssh.SSHClientProcess) -> None:
        try:
            async for chunk in self._read_stdin():
                process.stdin.write(chunk)
            process.stdin.write_eof()
        except (BrokenPipeError, ConnectionError, asyncssh.Error) as e:
            log.debug("Stopped forwarding stdin: %s", e)

    async def _read_stdin(self) -> AsyncIterator[bytes]:
        """
        Yield chunks of local input until EOF.

        Pollable descriptors (terminals, pipes) are read from an event-loop
        reader. Regular files and streams without a descriptor are read
        directly.
        """
        loop = asyncio.get_running_loop()
        fd = _fileno(self._stdin)
        queue: asyncio.Queue[bytes] = asyncio.Queue()

        def on_readable() -> None:
            assert fd is not None
            try:
                data = os.read(fd, READ_SIZE)
            except OSError as e:
                log.debug("Reading local input failed: %s", e)
                data = b""
            if not data:
                loop.remove_reader(fd)
            queue.put_nowait(data)

        if fd is not None:
            try:
                loop.add_reader(fd, on_readable)
            except (PermissionError, NotImplementedError, ValueError):
                fd = None

        if fd is None:
            while True:
                data = self._stdin.read(READ_SIZE)
                if not data:
                    return
                yield data
                await asyncio.sleep(0)

        try:
            while True:
                data = await queue.get()
                if not data:
                    return
                yield data
        finally:
            loop.remove_reader(fd)

    async def _copy_output(self, reader: asyncssh.SSHReader, stream: IO[bytes]) -> None:
        while True:
            data = await reader.read(READ_SIZE)
            if not data:
                return
            stream.write(data)
            stream.flush()

    def _interpret_exit(self, process: asyncssh.SSHClientProcess) -> int:
        exit_status = process.exit_status
        exit_signal = process.exit_signal
        signal_name = exit_signal[0] if exit_signal else None

        if signal_name is not None:
            exit_status = SIGNAL_EXIT_STATUS
        elif exit_status is None:
            raise SessionError(
                f"shell on {self._target.address} closed without reporting an exit status",
                context=self._context(),
            )

        self._transition(SessionState.CLOSED)
        self._emitter.emit(EventType.SHELL, status="completed", address=self._target.address,
                           exit_status=exit_status, exit_signal=signal_name)

        if exit_status != 0:
            log.info("Remote shell on %s exited with status %d%s", self._target.address,
                     exit_status, f" (signal {signal_name})" if signal_name else "")
            if self._exit_status_policy == ExitStatusPolicy.RAISE:
                detail = f"signal {signal_name}" if signal_name else f"status {exit_status}"
                raise RemoteExitError(
                    f"shell on {self._target.address} exited with {detail}",
                    exit_status=exit_status,
                    exit_signal=signal_name,
                    context=self._context(),
                )

        return exit_status

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def _release(self) -> None:
        if self._process is not None:
            self._process.close()
            self._process = None

        if self._conn is not None:
            conn, self._conn = self._conn, None
            conn.close()
            try:
                await conn.wait_closed()
            finally:
                self._emitter.emit(EventType.DISCONNECT, address=self._target.address,
                                   state=self._state.value)


async def connect_and_shell(
    target: ConnectionTarget,
    cancel: asyncio.Event | None = None,
    timeout: float | None = None,
    **engine_options: Any,
) -> int:
    """
    Build strategies for `target` and run an interactive session.

    Keyword arguments are passed to SessionEngine.
    """
    strategies = strategies_for_target(target)
    engine = SessionEngine(target, strategies, **engine_options)
    return await engine.run(cancel=cancel, timeout=timeout)


async def resolve_and_shell(
    resolver: SecretResolver,
    path: str,
    cancel: asyncio.Event | None = None,
    timeout: float | None = None,
    **engine_options: Any,
) -> int:
    """Resolve the credential at `path`, then run an interactive session on it."""
    record = await resolver.read(path)
    try:
        target = ConnectionTarget.from_credential(record)
    except ConfigError as e:
        e.context.path = path
        raise
    return await connect_and_shell(target, cancel=cancel, timeout=timeout, **engine_options)
