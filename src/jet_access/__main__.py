"""
CLI interface for jet-access.

Usage:
    jet-access connect secret/data/servers/prod/web-01     # Vault-backed shell
    jet-access connect --env staging secret/data/servers/staging/db-01
    jet-access list secret/metadata/servers/prod
    jet-access show secret/data/servers/prod/web-01        # secrets redacted
    jet-access direct -i ~/.ssh/id_ed25519 admin@10.0.0.5:2222
    python -m jet_access --help
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Any

import yaml

from jet_access.auth import build_auth_strategies, read_key_file
from jet_access.config import EnvironmentConfig, load_config
from jet_access.errors import JetAccessError, RemoteExitError
from jet_access.events import EventCollector, EventEmitter
from jet_access.host_key import (
    HostIdentityVerifier,
    HostKeyPolicy,
    HostKeyVerifier,
    InsecureHostKeyAcceptor,
)
from jet_access.platform import (
    expand_path,
    get_known_hosts_read_paths,
    get_known_hosts_write_path,
)
from jet_access.session import (
    ConnectionTarget,
    ExitStatusPolicy,
    SessionEngine,
    format_address,
    resolve_and_shell,
)
from jet_access.vault import SecretResolver, VaultClient

log = logging.getLogger("jet_access")

EXIT_ERROR = 1
EXIT_INTERRUPTED = 130

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def parse_target(target: str) -> tuple[str | None, str, int]:
    """
    Parse [user@]host[:port].

    IPv6 literals must be bracketed when a port is given: user@[::1]:2222

    Returns:
        (user or None, host, port)
    """
    user: str | None = None
    if "@" in target:
        user, target = target.rsplit("@", 1)

    port = 22
    if target.startswith("["):
        host, _, rest = target[1:].partition("]")
        if rest.startswith(":"):
            port = int(rest[1:])
    elif target.count(":") == 1:
        host, port_str = target.split(":")
        port = int(port_str)
    else:
        host = target

    if not host:
        raise ValueError(f"no host in target '{target}'")
    return user, host, port


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the jet-access CLI."""
    parser = argparse.ArgumentParser(
        prog="jet-access",
        description="Open interactive SSH shells with credentials resolved from Vault",
        epilog="Example: jet-access connect secret/data/servers/prod/web-01",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase logging verbosity (repeatable)",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Only log errors",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    vault_options = argparse.ArgumentParser(add_help=False)
    vault_options.add_argument(
        "--config",
        metavar="FILE",
        help="Configuration file (default: config/jet-access.yaml or the user config directory)",
    )
    vault_options.add_argument(
        "--env",
        metavar="NAME",
        help="Named Vault environment from the configuration file",
    )

    session_options = argparse.ArgumentParser(add_help=False)
    session_options.add_argument(
        "--known-hosts",
        metavar="FILE",
        action="append",
        help="known_hosts file to use (repeatable; first file receives new keys)",
    )
    session_options.add_argument(
        "--strict-host-key-checking",
        choices=["yes", "accept-new"],
        default="accept-new",
        help="Reject unknown hosts (yes) or trust them on first use (accept-new, default)",
    )
    session_options.add_argument(
        "--insecure-ignore-host-key",
        action="store_true",
        help="Accept any host key without verification (INSECURE, test hosts only)",
    )
    session_options.add_argument(
        "--propagate-exit-status",
        action="store_true",
        help="Exit with the remote shell's exit status",
    )
    session_options.add_argument(
        "--timeout",
        type=float,
        metavar="SECONDS",
        help="Close the session after this many seconds",
    )
    session_options.add_argument(
        "--connect-timeout",
        type=float,
        default=30.0,
        metavar="SECONDS",
        help="Dial and authentication timeout (default: 30)",
    )

    event_options = argparse.ArgumentParser(add_help=False)
    event_options.add_argument(
        "--events",
        action="store_true",
        help="Print JSONL events to stderr on exit",
    )
    event_options.add_argument(
        "--event-log",
        metavar="FILE",
        help="Append JSONL events to FILE",
    )

    connect = subparsers.add_parser(
        "connect",
        parents=[vault_options, session_options, event_options],
        help="Resolve a secret and open a shell on its host",
    )
    connect.add_argument("path", help="Vault path of the credential record")

    list_cmd = subparsers.add_parser(
        "list",
        parents=[vault_options, event_options],
        help="List the keys under a Vault path",
    )
    list_cmd.add_argument("path", help="Vault metadata path to list")

    show = subparsers.add_parser(
        "show",
        parents=[vault_options, event_options],
        help="Show a resolved credential record (secrets redacted)",
    )
    show.add_argument("path", help="Vault path of the credential record")

    direct = subparsers.add_parser(
        "direct",
        parents=[session_options, event_options],
        help="Open a shell without Vault, using local credentials",
    )
    direct.add_argument("target", metavar="[user@]host[:port]", help="Target host")
    direct.add_argument(
        "-i", "--identity",
        metavar="KEY",
        help="Private key file",
    )
    direct.add_argument(
        "--passphrase-env",
        metavar="VAR",
        help="Environment variable holding the key passphrase",
    )
    direct.add_argument(
        "--password-env",
        metavar="VAR",
        help="Environment variable holding the password",
    )

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging from -v / -q."""
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)

    if verbose >= 3:
        logging.getLogger("asyncssh").setLevel(logging.DEBUG)
    elif verbose >= 2:
        logging.getLogger("asyncssh").setLevel(logging.INFO)
    else:
        logging.getLogger("asyncssh").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose >= 3 else logging.WARNING)


def load_environment(args: argparse.Namespace) -> EnvironmentConfig:
    config = load_config(args.config)
    return config.environment(args.env)


def build_verifier(args: argparse.Namespace) -> HostIdentityVerifier:
    """Host identity verification selected by the command line."""
    if args.insecure_ignore_host_key:
        print(
            "WARNING: host key verification is disabled (--insecure-ignore-host-key)",
            file=sys.stderr,
        )
        return InsecureHostKeyAcceptor()

    if args.known_hosts:
        read_paths = [expand_path(p) for p in args.known_hosts]
        write_path = read_paths[0]
    else:
        read_paths = get_known_hosts_read_paths()
        write_path = get_known_hosts_write_path()

    policy = HostKeyPolicy.STRICT if args.strict_host_key_checking == "yes" else HostKeyPolicy.ACCEPT_NEW
    return HostKeyVerifier(known_hosts_paths=read_paths, write_path=write_path, policy=policy)


def engine_options(args: argparse.Namespace, collector: EventCollector | None) -> dict[str, Any]:
    return {
        "host_key_verifier": build_verifier(args),
        "exit_status_policy": (
            ExitStatusPolicy.RAISE if args.propagate_exit_status else ExitStatusPolicy.SUPPRESS
        ),
        "connect_timeout": args.connect_timeout,
        "event_collector": collector,
        "event_log_path": args.event_log,
    }


def install_cancel_handler(cancel: asyncio.Event) -> None:
    """Set `cancel` on SIGTERM / SIGHUP so the session shuts down cleanly."""
    loop = asyncio.get_running_loop()
    for name in ("SIGTERM", "SIGHUP"):
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, cancel.set)
        except (NotImplementedError, RuntimeError):
            # Windows doesn't support add_signal_handler
            pass


async def cmd_connect(
    args: argparse.Namespace,
    emitter: EventEmitter,
    collector: EventCollector | None,
) -> int:
    env = load_environment(args)
    cancel = asyncio.Event()
    install_cancel_handler(cancel)

    async with VaultClient.from_environment(env) as client:
        resolver = SecretResolver(client, emitter=emitter)
        await resolve_and_shell(
            resolver,
            args.path,
            cancel=cancel,
            timeout=args.timeout,
            **engine_options(args, collector),
        )
    return 0


async def cmd_list(args: argparse.Namespace, emitter: EventEmitter) -> int:
    env = load_environment(args)
    async with VaultClient.from_environment(env) as client:
        keys = await SecretResolver(client, emitter=emitter).list(args.path)
    for key in keys:
        print(key)
    return 0


async def cmd_show(args: argparse.Namespace, emitter: EventEmitter) -> int:
    env = load_environment(args)
    async with VaultClient.from_environment(env) as client:
        record = await SecretResolver(client, emitter=emitter).read(args.path)

    shown = record.to_dict()
    if record.ip or record.hostname:
        shown["address"] = format_address(record.ip or record.hostname, record.port or 22)
    print(yaml.safe_dump(shown, sort_keys=False), end="")
    return 0


async def cmd_direct(args: argparse.Namespace, collector: EventCollector | None) -> int:
    user, host, port = parse_target(args.target)

    key = read_key_file(args.identity) if args.identity else b""
    passphrase = os.environ.get(args.passphrase_env, "") if args.passphrase_env else ""
    password = os.environ.get(args.password_env, "") if args.password_env else ""

    target = ConnectionTarget(
        address=format_address(host, port),
        user=user or "",
        password=password,
        key=key,
        key_passphrase=passphrase,
    )
    strategies = build_auth_strategies(key or None, passphrase or None, password or None)

    cancel = asyncio.Event()
    install_cancel_handler(cancel)
    engine = SessionEngine(target, strategies, **engine_options(args, collector))
    await engine.run(cancel=cancel, timeout=args.timeout)
    return 0


async def run_command(args: argparse.Namespace) -> int:
    """
    Dispatch a parsed command line.

    Returns:
        Process exit code
    """
    collector = EventCollector() if args.events else None
    emitter = EventEmitter(collector=collector, jsonl_path=args.event_log)

    try:
        if args.command == "connect":
            return await cmd_connect(args, emitter, collector)
        if args.command == "list":
            return await cmd_list(args, emitter)
        if args.command == "show":
            return await cmd_show(args, emitter)
        if args.command == "direct":
            return await cmd_direct(args, collector)
        raise AssertionError(f"unhandled command {args.command!r}")

    except RemoteExitError as e:
        log.debug("Propagating remote exit status %d", e.exit_status)
        return e.exit_status

    except JetAccessError as e:
        print(f"Error: {e}", file=sys.stderr)
        log.debug("Error details: %s", e.to_dict())
        return EXIT_ERROR

    finally:
        emitter.close()
        if collector is not None:
            for event in collector.events:
                print(event.to_json(), file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command == "direct":
        try:
            parse_target(args.target)
        except ValueError as e:
            parser.error(str(e))

    setup_logging(args.verbose, args.quiet)

    try:
        return asyncio.run(run_command(args))
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
