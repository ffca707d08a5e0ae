"""Command-line interface for rspawn.

Two entry points:

    rspawn  HOST PORT spawn COMMAND [ARGS...]   -- run COMMAND on HOST
    rspawnd SERVICE                             -- serve on port/service
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: config/rspawn.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )


def parse_client_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse ``rspawn`` command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="rspawn",
        description="Run a command on a remote rspawnd and relay its stdio",
    )
    _add_common_options(parser)
    parser.add_argument(
        "--chunk-size", type=int, default=None,
        help="Max bytes of stdin per package (default from config: 4096)",
    )
    parser.add_argument("host", help="Server host name or address")
    parser.add_argument("port", help="Server port number or service name")

    subparsers = parser.add_subparsers(dest="action", required=True, help="Available actions")
    spawn_parser = subparsers.add_parser("spawn", help="Spawn a command on the server")
    spawn_parser.add_argument("command", help="Program to run on the server")
    spawn_parser.add_argument(
        "args", nargs=argparse.REMAINDER,
        help="Arguments passed to the program unchanged",
    )

    args = parser.parse_args(argv)
    if not args.command:
        parser.error("command must not be empty")
    if args.chunk_size is not None and args.chunk_size <= 0:
        parser.error("--chunk-size must be positive")
    return args


def parse_server_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse ``rspawnd`` command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="rspawnd",
        description="Daemon that spawns commands for rspawn clients",
    )
    _add_common_options(parser)
    parser.add_argument(
        "-f", "--foreground",
        action="store_true",
        help="Do not detach from the controlling terminal",
    )
    parser.add_argument("service", help="Port number or service name to listen on")
    return parser.parse_args(argv)


def _load(args: argparse.Namespace):
    from rspawn.config.settings import load_settings
    from rspawn.utils.logging import setup_logging

    settings = load_settings(args.config)

    if args.verbose:
        settings.logging.level = "DEBUG"

    setup_logging(settings.logging)
    return settings


def main(argv: list[str] | None = None) -> None:
    """Entry point for the ``rspawn`` client."""
    args = parse_client_args(argv)
    settings = _load(args)

    from rspawn.client.relay import RelayError, open_relay
    from rspawn.protocol.models import InvocationRequest

    # argv may hold surrogate-escaped bytes that plain validation rejects
    request = InvocationRequest.model_construct(command=args.command, args=tuple(args.args))
    chunk_size = args.chunk_size or settings.client.chunk_size
    if chunk_size > settings.protocol.max_payload_length:
        print(
            f"rspawn: chunk size {chunk_size} exceeds the maximum payload length "
            f"of {settings.protocol.max_payload_length} bytes",
            file=sys.stderr,
        )
        sys.exit(2)

    try:
        status = asyncio.run(
            open_relay(args.host, args.port, request, chunk_size=chunk_size)
        )
    except RelayError as e:
        print(f"rspawn: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)
    sys.exit(status)


async def _serve_until_stopped(listener) -> None:
    """Run the accept loop; SIGTERM and SIGINT stop it cleanly."""
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, task.cancel)
    try:
        await listener.serve_forever()
    except asyncio.CancelledError:
        logger.info("Shutdown requested")


def serve(argv: list[str] | None = None) -> None:
    """Entry point for the ``rspawnd`` server."""
    args = parse_server_args(argv)
    settings = _load(args)

    from rspawn.server.daemon import DaemonError, daemonize, write_pid_file
    from rspawn.server.listener import Listener, ListenerError, create_listener

    srv = settings.server
    try:
        sock = create_listener(args.service, host=srv.host, backlog=srv.backlog)
    except ListenerError as e:
        print(f"rspawnd: {e}", file=sys.stderr)
        sys.exit(1)

    if args.foreground:
        if srv.pid_file:
            write_pid_file(srv.pid_file)
    else:
        if not settings.logging.file:
            logger.warning("logging.file is not set; log output is discarded once detached")
        try:
            daemonize(srv.pid_file)
        except DaemonError as e:
            print(f"rspawnd: {e}", file=sys.stderr)
            sys.exit(1)

    listener = Listener(
        sock,
        limits=settings.protocol,
        close_grace_period=srv.close_grace_period,
        linger_timeout=srv.linger_timeout,
    )
    asyncio.run(_serve_until_stopped(listener))


if __name__ == "__main__":
    main()
