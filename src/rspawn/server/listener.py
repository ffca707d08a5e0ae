"""Listening socket and accept loop for ``rspawnd``.

The accept loop is single-threaded: each accepted connection becomes a
``Session`` task right away and the loop goes straight back to
``accept()``.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import socket

from rspawn.protocol.codec import DEFAULT_LIMITS
from rspawn.protocol.models import ProtocolLimits
from rspawn.server.session import (
    DEFAULT_CLOSE_GRACE_PERIOD,
    DEFAULT_LINGER_TIMEOUT,
    Session,
)

logger = logging.getLogger(__name__)

DEFAULT_BACKLOG = 128
# Pause after a failed accept() (e.g. out of file descriptors)
ACCEPT_ERROR_DELAY = 0.1


class ListenerError(Exception):
    """Raised when no listening socket could be set up."""


def create_listener(
    service: str | int,
    host: str | None = None,
    backlog: int = DEFAULT_BACKLOG,
) -> socket.socket:
    """Bind and listen on the first usable address for ``service``.

    Args:
        service: Port number or service name (e.g. ``"8022"``, ``"ssh"``).
        host: Address to bind; all local addresses when None.
        backlog: Length of the pending-connection queue.

    Raises:
        ListenerError: If resolution fails or no address can be bound.
    """
    try:
        candidates = socket.getaddrinfo(
            host, str(service), socket.AF_UNSPEC, socket.SOCK_STREAM, 0, socket.AI_PASSIVE
        )
    except socket.gaierror as e:
        raise ListenerError(f"Cannot resolve service {service!r}: {e}") from e

    errors: list[str] = []
    for family, socktype, proto, _, address in candidates:
        try:
            sock = socket.socket(family, socktype, proto)
        except OSError as e:
            errors.append(f"socket: {e}")
            continue
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(address)
            sock.listen(backlog)
        except OSError as e:
            errors.append(f"{address[0]}:{address[1]}: {e}")
            sock.close()
            continue
        logger.info("Listening on %s:%s", *sock.getsockname()[:2])
        return sock

    raise ListenerError(
        f"Cannot listen on service {service!r}: {'; '.join(errors) or 'no usable address'}"
    )


class Listener:
    """Accepts connections and runs one ``Session`` per connection.

    Usage::

        listener = Listener(create_listener("8022"))
        await listener.serve_forever()
    """

    def __init__(
        self,
        sock: socket.socket,
        limits: ProtocolLimits = DEFAULT_LIMITS,
        close_grace_period: float = DEFAULT_CLOSE_GRACE_PERIOD,
        linger_timeout: float = DEFAULT_LINGER_TIMEOUT,
    ) -> None:
        self._sock = sock
        self._limits = limits
        self._close_grace_period = close_grace_period
        self._linger_timeout = linger_timeout
        self._ids = itertools.count(1)
        self._sessions: set[asyncio.Task[object]] = set()

    @property
    def address(self) -> tuple:
        return self._sock.getsockname()

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def _start_session(self, conn: socket.socket, peer: object) -> None:
        session = Session(
            conn,
            session_id=next(self._ids),
            peer=peer,
            limits=self._limits,
            close_grace_period=self._close_grace_period,
            linger_timeout=self._linger_timeout,
        )
        task = asyncio.create_task(session.run(), name=f"rspawn-session-{session.session_id}")
        self._sessions.add(task)
        task.add_done_callback(self._sessions.discard)

    async def serve_forever(self) -> None:
        """Accept connections until cancelled; live sessions are torn down on exit."""
        loop = asyncio.get_running_loop()
        self._sock.setblocking(False)
        try:
            while True:
                try:
                    conn, peer = await loop.sock_accept(self._sock)
                except OSError as e:
                    logger.error("accept() failed: %s", e)
                    await asyncio.sleep(ACCEPT_ERROR_DELAY)
                    continue
                self._start_session(conn, peer)
        finally:
            for task in list(self._sessions):
                task.cancel()
            if self._sessions:
                await asyncio.gather(*self._sessions, return_exceptions=True)
            self._sock.close()
            logger.info("Listener stopped")
