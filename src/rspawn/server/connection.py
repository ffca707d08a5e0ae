"""Blocking-socket wrapper used by a server session.

The accepted socket doubles as the spawned command's stdout and stderr.
Those descriptors share the socket's file status flags, so the socket has
to stay in blocking mode: a non-blocking stdout makes ordinary programs
fail with EAGAIN as soon as the send buffer fills up.

Reads are therefore blocking calls, run on a thread pool private to the
session so one idle client never holds a worker another session needs.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from concurrent.futures import ThreadPoolExecutor

logger = logging.getLogger(__name__)

# Bytes requested per recv() while draining
_DRAIN_SIZE = 65536


class BlockingConnection:
    """Async facade over one accepted, blocking stream socket.

    Exposes ``readexactly()`` with the same contract as
    ``asyncio.StreamReader.readexactly`` so the protocol decoders can use
    either.
    """

    def __init__(self, sock: socket.socket, name: str = "session") -> None:
        sock.setblocking(True)
        self._sock = sock
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"rspawn-{name}")
        self._closed = False

    @property
    def socket(self) -> socket.socket:
        return self._sock

    def fileno(self) -> int:
        return self._sock.fileno()

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _recv_exactly(self, size: int) -> bytes:
        buf = bytearray()
        while len(buf) < size:
            chunk = self._sock.recv(size - len(buf))
            if not chunk:
                raise asyncio.IncompleteReadError(bytes(buf), size)
            buf.extend(chunk)
        return bytes(buf)

    async def readexactly(self, n: int) -> bytes:
        """Read exactly ``n`` bytes.

        Raises:
            asyncio.IncompleteReadError: If the peer closes the stream first.
        """
        if n == 0:
            return b""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._recv_exactly, n)

    async def write(self, data: bytes) -> None:
        """Write all of ``data`` to the peer."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._sock.sendall, data)

    def _drain(self) -> int:
        drained = 0
        while True:
            chunk = self._sock.recv(_DRAIN_SIZE)
            if not chunk:
                return drained
            drained += len(chunk)

    async def close(self, linger_timeout: float = 0.0) -> None:
        """Half-close, discard unread input for up to ``linger_timeout``, close.

        Closing a socket with unread data in its receive queue resets the
        connection, and a reset can destroy output the client has not read
        yet. Sending FIN first and draining until the client closes its end
        avoids that.
        """
        if self._closed:
            return
        self._closed = True

        try:
            self._sock.shutdown(socket.SHUT_WR)
        except OSError:
            pass

        if linger_timeout > 0:
            loop = asyncio.get_running_loop()
            try:
                drained = await asyncio.wait_for(
                    loop.run_in_executor(self._executor, self._drain), linger_timeout
                )
                logger.debug("Drained %d unread bytes before close", drained)
            except asyncio.TimeoutError:
                logger.debug("Peer still sending after %.1fs, closing anyway", linger_timeout)
            except OSError as e:
                logger.debug("Drain stopped: %s", e)

        # Wakes any recv() still blocked on the worker thread
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()
        self._executor.shutdown(wait=False)
