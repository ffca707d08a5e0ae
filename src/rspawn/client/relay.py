"""Client relay engine.

After the invocation request has been sent, two pumps run concurrently
over one connection:

- the input pump owns the write side: it reads local stdin in bounded
  chunks, wraps each chunk as a DATA package and sends a single CLOSE
  package once stdin is exhausted;
- the output pump owns the read side: it copies raw bytes from the
  connection (the remote command's stdout and stderr) to local stdout
  until the server closes the connection.

The relay finishes as soon as the output pump sees end-of-stream, without
waiting for the input pump. There is no timeout: a remote command that
never exits keeps the client waiting.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from typing import BinaryIO

from rspawn.protocol.codec import encode_package, encode_request
from rspawn.protocol.models import InvocationRequest, Package

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 4096
# Bytes requested per read from the connection
RECV_SIZE = 65536


class RelayError(Exception):
    """Raised when the relay cannot continue (I/O failure on either side)."""


class StdinReader:
    """Reads a binary stream on a daemon thread and hands chunks to the loop.

    A blocking read of a terminal cannot be cancelled, so it must not run
    on a thread the interpreter would wait for at exit. Chunks (and the
    final ``b""``) are delivered through an ``asyncio.Queue``.
    """

    def __init__(self, stream: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self._stream = stream
        self._chunk_size = chunk_size
        self._queue: asyncio.Queue[bytes | Exception] = asyncio.Queue()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._thread = threading.Thread(
            target=self._run, args=(loop,), name="rspawn-stdin", daemon=True
        )
        self._thread.start()

    def _run(self, loop: asyncio.AbstractEventLoop) -> None:
        read = getattr(self._stream, "read1", self._stream.read)
        while True:
            try:
                chunk = read(self._chunk_size)
            except Exception as e:
                item: bytes | Exception = e
            else:
                item = chunk or b""
            try:
                loop.call_soon_threadsafe(self._queue.put_nowait, item)
            except RuntimeError:
                # Event loop already closed; nobody is listening any more
                return
            if not isinstance(item, bytes) or not item:
                return

    async def read(self) -> bytes:
        """Return the next chunk, or ``b""`` at end of input."""
        item = await self._queue.get()
        if isinstance(item, Exception):
            raise item
        return item


class ClientRelay:
    """Drives one remote invocation over an established connection.

    Usage::

        reader, writer = await asyncio.open_connection(host, port)
        relay = ClientRelay(reader, writer)
        status = await relay.run(InvocationRequest(command="/bin/cat"))
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self._reader = reader
        self._writer = writer
        self._stdin = stdin if stdin is not None else sys.stdin.buffer
        self._stdout = stdout if stdout is not None else sys.stdout.buffer
        self._chunk_size = chunk_size
        self._bytes_sent = 0
        self._bytes_received = 0

    @property
    def bytes_sent(self) -> int:
        """Stdin bytes forwarded in DATA packages so far."""
        return self._bytes_sent

    @property
    def bytes_received(self) -> int:
        """Remote output bytes copied to stdout so far."""
        return self._bytes_received

    async def run(self, request: InvocationRequest) -> int:
        """Send ``request``, relay both directions, return the exit status.

        Raises:
            RelayError: If either pump fails.
        """
        await self._send(encode_request(request))
        logger.debug("Sent invocation request: %s", request.argv)

        input_task = asyncio.create_task(self._pump_input(), name="rspawn-input")
        output_task = asyncio.create_task(self._pump_output(), name="rspawn-output")
        pending: set[asyncio.Task[None]] = {input_task, output_task}
        try:
            while output_task in pending:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    task.result()
        finally:
            for task in pending:
                task.cancel()
            self._writer.close()

        logger.debug(
            "Relay finished: %d bytes sent, %d bytes received",
            self._bytes_sent, self._bytes_received,
        )
        return 0

    async def _send(self, data: bytes) -> None:
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as e:
            raise RelayError(f"Failed to write to server: {e}") from e

    async def _pump_input(self) -> None:
        """Forward stdin as DATA packages, then send one CLOSE package."""
        stdin = StdinReader(self._stdin, self._chunk_size)
        stdin.start()
        try:
            while True:
                try:
                    chunk = await stdin.read()
                except OSError as e:
                    raise RelayError(f"Failed to read local input: {e}") from e
                if not chunk:
                    break
                await self._send(encode_package(Package.data(chunk)))
                self._bytes_sent += len(chunk)
            await self._send(encode_package(Package.close()))
            logger.debug("Local input exhausted, sent CLOSE")
        except RelayError as e:
            if isinstance(e.__cause__, ConnectionError):
                # The server already tore the session down; the output pump
                # will see end-of-stream and decide the outcome.
                logger.debug("Server stopped accepting input: %s", e.__cause__)
                return
            raise

    async def _pump_output(self) -> None:
        """Copy remote output to stdout until the server closes the connection."""
        while True:
            try:
                data = await self._reader.read(RECV_SIZE)
            except OSError as e:
                raise RelayError(f"Failed to read from server: {e}") from e
            if not data:
                logger.debug("Server closed the connection")
                return
            try:
                self._stdout.write(data)
                self._stdout.flush()
            except OSError as e:
                raise RelayError(f"Failed to write local output: {e}") from e
            self._bytes_received += len(data)


async def open_relay(
    host: str,
    port: int | str,
    request: InvocationRequest,
    stdin: BinaryIO | None = None,
    stdout: BinaryIO | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> int:
    """Connect to ``host:port`` and run ``request`` there.

    Raises:
        RelayError: If the connection cannot be established or the relay fails.
    """
    try:
        reader, writer = await asyncio.open_connection(host, port)
    except OSError as e:
        raise RelayError(f"Cannot connect to {host}:{port}: {e}") from e
    logger.debug("Connected to %s:%s", host, port)

    relay = ClientRelay(reader, writer, stdin=stdin, stdout=stdout, chunk_size=chunk_size)
    return await relay.run(request)
