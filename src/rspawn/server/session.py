"""Per-connection orchestration on the server.

A session owns one accepted connection from start to finish:

1. read the invocation request;
2. spawn the command with stdin fed from a pipe and stdout/stderr
   attached directly to the connection;
3. relay DATA packages into the pipe until a CLOSE package arrives, the
   client goes away, or the command exits on its own;
4. tear down: stop the command, reap it, close the pipe and the
   connection.

Each session runs as its own task; nothing in it touches another
session's state, and a failing session never takes the listener down.
"""

from __future__ import annotations

import asyncio
import enum
import errno
import logging
import os
import socket
from concurrent.futures import ThreadPoolExecutor

from rspawn.protocol.codec import (
    DEFAULT_LIMITS,
    ConnectionClosed,
    ProtocolError,
    read_package,
    read_request,
)
from rspawn.protocol.models import InvocationRequest, PackageKind, ProtocolLimits
from rspawn.server.connection import BlockingConnection
from rspawn.server.monitor import ProcessMonitor

logger = logging.getLogger(__name__)

DEFAULT_CLOSE_GRACE_PERIOD = 1.0
DEFAULT_LINGER_TIMEOUT = 1.0


class TerminationCause(str, enum.Enum):
    """Why a session ended."""

    CLOSE_RECEIVED = "close_received"
    PEER_DISCONNECTED = "peer_disconnected"  # Clean EOF or read error, an implicit CLOSE
    PROTOCOL_ERROR = "protocol_error"
    CHILD_EXITED = "child_exited"
    PIPE_ERROR = "pipe_error"
    SPAWN_FAILED = "spawn_failed"
    REQUEST_REJECTED = "request_rejected"
    FAILED = "failed"  # Unexpected exception or cancellation


# Causes after which the command gets end-of-input and a grace period
# before being killed
_GRACEFUL_CAUSES = frozenset({
    TerminationCause.CLOSE_RECEIVED,
    TerminationCause.PEER_DISCONNECTED,
    TerminationCause.PROTOCOL_ERROR,
})


class Session:
    """One client connection and the command it spawned."""

    def __init__(
        self,
        sock: socket.socket,
        session_id: int = 0,
        peer: object = None,
        limits: ProtocolLimits = DEFAULT_LIMITS,
        close_grace_period: float = DEFAULT_CLOSE_GRACE_PERIOD,
        linger_timeout: float = DEFAULT_LINGER_TIMEOUT,
    ) -> None:
        self._id = session_id
        self._peer = peer
        self._connection = BlockingConnection(sock, name=f"session-{session_id}")
        self._limits = limits
        self._close_grace_period = close_grace_period
        self._linger_timeout = linger_timeout
        self._request: InvocationRequest | None = None
        self._monitor: ProcessMonitor | None = None
        self._pipe_fd: int | None = None
        self._pipe_executor: ThreadPoolExecutor | None = None
        self._cause: TerminationCause | None = None

    @property
    def session_id(self) -> int:
        return self._id

    @property
    def request(self) -> InvocationRequest | None:
        return self._request

    @property
    def monitor(self) -> ProcessMonitor | None:
        return self._monitor

    @property
    def child_finished(self) -> bool:
        return self._monitor is not None and self._monitor.finished

    @property
    def cause(self) -> TerminationCause | None:
        """Why the session ended; None while it is still running."""
        return self._cause

    async def run(self) -> TerminationCause:
        """Serve the connection to completion. Never raises for I/O failures."""
        logger.info("Session %d: connection from %s", self._id, self._peer)
        cause = TerminationCause.FAILED
        try:
            cause = await self._serve()
        except Exception:
            logger.exception("Session %d: unexpected failure", self._id)
        finally:
            await self._teardown(cause)
            self._cause = cause
        returncode = self._monitor.returncode if self._monitor else None
        logger.info(
            "Session %d: closed (cause=%s, exit status=%s)",
            self._id, cause.value, returncode,
        )
        return cause

    async def _serve(self) -> TerminationCause:
        try:
            request = await read_request(self._connection, self._limits)
        except ConnectionClosed:
            logger.info("Session %d: peer left before sending a request", self._id)
            return TerminationCause.PEER_DISCONNECTED
        except ProtocolError as e:
            logger.warning("Session %d: rejected invocation request: %s", self._id, e)
            return TerminationCause.REQUEST_REJECTED
        except OSError as e:
            logger.warning("Session %d: failed reading invocation request: %s", self._id, e)
            return TerminationCause.REQUEST_REJECTED

        self._request = request
        monitor = await self._spawn(request)
        if monitor is None:
            return TerminationCause.SPAWN_FAILED
        return await self._relay(monitor)

    # -----------------------------------------------------------------------
    # Process spawning
    # -----------------------------------------------------------------------

    async def _spawn(self, request: InvocationRequest) -> ProcessMonitor | None:
        """Start the command; stdin from a fresh pipe, stdout/stderr to the client."""
        read_fd, self._pipe_fd = os.pipe()
        conn_fd = self._connection.fileno()
        try:
            process = await asyncio.create_subprocess_exec(
                request.command,
                *request.args,
                stdin=read_fd,
                stdout=conn_fd,
                stderr=conn_fd,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            self._close_pipe()
            reason = e.strerror if isinstance(e, OSError) and e.strerror else str(e)
            logger.warning(
                "Session %d: cannot execute %r: %s", self._id, request.command, reason
            )
            try:
                await self._connection.write(
                    f"rspawnd: cannot execute '{request.command}': {reason}\n".encode()
                )
            except OSError:
                pass
            return None
        finally:
            os.close(read_fd)

        self._pipe_executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"rspawn-stdin-{self._id}"
        )
        self._monitor = ProcessMonitor(process, kill_group=True)
        logger.info(
            "Session %d: spawned %s (pid=%d)", self._id, " ".join(request.argv), process.pid
        )
        return self._monitor

    # -----------------------------------------------------------------------
    # Package relay loop
    # -----------------------------------------------------------------------

    async def _relay(self, monitor: ProcessMonitor) -> TerminationCause:
        """Forward DATA payloads into the command's stdin.

        Ends on CLOSE, when the client goes away, or as soon as the
        command exits by itself; packages arriving after that are ignored.
        """
        while True:
            if monitor.finished:
                return TerminationCause.CHILD_EXITED

            read_task = asyncio.ensure_future(read_package(self._connection, self._limits))
            try:
                await asyncio.wait(
                    {read_task, monitor.task}, return_when=asyncio.FIRST_COMPLETED
                )
            except asyncio.CancelledError:
                read_task.cancel()
                raise
            if monitor.finished:
                if read_task.done():
                    read_task.exception()
                else:
                    read_task.cancel()
                return TerminationCause.CHILD_EXITED

            try:
                package = read_task.result()
            except ConnectionClosed:
                logger.info("Session %d: client closed the connection", self._id)
                return TerminationCause.PEER_DISCONNECTED
            except ProtocolError as e:
                logger.warning("Session %d: protocol violation: %s", self._id, e)
                return TerminationCause.PROTOCOL_ERROR
            except OSError as e:
                logger.info("Session %d: connection read failed: %s", self._id, e)
                return TerminationCause.PEER_DISCONNECTED

            if package.kind is PackageKind.CLOSE:
                logger.debug("Session %d: CLOSE received", self._id)
                return TerminationCause.CLOSE_RECEIVED
            if package.kind is PackageKind.OPEN:
                logger.warning(
                    "Session %d: protocol violation: second invocation on one connection",
                    self._id,
                )
                return TerminationCause.PROTOCOL_ERROR

            try:
                await self._write_stdin(package.payload)
            except OSError as e:
                logger.error(
                    "Session %d: writing %d bytes to command stdin failed: %s",
                    self._id, len(package.payload), e,
                )
                return TerminationCause.PIPE_ERROR

    @staticmethod
    def _write_pipe(fd: int, data: bytes) -> None:
        written = os.write(fd, data)
        if written != len(data):
            raise OSError(f"short write: {written} of {len(data)} bytes")

    async def _write_stdin(self, data: bytes) -> None:
        if not data:
            return
        if self._pipe_fd is None:
            raise OSError(errno.EBADF, "command stdin is already closed")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._pipe_executor, self._write_pipe, self._pipe_fd, data)

    # -----------------------------------------------------------------------
    # Teardown
    # -----------------------------------------------------------------------

    def _close_pipe(self) -> None:
        if self._pipe_fd is not None:
            os.close(self._pipe_fd)
            self._pipe_fd = None

    async def _teardown(self, cause: TerminationCause) -> None:
        monitor = self._monitor
        try:
            if monitor is not None:
                if cause in _GRACEFUL_CAUSES and not monitor.finished:
                    # End of input first; well-behaved commands finish by themselves
                    self._close_pipe()
                    if not await monitor.wait(self._close_grace_period):
                        logger.info(
                            "Session %d: command (pid=%d) still running %.1fs after end of input, killing",
                            self._id, monitor.pid, self._close_grace_period,
                        )
                await monitor.kill()
            self._close_pipe()
            if self._pipe_executor is not None:
                self._pipe_executor.shutdown(wait=False)
        finally:
            await self._connection.close(self._linger_timeout)
