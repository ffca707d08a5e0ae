"""Lifecycle monitor for a spawned command.

Watches the child process asynchronously, reaps it when it exits and
raises a per-session ``finished`` flag that the relay loop checks between
reads. The wait is attached to the process object as soon as it exists,
so an exit that happens before the relay loop's first iteration is still
observed.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Callable

logger = logging.getLogger(__name__)


class ProcessMonitor:
    """Tracks one child process until it has exited and been reaped.

    All state is touched only from the event loop thread, so the
    ``finished`` flag has exactly one writer (the wait task) and is read
    atomically by the relay loop.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        on_exit: Callable[[int], None] | None = None,
        kill_group: bool = False,
    ) -> None:
        self._process = process
        self._on_exit = on_exit
        self._kill_group = kill_group
        self._finished = asyncio.Event()
        self._returncode: int | None = None
        self._task = asyncio.create_task(self._watch(), name=f"rspawn-monitor-{process.pid}")

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def finished(self) -> bool:
        """True once the child has exited and been reaped."""
        return self._finished.is_set()

    @property
    def returncode(self) -> int | None:
        """Exit status, negative signal number if killed, None while running."""
        return self._returncode

    @property
    def task(self) -> asyncio.Task[None]:
        """Completes when the child has been reaped."""
        return self._task

    async def _watch(self) -> None:
        returncode = await self._process.wait()
        self._returncode = returncode
        self._finished.set()
        if returncode < 0:
            try:
                name = signal.Signals(-returncode).name
            except ValueError:
                name = str(-returncode)
            logger.info("Command (pid=%d) killed by signal %s", self.pid, name)
        else:
            logger.info("Command (pid=%d) exited with status %d", self.pid, returncode)
        if self._on_exit is not None:
            self._on_exit(returncode)

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait for the child to finish. Returns False on timeout."""
        if self.finished:
            return True
        if timeout is None:
            await self._finished.wait()
            return True
        try:
            await asyncio.wait_for(self._finished.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def kill(self) -> None:
        """SIGKILL the child if it is still running, then wait until reaped.

        With ``kill_group`` the signal goes to the child's whole process
        group (the child must have been started as a group leader), so
        pipelines started by a shell die with it. The group is signalled
        even when the leader has already been reaped: background members
        may outlive it, and the kernel does not hand out a pid again while
        it still names a live process group.
        """
        if self._kill_group:
            try:
                os.killpg(self.pid, signal.SIGKILL)
                logger.debug("Sent SIGKILL to process group %d", self.pid)
            except ProcessLookupError:
                pass
        elif not self.finished:
            try:
                self._process.kill()
                logger.debug("Sent SIGKILL to command (pid=%d)", self.pid)
            except ProcessLookupError:
                pass
        await self._finished.wait()
