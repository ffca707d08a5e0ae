"""Detaching ``rspawnd`` from its controlling terminal."""

from __future__ import annotations

import atexit
import logging
import os
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


class DaemonError(Exception):
    """Raised when the process cannot be turned into a daemon."""


def daemonize(pid_file: str | Path | None = None) -> None:
    """Double-fork into the background and start a new session.

    The calling process exits with status 0 once the first child has
    been forked. Standard streams are redirected to /dev/null, so logging
    should go to a file before this is called. When ``pid_file`` is
    given, the daemon's pid is written there and the file is removed at
    exit.

    Raises:
        DaemonError: If a fork or ``setsid()`` fails.
    """
    try:
        if os.fork() > 0:
            os._exit(0)
    except OSError as e:
        raise DaemonError(f"fork failed: {e}") from e

    try:
        os.setsid()
    except OSError as e:
        raise DaemonError(f"setsid failed: {e}") from e

    try:
        if os.fork() > 0:
            os._exit(0)
    except OSError as e:
        raise DaemonError(f"second fork failed: {e}") from e

    sys.stdout.flush()
    sys.stderr.flush()
    with open(os.devnull, "rb", 0) as devnull_in:
        os.dup2(devnull_in.fileno(), 0)
    with open(os.devnull, "ab", 0) as devnull_out:
        os.dup2(devnull_out.fileno(), 1)
        os.dup2(devnull_out.fileno(), 2)

    if pid_file:
        write_pid_file(pid_file)

    logger.info("Running as daemon (pid=%d)", os.getpid())


def write_pid_file(path: str | Path) -> None:
    """Write the current pid to ``path`` and remove the file at exit."""
    path = Path(path)
    pid = os.getpid()
    path.write_text(f"{pid}\n")

    def _cleanup() -> None:
        # Forked children inherit atexit handlers; only the owner removes the file
        if os.getpid() == pid:
            path.unlink(missing_ok=True)

    atexit.register(_cleanup)
