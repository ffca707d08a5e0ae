"""Server side of rspawn: the ``rspawnd`` daemon.

Public API:
    create_listener, Listener -- socket setup and accept loop
    Session, TerminationCause -- per-connection orchestration
    ProcessMonitor -- lifecycle tracking of a spawned command
    daemonize -- detach from the controlling terminal
"""

from rspawn.server.daemon import DaemonError, daemonize
from rspawn.server.listener import Listener, ListenerError, create_listener
from rspawn.server.monitor import ProcessMonitor
from rspawn.server.session import Session, TerminationCause

__all__ = [
    "DaemonError",
    "Listener",
    "ListenerError",
    "ProcessMonitor",
    "Session",
    "TerminationCause",
    "create_listener",
    "daemonize",
]
