"""rspawn -- minimal remote-execution shell.

A client connects to the ``rspawnd`` daemon over TCP, asks it to spawn a
command, then streams its own standard input to the command's standard
input while the command's standard output and error flow straight back
over the same connection.
"""

__version__ = "0.1.0"
