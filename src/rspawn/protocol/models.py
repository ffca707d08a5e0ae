"""Wire-level data model for the rspawn protocol.

Two kinds of message travel from client to server:

- the Invocation Request, sent exactly once at the start of a connection,
  naming the command and its arguments;
- Packages, each tagged DATA (a chunk of the client's stdin) or CLOSE
  (end of input). OPEN is reserved on the package path.

Nothing is framed in the other direction: the spawned command writes its
output directly into the connection.
"""

from __future__ import annotations

import enum

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class PackageKind(enum.IntEnum):
    """Tag carried in the header of every package."""

    DATA = 0
    OPEN = 1  # Reserved: the invocation request uses its own framing
    CLOSE = 2


# Payload of a CLOSE package
CLOSE_SENTINEL = b"\x00"


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class InvocationRequest(BaseModel):
    """The command (and its arguments) the server should spawn."""

    model_config = ConfigDict(frozen=True)

    command: str = Field(min_length=1, description="Program to execute, looked up on PATH")
    args: tuple[str, ...] = Field(
        default=(), description="Arguments passed through to the program, argv[1:]"
    )

    @property
    def argv(self) -> list[str]:
        """Full argument vector, with the command as argv[0]."""
        return [self.command, *self.args]


class Package(BaseModel):
    """One framed unit on the client-to-server stream."""

    model_config = ConfigDict(frozen=True)

    kind: PackageKind
    payload: bytes = b""

    @classmethod
    def data(cls, chunk: bytes) -> Package:
        return cls(kind=PackageKind.DATA, payload=chunk)

    @classmethod
    def close(cls) -> Package:
        return cls(kind=PackageKind.CLOSE, payload=CLOSE_SENTINEL)

    @property
    def is_close(self) -> bool:
        return self.kind is PackageKind.CLOSE


# ---------------------------------------------------------------------------
# Decoding limits
# ---------------------------------------------------------------------------


class ProtocolLimits(BaseModel):
    """Upper bounds on lengths a peer may declare.

    Checked before anything is allocated, so a malformed or hostile peer
    cannot make the decoder reserve arbitrary amounts of memory.
    """

    model_config = ConfigDict(frozen=True)

    max_argument_count: int = Field(default=4096, ge=0)
    max_argument_length: int = Field(
        default=131072, gt=0, description="Applies to the command and to each argument"
    )
    max_payload_length: int = Field(default=1 << 20, gt=0)
