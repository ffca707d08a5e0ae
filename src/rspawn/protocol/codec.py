"""Framing codec for the rspawn wire protocol.

Every variable-length field is preceded by its byte length; there are no
other delimiters. All integers are unsigned big-endian:

    Invocation request
        argument_count  u64
        command_length  u64
        command         bytes
        [argument_length u64, argument bytes] * argument_count

    Package
        kind            u32   (0 = DATA, 1 = OPEN, 2 = CLOSE)
        payload_length  u64
        payload         bytes

Decoders read from anything with an ``async readexactly(n)`` that raises
``asyncio.IncompleteReadError`` when the stream ends early, which covers
``asyncio.StreamReader`` as well as the server's blocking connection
wrapper.
"""

from __future__ import annotations

import asyncio
import logging
import os
import struct
from typing import Protocol

from rspawn.protocol.models import (
    InvocationRequest,
    Package,
    PackageKind,
    ProtocolLimits,
)

logger = logging.getLogger(__name__)

_SIZE = struct.Struct(">Q")
_PACKAGE_HEADER = struct.Struct(">IQ")

DEFAULT_LIMITS = ProtocolLimits()


class ProtocolError(Exception):
    """Raised when the byte stream violates the framing contract."""


class ConnectionClosed(ProtocolError):
    """Raised when the peer closed the stream cleanly between frames."""


class ExactReader(Protocol):
    async def readexactly(self, n: int) -> bytes: ...


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _encode_field(value: bytes) -> bytes:
    return _SIZE.pack(len(value)) + value


def encode_request(request: InvocationRequest) -> bytes:
    """Serialize an invocation request."""
    parts = [
        _SIZE.pack(len(request.args)),
        _encode_field(os.fsencode(request.command)),
    ]
    parts.extend(_encode_field(os.fsencode(arg)) for arg in request.args)
    return b"".join(parts)


def encode_package(package: Package) -> bytes:
    """Serialize a DATA/OPEN/CLOSE package."""
    return _PACKAGE_HEADER.pack(int(package.kind), len(package.payload)) + package.payload


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


async def _read_exactly(reader: ExactReader, size: int, what: str, at_boundary: bool = False) -> bytes:
    """Read exactly ``size`` bytes or fail.

    A short read that got no bytes at all at a frame boundary is a clean
    disconnect; anything else means the stream ended mid-field.
    """
    try:
        return await reader.readexactly(size)
    except asyncio.IncompleteReadError as e:
        if at_boundary and not e.partial:
            raise ConnectionClosed("connection closed by peer") from e
        raise ProtocolError(
            f"connection closed after {len(e.partial)} of {size} bytes of {what}"
        ) from e


async def _read_size(reader: ExactReader, what: str, at_boundary: bool = False) -> int:
    raw = await _read_exactly(reader, _SIZE.size, what, at_boundary=at_boundary)
    return _SIZE.unpack(raw)[0]


async def _read_string(reader: ExactReader, what: str, limits: ProtocolLimits) -> str:
    length = await _read_size(reader, f"{what} length")
    if length > limits.max_argument_length:
        raise ProtocolError(
            f"{what} length {length} exceeds limit of {limits.max_argument_length} bytes"
        )
    return os.fsdecode(await _read_exactly(reader, length, what))


async def read_request(
    reader: ExactReader, limits: ProtocolLimits = DEFAULT_LIMITS
) -> InvocationRequest:
    """Decode one invocation request from the stream.

    Raises:
        ConnectionClosed: If the peer disconnected before sending anything.
        ProtocolError: If the request is truncated, malformed or too large.
    """
    count = await _read_size(reader, "argument count", at_boundary=True)
    if count > limits.max_argument_count:
        raise ProtocolError(
            f"argument count {count} exceeds limit of {limits.max_argument_count}"
        )

    command = await _read_string(reader, "command", limits)
    if not command:
        raise ProtocolError("empty command")

    args = []
    for index in range(count):
        args.append(await _read_string(reader, f"argument {index + 1}", limits))

    logger.debug("Decoded invocation request: %s (%d args)", command, count)
    # Fields are already checked; undecodable bytes are kept as surrogates
    return InvocationRequest.model_construct(command=command, args=tuple(args))


async def read_package(
    reader: ExactReader, limits: ProtocolLimits = DEFAULT_LIMITS
) -> Package:
    """Decode one package from the stream.

    Raises:
        ConnectionClosed: If the peer disconnected cleanly between packages.
        ProtocolError: If the package is truncated, has an unknown kind or
            declares an oversized payload.
    """
    header = await _read_exactly(
        reader, _PACKAGE_HEADER.size, "package header", at_boundary=True
    )
    raw_kind, size = _PACKAGE_HEADER.unpack(header)

    try:
        kind = PackageKind(raw_kind)
    except ValueError as e:
        raise ProtocolError(f"unknown package kind {raw_kind}") from e

    if size > limits.max_payload_length:
        raise ProtocolError(
            f"payload length {size} exceeds limit of {limits.max_payload_length} bytes"
        )

    payload = await _read_exactly(reader, size, f"{kind.name} payload")
    return Package(kind=kind, payload=payload)
