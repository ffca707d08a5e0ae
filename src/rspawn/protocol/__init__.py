"""Framing codec for the rspawn wire protocol.

Public API:
    InvocationRequest, Package, PackageKind, ProtocolLimits -- message models
    encode_request, encode_package -- serializers
    read_request, read_package -- async decoders
    ProtocolError, ConnectionClosed -- decoding failures
"""

from rspawn.protocol.codec import (
    ConnectionClosed,
    ProtocolError,
    encode_package,
    encode_request,
    read_package,
    read_request,
)
from rspawn.protocol.models import (
    CLOSE_SENTINEL,
    InvocationRequest,
    Package,
    PackageKind,
    ProtocolLimits,
)

__all__ = [
    "CLOSE_SENTINEL",
    "ConnectionClosed",
    "InvocationRequest",
    "Package",
    "PackageKind",
    "ProtocolError",
    "ProtocolLimits",
    "encode_package",
    "encode_request",
    "read_package",
    "read_request",
]
