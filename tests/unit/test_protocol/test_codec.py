"""Tests for the wire codec: byte layouts, decoding and limits."""

from __future__ import annotations

import asyncio
import os
import struct

import pytest

from rspawn.protocol.codec import (
    ConnectionClosed,
    ProtocolError,
    encode_package,
    encode_request,
    read_package,
    read_request,
)
from rspawn.protocol.models import InvocationRequest, Package, PackageKind, ProtocolLimits


def _reader(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


class TestEncodeRequest:
    def test_layout_with_arguments(self) -> None:
        data = encode_request(InvocationRequest(command="ls", args=("-l", "/tmp")))
        assert data == (
            struct.pack(">Q", 2)
            + struct.pack(">Q", 2) + b"ls"
            + struct.pack(">Q", 2) + b"-l"
            + struct.pack(">Q", 4) + b"/tmp"
        )

    def test_layout_without_arguments(self) -> None:
        data = encode_request(InvocationRequest(command="/bin/cat"))
        assert data == b"\x00" * 8 + b"\x00" * 7 + b"\x08" + b"/bin/cat"

    def test_empty_argument_is_kept(self) -> None:
        data = encode_request(InvocationRequest(command="echo", args=("",)))
        assert data.endswith(b"\x00" * 8)
        assert data.startswith(struct.pack(">Q", 1))

    def test_non_utf8_argument_survives(self) -> None:
        arg = os.fsdecode(b"\xff\xfe")
        data = encode_request(InvocationRequest.model_construct(command="printf", args=(arg,)))
        assert data.endswith(struct.pack(">Q", 2) + b"\xff\xfe")


class TestEncodePackage:
    def test_data_layout(self) -> None:
        data = encode_package(Package.data(b"abc"))
        assert data == b"\x00\x00\x00\x00" + struct.pack(">Q", 3) + b"abc"

    def test_close_layout(self) -> None:
        data = encode_package(Package.close())
        assert data == struct.pack(">I", 2) + struct.pack(">Q", 1) + b"\x00"

    def test_empty_data(self) -> None:
        assert encode_package(Package.data(b"")) == b"\x00" * 12


class TestReadRequest:
    @pytest.mark.asyncio
    async def test_decodes_request(self) -> None:
        request = InvocationRequest(command="grep", args=("-n", "foo bar"))
        decoded = await read_request(_reader(encode_request(request)))
        assert decoded == request
        assert decoded.argv == ["grep", "-n", "foo bar"]

    @pytest.mark.asyncio
    async def test_zero_arguments(self) -> None:
        decoded = await read_request(_reader(encode_request(InvocationRequest(command="true"))))
        assert decoded.args == ()

    @pytest.mark.asyncio
    async def test_fragmented_delivery(self) -> None:
        request = InvocationRequest(command="echo", args=("hello", "world"))
        data = encode_request(request)
        reader = asyncio.StreamReader()

        async def feed() -> None:
            for i in range(len(data)):
                reader.feed_data(data[i:i + 1])
                await asyncio.sleep(0)

        feeder = asyncio.create_task(feed())
        decoded = await read_request(reader)
        await feeder
        assert decoded == request

    @pytest.mark.asyncio
    async def test_eof_before_anything_is_connection_closed(self) -> None:
        with pytest.raises(ConnectionClosed):
            await read_request(_reader(b""))

    @pytest.mark.asyncio
    async def test_truncated_count(self) -> None:
        with pytest.raises(ProtocolError, match="argument count") as exc_info:
            await read_request(_reader(b"\x00\x00\x00"))
        assert not isinstance(exc_info.value, ConnectionClosed)

    @pytest.mark.asyncio
    async def test_truncated_argument(self) -> None:
        data = encode_request(InvocationRequest(command="echo", args=("hello",)))
        with pytest.raises(ProtocolError, match="argument 1"):
            await read_request(_reader(data[:-2]))

    @pytest.mark.asyncio
    async def test_too_many_arguments(self, small_limits: ProtocolLimits) -> None:
        data = struct.pack(">Q", 3)
        with pytest.raises(ProtocolError, match="exceeds limit"):
            await read_request(_reader(data, eof=False), small_limits)

    @pytest.mark.asyncio
    async def test_oversized_command(self, small_limits: ProtocolLimits) -> None:
        data = struct.pack(">Q", 0) + struct.pack(">Q", 17)
        with pytest.raises(ProtocolError, match="command length 17"):
            await read_request(_reader(data, eof=False), small_limits)

    @pytest.mark.asyncio
    async def test_empty_command_rejected(self) -> None:
        data = struct.pack(">Q", 0) + struct.pack(">Q", 0)
        with pytest.raises(ProtocolError, match="empty command"):
            await read_request(_reader(data))


class TestReadPackage:
    @pytest.mark.asyncio
    async def test_sequence_of_packages(self) -> None:
        data = encode_package(Package.data(b"abc")) + encode_package(Package.close())
        reader = _reader(data)

        first = await read_package(reader)
        assert first.kind is PackageKind.DATA
        assert first.payload == b"abc"

        second = await read_package(reader)
        assert second.is_close
        assert second.payload == b"\x00"

        with pytest.raises(ConnectionClosed):
            await read_package(reader)

    @pytest.mark.asyncio
    async def test_empty_payload(self) -> None:
        package = await read_package(_reader(b"\x00" * 12))
        assert package == Package.data(b"")

    @pytest.mark.asyncio
    async def test_unknown_kind(self) -> None:
        data = struct.pack(">IQ", 7, 0)
        with pytest.raises(ProtocolError, match="unknown package kind 7"):
            await read_package(_reader(data))

    @pytest.mark.asyncio
    async def test_oversized_payload(self, small_limits: ProtocolLimits) -> None:
        data = struct.pack(">IQ", 0, 33)
        with pytest.raises(ProtocolError, match="payload length 33"):
            await read_package(_reader(data, eof=False), small_limits)

    @pytest.mark.asyncio
    async def test_truncated_header(self) -> None:
        with pytest.raises(ProtocolError, match="package header") as exc_info:
            await read_package(_reader(b"\x00\x00\x00\x00\x00"))
        assert not isinstance(exc_info.value, ConnectionClosed)

    @pytest.mark.asyncio
    async def test_truncated_payload(self) -> None:
        data = encode_package(Package.data(b"abcdef"))[:-3]
        with pytest.raises(ProtocolError, match="3 of 6 bytes of DATA payload"):
            await read_package(_reader(data))

    @pytest.mark.asyncio
    async def test_open_kind_is_decoded(self) -> None:
        package = await read_package(_reader(struct.pack(">IQ", 1, 0)))
        assert package.kind is PackageKind.OPEN
