"""Shared test fixtures for the rspawn test suite.

Provides connected socket pairs, protocol limits, a sample invocation
request and a check that a process has died.
"""

from __future__ import annotations

import asyncio
import socket
from collections.abc import Iterator

import pytest

from rspawn.protocol.models import InvocationRequest, ProtocolLimits


# ---------------------------------------------------------------------------
# Protocol Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def small_limits() -> ProtocolLimits:
    """Tight limits so oversize cases need only a few bytes."""
    return ProtocolLimits(max_argument_count=2, max_argument_length=16, max_payload_length=32)


@pytest.fixture
def cat_request() -> InvocationRequest:
    return InvocationRequest(command="cat")


# ---------------------------------------------------------------------------
# Socket Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def socket_pair() -> Iterator[tuple[socket.socket, socket.socket]]:
    """A connected (server_side, client_side) stream socket pair."""
    server_side, client_side = socket.socketpair()
    yield server_side, client_side
    for sock in (server_side, client_side):
        sock.close()


# ---------------------------------------------------------------------------
# Process Fixtures
# ---------------------------------------------------------------------------


def _alive(pid: int) -> bool:
    """True if ``pid`` exists and is not a zombie."""
    try:
        with open(f"/proc/{pid}/stat") as f:
            state = f.read().rsplit(")", 1)[1].split()[0]
    except (FileNotFoundError, ProcessLookupError):
        return False
    return state != "Z"


@pytest.fixture
def wait_gone():
    """Returns an awaitable check that a pid dies within ``timeout`` seconds."""

    async def _wait(pid: int, timeout: float = 5.0) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while _alive(pid):
            if loop.time() > deadline:
                return False
            await asyncio.sleep(0.02)
        return True

    return _wait
