"""Fixtures and utilities for testing."""
from __future__ import annotations

import asyncio
import socket
from typing import Callable
from unittest import mock

from websockets.asyncio.server import ServerConnection
from websockets.protocol import State


def open_port() -> int:
    """Return an open TCP port on this host."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('', 0))
        s.listen(1)
        return s.getsockname()[1]


async def wait_until(
    condition: Callable[[], bool],
    timeout: float = 5,
    interval: float = 0.01,
) -> None:
    """Poll `condition` until it is true.

    Raises:
        TimeoutError: If the condition is still false after `timeout` seconds.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise TimeoutError('Condition was not met in time.')
        await asyncio.sleep(interval)


def mock_websocket(
    state: State = State.OPEN,
    remote_address: tuple[str, int] = ('127.0.0.1', 50000),
) -> mock.MagicMock:
    """Create a mock server connection with async send, recv, and close."""
    websocket = mock.MagicMock(spec=ServerConnection)
    websocket.state = state
    websocket.remote_address = remote_address
    websocket.send = mock.AsyncMock()
    websocket.recv = mock.AsyncMock()
    websocket.close = mock.AsyncMock()
    return websocket
