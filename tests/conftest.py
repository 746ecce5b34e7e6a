"""Pytest configuration and fixtures for pusher_transport tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from pusher_transport.config import PusherConfig
from pusher_transport.errors import PusherWebSocketError
from pusher_transport.ws_client import PusherWsMessage, PusherWsMessageType

TEST_SECRET = "7ad3773142a6692b25b8"


@pytest.fixture
def config() -> PusherConfig:
    """Configuration with fixed test credentials."""
    return PusherConfig(
        app_id="3",
        app_key="278d425bdf160c739803",
        app_secret=TEST_SECRET,
        cluster="eu",
    )


@pytest.fixture
def mock_session() -> MagicMock:
    """Create a mock aiohttp ClientSession."""
    import aiohttp

    return MagicMock(spec=aiohttp.ClientSession)


def create_mock_response(
    status: int = 200,
    json_data: dict[str, Any] | None = None,
    text_data: str | None = None,
) -> AsyncMock:
    """Create a configured mock response.

    Args:
        status: HTTP status code
        json_data: Data to return from json() call
        text_data: Data to return from text() call

    Returns:
        Configured AsyncMock response
    """
    response = AsyncMock()
    response.status = status

    if json_data is not None:
        response.json.return_value = json_data
    if text_data is not None:
        response.text.return_value = text_data

    response.__aenter__.return_value = response
    response.__aexit__.return_value = None

    return response


class FakeWsClient:
    """In-memory stand-in for PusherWsClient.

    Queues a connection-established frame on creation unless
    ``handshake=False``.
    """

    def __init__(
        self,
        *,
        socket_id: str = "123.456",
        activity_timeout: int = 120,
        handshake: bool = True,
    ) -> None:
        self.url: str | None = None
        self.sent: list[str] = []
        self.closed = False
        self._incoming: asyncio.Queue[PusherWsMessage] = asyncio.Queue()
        if handshake:
            self.push_event(
                "pusher:connection_established",
                {"socket_id": socket_id, "activity_timeout": activity_timeout},
            )

    async def connect(
        self, url: str, *, ping_interval: int | None = None, timeout: float = 15.0
    ) -> None:
        self.url = url

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(PusherWsMessage(PusherWsMessageType.CLOSED))

    async def send_text(self, text: str) -> None:
        if self.closed:
            raise PusherWebSocketError("socket closed")
        self.sent.append(text)

    async def receive(self) -> PusherWsMessage:
        return await self._incoming.get()

    def push_raw(self, text: str) -> None:
        self._incoming.put_nowait(PusherWsMessage(PusherWsMessageType.TEXT, text))

    def push_event(
        self, event: str, data: Any = "", *, channel: str | None = None
    ) -> None:
        payload: dict[str, Any] = {
            "event": event,
            "data": data if isinstance(data, str) else json.dumps(data),
        }
        if channel is not None:
            payload["channel"] = channel
        self.push_raw(json.dumps(payload))

    def drop(self) -> None:
        """Simulate the remote end closing the socket."""
        self._incoming.put_nowait(PusherWsMessage(PusherWsMessageType.CLOSED))

    def sent_frames(self) -> list[dict[str, Any]]:
        return [json.loads(text) for text in self.sent]

    def sent_events(self) -> list[str]:
        return [frame["event"] for frame in self.sent_frames()]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
