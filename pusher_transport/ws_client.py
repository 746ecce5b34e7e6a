"""WebSocket client wrapper for the Pusher socket."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import PusherConnectionError, PusherWebSocketError
from .ws import connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class PusherWsMessageType(Enum):
    """Normalized WebSocket message types."""

    TEXT = "text"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class PusherWsMessage:
    """Normalized WebSocket message payload."""

    type: PusherWsMessageType
    data: str | None = None


class PusherWsClient:
    """Wrapper around the websockets library for the Pusher socket."""

    def __init__(self) -> None:
        self._ws: ClientConnection | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(
        self,
        url: str,
        *,
        ping_interval: int | None = None,
        timeout: float = 15.0,
    ) -> None:
        """Connect to the socket endpoint."""
        self._ws = await connect_websocket(
            url,
            ping_interval=ping_interval,
            timeout=timeout,
        )

    async def close(self) -> None:
        """Close the websocket connection."""
        if self._ws is not None:
            await self._ws.close()

    async def send_text(self, text: str) -> None:
        """Send one text frame.

        Raises:
            PusherConnectionError: If not connected
            PusherWebSocketError: If the socket rejects the write
        """
        if self._ws is None:
            raise PusherConnectionError("WebSocket is not connected")
        try:
            await self._ws.send(text)
        except (ConnectionClosed, WebSocketException, OSError) as err:
            raise PusherWebSocketError(f"WebSocket send failed: {err}") from err

    async def receive(self) -> PusherWsMessage:
        """Wait for the next text frame, or a CLOSED/ERROR marker."""
        if self._ws is None:
            raise PusherConnectionError("WebSocket is not connected")
        while True:
            try:
                msg = await self._ws.recv()
            except ConnectionClosed:
                return PusherWsMessage(type=PusherWsMessageType.CLOSED)
            except (WebSocketException, OSError):
                return PusherWsMessage(type=PusherWsMessageType.ERROR)
            normalized = self._normalize_message(msg)
            if normalized is not None:
                return normalized

    def __aiter__(self) -> AsyncIterator[PusherWsMessage]:
        if self._ws is None:
            raise PusherConnectionError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[PusherWsMessage]:
        while True:
            message = await self.receive()
            yield message
            if message.type is not PusherWsMessageType.TEXT:
                return

    @staticmethod
    def _normalize_message(msg: Any) -> PusherWsMessage | None:
        """Normalize a received frame; binary frames are skipped."""
        if isinstance(msg, (bytes, bytearray, memoryview)):
            return None
        if isinstance(msg, str):
            return PusherWsMessage(PusherWsMessageType.TEXT, msg)
        return PusherWsMessage(PusherWsMessageType.TEXT, str(msg))
