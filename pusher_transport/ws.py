"""Opening the Pusher socket."""

from __future__ import annotations

import asyncio

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import InvalidHandshake, InvalidURI, WebSocketException

from .errors import PusherConnectionError, PusherHandshakeError, PusherTimeout


async def connect_websocket(
    url: str,
    *,
    ping_interval: int | None = None,
    timeout: float = 15.0,
) -> ClientConnection:
    """Open ``url`` and return the live connection.

    RFC 6455 pings stay off by default because the connection sends
    ``pusher:ping`` itself. Frames are unbounded in size.

    Raises:
        PusherTimeout: If the upgrade does not finish within ``timeout``
        PusherHandshakeError: If the URL is unusable or the upgrade is refused
        PusherConnectionError: If the endpoint cannot be reached
    """
    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                ping_interval=ping_interval,
                close_timeout=5,
                max_size=None,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise PusherTimeout(f"No socket upgrade from {url} after {timeout}s") from err
    except (InvalidHandshake, InvalidURI) as err:
        raise PusherHandshakeError(f"Socket upgrade rejected: {err}") from err
    except (OSError, WebSocketException) as err:
        raise PusherConnectionError(f"Cannot reach {url}: {err}") from err
