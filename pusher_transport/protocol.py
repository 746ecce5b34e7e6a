"""Protocol helpers for Pusher Channels socket frames.

Every frame is a JSON object with an ``event`` name, an optional ``channel``
and a ``data`` field. Inbound ``data`` is normally a JSON-encoded string and
is carried through untouched.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from typing import Any

from .errors import PusherHandshakeError, PusherJsonError

EVENT_CONNECTION_ESTABLISHED = "pusher:connection_established"
EVENT_ERROR = "pusher:error"
EVENT_PING = "pusher:ping"
EVENT_PONG = "pusher:pong"
EVENT_SUBSCRIBE = "pusher:subscribe"
EVENT_UNSUBSCRIBE = "pusher:unsubscribe"

# Synthesized locally when the socket goes away; never sent by the service.
EVENT_DISCONNECTED = "pusher:disconnected"

DEFAULT_ACTIVITY_TIMEOUT = 120


@dataclass(frozen=True, slots=True)
class Event:
    """A decoded event.

    ``data`` is the payload exactly as received; it is usually JSON text and
    is never re-serialized.
    """

    event: str
    channel: str | None = None
    data: str = ""

    def copy(self) -> Event:
        return replace(self)

    def json(self) -> Any:
        """Decode ``data`` as JSON."""
        try:
            return json.loads(self.data)
        except ValueError as err:
            raise PusherJsonError(f"Event data is not valid JSON: {err}") from err


def parse_event(text: str) -> Event:
    """Parse one inbound text frame into an Event.

    Raises:
        PusherJsonError: If the frame is not JSON or not an event envelope
    """
    try:
        payload = json.loads(text)
    except ValueError as err:
        raise PusherJsonError(f"Frame is not valid JSON: {err}") from err

    if not isinstance(payload, dict):
        raise PusherJsonError("Frame is not a JSON object")

    name = payload.get("event")
    if not isinstance(name, str) or not name:
        raise PusherJsonError("Frame has no event name")

    channel = payload.get("channel")
    if channel is not None and not isinstance(channel, str):
        raise PusherJsonError("Frame channel is not a string")

    data = payload.get("data", "")
    if data is None:
        data = ""
    elif not isinstance(data, str):
        data = json.dumps(data)

    return Event(event=name, channel=channel, data=data)


def parse_connection_established(event: Event) -> tuple[str, int]:
    """Extract socket id and activity timeout from the handshake event.

    Raises:
        PusherHandshakeError: If the event is not a usable handshake
    """
    if event.event != EVENT_CONNECTION_ESTABLISHED:
        raise PusherHandshakeError(
            f"Expected {EVENT_CONNECTION_ESTABLISHED}, got {event.event}"
        )
    try:
        body = json.loads(event.data)
    except ValueError as err:
        raise PusherHandshakeError("Handshake data is not valid JSON") from err
    if not isinstance(body, dict):
        raise PusherHandshakeError("Handshake data is not a JSON object")

    socket_id = body.get("socket_id")
    if not isinstance(socket_id, str) or not socket_id:
        raise PusherHandshakeError("Handshake did not assign a socket id")

    timeout = body.get("activity_timeout", DEFAULT_ACTIVITY_TIMEOUT)
    if isinstance(timeout, bool) or not isinstance(timeout, int) or timeout <= 0:
        timeout = DEFAULT_ACTIVITY_TIMEOUT
    return socket_id, timeout


def build_frame(event: str, data: Any, *, channel: str | None = None) -> str:
    """Serialize an outbound frame."""
    frame: dict[str, Any] = {"event": event, "data": data}
    if channel is not None:
        frame["channel"] = channel
    return json.dumps(frame)


def build_subscribe(
    channel: str,
    *,
    auth: str | None = None,
    channel_data: str | None = None,
) -> str:
    data: dict[str, Any] = {"channel": channel}
    if auth is not None:
        data["auth"] = auth
    if channel_data is not None:
        data["channel_data"] = channel_data
    return build_frame(EVENT_SUBSCRIBE, data)


def build_unsubscribe(channel: str) -> str:
    return build_frame(EVENT_UNSUBSCRIBE, {"channel": channel})


def build_ping() -> str:
    return build_frame(EVENT_PING, {})


def build_pong() -> str:
    return build_frame(EVENT_PONG, {})


def subscription_target(text: str) -> str | None:
    """Return the channel of an outbound subscribe/unsubscribe frame, else None."""
    try:
        frame = json.loads(text)
    except ValueError:
        return None
    if not isinstance(frame, dict) or frame.get("event") not in (
        EVENT_SUBSCRIBE,
        EVENT_UNSUBSCRIBE,
    ):
        return None
    data = frame.get("data")
    if not isinstance(data, dict):
        return None
    channel = data.get("channel")
    return channel if isinstance(channel, str) else None
