"""High-level Pusher Channels client.

Receives events over the socket and publishes them through the signed REST
API. The client owns:
- the socket transport task and its command queue
- the dispatcher task draining the event queue
- the channel map and the confidential-channel secret map
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import replace
from typing import Any

import aiohttp

from .auth import PusherAuth
from .channels import Channel, is_encrypted_channel
from .config import PusherConfig, ReconnectPolicy
from .connection import (
    Command,
    CommandQueue,
    ConnectionState,
    ConnectionStatus,
    EventQueue,
    PusherConnection,
)
from .crypto import ChannelCryptographer
from .dispatcher import EventDispatcher, EventHandler
from .errors import (
    PusherChannelError,
    PusherConnectionError,
    PusherDecryptionError,
    PusherJsonError,
)
from .http import BatchEvent, PusherHttpClient
from .protocol import (
    DEFAULT_ACTIVITY_TIMEOUT,
    EVENT_CONNECTION_ESTABLISHED,
    EVENT_DISCONNECTED,
    Event,
    build_subscribe,
    build_unsubscribe,
)

_LOGGER = logging.getLogger(__name__)

_INTERNAL_EVENT_PREFIXES = ("pusher:", "pusher_internal:")


def _validate_json(data: str) -> None:
    try:
        json.loads(data)
    except (TypeError, ValueError) as err:
        raise PusherJsonError(f"Event data is not valid JSON: {err}") from err


class PusherClient:
    """Client for one Pusher Channels application.

    Usage:
        client = PusherClient(PusherConfig.from_env())
        await client.connect()
        await client.bind("order-created", handle_order)
        await client.subscribe("orders")
        await client.trigger("orders", "order-created", '{"id": 1}')
        await client.close()
    """

    def __init__(
        self,
        config: PusherConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        reconnect_policy: ReconnectPolicy | None = None,
        activity_timeout: float = DEFAULT_ACTIVITY_TIMEOUT,
        pong_timeout: float = 30.0,
        connect_timeout: float = 15.0,
        shutdown_timeout: float = 5.0,
        event_queue_size: int = 100,
        command_queue_size: int = 100,
    ) -> None:
        """Initialize the client.

        Args:
            config: Application credentials and endpoints
            session: aiohttp session for REST calls; one is created (and
                closed by :meth:`close`) when omitted
            reconnect_policy: Backoff policy for socket reconnection
            activity_timeout: Silence (seconds) before a keepalive ping
            pong_timeout: Wait (seconds) for traffic after a ping
            connect_timeout: Socket open and handshake timeout (seconds)
            shutdown_timeout: Wait (seconds) for background tasks to stop
            event_queue_size: Capacity of the inbound event queue
            command_queue_size: Capacity of the outbound command queue
        """
        self.config = config
        self._auth = PusherAuth(config.app_key, config.app_secret)
        self._crypto = ChannelCryptographer(config.app_secret)

        self._session = session
        self._owns_session = session is None
        self._http: PusherHttpClient | None = None

        self._reconnect_policy = reconnect_policy or ReconnectPolicy()
        self._activity_timeout = activity_timeout
        self._pong_timeout = pong_timeout
        self._connect_timeout = connect_timeout
        self._shutdown_timeout = shutdown_timeout
        self._command_queue_size = command_queue_size

        # Connection state
        self._status = ConnectionStatus()
        self._commands: CommandQueue | None = None
        self._transport_task: asyncio.Task[None] | None = None

        # Dispatch
        self._dispatcher = EventDispatcher()
        self._events: EventQueue = asyncio.Queue(maxsize=event_queue_size)
        self._dispatch_task: asyncio.Task[None] | None = None

        # Channels; secrets are kept apart and never logged
        self._channels: dict[str, Channel] = {}
        self._channels_lock = asyncio.Lock()
        self._encrypted_secrets: dict[str, bytes] = {}
        self._secrets_lock = asyncio.Lock()

    async def __aenter__(self) -> PusherClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the socket and wait for the service handshake.

        Any previous transport is closed first. Channels recorded from an
        earlier session are subscribed again once the handshake completes.

        Raises:
            PusherUrlError: If the socket URL cannot be built
            PusherClientError: If the socket cannot be opened or the
                handshake fails
        """
        url = self.config.websocket_url()
        await self._stop_transport()
        self._start_dispatcher()

        commands: CommandQueue = asyncio.Queue(maxsize=self._command_queue_size)
        connection = PusherConnection(
            url,
            self._status,
            self._events,
            commands,
            policy=self._reconnect_policy,
            activity_timeout=self._activity_timeout,
            pong_timeout=self._pong_timeout,
            connect_timeout=self._connect_timeout,
            on_connected=self._subscription_frames,
        )

        _LOGGER.info("Connecting to Pusher using URL: %s", url)
        await connection.connect()

        self._commands = commands
        self._transport_task = asyncio.create_task(
            connection.run(), name="pusher-transport"
        )

    async def disconnect(self) -> None:
        """Close the socket. Ends DISCONNECTED with no socket id."""
        await self._stop_transport()
        await self._status.set_state(ConnectionState.DISCONNECTED)

    async def close(self) -> None:
        """Disconnect, stop the dispatcher and release the HTTP session."""
        _LOGGER.info("Closing client")
        await self.disconnect()

        if self._dispatch_task is not None:
            task, self._dispatch_task = self._dispatch_task, None
            if not task.done():
                try:
                    await asyncio.wait_for(
                        self._stop_dispatcher(task), timeout=self._shutdown_timeout
                    )
                except TimeoutError:
                    _LOGGER.warning("Dispatcher did not stop in time")

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._http = None

    async def connection_state(self) -> ConnectionState:
        return await self._status.state()

    async def is_connected(self) -> bool:
        return await self._status.state() is ConnectionState.CONNECTED

    async def socket_id(self) -> str | None:
        """Socket id assigned by the service, or None when not connected."""
        return await self._status.socket_id()

    # -------------------------------------------------------------------------
    # Public API: Channels
    # -------------------------------------------------------------------------

    async def subscribe(
        self, channel_name: str, *, channel_data: dict[str, Any] | None = None
    ) -> None:
        """Subscribe to a channel.

        Private, presence and encrypted channels are signed with the current
        socket id. While reconnecting the channel is recorded and subscribed
        after the next handshake.

        Raises:
            PusherConnectionError: If no transport is running
        """
        if not self._transport_alive:
            raise PusherConnectionError("Not connected")

        channel = Channel.from_name(channel_name, channel_data=channel_data)
        async with self._channels_lock:
            self._channels[channel_name] = channel

        socket_id = await self._status.socket_id()
        if socket_id is None:
            _LOGGER.debug("Deferring subscription to %s until connected", channel_name)
            return
        await self._send(self._subscribe_frame(channel, socket_id))
        _LOGGER.debug("Subscribing to %s", channel_name)

    async def subscribe_encrypted(self, channel_name: str) -> None:
        """Subscribe to a ``private-encrypted-`` channel and derive its secret.

        Raises:
            PusherChannelError: If the name lacks the encrypted prefix
            PusherConnectionError: If no transport is running
        """
        if not is_encrypted_channel(channel_name):
            raise PusherChannelError(
                "Encrypted channels must start with 'private-encrypted-'"
            )

        secret = self._crypto.derive_secret(channel_name)
        async with self._secrets_lock:
            self._encrypted_secrets[channel_name] = secret

        try:
            await self.subscribe(channel_name)
        except PusherConnectionError:
            async with self._secrets_lock:
                self._encrypted_secrets.pop(channel_name, None)
            raise

    async def unsubscribe(self, channel_name: str) -> None:
        """Unsubscribe from a channel. Unknown channels are ignored."""
        async with self._channels_lock:
            removed = self._channels.pop(channel_name, None)
        async with self._secrets_lock:
            self._encrypted_secrets.pop(channel_name, None)

        if removed is None:
            return
        if self._transport_alive and await self._status.socket_id() is not None:
            await self._send(build_unsubscribe(channel_name))
            _LOGGER.debug("Unsubscribing from %s", channel_name)

    async def subscribed_channels(self) -> list[str]:
        async with self._channels_lock:
            return list(self._channels)

    # -------------------------------------------------------------------------
    # Public API: Publishing
    # -------------------------------------------------------------------------

    async def trigger(self, channel: str, event: str, data: str) -> None:
        """Publish an event. ``data`` must be a JSON string and is sent as-is.

        Raises:
            PusherJsonError: If ``data`` is not valid JSON
            PusherApiError: If the API rejects the request
        """
        _validate_json(data)
        await self._http_client().trigger(channel, event, data)

    async def trigger_encrypted(self, channel: str, event: str, data: str) -> None:
        """Encrypt ``data`` with the channel secret and publish it.

        Raises:
            PusherChannelError: If the channel has no stored secret
            PusherJsonError: If ``data`` is not valid JSON
        """
        async with self._secrets_lock:
            secret = self._encrypted_secrets.get(channel)
        if secret is None:
            raise PusherChannelError("Channel is not subscribed or is not encrypted")

        _validate_json(data)
        payload = self._crypto.encrypt(data, secret)
        await self._http_client().trigger(channel, event, payload)

    async def trigger_batch(self, batch_events: Iterable[BatchEvent]) -> None:
        """Publish several events in a single API call."""
        await self._http_client().trigger_batch(list(batch_events))

    # -------------------------------------------------------------------------
    # Public API: Events
    # -------------------------------------------------------------------------

    async def bind(self, event_name: str, handler: EventHandler) -> None:
        await self._dispatcher.bind(event_name, handler)

    async def unbind(self, event_name: str, handler: EventHandler | None = None) -> None:
        await self._dispatcher.unbind(event_name, handler)

    async def on_connect(
        self, callback: Callable[[], Awaitable[None] | None]
    ) -> EventHandler:
        """Call ``callback`` after every successful handshake.

        Returns the bound handler, for :meth:`unbind`.
        """

        def handler(_event: Event) -> Awaitable[None] | None:
            return callback()

        await self.bind(EVENT_CONNECTION_ESTABLISHED, handler)
        return handler

    async def on_disconnect(
        self, callback: Callable[[], Awaitable[None] | None]
    ) -> EventHandler:
        """Call ``callback`` whenever the socket goes away."""

        def handler(_event: Event) -> Awaitable[None] | None:
            return callback()

        await self.bind(EVENT_DISCONNECTED, handler)
        return handler

    def on_connection_state_changed(
        self, callback: Callable[[ConnectionState], None]
    ) -> None:
        """Register callback for connection state changes."""
        self._status.on_change(callback)

    async def send_test_event(self, event: Event) -> None:
        """Feed ``event`` through the dispatcher as if it had been received."""
        self._start_dispatcher()
        await self._events.put(event)

    async def decrypt_event(self, event: Event) -> Event:
        """Return a copy of ``event`` with its encrypted payload decrypted.

        Raises:
            PusherChannelError: If the event's channel has no stored secret
            PusherDecryptionError: If the payload cannot be decrypted
        """
        secret = None
        if event.channel is not None:
            async with self._secrets_lock:
                secret = self._encrypted_secrets.get(event.channel)
        if secret is None:
            raise PusherChannelError(f"No secret for channel {event.channel}")
        return replace(event, data=self._crypto.decrypt(event.data, secret))

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    @property
    def _transport_alive(self) -> bool:
        return (
            self._commands is not None
            and self._transport_task is not None
            and not self._transport_task.done()
        )

    async def _send(self, frame: str) -> None:
        if not self._transport_alive or self._commands is None:
            raise PusherConnectionError("Not connected")
        await self._commands.put(Command.send(frame))

    def _subscribe_frame(self, channel: Channel, socket_id: str) -> str:
        if not channel.requires_auth:
            return build_subscribe(channel.name)
        channel_data = (
            json.dumps(channel.channel_data) if channel.channel_data is not None else None
        )
        auth = self._auth.authenticate_socket(socket_id, channel.name, channel_data)
        return build_subscribe(channel.name, auth=auth, channel_data=channel_data)

    async def _subscription_frames(self, socket_id: str) -> list[str]:
        async with self._channels_lock:
            channels = list(self._channels.values())
        if channels:
            _LOGGER.debug("Resubscribing to %d channels", len(channels))
        return [self._subscribe_frame(channel, socket_id) for channel in channels]

    async def _prepare_event(self, event: Event) -> Event | None:
        """Decrypt user events on encrypted channels before dispatch."""
        if (
            event.channel is None
            or not is_encrypted_channel(event.channel)
            or event.event.startswith(_INTERNAL_EVENT_PREFIXES)
        ):
            return event
        try:
            return await self.decrypt_event(event)
        except (PusherChannelError, PusherDecryptionError) as err:
            _LOGGER.warning(
                "Dropping %s on %s: %s", event.event, event.channel, err
            )
            return None

    def _http_client(self) -> PusherHttpClient:
        if self._http is None:
            if self._session is None:
                self._session = aiohttp.ClientSession()
            self._http = PusherHttpClient(self._session, self.config, self._auth)
        return self._http

    def _start_dispatcher(self) -> None:
        if self._dispatch_task is None or self._dispatch_task.done():
            self._dispatch_task = asyncio.create_task(
                self._dispatcher.run(self._events, prepare=self._prepare_event),
                name="pusher-dispatcher",
            )

    async def _stop_dispatcher(self, task: asyncio.Task[None]) -> None:
        await self._events.put(None)
        await task

    async def _stop_transport(self) -> None:
        commands, task = self._commands, self._transport_task
        self._commands = None
        self._transport_task = None
        if commands is None or task is None or task.done():
            return
        try:
            await asyncio.wait_for(
                self._join_transport(commands, task), timeout=self._shutdown_timeout
            )
        except TimeoutError:
            _LOGGER.warning("Transport did not stop in time, cancelling")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    @staticmethod
    async def _join_transport(commands: CommandQueue, task: asyncio.Task[None]) -> None:
        await commands.put(Command.close())
        await task
