"""Connection state machine for the Pusher socket.

A single task owns the live socket. Everything written to it arrives through
one FIFO command queue, and every decoded inbound frame leaves through one
bounded event queue, so writes never interleave and events keep arrival
order.

States:
    DISCONNECTED --connect--> CONNECTING --handshake--> CONNECTED
    CONNECTED --socket lost--> RECONNECTING --backoff--> CONNECTING
    RECONNECTING --attempts exhausted--> FAILED
    any --close--> DISCONNECTED
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from .config import ReconnectPolicy
from .errors import (
    PusherClientError,
    PusherHandshakeError,
    PusherJsonError,
    PusherTimeout,
)
from .protocol import (
    DEFAULT_ACTIVITY_TIMEOUT,
    EVENT_DISCONNECTED,
    EVENT_ERROR,
    EVENT_PING,
    EVENT_PONG,
    Event,
    build_ping,
    build_pong,
    parse_connection_established,
    parse_event,
    subscription_target,
)
from .ws_client import PusherWsClient, PusherWsMessageType

_LOGGER = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Lifecycle states of the socket connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class ConnectionStatus:
    """Lock-guarded connection state and socket id.

    ``CONNECTED`` is only reachable through :meth:`mark_connected`, which
    records the socket id in the same step. Every other transition clears it.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._socket_id: str | None = None
        self._listeners: list[Callable[[ConnectionState], None]] = []

    async def state(self) -> ConnectionState:
        async with self._lock:
            return self._state

    async def socket_id(self) -> str | None:
        async with self._lock:
            return self._socket_id

    def snapshot(self) -> tuple[ConnectionState, str | None]:
        """Return (state, socket id) without awaiting the lock."""
        return self._state, self._socket_id

    def on_change(self, callback: Callable[[ConnectionState], None]) -> None:
        """Register a callback invoked with each new state."""
        self._listeners.append(callback)

    async def set_state(self, state: ConnectionState) -> None:
        if state is ConnectionState.CONNECTED:
            raise ValueError("Use mark_connected() to enter the connected state")
        async with self._lock:
            previous = self._state
            self._state = state
            self._socket_id = None
        self._notify(previous, state)

    async def mark_connected(self, socket_id: str) -> None:
        if not socket_id:
            raise ValueError("A connected state requires a socket id")
        async with self._lock:
            previous = self._state
            self._state = ConnectionState.CONNECTED
            self._socket_id = socket_id
        self._notify(previous, ConnectionState.CONNECTED)

    def _notify(self, previous: ConnectionState, state: ConnectionState) -> None:
        if previous is state:
            return
        _LOGGER.debug("State: %s → %s", previous.value, state.value)
        for callback in list(self._listeners):
            try:
                callback(state)
            except Exception:
                _LOGGER.exception("Connection state callback failed")


class CommandKind(Enum):
    SEND = "send"
    CLOSE = "close"


@dataclass(frozen=True, slots=True)
class Command:
    """An instruction for the transport task."""

    kind: CommandKind
    text: str | None = None

    @classmethod
    def send(cls, text: str) -> Command:
        return cls(CommandKind.SEND, text)

    @classmethod
    def close(cls) -> Command:
        return cls(CommandKind.CLOSE)


# ``None`` on the command queue means no sender remains.
CommandQueue = asyncio.Queue[Command | None]
EventQueue = asyncio.Queue[Event | None]
ConnectedHook = Callable[[str], Awaitable[list[str]]]


def _is_stop(command: Command | None) -> bool:
    return command is None or command.kind is CommandKind.CLOSE


class PusherConnection:
    """Owns one socket session and its reconnection.

    Usage:
        connection = PusherConnection(url, status, events, commands)
        await connection.connect()
        task = asyncio.create_task(connection.run())
        await commands.put(Command.send(frame))
        await commands.put(Command.close())
        await task
    """

    def __init__(
        self,
        url: str,
        status: ConnectionStatus,
        events: EventQueue,
        commands: CommandQueue,
        *,
        policy: ReconnectPolicy | None = None,
        activity_timeout: float = DEFAULT_ACTIVITY_TIMEOUT,
        pong_timeout: float = 30.0,
        connect_timeout: float = 15.0,
        on_connected: ConnectedHook | None = None,
    ) -> None:
        """Initialize the connection.

        Args:
            url: Socket endpoint
            status: Shared state cell, written only by this connection
            events: Outbound queue of decoded events
            commands: Inbound queue of commands
            policy: Reconnection backoff policy
            activity_timeout: Silence (seconds) before a keepalive ping; the
                service may lower it during the handshake
            pong_timeout: Wait (seconds) for traffic after a ping
            connect_timeout: Socket open and handshake timeout (seconds)
            on_connected: Returns frames to write right after each handshake
        """
        self.url = url
        self._status = status
        self._events = events
        self._commands = commands
        self._policy = policy or ReconnectPolicy()
        self._configured_activity_timeout = activity_timeout
        self._activity_timeout = float(activity_timeout)
        self._pong_timeout = pong_timeout
        self._connect_timeout = connect_timeout
        self._on_connected = on_connected

        self._ws: PusherWsClient | None = None
        self._backlog: deque[Command | None] = deque()
        self._retry_attempts = 0

    @property
    def activity_timeout(self) -> float:
        return self._activity_timeout

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the socket and complete the handshake.

        Raises:
            PusherClientError: If the socket cannot be opened or the handshake
                fails; the state is then FAILED
        """
        self._retry_attempts = 0
        await self._status.set_state(ConnectionState.CONNECTING)
        try:
            await self._open()
        except PusherClientError as err:
            _LOGGER.warning("Connection failed: %s", err)
            await self._discard_socket()
            await self._status.set_state(ConnectionState.FAILED)
            raise

    async def run(self) -> None:
        """Serve the socket until closed or until reconnection gives up."""
        try:
            while True:
                if await self._serve():
                    await self._shutdown()
                    return
                await self._discard_socket()
                await self._status.set_state(ConnectionState.RECONNECTING)
                await self._emit(Event(event=EVENT_DISCONNECTED))
                if not await self._reconnect():
                    return
        except asyncio.CancelledError:
            _LOGGER.debug("Transport task cancelled")
            await self._discard_socket()
            await self._status.set_state(ConnectionState.DISCONNECTED)
            raise

    # -------------------------------------------------------------------------
    # Internal: Handshake
    # -------------------------------------------------------------------------

    async def _open(self) -> None:
        _LOGGER.info(
            "Connecting to %s (attempt #%d)", self.url, self._retry_attempts + 1
        )
        ws = PusherWsClient()
        await ws.connect(self.url, timeout=self._connect_timeout)
        try:
            socket_id, established = await self._handshake(ws)
        except (PusherClientError, asyncio.CancelledError):
            await self._close_socket(ws)
            raise

        self._ws = ws
        await self._status.mark_connected(socket_id)
        _LOGGER.info(
            "Connected with socket id %s (activity timeout %.0fs)",
            socket_id,
            self._activity_timeout,
        )

        if self._on_connected is not None:
            frames = await self._on_connected(socket_id)
            self._drop_replayed(frames)
            for frame in frames:
                await ws.send_text(frame)

        await self._emit(established)

    def _drop_replayed(self, frames: list[str]) -> None:
        """Forget held subscribe/unsubscribe frames for channels just replayed.

        Held frames were signed for an older socket id, and the replay already
        reflects the current subscription set.
        """
        channels = {subscription_target(frame) for frame in frames}
        channels.discard(None)
        if not channels:
            return
        while True:
            try:
                self._backlog.append(self._commands.get_nowait())
            except asyncio.QueueEmpty:
                break
        kept: deque[Command | None] = deque()
        for command in self._backlog:
            if (
                command is not None
                and command.kind is CommandKind.SEND
                and command.text is not None
                and subscription_target(command.text) in channels
            ):
                _LOGGER.debug("Dropping stale frame: %s", command.text)
                continue
            kept.append(command)
        self._backlog = kept

    async def _handshake(self, ws: PusherWsClient) -> tuple[str, Event]:
        try:
            message = await asyncio.wait_for(ws.receive(), timeout=self._connect_timeout)
        except TimeoutError as err:
            raise PusherTimeout("No connection-established frame received") from err

        if message.type is not PusherWsMessageType.TEXT or message.data is None:
            raise PusherHandshakeError("Socket closed before the handshake completed")

        try:
            event = parse_event(message.data)
        except PusherJsonError as err:
            raise PusherHandshakeError(f"Malformed handshake frame: {err}") from err

        socket_id, activity_timeout = parse_connection_established(event)
        self._activity_timeout = float(
            min(self._configured_activity_timeout, activity_timeout)
        )
        return socket_id, event

    # -------------------------------------------------------------------------
    # Internal: Command/frame pump
    # -------------------------------------------------------------------------

    async def _next_command(self) -> Command | None:
        if self._backlog:
            return self._backlog.popleft()
        return await self._commands.get()

    async def _serve(self) -> bool:
        """Pump commands and frames until the socket goes away.

        Returns True when a close command or the closed-queue sentinel ended
        the session, False when the socket was lost.
        """
        ws = self._ws
        if ws is None:
            return False

        command_task: asyncio.Task[Command | None] | None = None
        frame_task: asyncio.Task | None = None
        # Only inbound frames count as activity; outgoing writes do not.
        loop = asyncio.get_running_loop()
        last_inbound = loop.time()
        ping_sent_at: float | None = None

        try:
            while True:
                if command_task is None:
                    command_task = asyncio.create_task(self._next_command())
                if frame_task is None:
                    frame_task = asyncio.create_task(ws.receive())

                if ping_sent_at is None:
                    deadline = last_inbound + self._activity_timeout
                else:
                    deadline = ping_sent_at + self._pong_timeout
                remaining = deadline - loop.time()

                if remaining <= 0:
                    if ping_sent_at is not None:
                        _LOGGER.warning(
                            "No response %.1fs after ping, connection is dead",
                            self._pong_timeout,
                        )
                        return False
                    _LOGGER.debug(
                        "No activity for %.1fs, sending ping", self._activity_timeout
                    )
                    ping_sent_at = loop.time()
                    await ws.send_text(build_ping())
                    continue

                done, _ = await asyncio.wait(
                    {command_task, frame_task},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if frame_task in done:
                    message = frame_task.result()
                    frame_task = None
                    if message.type is not PusherWsMessageType.TEXT or message.data is None:
                        _LOGGER.info("WebSocket %s by remote", message.type.value)
                        return False
                    last_inbound = loop.time()
                    ping_sent_at = None
                    await self._handle_frame(ws, message.data)

                if command_task in done:
                    command = command_task.result()
                    command_task = None
                    if _is_stop(command):
                        return True
                    try:
                        await ws.send_text(command.text or "")
                    except PusherClientError:
                        self._backlog.appendleft(command)
                        raise

        except PusherClientError as err:
            _LOGGER.warning("Socket error: %s", err)
            return False
        except asyncio.CancelledError:
            raise
        except Exception as err:
            _LOGGER.exception("Unexpected transport error: %s", err)
            return False
        finally:
            if frame_task is not None:
                frame_task.cancel()
            if command_task is not None:
                if command_task.done() and not command_task.cancelled():
                    self._backlog.appendleft(command_task.result())
                else:
                    command_task.cancel()

    async def _handle_frame(self, ws: PusherWsClient, text: str) -> None:
        try:
            event = parse_event(text)
        except PusherJsonError as err:
            _LOGGER.warning("Dropping unrecognized frame: %s", err)
            return

        if event.event == EVENT_PING:
            await ws.send_text(build_pong())
            return
        if event.event == EVENT_PONG:
            _LOGGER.debug("Pong received")
            return
        if event.event == EVENT_ERROR:
            _LOGGER.warning("Service reported an error: %s", event.data)

        await self._emit(event)

    async def _emit(self, event: Event) -> None:
        # Blocks while the queue is full; slow dispatch throttles the socket.
        await self._events.put(event)

    # -------------------------------------------------------------------------
    # Internal: Reconnect and teardown
    # -------------------------------------------------------------------------

    async def _reconnect(self) -> bool:
        """Retry with backoff; return True once a new session is up."""
        while self._retry_attempts < self._policy.max_attempts:
            if any(_is_stop(command) for command in self._backlog):
                await self._status.set_state(ConnectionState.DISCONNECTED)
                return False

            delay = self._policy.delay(self._retry_attempts)
            self._retry_attempts += 1
            await self._status.set_state(ConnectionState.RECONNECTING)
            _LOGGER.info(
                "Reconnecting in %.1fs (attempt %d/%d)",
                delay,
                self._retry_attempts,
                self._policy.max_attempts,
            )

            if await self._hold_commands(delay):
                _LOGGER.info("Close requested while reconnecting")
                await self._status.set_state(ConnectionState.DISCONNECTED)
                return False

            await self._status.set_state(ConnectionState.CONNECTING)
            try:
                await self._open()
            except PusherClientError as err:
                _LOGGER.warning(
                    "Reconnect attempt %d failed: %s", self._retry_attempts, err
                )
                await self._discard_socket()
                continue

            self._retry_attempts = 0
            return True

        _LOGGER.error(
            "Giving up after %d reconnect attempts", self._policy.max_attempts
        )
        await self._status.set_state(ConnectionState.FAILED)
        return False

    async def _hold_commands(self, delay: float) -> bool:
        """Wait out ``delay``, holding sends; return True on a close request."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        while True:
            try:
                command = self._commands.get_nowait()
            except asyncio.QueueEmpty:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return False
                try:
                    command = await asyncio.wait_for(
                        self._commands.get(), timeout=remaining
                    )
                except TimeoutError:
                    return False
            if _is_stop(command):
                return True
            self._backlog.append(command)

    async def _shutdown(self) -> None:
        _LOGGER.info("Closing connection")
        await self._discard_socket()
        await self._status.set_state(ConnectionState.DISCONNECTED)
        await self._emit(Event(event=EVENT_DISCONNECTED))

    async def _discard_socket(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_socket(ws)

    @staticmethod
    async def _close_socket(ws: PusherWsClient) -> None:
        try:
            await asyncio.wait_for(ws.close(), timeout=2.0)
        except TimeoutError:
            _LOGGER.warning("WebSocket close timed out")
