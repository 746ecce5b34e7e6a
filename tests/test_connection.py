"""Tests for ConnectionStatus and the PusherConnection state machine."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import patch

import pytest

from pusher_transport.config import ReconnectPolicy
from pusher_transport.connection import (
    Command,
    ConnectionState,
    ConnectionStatus,
    PusherConnection,
)
from pusher_transport.errors import PusherConnectionError, PusherHandshakeError
from pusher_transport.protocol import Event, build_subscribe

from .conftest import FakeWsClient, wait_until

URL = "wss://ws-eu.pusher.com/app/key?protocol=7"


class RefusingWsClient(FakeWsClient):
    """Fake socket whose open always fails."""

    def __init__(self) -> None:
        super().__init__(handshake=False)

    async def connect(self, url, *, ping_interval=None, timeout=15.0) -> None:
        raise PusherConnectionError("refused")


def _make_connection(
    *, event_queue_size: int = 100, **kwargs
) -> tuple[PusherConnection, ConnectionStatus, asyncio.Queue, asyncio.Queue]:
    status = ConnectionStatus()
    events: asyncio.Queue = asyncio.Queue(maxsize=event_queue_size)
    commands: asyncio.Queue = asyncio.Queue(maxsize=100)
    kwargs.setdefault("policy", ReconnectPolicy(max_attempts=3, base_delay=0.0))
    connection = PusherConnection(URL, status, events, commands, **kwargs)
    return connection, status, events, commands


def _drain(events: asyncio.Queue) -> list[str]:
    names = []
    while not events.empty():
        event = events.get_nowait()
        names.append(event.event if event is not None else None)
    return names


class TestConnectionStatus:
    """Tests for ConnectionStatus."""

    async def test_initial_state(self):
        """Test a new status is disconnected without a socket id."""
        status = ConnectionStatus()
        assert await status.state() is ConnectionState.DISCONNECTED
        assert await status.socket_id() is None

    async def test_connected_requires_socket_id(self):
        """Test CONNECTED is only entered together with a socket id."""
        status = ConnectionStatus()
        with pytest.raises(ValueError):
            await status.set_state(ConnectionState.CONNECTED)
        with pytest.raises(ValueError):
            await status.mark_connected("")

    async def test_leaving_connected_clears_socket_id(self):
        """Test any other state drops the socket id."""
        status = ConnectionStatus()
        await status.mark_connected("1.2")
        assert status.snapshot() == (ConnectionState.CONNECTED, "1.2")
        await status.set_state(ConnectionState.RECONNECTING)
        assert status.snapshot() == (ConnectionState.RECONNECTING, None)

    async def test_listeners_see_changes_only(self):
        """Test callbacks fire once per real transition."""
        status = ConnectionStatus()
        seen: list[ConnectionState] = []
        status.on_change(seen.append)
        await status.set_state(ConnectionState.CONNECTING)
        await status.set_state(ConnectionState.CONNECTING)
        await status.mark_connected("1.2")
        assert seen == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]

    async def test_failing_listener_does_not_block_others(self):
        """Test a raising callback is logged and skipped."""
        status = ConnectionStatus()
        seen: list[ConnectionState] = []

        def broken(state: ConnectionState) -> None:
            raise RuntimeError("boom")

        status.on_change(broken)
        status.on_change(seen.append)
        await status.set_state(ConnectionState.CONNECTING)
        assert seen == [ConnectionState.CONNECTING]


class TestConnect:
    """Tests for PusherConnection.connect()."""

    async def test_connect_success(self):
        """Test the handshake assigns the socket id and is reported."""
        ws = FakeWsClient(socket_id="123.456")
        connection, status, events, _ = _make_connection()

        with patch("pusher_transport.connection.PusherWsClient", return_value=ws):
            await connection.connect()

        assert ws.url == URL
        assert status.snapshot() == (ConnectionState.CONNECTED, "123.456")
        established = events.get_nowait()
        assert established.event == "pusher:connection_established"

    async def test_server_lowers_activity_timeout(self):
        """Test the smaller of ours and the server's timeout wins."""
        ws = FakeWsClient(activity_timeout=30)
        connection, _, _, _ = _make_connection()

        with patch("pusher_transport.connection.PusherWsClient", return_value=ws):
            await connection.connect()

        assert connection.activity_timeout == 30.0

    async def test_malformed_handshake_fails(self):
        """Test a non-handshake first frame leaves the state FAILED."""
        ws = FakeWsClient(handshake=False)
        ws.push_raw("garbage")
        connection, status, events, _ = _make_connection()

        with patch("pusher_transport.connection.PusherWsClient", return_value=ws):
            with pytest.raises(PusherHandshakeError):
                await connection.connect()

        assert status.snapshot() == (ConnectionState.FAILED, None)
        assert ws.closed
        assert events.empty()

    async def test_refused_socket_fails(self):
        """Test an unreachable endpoint raises and reports FAILED."""
        connection, status, _, _ = _make_connection()

        with patch(
            "pusher_transport.connection.PusherWsClient",
            return_value=RefusingWsClient(),
        ):
            with pytest.raises(PusherConnectionError):
                await connection.connect()

        assert await status.state() is ConnectionState.FAILED

    async def test_on_connected_frames_are_sent(self):
        """Test frames from the connected hook go out after the handshake."""
        ws = FakeWsClient(socket_id="9.9")
        received: list[str] = []

        async def on_connected(socket_id: str) -> list[str]:
            received.append(socket_id)
            return ['{"event":"pusher:subscribe","data":{"channel":"orders"}}']

        connection, _, _, _ = _make_connection(on_connected=on_connected)

        with patch("pusher_transport.connection.PusherWsClient", return_value=ws):
            await connection.connect()

        assert received == ["9.9"]
        assert ws.sent_events() == ["pusher:subscribe"]


class TestRun:
    """Tests for the running transport task."""

    async def _start(self, ws: FakeWsClient, **kwargs):
        connection, status, events, commands = _make_connection(**kwargs)
        with patch("pusher_transport.connection.PusherWsClient", return_value=ws):
            await connection.connect()
        task = asyncio.create_task(connection.run())
        return connection, status, events, commands, task

    async def test_send_command_writes_frame(self):
        """Test queued frames are written in order."""
        ws = FakeWsClient()
        _, _, _, commands, task = await self._start(ws)

        await commands.put(Command.send("first"))
        await commands.put(Command.send("second"))
        await wait_until(lambda: len(ws.sent) == 2)
        assert ws.sent == ["first", "second"]

        await commands.put(Command.close())
        await asyncio.wait_for(task, 2.0)

    async def test_close_command(self):
        """Test close disconnects, clears the id and reports it."""
        ws = FakeWsClient()
        _, status, events, commands, task = await self._start(ws)

        await commands.put(Command.close())
        await asyncio.wait_for(task, 2.0)

        assert status.snapshot() == (ConnectionState.DISCONNECTED, None)
        assert ws.closed
        assert _drain(events) == ["pusher:connection_established", "pusher:disconnected"]

    async def test_sentinel_stops_task(self):
        """Test the no-senders sentinel ends the task like a close."""
        ws = FakeWsClient()
        _, status, _, commands, task = await self._start(ws)

        await commands.put(None)
        await asyncio.wait_for(task, 2.0)

        assert await status.state() is ConnectionState.DISCONNECTED

    async def test_inbound_events_in_order(self):
        """Test channel events are queued in arrival order."""
        ws = FakeWsClient()
        _, _, events, commands, task = await self._start(ws)
        events.get_nowait()

        ws.push_event("order-created", '{"id":1}', channel="orders")
        ws.push_event("order-created", '{"id":2}', channel="orders")

        first = await asyncio.wait_for(events.get(), 2.0)
        second = await asyncio.wait_for(events.get(), 2.0)
        assert first == Event("order-created", "orders", '{"id":1}')
        assert second.data == '{"id":2}'

        await commands.put(Command.close())
        await asyncio.wait_for(task, 2.0)

    async def test_server_ping_is_answered(self):
        """Test pings get a pong and are not queued as events."""
        ws = FakeWsClient()
        _, _, events, commands, task = await self._start(ws)
        events.get_nowait()

        ws.push_event("pusher:ping", {})
        ws.push_raw("not json")
        ws.push_event("marker", channel="orders")

        marker = await asyncio.wait_for(events.get(), 2.0)
        assert marker.event == "marker"
        assert ws.sent_events() == ["pusher:pong"]

        await commands.put(Command.close())
        await asyncio.wait_for(task, 2.0)

    async def test_remote_close_reconnects(self):
        """Test a dropped socket is replaced with a new session."""
        first = FakeWsClient(socket_id="1.1")
        second = FakeWsClient(socket_id="2.2")
        connection, status, events, commands = _make_connection()

        with patch(
            "pusher_transport.connection.PusherWsClient",
            side_effect=[first, second],
        ):
            await connection.connect()
            task = asyncio.create_task(connection.run())
            first.drop()
            await wait_until(lambda: status.snapshot()[1] == "2.2")

        await commands.put(Command.send("after"))
        await wait_until(lambda: second.sent == ["after"])
        await commands.put(Command.close())
        await asyncio.wait_for(task, 2.0)

        assert _drain(events)[:3] == [
            "pusher:connection_established",
            "pusher:disconnected",
            "pusher:connection_established",
        ]

    async def test_silent_socket_is_pinged_then_replaced(self):
        """Test keepalive pings and a missing reply forces a reconnect."""
        first = FakeWsClient(socket_id="1.1")
        second = FakeWsClient(socket_id="2.2")
        connection, status, _, commands = _make_connection(
            activity_timeout=0.05, pong_timeout=0.05
        )

        with patch(
            "pusher_transport.connection.PusherWsClient",
            side_effect=[first, second],
        ):
            await connection.connect()
            task = asyncio.create_task(connection.run())
            await wait_until(lambda: status.snapshot()[1] == "2.2")

        assert "pusher:ping" in first.sent_events()
        assert first.closed

        await commands.put(Command.close())
        await asyncio.wait_for(task, 2.0)

    async def test_reconnect_gives_up(self):
        """Test exhausting the policy leaves the state FAILED."""
        first = FakeWsClient()
        connection, status, _, _ = _make_connection(
            policy=ReconnectPolicy(max_attempts=2, base_delay=0.0)
        )

        with patch(
            "pusher_transport.connection.PusherWsClient",
            side_effect=[first, RefusingWsClient(), RefusingWsClient()],
        ):
            await connection.connect()
            task = asyncio.create_task(connection.run())
            first.drop()
            await asyncio.wait_for(task, 2.0)

        assert status.snapshot() == (ConnectionState.FAILED, None)

    async def test_sends_held_during_backoff_are_replayed(self):
        """Test frames queued while reconnecting go out on the new socket."""
        first = FakeWsClient(socket_id="1.1")
        second = FakeWsClient(socket_id="2.2")
        connection, status, _, commands = _make_connection(
            policy=ReconnectPolicy(max_attempts=3, base_delay=0.2)
        )

        with patch(
            "pusher_transport.connection.PusherWsClient",
            side_effect=[first, second],
        ):
            await connection.connect()
            task = asyncio.create_task(connection.run())
            first.drop()
            await wait_until(lambda: status.snapshot()[0] is ConnectionState.RECONNECTING)
            await commands.put(Command.send("held"))
            await wait_until(lambda: second.sent == ["held"])

        await commands.put(Command.close())
        await asyncio.wait_for(task, 2.0)

    async def test_close_during_backoff(self):
        """Test a close while waiting to reconnect ends the task."""
        first = FakeWsClient()
        connection, status, _, commands = _make_connection(
            policy=ReconnectPolicy(max_attempts=3, base_delay=5.0)
        )

        with patch("pusher_transport.connection.PusherWsClient", return_value=first):
            await connection.connect()
            task = asyncio.create_task(connection.run())
            first.drop()
            await wait_until(lambda: status.snapshot()[0] is ConnectionState.RECONNECTING)
            await commands.put(Command.close())
            await asyncio.wait_for(task, 2.0)

        assert await status.state() is ConnectionState.DISCONNECTED

    async def test_cancel_disconnects(self):
        """Test cancelling the task closes the socket."""
        ws = FakeWsClient()
        _, status, _, _, task = await self._start(ws)
        await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert ws.closed
        assert await status.state() is ConnectionState.DISCONNECTED

    async def test_outgoing_writes_do_not_count_as_activity(self):
        """Test a silent server is pinged and replaced while the client writes."""
        first = FakeWsClient(socket_id="1.1")
        second = FakeWsClient(socket_id="2.2")
        connection, status, _, commands = _make_connection(
            activity_timeout=0.1, pong_timeout=0.1
        )

        async def chatter() -> None:
            while True:
                await commands.put(Command.send('{"event":"client-tick","data":{}}'))
                await asyncio.sleep(0.03)

        with patch(
            "pusher_transport.connection.PusherWsClient",
            side_effect=[first, second],
        ):
            await connection.connect()
            task = asyncio.create_task(connection.run())
            writer = asyncio.create_task(chatter())
            try:
                await wait_until(lambda: status.snapshot()[1] == "2.2")
            finally:
                writer.cancel()

        assert "client-tick" in first.sent_events()
        assert "pusher:ping" in first.sent_events()
        assert first.closed

        await commands.put(Command.close())
        await asyncio.wait_for(task, 2.0)

    async def test_full_event_queue_stalls_reading(self):
        """Test a full event queue blocks the reader without losing events."""
        ws = FakeWsClient()
        _, _, events, commands, task = await self._start(ws, event_queue_size=1)

        for n in range(3):
            ws.push_event("order-created", json.dumps({"id": n}), channel="orders")
        ws.push_event("pusher:ping", {})
        await asyncio.sleep(0.1)

        assert events.qsize() == 1
        assert ws.sent == []

        received = [(await asyncio.wait_for(events.get(), 1.0)).event]
        for _ in range(3):
            received.append((await asyncio.wait_for(events.get(), 1.0)).data)
        assert received == [
            "pusher:connection_established",
            '{"id": 0}',
            '{"id": 1}',
            '{"id": 2}',
        ]
        await wait_until(lambda: ws.sent_events() == ["pusher:pong"])

        await commands.put(Command.close())
        await asyncio.wait_for(task, 2.0)

    async def test_replay_supersedes_held_subscriptions(self):
        """Test held subscribe frames for replayed channels are not resent."""
        first = FakeWsClient(socket_id="1.1")
        second = FakeWsClient(socket_id="2.2")

        async def on_connected(socket_id: str) -> list[str]:
            return [build_subscribe("private-orders", auth=f"sig-{socket_id}")]

        connection, status, _, commands = _make_connection(
            policy=ReconnectPolicy(max_attempts=3, base_delay=0.2),
            on_connected=on_connected,
        )

        with patch(
            "pusher_transport.connection.PusherWsClient",
            side_effect=[first, second],
        ):
            await connection.connect()
            task = asyncio.create_task(connection.run())
            first.drop()
            await wait_until(lambda: status.snapshot()[0] is ConnectionState.RECONNECTING)
            await commands.put(
                Command.send(build_subscribe("private-orders", auth="sig-1.1"))
            )
            await commands.put(Command.send(build_subscribe("invoices")))
            await wait_until(lambda: len(second.sent) == 2)

        await commands.put(Command.close())
        await asyncio.wait_for(task, 2.0)

        assert second.sent == [
            build_subscribe("private-orders", auth="sig-2.2"),
            build_subscribe("invoices"),
        ]


def test_command_constructors():
    """Test Command helpers."""
    assert Command.send(json.dumps({"a": 1})).text == '{"a": 1}'
    assert Command.close().text is None
