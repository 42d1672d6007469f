"""Unit tests for ProtocolClient against a scripted localhost device.

Tests cover:
- Connection lifecycle and the connection banner
- Clip catalog retrieval, slot selection and the fetch deadline
- Strict one-command-at-a-time serialization
- Disconnect while a block is half received
- Status polling, pushed notifications and device drops
"""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from deck_courier.core.device.client import ProtocolClient
from deck_courier.core.device.protocol import AwaitingFramedBlock, Idle
from deck_courier.core.device.state import ConnectionEvent, ConnectionInfo, ConnectionState
from deck_courier.core.errors import (
    CommandFailed,
    CommandInProgress,
    DeviceConnectionError,
    ProtocolError,
    ProtocolTimeout,
)
from deck_courier.core.events import (
    ClipCatalog,
    Connected,
    Disconnected,
    ErrorEvent,
    SlotStatusChanged,
    TransportStatusChanged,
)
from deck_courier.core.models import SlotState
from tests.infrastructure.helpers import events_of, next_event
from tests.infrastructure.mocks.device_mocks import clip_listing


@pytest_asyncio.fixture
async def client(settings, events):
    client = ProtocolClient(events, settings)
    yield client
    await client.disconnect()


async def connect(client: ProtocolClient, deck) -> None:
    await client.connect(deck.host, deck.port)
    # The first ping guarantees the device side has registered the connection
    await client.execute("ping")


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


# =============================================================================
# Connection lifecycle
# =============================================================================


class TestConnection:

    @pytest.mark.asyncio
    async def test_connect_publishes_connected(self, client, fake_deck, events):
        subscription = events.subscribe()

        await client.connect(fake_deck.host, fake_deck.port)

        event = await next_event(subscription, Connected)
        assert event.host == fake_deck.host
        assert event.port == fake_deck.port
        assert client.is_connected
        assert client.state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_banner_fills_device_info(self, client, fake_deck):
        await connect(client, fake_deck)

        assert client.device_info.model == "HyperDeck Studio Mini"
        assert client.device_info.protocol_version == "1.11"
        assert client.status()["model"] == "HyperDeck Studio Mini"

    @pytest.mark.asyncio
    async def test_refused_connection(self, client):
        server = await asyncio.start_server(lambda reader, writer: None, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        with pytest.raises(DeviceConnectionError):
            await client.connect("127.0.0.1", port)

        assert client.state is ConnectionState.DISCONNECTED
        assert client.status()["lastError"]

    @pytest.mark.asyncio
    async def test_commands_require_connection(self, client):
        with pytest.raises(DeviceConnectionError):
            await client.get_clip_list()

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, client, fake_deck, events):
        await connect(client, fake_deck)
        subscription = events.subscribe()

        await client.disconnect()
        await client.disconnect()

        assert client.state is ConnectionState.DISCONNECTED
        assert len(events_of(subscription, Disconnected)) == 1

    @pytest.mark.asyncio
    async def test_connect_while_connected_replaces_link(self, client, fake_deck):
        await connect(client, fake_deck)
        await connect(client, fake_deck)

        assert fake_deck.connections == 2
        assert client.is_connected

    @pytest.mark.asyncio
    async def test_disconnect_while_connecting_closes_late_socket(self, client, fake_deck, events):
        subscription = events.subscribe()
        pending = asyncio.create_task(client.connect(fake_deck.host, fake_deck.port))
        await asyncio.sleep(0)
        assert client.state is ConnectionState.CONNECTING

        await client.disconnect()

        with pytest.raises(DeviceConnectionError):
            await pending
        assert client.state is ConnectionState.DISCONNECTED
        assert events_of(subscription, Connected) == []
        await wait_until(lambda: fake_deck.connections == 1 and fake_deck.open_connections == 0)

        await connect(client, fake_deck)
        assert client.is_connected

    @pytest.mark.asyncio
    async def test_concurrent_connects_leave_one_link(self, client, fake_deck, events):
        subscription = events.subscribe()

        await asyncio.gather(
            client.connect(fake_deck.host, fake_deck.port),
            client.connect(fake_deck.host, fake_deck.port),
        )

        assert client.is_connected
        assert (await client.execute("ping")).code == 200
        await wait_until(lambda: fake_deck.connections == 2 and fake_deck.open_connections == 1)
        drained = subscription.drain()
        assert sum(isinstance(event, Connected) for event in drained) == 2
        assert sum(isinstance(event, Disconnected) for event in drained) == 1


# =============================================================================
# Clip catalog
# =============================================================================


class TestClipList:

    @pytest.mark.asyncio
    async def test_three_clips_in_device_order(self, client, fake_deck, events):
        await connect(client, fake_deck)
        subscription = events.subscribe()

        clips = await client.get_clip_list()

        assert [clip.name for clip in clips] == ["A_0001.mp4", "A_0002.mp4", "A_0003.mp4"]
        event = await next_event(subscription, ClipCatalog)
        assert len(event.clips) == 3
        assert event.to_message()["type"] == "CLIP_LIST"

    @pytest.mark.asyncio
    async def test_slot_selected_before_listing(self, client, fake_deck):
        await connect(client, fake_deck)

        clips = await client.get_clip_list(slot=2)

        index = fake_deck.received.index("slot select: slot id: 2")
        assert fake_deck.received[index + 1] == "clips get"
        assert all(clip.slot == 2 for clip in clips)

    @pytest.mark.asyncio
    async def test_empty_listing(self, client, fake_deck):
        fake_deck.script["clips get"] = clip_listing([])
        await connect(client, fake_deck)

        assert await client.get_clip_list() == []

    @pytest.mark.asyncio
    async def test_incomplete_block_times_out(self, client, fake_deck):
        fake_deck.script["clips get"] = clip_listing(["A_0001.mp4", "A_0002.mp4"], declared=3)
        await connect(client, fake_deck)

        with pytest.raises(ProtocolTimeout):
            await client.get_clip_list()

        assert isinstance(client.framer.state, Idle)
        assert not client.command_in_progress
        response = await client.execute("ping")
        assert response.code == 200

    @pytest.mark.asyncio
    async def test_non_listing_response_rejected(self, client, fake_deck):
        fake_deck.script["clips get"] = ["200 ok"]
        await connect(client, fake_deck)

        with pytest.raises(ProtocolError):
            await client.get_clip_list()


# =============================================================================
# Command serialization
# =============================================================================


class TestSerialization:

    @pytest.mark.asyncio
    async def test_one_command_on_the_wire_at_a_time(self, client, fake_deck):
        fake_deck.response_delay = 0.02
        await connect(client, fake_deck)

        results = await asyncio.gather(
            client.get_clip_list(slot=1),
            client.slot_info(1),
            client.transport_info(),
            client.execute("ping"),
        )

        assert fake_deck.max_in_flight == 1
        assert len(results[0]) == 3
        assert results[1].status is SlotState.MOUNTED
        assert results[2].status == "record"

    @pytest.mark.asyncio
    async def test_send_command_while_busy_raises(self, client, fake_deck):
        await connect(client, fake_deck)
        fake_deck.response_delay = 0.2

        fetch = asyncio.create_task(client.get_clip_list())
        await wait_until(lambda: client.command_in_progress)

        with pytest.raises(CommandInProgress):
            await client.send_command("ping")

        assert len(await fetch) == 3

    @pytest.mark.asyncio
    async def test_send_command_refused_while_a_caller_is_queued(self, client, fake_deck):
        await connect(client, fake_deck)
        await client._lock.acquire()
        queued = asyncio.create_task(client.execute("ping"))
        await asyncio.sleep(0)

        # The lock is free again but the queued caller has not resumed yet
        client._lock.release()
        assert client.command_in_progress

        with pytest.raises(CommandInProgress):
            await client.send_command("ping")
        assert (await queued).code == 200
        assert not client.command_in_progress

    @pytest.mark.asyncio
    async def test_error_status_raises_command_failed(self, client, fake_deck):
        await connect(client, fake_deck)

        with pytest.raises(CommandFailed) as exc_info:
            await client.execute("bogus")

        assert exc_info.value.code == 100
        assert exc_info.value.command == "bogus"


# =============================================================================
# Disconnect mid-fetch
# =============================================================================


class TestDisconnectMidFetch:

    @pytest.mark.asyncio
    async def test_partial_block_discarded_and_next_fetch_clean(self, client, fake_deck):
        complete = fake_deck.script["clips get"]
        fake_deck.script["clips get"] = clip_listing(["A_0001.mp4", "A_0002.mp4"], declared=3)
        await connect(client, fake_deck)

        fetch = asyncio.create_task(client.get_clip_list())
        await wait_until(
            lambda: isinstance(client.framer.state, AwaitingFramedBlock)
            and len(client.framer.state.collected) == 2
        )

        await client.disconnect()

        with pytest.raises(DeviceConnectionError):
            await fetch
        assert isinstance(client.framer.state, Idle)
        assert client.buffered_text == ""

        fake_deck.script["clips get"] = complete
        await connect(client, fake_deck)
        clips = await client.get_clip_list()
        assert [clip.name for clip in clips] == ["A_0001.mp4", "A_0002.mp4", "A_0003.mp4"]


# =============================================================================
# Polling and notifications
# =============================================================================


class TestPolling:

    @pytest.mark.asyncio
    async def test_poll_publishes_slot_and_transport_status(self, client, fake_deck, events):
        await connect(client, fake_deck)
        subscription = events.subscribe()

        client.start_polling([1, 2], owner="s1")

        seen = set()
        while seen != {1, 2}:
            event = await next_event(subscription, SlotStatusChanged)
            seen.add(event.status.slot)
        transport = await next_event(subscription, TransportStatusChanged)
        assert transport.status.status == "record"

        await client.stop_polling("s1")
        assert not client.is_polling

    @pytest.mark.asyncio
    async def test_poll_failure_does_not_stop_polling(self, client, fake_deck, events):
        fake_deck.script["slot info: slot id: 2"] = ["102 not supported"]
        await connect(client, fake_deck)
        subscription = events.subscribe()

        await client.poll_once()

        errors = events_of(subscription, ErrorEvent)
        assert len(errors) == 1
        assert errors[0].source == "poll"
        assert "Slot 2" in errors[0].message

        await client.poll_once()
        assert client.is_connected

    @pytest.mark.asyncio
    async def test_polling_survives_reconnect(self, client, fake_deck):
        client.start_polling([1], owner="s1")
        assert not client.is_polling

        await connect(client, fake_deck)
        assert client.is_polling

        await client.disconnect()
        assert not client.is_polling
        assert client.polled_slots == frozenset({1})

        await connect(client, fake_deck)
        assert client.is_polling
        await client.stop_polling("s1")

    @pytest.mark.asyncio
    async def test_owners_share_one_loop(self, client, fake_deck):
        await connect(client, fake_deck)

        client.start_polling([1], owner="a")
        client.start_polling([2], owner="b")
        assert client.polled_slots == frozenset({1, 2})

        await client.stop_polling("a")
        assert client.is_polling
        assert client.polled_slots == frozenset({2})

        await client.stop_polling("b")
        assert not client.is_polling

    @pytest.mark.asyncio
    async def test_pushed_transport_notification(self, client, fake_deck, events):
        await connect(client, fake_deck)
        subscription = events.subscribe()

        await fake_deck.push(["508 transport info:", "status: play", "slot id: 2", ""])

        event = await next_event(subscription, TransportStatusChanged)
        assert event.status.status == "play"
        assert event.status.slot == 2
        assert client.framer.idle


class TestDeviceDrop:

    @pytest.mark.asyncio
    async def test_drop_reports_error_and_disconnects(self, client, fake_deck, events):
        await connect(client, fake_deck)
        subscription = events.subscribe()

        await fake_deck.drop_connections()

        error = await next_event(subscription, ErrorEvent)
        assert error.source == "device"
        await next_event(subscription, Disconnected)
        assert client.state is ConnectionState.DISCONNECTED


# =============================================================================
# Connection state table
# =============================================================================


class TestConnectionInfo:

    def test_valid_transitions(self):
        info = ConnectionInfo(host="10.0.0.5", port=9993)

        assert info.apply(ConnectionEvent.CONNECT_REQUESTED)
        assert info.state is ConnectionState.CONNECTING
        assert info.apply(ConnectionEvent.SOCKET_OPENED)
        assert info.state is ConnectionState.CONNECTED
        assert info.apply(ConnectionEvent.SOCKET_CLOSED)
        assert info.state is ConnectionState.DISCONNECTED

    def test_invalid_transition_ignored(self):
        info = ConnectionInfo()

        assert not info.apply(ConnectionEvent.SOCKET_OPENED)
        assert info.state is ConnectionState.DISCONNECTED

    def test_connected_clears_last_error(self):
        info = ConnectionInfo(last_error="refused")
        info.apply(ConnectionEvent.CONNECT_REQUESTED)
        info.apply(ConnectionEvent.SOCKET_OPENED)

        assert info.to_dict()["lastError"] is None
