import asyncio

import pytest

from connection import GameConnection
from errors import (
    IdCollision,
    RequestCancelled,
    RoomNotFound,
    TransportError,
    TransportTimeout,
    UnsupportedOperation,
)
from helpers import Recorder, codes, eventually, settle
from transport.base import PeerUnavailable
from transport.memory import InMemoryEndpoint, InMemoryTransportHub


@pytest.fixture()
def hub() -> InMemoryTransportHub:
    return InMemoryTransportHub()


@pytest.fixture()
async def host(hub):
    connection = GameConnection.over_transport(hub.endpoint, code_factory=codes("AB23XZ"))
    try:
        yield connection
    finally:
        await connection.destroy()


@pytest.fixture()
async def guest(hub):
    connection = GameConnection.over_transport(hub.endpoint, code_factory=codes("GUEST2"))
    try:
        yield connection
    finally:
        await connection.destroy()


class TestInMemoryTransport:
    async def test_duplicate_id(self, hub) -> None:
        await hub.endpoint().open("otpg_AB23XZ")
        with pytest.raises(IdCollision):
            await hub.endpoint().open("otpg_AB23XZ")

    async def test_unknown_peer(self, hub) -> None:
        endpoint = hub.endpoint()
        await endpoint.open("otpg_guest_AAAAAA")
        with pytest.raises(PeerUnavailable):
            await endpoint.connect("otpg_ZZZZZZ")

    async def test_send_on_closed_channel(self, hub) -> None:
        host, guest = hub.endpoint(), hub.endpoint()
        await host.open("otpg_AB23XZ")
        await guest.open("otpg_guest_AAAAAA")
        channel = await guest.connect("otpg_AB23XZ")
        await eventually(lambda: channel.is_open)
        await channel.close()
        with pytest.raises(TransportError):
            await channel.send("late")


class TestDirectConnection:
    async def test_end_to_end(self, host, guest) -> None:
        host_events, guest_events = Recorder(host), Recorder(guest)

        assert await host.create_game() == "AB23XZ"
        await guest.join_game("ab23xz ")
        await eventually(lambda: host_events.count("connected") == 1)

        await host.send({"type": "move", "index": 4})
        await eventually(lambda: guest_events.count("data") == 1)
        await guest.send({"type": "move", "index": 5})
        await eventually(lambda: host_events.count("data") == 1)
        await settle()

        assert guest_events.calls["data"] == [({"type": "move", "index": 4},)]
        assert host_events.calls["data"] == [({"type": "move", "index": 5},)]
        assert guest_events.count("connected") == 1
        assert host_events.count("error") == guest_events.count("error") == 0

    async def test_code_collision_regenerates(self, hub) -> None:
        await hub.endpoint().open("otpg_AAAAAA")
        connection = GameConnection.over_transport(hub.endpoint, code_factory=codes("AAAAAA", "BBBBBB"))
        assert await connection.create_game() == "BBBBBB"
        await connection.destroy()

    async def test_code_collision_gives_up(self, hub) -> None:
        await hub.endpoint().open("otpg_AAAAAA")
        connection = GameConnection.over_transport(hub.endpoint, code_factory=codes("AAAAAA"))
        events = Recorder(connection)
        with pytest.raises(IdCollision):
            await connection.create_game()
        assert events.count("error") == 1
        await connection.destroy()

    async def test_no_host_is_not_found(self, guest) -> None:
        events = Recorder(guest)
        with pytest.raises(RoomNotFound):
            await guest.join_game("ZZZZZZ")
        assert events.count("error") == 1

    async def test_guest_open_timeout(self) -> None:
        hub = InMemoryTransportHub(auto_open=False)
        host = GameConnection.over_transport(hub.endpoint, code_factory=codes("AB23XZ"), open_timeout=5)
        guest = GameConnection.over_transport(hub.endpoint, code_factory=codes("GUEST2"), open_timeout=0.05)
        host_events, guest_events = Recorder(host), Recorder(guest)
        await host.create_game()

        with pytest.raises(TransportTimeout):
            await guest.join_game("AB23XZ")
        assert guest_events.count("error") == 1

        # The abandoned channel fails the host's wait as well
        await eventually(lambda: host_events.count("error") == 1)
        assert host_events.count("connected") == guest_events.count("connected") == 0
        await guest.destroy()
        await host.destroy()

    async def test_host_open_timeout(self) -> None:
        hub = InMemoryTransportHub(auto_open=False)
        host = GameConnection.over_transport(hub.endpoint, code_factory=codes("AB23XZ"), open_timeout=0.05)
        guest = GameConnection.over_transport(hub.endpoint, code_factory=codes("GUEST2"), open_timeout=5)
        host_events = Recorder(host)
        await host.create_game()

        with pytest.raises(TransportError):
            await guest.join_game("AB23XZ")

        await eventually(lambda: host_events.count("error") == 1)
        assert isinstance(host_events.calls["error"][0][0], TransportTimeout)
        await guest.destroy()
        await host.destroy()

    async def test_open_before_timeout(self) -> None:
        hub = InMemoryTransportHub(auto_open=False)
        host = GameConnection.over_transport(hub.endpoint, code_factory=codes("AB23XZ"), open_timeout=5)
        guest = GameConnection.over_transport(hub.endpoint, code_factory=codes("GUEST2"), open_timeout=5)
        host_events = Recorder(host)
        await host.create_game()

        join = asyncio.create_task(guest.join_game("AB23XZ"))
        await settle()
        hub.open_pending()
        await join
        await eventually(lambda: host_events.count("connected") == 1)
        assert host_events.count("error") == 0
        await guest.destroy()
        await host.destroy()

    async def test_guest_leaving_is_seen_by_host(self, host, guest) -> None:
        host_events, guest_events = Recorder(host), Recorder(guest)
        await host.create_game()
        await guest.join_game("AB23XZ")
        await eventually(lambda: host_events.count("connected") == 1)

        await guest.destroy()
        await eventually(lambda: host_events.count("disconnected") == 1)
        assert guest_events.count("disconnected") == 0

    async def test_second_guest_is_turned_away(self, hub, host, guest) -> None:
        host_events = Recorder(host)
        await host.create_game()
        await guest.join_game("AB23XZ")
        await eventually(lambda: host_events.count("connected") == 1)

        other = GameConnection.over_transport(hub.endpoint, code_factory=codes("GUEST3"))
        other_events = Recorder(other)
        try:
            await other.join_game("AB23XZ")
        except TransportError:
            assert other_events.count("connected") == 0
        else:
            # The channel opened before the host got to refuse it
            await eventually(lambda: other_events.count("disconnected") == 1)

        await host.send("only for the first guest")
        await settle()
        assert other_events.count("data") == 0
        assert host_events.count("connected") == 1
        await other.destroy()

    async def test_room_closes_after_its_guest_leaves(self, hub, host, guest) -> None:
        host_events = Recorder(host)
        await host.create_game()
        await guest.join_game("AB23XZ")
        await eventually(lambda: host_events.count("connected") == 1)

        await guest.destroy()
        await eventually(lambda: hub._lookup("otpg_AB23XZ") is None)
        assert host_events.count("disconnected") == 1

        other = GameConnection.over_transport(hub.endpoint, code_factory=codes("GUEST3"))
        with pytest.raises(RoomNotFound):
            await other.join_game("AB23XZ")
        assert host_events.count("connected") == 1
        await other.destroy()

    async def test_join_requests_need_the_store(self, guest) -> None:
        events = Recorder(guest)
        with pytest.raises(UnsupportedOperation):
            await guest.request_to_join("AB23XZ")
        with pytest.raises(UnsupportedOperation):
            await guest.accept_join_request()
        with pytest.raises(UnsupportedOperation):
            await guest.list_active_rooms(lambda rooms: None)
        assert events.count("error") == 3


class SlowEndpoint(InMemoryEndpoint):
    async def open(self, local_id: str) -> None:
        await asyncio.sleep(0.05)
        await super().open(local_id)


class TestDestroyDuringHandshake:
    async def test_destroy_while_host_endpoint_opens(self, hub) -> None:
        host = GameConnection.over_transport(lambda: SlowEndpoint(hub), code_factory=codes("AB23XZ"))
        events = Recorder(host)
        create = asyncio.create_task(host.create_game())
        await asyncio.sleep(0.01)

        await host.destroy()
        with pytest.raises(RequestCancelled):
            await create

        assert hub._lookup("otpg_AB23XZ") is None
        assert host.room_code is None
        assert events.total() == 0

    async def test_destroy_while_guest_endpoint_opens(self, hub, host) -> None:
        await host.create_game()
        guest = GameConnection.over_transport(lambda: SlowEndpoint(hub), code_factory=codes("GUEST2"))
        join = asyncio.create_task(guest.join_game("AB23XZ"))
        await asyncio.sleep(0.01)

        await guest.destroy()
        with pytest.raises(RequestCancelled):
            await join

        assert hub._lookup("otpg_guest_GUEST2") is None
        await settle()
        assert hub._lookup("otpg_AB23XZ") is not None
