import asyncio

import pytest

from connection import GameConnection
from errors import (
    HostDisconnected,
    RequestCancelled,
    RequestConflict,
    RequestRejected,
    RoomFull,
    RoomNotFound,
)
from helpers import Recorder, eventually, settle
from memory_store import InMemoryStore

ROOM = "rooms/default/AB23XZ"


async def pending_request(host: GameConnection, guest: GameConnection, server: InMemoryStore):
    """Create a room and file a join request; returns the requester's running operation."""
    host_events = Recorder(host)
    await host.create_game()
    request = asyncio.create_task(guest.request_to_join("AB23XZ"))
    await eventually(lambda: host_events.count("join_request") == 1)
    assert server.snapshot(ROOM)["joinRequest"] == {"status": "pending"}
    return request, host_events


class TestRequestToJoin:
    async def test_accept(self, host, guest, server) -> None:
        guest_events = Recorder(guest)
        request, host_events = await pending_request(host, guest, server)

        await host.accept_join_request()
        await request

        await eventually(lambda: host_events.count("connected") == 1)
        await settle()
        record = server.snapshot(ROOM)
        assert record["guest"] is True
        assert record["joinRequest"]["status"] != "pending"
        assert guest_events.count("connected") == 1
        assert guest_events.count("error") == 0
        assert host_events.count("join_request") == 1
        # The request hook was traded for the guest's own presence hook
        assert guest.backend.store.pending_on_disconnect() == {f"{ROOM}/guest": ("set", False)}

    async def test_accepted_guest_can_play(self, host, guest, server) -> None:
        guest_events = Recorder(guest)
        request, host_events = await pending_request(host, guest, server)
        await host.accept_join_request()
        await request
        await eventually(lambda: host_events.count("connected") == 1)

        await guest.send({"type": "move", "index": 0})
        await eventually(lambda: host_events.count("data") == 1)
        assert host_events.calls["data"] == [({"type": "move", "index": 0},)]
        assert guest_events.count("data") == 0

    async def test_reject(self, host, guest, server) -> None:
        guest_events = Recorder(guest)
        request, host_events = await pending_request(host, guest, server)

        await host.reject_join_request()
        with pytest.raises(RequestRejected):
            await request

        await settle()
        assert server.snapshot(ROOM) == {"host": True, "guest": False}
        assert guest_events.count("error") == 1
        assert isinstance(guest_events.calls["error"][0][0], RequestRejected)
        assert guest_events.count("connected") == 0
        assert host_events.count("connected") == 0
        assert guest.backend.store.pending_on_disconnect() == {}

    async def test_requests_are_served_one_after_another(self, host, guest, server) -> None:
        request, host_events = await pending_request(host, guest, server)
        await host.reject_join_request()
        with pytest.raises(RequestRejected):
            await request

        second = asyncio.create_task(guest.request_to_join("AB23XZ"))
        await eventually(lambda: host_events.count("join_request") == 2)
        await host.accept_join_request()
        await second
        assert server.snapshot(ROOM)["guest"] is True

    async def test_host_disconnects_while_pending(self, host, guest, server) -> None:
        guest_events = Recorder(guest)
        request, _ = await pending_request(host, guest, server)

        await host.backend.store.disconnect()
        with pytest.raises(HostDisconnected):
            await request

        await settle()
        record = server.snapshot(ROOM)
        assert record == {"host": False, "guest": False}
        assert guest_events.count("error") == 1
        assert guest_events.count("connected") == 0

    async def test_late_acceptance_after_host_left(self, host, guest, server) -> None:
        guest_events = Recorder(guest)
        request, _ = await pending_request(host, guest, server)

        await host.backend.store.disconnect()
        with pytest.raises(HostDisconnected):
            await request

        await server.client().write(f"{ROOM}/joinRequest/status", "accepted")
        await settle()
        assert server.snapshot(f"{ROOM}/guest") is False
        assert guest_events.count("connected") == 0
        assert guest.role is None

    async def test_host_leaving_right_after_accepting(self, host, guest, server) -> None:
        guest_events = Recorder(guest)
        request, _ = await pending_request(host, guest, server)

        await host.accept_join_request()
        await host.destroy()
        with pytest.raises(HostDisconnected):
            await request

        await settle()
        assert server.snapshot(ROOM) is None
        assert guest_events.count("connected") == 0
        assert guest_events.count("disconnected") == 0
        assert isinstance(guest_events.calls["error"][0][0], HostDisconnected)

    async def test_request_removed_by_someone_else(self, host, guest, server) -> None:
        request, _ = await pending_request(host, guest, server)

        await server.client().remove(f"{ROOM}/joinRequest")
        with pytest.raises(RequestCancelled):
            await request
        assert server.snapshot(ROOM) == {"host": True, "guest": False}

    async def test_requester_vanishing_drops_the_request(self, host, guest, server) -> None:
        request, _ = await pending_request(host, guest, server)

        await guest.backend.store.disconnect()
        assert server.snapshot(ROOM) == {"host": True, "guest": False}

        await guest.destroy()
        with pytest.raises(RequestCancelled):
            await request

    async def test_destroy_while_pending(self, host, guest, server) -> None:
        guest_events = Recorder(guest)
        request, _ = await pending_request(host, guest, server)

        await guest.destroy()
        with pytest.raises(RequestCancelled):
            await request
        assert server.snapshot(ROOM) == {"host": True, "guest": False}

        # A late answer reaches nobody
        await host.accept_join_request()
        await settle()
        assert guest_events.total() == 0
        assert server.snapshot(ROOM)["guest"] is False

    async def test_second_requester_conflicts(self, host, guest, server) -> None:
        request, _ = await pending_request(host, guest, server)
        other = GameConnection.over_store(server.client())
        other_events = Recorder(other)

        with pytest.raises(RequestConflict):
            await other.request_to_join("AB23XZ")
        assert other_events.count("error") == 1

        await host.accept_join_request()
        await request
        await other.destroy()

    async def test_full_room(self, host, guest, server) -> None:
        await host.create_game()
        await guest.join_game("AB23XZ")
        other = GameConnection.over_store(server.client())

        with pytest.raises(RoomFull):
            await other.request_to_join("AB23XZ")
        with pytest.raises(RoomFull):
            await other.join_game("AB23XZ")
        await other.destroy()

    async def test_missing_room(self, guest, server) -> None:
        guest_events = Recorder(guest)
        with pytest.raises(RoomNotFound):
            await guest.request_to_join("ZZZZZZ")
        assert server.snapshot("rooms") is None
        assert guest_events.count("error") == 1

    async def test_only_the_host_answers(self, host, guest, server) -> None:
        await host.create_game()
        with pytest.raises(RuntimeError):
            await guest.accept_join_request()
        with pytest.raises(RuntimeError):
            await guest.reject_join_request()
