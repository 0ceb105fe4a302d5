import asyncio

import pytest

from errors import RequestCancelled, RoomFull
from helpers import eventually, settle
from memory_store import InMemoryStore
from schemas.rooms import Role
from session.channel import MessageChannel
from session.events import SessionEvents
from session.presence import PresenceMonitor
from session.room import Session
from session.scope import SubscriptionScope


def make_session(store, role: Role) -> Session:
    return Session(role=role, game_id="g", room_code="AB23XZ", scope=SubscriptionScope(store))


class TestSessionEvents:
    def test_connected_fires_once(self) -> None:
        events = SessionEvents()
        calls = []
        events.on("connected", lambda: calls.append(1))
        events.connected()
        events.connected()
        assert calls == [1]

    def test_data_fires_every_time(self) -> None:
        events = SessionEvents()
        calls = []
        events.on("data", calls.append)
        events.data(1)
        events.data(1)
        assert calls == [1, 1]

    def test_error_without_listener_is_dropped(self) -> None:
        events = SessionEvents()
        events.error(RoomFull())

    def test_unknown_event_is_refused(self) -> None:
        with pytest.raises(ValueError):
            SessionEvents().on("message", print)

    def test_nothing_fires_after_close(self) -> None:
        events = SessionEvents()
        calls = []
        for name in ("connected", "data", "disconnected", "join_request", "error"):
            events.on(name, lambda *args, name=name: calls.append(name))
        events.close()
        events.connected()
        events.data("x")
        events.disconnected()
        events.join_request()
        events.error(RoomFull())
        assert calls == []

    def test_remove_listener(self) -> None:
        events = SessionEvents()
        calls = []
        events.on("data", calls.append)
        events.remove_listener("data", calls.append)
        events.data("x")
        assert calls == []


class TestSubscriptionScope:
    async def test_close_fails_waits(self) -> None:
        scope = SubscriptionScope(name="test")
        future = scope.future()
        await scope.aclose()
        with pytest.raises(RequestCancelled):
            await future

    async def test_close_cancels_tasks(self) -> None:
        scope = SubscriptionScope(name="test")
        task = scope.spawn(asyncio.sleep(10))
        await scope.aclose()
        assert task.cancelled()

    async def test_closed_scope_refuses_work(self) -> None:
        scope = SubscriptionScope(name="test")
        await scope.aclose()
        with pytest.raises(RequestCancelled):
            scope.ensure_open()
        with pytest.raises(RequestCancelled):
            scope.future()
        coro = asyncio.sleep(0)
        with pytest.raises(RequestCancelled):
            scope.spawn(coro)

    async def test_children_close_with_parent(self) -> None:
        parent = SubscriptionScope(name="parent")
        child = parent.child("child")
        await parent.aclose()
        assert child.closed
        assert child.name == "parent/child"

    async def test_task_failure_reaches_handler(self) -> None:
        scope = SubscriptionScope(name="test")
        failures = []

        async def fail():
            raise RoomFull()

        scope.spawn(fail(), on_error=failures.append)
        await eventually(lambda: len(failures) == 1)
        assert isinstance(failures[0], RoomFull)
        await scope.aclose()

    async def test_close_releases_store_registrations(self) -> None:
        store = InMemoryStore().client()
        scope = SubscriptionScope(store, name="test")
        seen = []
        await scope.subscribe_value("rooms/g/AB23XZ", seen.append)
        await scope.on_disconnect_set("rooms/g/AB23XZ/host", False)

        await scope.aclose()
        await store.write("rooms/g/AB23XZ", {"host": True})
        await settle()

        assert seen == []
        assert store.pending_on_disconnect() == {}


class TestMessageChannel:
    async def test_echo_suppressed(self) -> None:
        server = InMemoryStore()
        host_store, guest_store = server.client(), server.client()
        host_events, guest_events = SessionEvents(), SessionEvents()
        host_seen, guest_seen = [], []
        host_events.on("data", host_seen.append)
        guest_events.on("data", guest_seen.append)

        host_channel = MessageChannel(host_store, make_session(host_store, Role.HOST), host_events)
        guest_channel = MessageChannel(guest_store, make_session(guest_store, Role.GUEST), guest_events)
        await host_channel.listen()
        await guest_channel.listen()

        key = await host_channel.send({"index": 4})
        await settle()

        assert server.snapshot(f"rooms/g/AB23XZ/messages/{key}") == {"from": "host", "data": {"index": 4}}
        assert guest_seen == [{"index": 4}]
        assert host_seen == []

    async def test_malformed_entries_are_skipped(self) -> None:
        server = InMemoryStore()
        store = server.client()
        events = SessionEvents()
        seen = []
        events.on("data", seen.append)
        channel = MessageChannel(store, make_session(store, Role.GUEST), events)
        await channel.listen()

        await server.client().append("rooms/g/AB23XZ/messages", {"from": "referee", "data": 1})
        await server.client().append("rooms/g/AB23XZ/messages", {"from": "host", "data": 2})
        await settle()

        assert seen == [2]


class TestPresenceMonitor:
    async def test_disconnect_reported_once(self) -> None:
        server = InMemoryStore()
        store, writer = server.client(), server.client()
        await writer.write("rooms/g/AB23XZ", {"host": True, "guest": True})
        events = SessionEvents()
        calls = []
        events.on("disconnected", lambda: calls.append(1))

        monitor = PresenceMonitor(SubscriptionScope(store), events)
        await monitor.watch("rooms/g/AB23XZ/host")
        await settle()
        assert calls == []

        await writer.write("rooms/g/AB23XZ/host", False)
        await settle()
        await writer.write("rooms/g/AB23XZ/host", True)
        await settle()
        await writer.remove("rooms/g/AB23XZ")
        await settle()

        assert calls == [1]
        assert monitor.gone

    async def test_missing_record_counts_as_gone(self) -> None:
        store = InMemoryStore().client()
        events = SessionEvents()
        calls = []
        events.on("disconnected", lambda: calls.append(1))

        await PresenceMonitor(SubscriptionScope(store), events).watch("rooms/g/AB23XZ/guest")
        await settle()
        assert calls == [1]
