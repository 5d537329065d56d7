"""Tests for the room-scoped realtime channel and its cache invalidation."""

import asyncio

import pytest

from livesync import (
    CacheStatus,
    InMemoryHub,
    RealtimeChannel,
    SessionContext,
    make_fingerprint,
)
from livesync.realtime import JOIN_EVENT


RETURNS_B1 = make_fingerprint("returns", {"branch": "b1"})
RETURNS_B2 = make_fingerprint("returns", {"branch": "b2"})
INVENTORY_B1 = make_fingerprint("inventory", {"branch": "b1"})
ORDERS_B1 = make_fingerprint("orders", {"branch": "b1"})


@pytest.fixture
def session():
    return SessionContext(role="branch", branch_id="b1", user_id="u1")


async def fill(cache, *fingerprints):
    async def fetcher():
        return ["row"]

    for fingerprint in fingerprints:
        await cache.read(fingerprint, fetcher)


def test_join_payload_includes_optional_scope():
    chef = SessionContext(role="chef", branch_id="b1", user_id="u2", chef_id="c7", department_id="d3")
    assert chef.join_payload() == {
        "role": "chef",
        "branchId": "b1",
        "userId": "u2",
        "chefId": "c7",
        "departmentId": "d3",
    }
    assert "chefId" not in SessionContext(role="admin", user_id="u1").join_payload()


def test_connect_joins_scope_rooms(cache, session):
    hub = InMemoryHub()

    async def main():
        channel = RealtimeChannel(hub.transport(), session, cache)
        await channel.connect()
        return channel

    channel = asyncio.run(main())
    assert channel.joined
    assert hub.received == [(JOIN_EVENT, session.join_payload())]
    assert hub.members("branch:b1") == 1
    assert hub.members("user:u1") == 1


def test_event_invalidates_matching_entries_for_its_branch(cache, session):
    hub = InMemoryHub()

    async def main():
        await fill(cache, RETURNS_B1, RETURNS_B2, INVENTORY_B1, ORDERS_B1)
        channel = RealtimeChannel(hub.transport(), session, cache)
        await channel.connect()
        delivered = hub.publish("returnCreated", {"branchId": "b1", "returnNumber": "R-1"}, rooms=["branch:b1"])
        return delivered

    assert asyncio.run(main()) == 1
    assert cache.peek(RETURNS_B1).status is CacheStatus.STALE
    assert cache.peek(INVENTORY_B1).status is CacheStatus.STALE
    assert cache.peek(RETURNS_B2).status is CacheStatus.FRESH
    assert cache.peek(ORDERS_B1).status is CacheStatus.FRESH


def test_events_for_other_rooms_are_not_delivered(cache, session):
    hub = InMemoryHub()

    async def main():
        await fill(cache, RETURNS_B2)
        channel = RealtimeChannel(hub.transport(), session, cache)
        await channel.connect()
        return hub.publish("returnCreated", {"branchId": "b2"}, rooms=["branch:b2"])

    assert asyncio.run(main()) == 0
    assert cache.peek(RETURNS_B2).status is CacheStatus.FRESH


def test_events_before_join_are_dropped(cache, session):
    hub = InMemoryHub()
    transport = hub.transport()

    async def main():
        await fill(cache, RETURNS_B1)
        channel = RealtimeChannel(transport, session, cache)
        # Connected but the join task has not run yet
        await transport.connect()
        hub.publish("returnCreated", {"branchId": "b1"})
        dropped = channel.dropped
        await channel.wait_joined()
        return channel, dropped

    channel, dropped = asyncio.run(main())
    assert dropped == 1
    assert cache.peek(RETURNS_B1).status is CacheStatus.FRESH
    assert channel.joined


def test_reconnect_rejoins_same_scope(cache, session):
    hub = InMemoryHub()
    transport = hub.transport()

    async def main():
        channel = RealtimeChannel(transport, session, cache)
        await channel.connect()
        transport.drop()
        lost = channel.joined
        await channel.connect()
        await fill(cache, ORDERS_B1)
        hub.publish("orderCreated", {"branchId": "b1"}, rooms=["branch:b1"])
        return lost, channel.joined

    lost, rejoined = asyncio.run(main())
    assert lost is False
    assert rejoined is True
    joins = [payload for event, payload in hub.received if event == JOIN_EVENT]
    assert joins == [session.join_payload(), session.join_payload()]
    assert cache.peek(ORDERS_B1).status is CacheStatus.STALE


def test_subscription_handles_and_notifications(cache, session):
    hub = InMemoryHub()
    seen = []
    notices = []

    async def main():
        await fill(cache, RETURNS_B1)
        channel = RealtimeChannel(hub.transport(), session, cache)
        await channel.connect()
        channel.add_notifier(notices.append)
        with channel.subscribe("returnStatusUpdated", seen.append):
            hub.publish("returnStatusUpdated", {"branchId": "b1", "status": "approved"})
        hub.publish("returnStatusUpdated", {"branchId": "b1", "status": "rejected"})

    asyncio.run(main())
    assert seen == [{"branchId": "b1", "status": "approved"}]
    assert [n.payload["status"] for n in notices] == ["approved", "rejected"]
    assert notices[0].fingerprints == (RETURNS_B1,)


def test_failing_handler_does_not_stop_others(cache, session, caplog):
    hub = InMemoryHub()
    seen = []

    def broken(payload):
        raise RuntimeError("handler bug")

    async def main():
        channel = RealtimeChannel(hub.transport(), session, cache)
        await channel.connect()
        channel.subscribe("inventoryUpdated", broken)
        channel.subscribe("inventoryUpdated", seen.append)
        hub.publish("inventoryUpdated", {"branchId": "b1", "productId": "p1"})

    asyncio.run(main())
    assert seen == [{"branchId": "b1", "productId": "p1"}]
    assert "handler bug" in caplog.text


def test_custom_route(cache, session):
    hub = InMemoryHub()
    tasks = make_fingerprint("tasks", {"chef": "c1"})

    async def main():
        await fill(cache, tasks)
        channel = RealtimeChannel(hub.transport(), session, cache)
        channel.route("taskAssigned", lambda payload, _: (lambda fp: fp.startswith("tasks:")), notify=False)
        await channel.connect()
        hub.publish("taskAssigned", {"chefId": "c1"})

    asyncio.run(main())
    assert cache.peek(tasks).status is CacheStatus.STALE


def test_close_disconnects_and_unbinds(cache, session):
    hub = InMemoryHub()
    transport = hub.transport()

    async def main():
        channel = RealtimeChannel(transport, session, cache)
        await channel.connect()
        await channel.close()
        return channel

    channel = asyncio.run(main())
    assert not transport.connected
    assert not channel.joined
    assert hub.publish("returnCreated", {"branchId": "b1"}) == 0
