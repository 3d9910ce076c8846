import asyncio
import random

import fakeredis
import pytest

from backend import RoomRegistry, RedisRoomRegistry, create_registry


def run(coro):
    return asyncio.run(coro)


def ids(members):
    return [m.connection_id for m in members]


@pytest.fixture(params=["memory", "redis"])
def any_registry(request):
    if request.param == "memory":
        return RoomRegistry()
    return RedisRoomRegistry(fakeredis.FakeRedis(decode_responses=True))


def test_admit_creates_room_and_returns_snapshot_after_admission(any_registry):
    async def scenario():
        first = await any_registry.admit("r1", "a", "Alice")
        second = await any_registry.admit("r1", "b", "Bob")
        return first, second

    first, second = run(scenario())
    assert ids(first) == ["a"]
    assert sorted(ids(second)) == ["a", "b"]
    assert {m.display_name for m in second} == {"Alice", "Bob"}
    assert all(m.room_id == "r1" for m in second)


def test_admit_is_idempotent_per_connection(any_registry):
    async def scenario():
        await any_registry.admit("r1", "a", "Alice")
        await any_registry.admit("r1", "a", "Alice")
        return await any_registry.members_of("r1")

    members = run(scenario())
    assert ids(members) == ["a"]


def test_readmit_updates_display_name(any_registry):
    async def scenario():
        await any_registry.admit("r1", "a", "Alice")
        await any_registry.admit("r1", "a", "Alicia")
        return await any_registry.members_of("r1")

    members = run(scenario())
    assert [m.display_name for m in members] == ["Alicia"]


def test_admit_to_other_room_moves_the_connection(any_registry):
    async def scenario():
        await any_registry.admit("r1", "a", "Alice")
        await any_registry.admit("r1", "b", "Bob")
        moved = await any_registry.admit("r2", "a", "Alice")
        return moved, await any_registry.members_of("r1"), await any_registry.participant("a")

    moved, old_room, participant = run(scenario())
    assert ids(moved) == ["a"]
    assert ids(old_room) == ["b"]
    assert participant.room_id == "r2"


def test_evict_returns_vacated_room_and_name(any_registry):
    async def scenario():
        await any_registry.admit("r1", "a", "Alice")
        await any_registry.admit("r1", "b", "Bob")
        evicted = await any_registry.evict("a")
        return evicted, await any_registry.members_of("r1")

    evicted, remaining = run(scenario())
    assert (evicted.room_id, evicted.display_name) == ("r1", "Alice")
    assert ids(remaining) == ["b"]


def test_evict_unknown_connection_is_ignored(any_registry):
    assert run(any_registry.evict("never-joined")) is None


def test_empty_room_is_dropped(any_registry):
    async def scenario():
        await any_registry.admit("r1", "a", "Alice")
        await any_registry.admit("r2", "b", "Bob")
        await any_registry.evict("a")
        return await any_registry.rooms(), await any_registry.members_of("r1")

    rooms, members = run(scenario())
    assert rooms == ["r2"]
    assert members == []


def test_moving_last_member_drops_old_room(any_registry):
    async def scenario():
        await any_registry.admit("r1", "a", "Alice")
        await any_registry.admit("r2", "a", "Alice")
        return await any_registry.rooms()

    assert run(scenario()) == ["r2"]


def test_snapshots_are_copies():
    registry = RoomRegistry()

    async def scenario():
        snapshot = await registry.admit("r1", "a", "Alice")
        snapshot.clear()
        return await registry.members_of("r1")

    assert ids(run(scenario())) == ["a"]


def test_memory_registry_keeps_admission_order():
    registry = RoomRegistry()

    async def scenario():
        for conn_id in ["c", "a", "b"]:
            await registry.admit("r1", conn_id, conn_id.upper())
        # re-admitting does not move a member to the end
        await registry.admit("r1", "c", "C")
        return await registry.members_of("r1")

    assert ids(run(scenario())) == ["c", "a", "b"]


@pytest.mark.parametrize("seed", range(10))
def test_random_interleavings_match_a_simple_model(seed):
    rng = random.Random(seed)
    registry = RoomRegistry()
    model = {}  # connection_id -> room_id

    async def scenario():
        for _ in range(300):
            conn_id = f"c{rng.randrange(12)}"
            if rng.random() < 0.6:
                room_id = f"r{rng.randrange(3)}"
                await registry.admit(room_id, conn_id, conn_id)
                model[conn_id] = room_id
            else:
                evicted = await registry.evict(conn_id)
                if conn_id in model:
                    assert evicted.room_id == model.pop(conn_id)
                else:
                    assert evicted is None

            for room_id in ["r0", "r1", "r2"]:
                members = ids(await registry.members_of(room_id))
                assert len(members) == len(set(members))
                assert set(members) == {c for c, r in model.items() if r == room_id}
            assert set(await registry.rooms()) == set(model.values())

    run(scenario())


def test_concurrent_admits_and_evicts_leave_a_consistent_roster():
    registry = RoomRegistry()

    async def churn(conn_id):
        for _ in range(20):
            await registry.admit("r1", conn_id, conn_id)
            await asyncio.sleep(0)
            await registry.evict(conn_id)
        await registry.admit("r1", conn_id, conn_id)

    async def scenario():
        await asyncio.gather(*(churn(f"c{i}") for i in range(8)))
        return await registry.members_of("r1")

    members = run(scenario())
    assert sorted(ids(members)) == sorted(f"c{i}" for i in range(8))


def test_redis_registry_writes_expected_keys():
    redis_client = fakeredis.FakeRedis(decode_responses=True)
    registry = RedisRoomRegistry(redis_client, ttl=60)

    run(registry.admit("r1", "a", "Alice"))

    assert redis_client.smembers("room:users:r1") == {"a"}
    assert redis_client.hget("conn:a", "display_name") == "Alice"
    assert redis_client.hget("conn:a", "room_id") == "r1"
    assert redis_client.hget("conn:a", "instance_id") == registry.instance_id
    assert redis_client.sismember("rooms:active", "r1")
    assert 0 < redis_client.ttl("conn:a") <= 60

    run(registry.evict("a"))
    assert not redis_client.exists("conn:a")
    assert not redis_client.exists("room:users:r1")
    assert not redis_client.sismember("rooms:active", "r1")


def test_create_registry_rejects_unknown_backend():
    assert isinstance(create_registry("memory"), RoomRegistry)
    with pytest.raises(ValueError):
        create_registry("sqlite")


def test_members_of_a_dead_relay_instance_are_purged():
    server = fakeredis.FakeServer()
    old = RedisRoomRegistry(fakeredis.FakeRedis(server=server, decode_responses=True))
    run(old.admit("r1", "ghost", "Ghost"))

    # the old process is gone: its heartbeat key expired and nobody evicted its sockets
    redis_client = fakeredis.FakeRedis(server=server, decode_responses=True)
    redis_client.delete(f"relay:instance:{old.instance_id}")
    restarted = RedisRoomRegistry(redis_client)

    async def scenario():
        snapshot = await restarted.admit("r1", "b", "Bob")
        return snapshot, await restarted.participant("ghost")

    snapshot, ghost = run(scenario())
    assert ids(snapshot) == ["b"]
    assert ghost is None
    assert redis_client.smembers("room:users:r1") == {"b"}
    assert not redis_client.exists("conn:ghost")


def test_room_holding_only_dead_members_counts_as_empty():
    server = fakeredis.FakeServer()
    old = RedisRoomRegistry(fakeredis.FakeRedis(server=server, decode_responses=True))
    run(old.admit("r1", "ghost", "Ghost"))

    redis_client = fakeredis.FakeRedis(server=server, decode_responses=True)
    redis_client.delete(f"relay:instance:{old.instance_id}")
    restarted = RedisRoomRegistry(redis_client)

    async def scenario():
        return await restarted.rooms(), await restarted.members_of("r1")

    rooms, members = run(scenario())
    assert rooms == []
    assert members == []
    assert not redis_client.sismember("rooms:active", "r1")


def test_live_instances_share_one_roster():
    server = fakeredis.FakeServer()
    first = RedisRoomRegistry(fakeredis.FakeRedis(server=server, decode_responses=True))
    second = RedisRoomRegistry(fakeredis.FakeRedis(server=server, decode_responses=True))

    async def scenario():
        await first.admit("r1", "a", "Alice")
        return await second.admit("r1", "b", "Bob")

    assert sorted(ids(run(scenario()))) == ["a", "b"]


def test_closed_instance_drops_its_heartbeat():
    redis_client = fakeredis.FakeRedis(decode_responses=True)
    registry = RedisRoomRegistry(redis_client, instance_ttl=60)
    key = f"relay:instance:{registry.instance_id}"
    assert 0 < redis_client.ttl(key) <= 60

    async def scenario():
        await registry.start()
        await registry.close()

    run(scenario())
    assert not redis_client.exists(key)
