import asyncio
import uuid
from datetime import datetime
from typing import Dict, Iterable, Optional

import redis

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REDIS_KEY_TTL, REDIS_INSTANCE_TTL
from redis_keys import REDIS_USERS_KEY, REDIS_CONN_KEY, REDIS_ROOMS_KEY, REDIS_INSTANCE_KEY
from schemas.rooms import Participant
from logging_config import get_logger

logger = get_logger(__name__)


def connect_redis() -> redis.Redis:
    try:
        client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
        # Test connection
        client.ping()
        logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
        return client
    except Exception as e:
        logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
        raise


class RoomRegistry:
    """Authoritative room -> members map held in process memory.

    Every operation runs under one lock so a join and a disconnect on
    different connections never interleave mid-mutation. Snapshots are
    fresh lists of frozen ``Participant`` objects, listed in admission order.
    """

    name = "memory"

    def __init__(self):
        self._rooms: Dict[str, Dict[str, Participant]] = {}
        self._participants: Dict[str, Participant] = {}
        self._lock = asyncio.Lock()

    async def start(self):
        pass

    async def close(self):
        pass

    async def admit(self, room_id: str, connection_id: str, display_name: str) -> list[Participant]:
        async with self._lock:
            current = self._participants.get(connection_id)
            if current is not None and current.room_id != room_id:
                logger.debug(f"Moving {connection_id} from room {current.room_id} to {room_id}")
                self._remove(current)
                current = None

            if current is None:
                participant = Participant(
                    connection_id=connection_id,
                    display_name=display_name,
                    room_id=room_id,
                    joined_at=datetime.now().isoformat(),
                )
                logger.debug(f"User {connection_id} added to room {room_id} (new user)")
            else:
                participant = current.model_copy(update={"display_name": display_name})
                logger.debug(f"User {connection_id} already exists in room {room_id}")

            self._participants[connection_id] = participant
            # re-assigning an existing key keeps its original position
            self._rooms.setdefault(room_id, {})[connection_id] = participant
            return list(self._rooms[room_id].values())

    async def evict(self, connection_id: str) -> Optional[Participant]:
        async with self._lock:
            current = self._participants.get(connection_id)
            if current is None:
                logger.debug(f"Evict ignored: connection {connection_id} was never admitted")
                return None
            self._remove(current)
            return current

    async def members_of(self, room_id: str) -> list[Participant]:
        async with self._lock:
            return list(self._rooms.get(room_id, {}).values())

    async def participant(self, connection_id: str) -> Optional[Participant]:
        async with self._lock:
            return self._participants.get(connection_id)

    async def rooms(self) -> list[str]:
        async with self._lock:
            return list(self._rooms)

    def _remove(self, participant: Participant):
        del self._participants[participant.connection_id]
        members = self._rooms.get(participant.room_id)
        if members is None:
            return
        members.pop(participant.connection_id, None)
        if not members:
            del self._rooms[participant.room_id]
            logger.info(f"Room {participant.room_id} is empty, removed from registry")


class RedisRoomRegistry:
    """Same contract as ``RoomRegistry`` with membership kept in Redis.

    Lets several relay instances share one roster. Mutations go out as a
    single MULTI pipeline. Each instance tags the members it admits with its
    instance id and keeps a short-lived heartbeat key for that id; members of
    an instance whose heartbeat has expired are purged the next time a
    snapshot sees them, so a restarted relay does not inherit dead sockets.
    """

    name = "redis"

    def __init__(self, redis_client: redis.Redis, ttl: int = REDIS_KEY_TTL,
                 instance_ttl: int = REDIS_INSTANCE_TTL, instance_id: Optional[str] = None):
        self.redis_client = redis_client
        self.ttl = ttl
        self.instance_ttl = instance_ttl
        self.instance_id = instance_id or uuid.uuid4().hex
        self._lock = asyncio.Lock()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._touch()
        logger.info(f"Initializing RedisRoomRegistry {self.instance_id} with key TTL {ttl} seconds")

    async def start(self):
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat())

    async def close(self):
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        self.redis_client.delete(REDIS_INSTANCE_KEY.format(instance_id=self.instance_id))
        logger.info(f"Registry instance {self.instance_id} stopped")

    async def admit(self, room_id: str, connection_id: str, display_name: str) -> list[Participant]:
        async with self._lock:
            self._touch()
            current = self._load(connection_id)
            joined_at = datetime.now().isoformat()
            moved_from = None

            users_key = REDIS_USERS_KEY.format(slug=room_id)
            conn_key = REDIS_CONN_KEY.format(connection_id=connection_id)
            pipe = self.redis_client.pipeline(transaction=True)
            if current is not None:
                if current.room_id != room_id:
                    moved_from = current.room_id
                    pipe.srem(REDIS_USERS_KEY.format(slug=moved_from), connection_id)
                else:
                    joined_at = current.joined_at
            pipe.sadd(users_key, connection_id)
            pipe.hset(conn_key, mapping={
                "room_id": room_id,
                "display_name": display_name,
                "joined_at": joined_at,
                "instance_id": self.instance_id,
            })
            pipe.expire(users_key, self.ttl)
            pipe.expire(conn_key, self.ttl)
            pipe.sadd(REDIS_ROOMS_KEY, room_id)
            pipe.smembers(users_key)
            results = pipe.execute()

            if moved_from is not None:
                logger.debug(f"Moved {connection_id} from room {moved_from} to {room_id}")
                self._forget_room_if_empty(moved_from)
            logger.debug(f"User {connection_id} admitted to room {room_id}")
            return self._snapshot(room_id, results[-1])

    async def evict(self, connection_id: str) -> Optional[Participant]:
        async with self._lock:
            current = self._load(connection_id)
            if current is None:
                logger.debug(f"Evict ignored: connection {connection_id} was never admitted")
                return None
            pipe = self.redis_client.pipeline(transaction=True)
            pipe.srem(REDIS_USERS_KEY.format(slug=current.room_id), connection_id)
            pipe.delete(REDIS_CONN_KEY.format(connection_id=connection_id))
            removed, deleted = pipe.execute()
            logger.debug(f"User {connection_id} removed from room {current.room_id}: user_set={removed}, metadata={deleted}")
            self._forget_room_if_empty(current.room_id)
            return current

    async def members_of(self, room_id: str) -> list[Participant]:
        async with self._lock:
            connection_ids = self.redis_client.smembers(REDIS_USERS_KEY.format(slug=room_id))
            return self._snapshot(room_id, connection_ids)

    async def participant(self, connection_id: str) -> Optional[Participant]:
        async with self._lock:
            return self._load(connection_id)

    async def rooms(self) -> list[str]:
        async with self._lock:
            live = []
            for room_id in sorted(self.redis_client.smembers(REDIS_ROOMS_KEY)):
                connection_ids = self.redis_client.smembers(REDIS_USERS_KEY.format(slug=room_id))
                if self._snapshot(room_id, connection_ids):
                    live.append(room_id)
                else:
                    self._forget_room_if_empty(room_id)
            return live

    def _touch(self):
        self.redis_client.set(REDIS_INSTANCE_KEY.format(instance_id=self.instance_id), "1", ex=self.instance_ttl)

    async def _heartbeat(self):
        interval = max(self.instance_ttl / 3, 1)
        while True:
            await asyncio.sleep(interval)
            try:
                self._touch()
            except redis.RedisError as e:
                logger.error(f"Failed to refresh heartbeat for instance {self.instance_id}: {e}")

    def _alive(self, instance_ids: Iterable[str]) -> set:
        ordered = sorted(set(instance_ids))
        if not ordered:
            return set()
        pipe = self.redis_client.pipeline(transaction=False)
        for instance_id in ordered:
            pipe.exists(REDIS_INSTANCE_KEY.format(instance_id=instance_id))
        return {instance_id for instance_id, found in zip(ordered, pipe.execute()) if found}

    def _purge(self, connection_id: str, room_id: str):
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.srem(REDIS_USERS_KEY.format(slug=room_id), connection_id)
        pipe.delete(REDIS_CONN_KEY.format(connection_id=connection_id))
        pipe.execute()
        logger.info(f"Purged {connection_id} from room {room_id}: its relay instance is gone")

    def _load(self, connection_id: str) -> Optional[Participant]:
        data = self.redis_client.hgetall(REDIS_CONN_KEY.format(connection_id=connection_id))
        if not data:
            return None
        instance_id = data.pop("instance_id", "")
        if instance_id not in self._alive([instance_id]):
            self._purge(connection_id, data["room_id"])
            self._forget_room_if_empty(data["room_id"])
            return None
        return Participant(connection_id=connection_id, **data)

    def _snapshot(self, room_id: str, connection_ids: Iterable[str]) -> list[Participant]:
        ordered = sorted(connection_ids)
        pipe = self.redis_client.pipeline(transaction=False)
        for conn_id in ordered:
            pipe.hgetall(REDIS_CONN_KEY.format(connection_id=conn_id))
        rows = pipe.execute() if ordered else []
        alive = self._alive(row.get("instance_id", "") for row in rows if row)

        members = []
        for conn_id, row in zip(ordered, rows):
            # metadata can vanish between the two round trips if another relay evicted it
            if not row or row.get("room_id") != room_id:
                continue
            instance_id = row.pop("instance_id", "")
            if instance_id not in alive:
                self._purge(conn_id, room_id)
                continue
            members.append(Participant(connection_id=conn_id, **row))
        members.sort(key=lambda p: (p.joined_at, p.connection_id))
        return members

    def _forget_room_if_empty(self, room_id: str):
        if self.redis_client.scard(REDIS_USERS_KEY.format(slug=room_id)) == 0:
            self.redis_client.srem(REDIS_ROOMS_KEY, room_id)
            logger.info(f"Room {room_id} is empty, removed from registry")


def create_registry(backend: str, redis_client: Optional[redis.Redis] = None):
    if backend == "redis":
        return RedisRoomRegistry(redis_client or connect_redis())
    if backend == "memory":
        return RoomRegistry()
    raise ValueError(f"Unknown relay backend: {backend}")
