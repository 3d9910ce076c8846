import asyncio
import json
from typing import Dict, Optional

import redis

from backend import connect_redis
from redis_keys import REDIS_ROOM_CHANNEL
from schemas.events import Event
from transport import Connection
from logging_config import get_logger

logger = get_logger(__name__)


class LocalBroker:
    """Delivers relay messages to the sockets held by this process.

    A message is a dict ``{"event", "data", "targets"}`` where ``targets`` is
    the list of connection ids computed from the registry snapshot. Targets
    that are not attached here (already gone, or served by another relay
    instance) are skipped.
    """

    name = "memory"

    def __init__(self):
        # Format: {room_id: {connection_id: Connection}}
        self.room_connections: Dict[str, Dict[str, Connection]] = {}

    async def attach(self, room_id: str, connection: Connection):
        if room_id not in self.room_connections:
            self.room_connections[room_id] = {}
        self.room_connections[room_id][connection.connection_id] = connection
        logger.debug(f"Added connection {connection.connection_id} to room {room_id} (local connections: {len(self.room_connections[room_id])})")

    async def detach(self, room_id: str, connection_id: str):
        local = self.room_connections.get(room_id)
        if local is None or connection_id not in local:
            return
        del local[connection_id]
        logger.debug(f"Removed connection {connection_id} from local tracking for room {room_id}")
        if not local:
            del self.room_connections[room_id]
            logger.info(f"No more local connections in room {room_id}, cleaning up")

    async def publish(self, room_id: str, message: dict):
        await self.deliver(room_id, message)

    async def deliver(self, room_id: str, message: dict):
        local = self.room_connections.get(room_id)
        if not local:
            return

        event = message["event"]
        recipients = []
        for conn_id in message.get("targets", []):
            connection = local.get(conn_id)
            if connection is None:
                continue
            if event == Event.SYNC_CODE.value:
                # first reply wins; anything after it (or after a live edit) is stale
                if not connection.awaiting_sync:
                    logger.debug(f"Dropping late sync for connection {conn_id} in room {room_id}")
                    continue
                connection.awaiting_sync = False
            elif event == Event.CODE_CHANGE.value:
                connection.awaiting_sync = False
            recipients.append(connection)

        if not recipients:
            return

        logger.debug(f"Broadcasting {event} to {len(recipients)} local connections in room {room_id}")
        results = await asyncio.gather(
            *(connection.send(event, message["data"]) for connection in recipients),
            return_exceptions=True,
        )
        for connection, result in zip(recipients, results):
            if isinstance(result, Exception):
                # the failing socket's own handler performs the eviction
                logger.warning(f"Error sending to connection {connection.connection_id} in room {room_id}: {result}")

    async def close(self):
        self.room_connections.clear()


class RedisBroker(LocalBroker):
    """Fan-out through a Redis pub/sub channel per room.

    Each instance subscribes to a room's channel while it holds at least one
    socket in that room and delivers every published message to its local
    targets.
    """

    name = "redis"

    def __init__(self, redis_client: redis.Redis, pubsub_client: Optional[redis.Redis] = None):
        super().__init__()
        self.redis_client = redis_client
        # Separate connection for pub/sub (required by Redis)
        self.pubsub_client = pubsub_client or redis_client
        # Format: {room_id: task}
        self.room_pubsub_tasks: Dict[str, asyncio.Task] = {}

    def get_room_channel_name(self, room_id: str) -> str:
        return REDIS_ROOM_CHANNEL.format(slug=room_id)

    async def attach(self, room_id: str, connection: Connection):
        await super().attach(room_id, connection)
        task = self.room_pubsub_tasks.get(room_id)
        if task is None or task.done():
            # subscribe before returning so the JOINED publish that follows is not missed
            pubsub = self.pubsub_client.pubsub()
            pubsub.subscribe(self.get_room_channel_name(room_id))
            self.room_pubsub_tasks[room_id] = asyncio.create_task(self._listen(room_id, pubsub))
            logger.debug(f"Started Redis pub/sub listener for room: {room_id}")

    async def detach(self, room_id: str, connection_id: str):
        await super().detach(room_id, connection_id)
        if room_id in self.room_connections:
            return
        task = self.room_pubsub_tasks.pop(room_id, None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.debug(f"Cancelled pub/sub task for room {room_id}")

    async def publish(self, room_id: str, message: dict):
        channel = self.get_room_channel_name(room_id)
        subscribers = self.redis_client.publish(channel, json.dumps(message))
        logger.debug(f"Published {message['event']} to room {room_id} channel {channel}, {subscribers} subscribers")

    async def _listen(self, room_id: str, pubsub):
        logger.info(f"Starting Redis pub/sub listener for room: {room_id}")
        loop = asyncio.get_running_loop()

        def get_message():
            """Blocking call to get next message from Redis pub/sub with timeout."""
            try:
                return pubsub.get_message(timeout=1.0, ignore_subscribe_messages=True)
            except Exception as e:
                logger.error(f"Error in pubsub.get_message() for room {room_id}: {e}", exc_info=True)
                return None

        try:
            while room_id in self.room_connections:
                message = await loop.run_in_executor(None, get_message)
                if message is None or message.get("type") != "message":
                    continue
                try:
                    payload = json.loads(message["data"])
                except json.JSONDecodeError as e:
                    logger.error(f"Error parsing message from Redis for room {room_id}: {e}")
                    continue
                await self.deliver(room_id, payload)
            logger.info(f"No more connections in room {room_id}, stopping listener")
        except asyncio.CancelledError:
            logger.info(f"Redis listener task cancelled for room: {room_id}")
            raise
        finally:
            try:
                pubsub.close()
                logger.debug(f"Closed pub/sub connection for room: {room_id}")
            except Exception as e:
                logger.error(f"Error closing pub/sub for room {room_id}: {e}")

    async def close(self):
        tasks = list(self.room_pubsub_tasks.values())
        self.room_pubsub_tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await super().close()


def create_broker(backend: str, redis_client: Optional[redis.Redis] = None):
    if backend == "redis":
        if redis_client is None:
            return RedisBroker(connect_redis(), connect_redis())
        return RedisBroker(redis_client)
    if backend == "memory":
        return LocalBroker()
    raise ValueError(f"Unknown relay backend: {backend}")
