from typing import Optional

from constants import DEFAULT_DISPLAY_NAME_PREFIX
from schemas.events import Event, ConnectedPayload, JoinPayload, JoinedPayload, DisconnectedPayload, Member
from schemas.rooms import Participant
from transport import Connection, ConnectionState
from logging_config import get_logger

logger = get_logger(__name__)


def resolve_display_name(display_name: Optional[str], connection_id: str) -> str:
    if display_name and display_name.strip():
        return display_name.strip()
    return f"{DEFAULT_DISPLAY_NAME_PREFIX}{connection_id[:8]}"


class PresenceManager:
    """Admits and evicts connections and tells rooms about it.

    The registry is the only source of membership: notifications go to the
    connection ids in the snapshot the registry returned, never to a locally
    cached roster.
    """

    def __init__(self, registry, broker):
        self.registry = registry
        self.broker = broker

    async def connect(self, connection: Connection):
        await connection.send(Event.CONNECTED, ConnectedPayload(connection_id=connection.connection_id).to_wire())
        logger.debug(f"Assigned connection id {connection.connection_id}")

    async def join(self, connection: Connection, payload: JoinPayload) -> list[Participant]:
        connection.state = ConnectionState.JOINING
        display_name = resolve_display_name(payload.display_name, connection.connection_id)

        current = await self.registry.participant(connection.connection_id)
        rejoin = current is not None and current.room_id == payload.room_id
        if current is not None and not rejoin:
            logger.info(f"User {connection.connection_id} switching from room {current.room_id} to {payload.room_id}")
            await self.leave(connection)
            connection.state = ConnectionState.JOINING

        members = await self.registry.admit(payload.room_id, connection.connection_id, display_name)
        connection.room_id = payload.room_id
        connection.state = ConnectionState.JOINED
        if not rejoin:
            # someone already holds the document, so accept exactly one sync reply
            connection.awaiting_sync = len(members) > 1
        await self.broker.attach(payload.room_id, connection)
        logger.info(f"User {connection.connection_id} ({display_name}) joined room {payload.room_id}, {len(members)} online")

        joined = JoinedPayload(
            members=[Member(connection_id=m.connection_id, display_name=m.display_name) for m in members],
            display_name=display_name,
            connection_id=connection.connection_id,
        )
        await self.broker.publish(payload.room_id, {
            "event": Event.JOINED.value,
            "data": joined.to_wire(),
            "targets": [m.connection_id for m in members],
        })
        return members

    async def leave(self, connection: Connection) -> Optional[Participant]:
        participant = await self.registry.evict(connection.connection_id)
        connection.state = ConnectionState.DISCONNECTED
        connection.room_id = None
        connection.awaiting_sync = False
        if participant is None:
            return None

        await self.broker.detach(participant.room_id, connection.connection_id)
        logger.info(f"User {connection.connection_id} ({participant.display_name}) left room {participant.room_id}")

        remaining = await self.registry.members_of(participant.room_id)
        if remaining:
            await self.broker.publish(participant.room_id, {
                "event": Event.DISCONNECTED.value,
                "data": DisconnectedPayload(
                    connection_id=participant.connection_id,
                    display_name=participant.display_name,
                ).to_wire(),
                "targets": [m.connection_id for m in remaining],
            })
        return participant
