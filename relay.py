from errors import NotJoinedError, RoomMismatchError
from schemas.events import Event, CodeChangePayload, SyncCodePayload, ChatPayload
from schemas.rooms import Participant
from transport import Connection
from logging_config import get_logger

logger = get_logger(__name__)


class SyncRelay:
    """Forwards buffer changes, chat and late-joiner syncs inside one room.

    Nothing is stored: the relay looks up the sender's room, picks the
    recipients from the registry snapshot and hands the payload to the broker
    unchanged.
    """

    def __init__(self, registry, broker):
        self.registry = registry
        self.broker = broker

    async def code_change(self, connection: Connection, payload: CodeChangePayload):
        sender = await self._require_member(connection)
        if payload.room_id != sender.room_id:
            raise RoomMismatchError(f"Connection is joined to room {sender.room_id}, not {payload.room_id}")
        await self._fan_out(sender, Event.CODE_CHANGE, payload.to_wire())

    async def chat(self, connection: Connection, payload: ChatPayload):
        sender = await self._require_member(connection)
        await self._fan_out(sender, Event.MESSAGE, payload.to_wire())

    async def sync_code(self, connection: Connection, payload: SyncCodePayload):
        sender = await self._require_member(connection)
        if payload.text is None:
            logger.debug(f"Ignoring empty sync from {sender.connection_id}")
            return
        if payload.connection_id == sender.connection_id:
            logger.debug(f"Ignoring self-targeted sync from {sender.connection_id}")
            return

        target = await self.registry.participant(payload.connection_id)
        if target is None:
            # newcomer left before any member answered
            logger.debug(f"Sync target {payload.connection_id} is gone, dropping")
            return
        if target.room_id != sender.room_id:
            logger.warning(f"Sync from {sender.connection_id} in room {sender.room_id} targets {payload.connection_id} in room {target.room_id}, dropping")
            return

        await self.broker.publish(sender.room_id, {
            "event": Event.SYNC_CODE.value,
            "data": payload.to_wire(),
            "targets": [target.connection_id],
        })

    async def _require_member(self, connection: Connection) -> Participant:
        participant = await self.registry.participant(connection.connection_id)
        if participant is None:
            raise NotJoinedError("Join a room before sending room events")
        return participant

    async def _fan_out(self, sender: Participant, event: Event, data: dict):
        members = await self.registry.members_of(sender.room_id)
        targets = [m.connection_id for m in members if m.connection_id != sender.connection_id]
        if not targets:
            logger.debug(f"No other members in room {sender.room_id} for {event.value}")
            return
        await self.broker.publish(sender.room_id, {
            "event": event.value,
            "data": data,
            "targets": targets,
        })
