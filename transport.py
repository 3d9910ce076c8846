import uuid
from enum import Enum
from typing import Optional

from fastapi import WebSocket

from schemas.events import Event, ErrorPayload, encode_frame


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    JOINING = "joining"
    JOINED = "joined"


class Connection:
    """Relay-side handle for one participant socket."""

    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None):
        self.websocket = websocket
        self.connection_id = connection_id or str(uuid.uuid4())
        self.state = ConnectionState.DISCONNECTED
        self.room_id: Optional[str] = None
        # set on join when the room already had members; cleared by the first
        # SYNC_CODE or CODE_CHANGE delivered to this connection
        self.awaiting_sync = False

    async def send(self, event, data: dict):
        await self.websocket.send_text(encode_frame(event, data))

    async def send_error(self, code: str, message: str):
        await self.send(Event.ERROR, ErrorPayload(code=code, message=message).to_wire())

    def __repr__(self):
        return f"<Connection {self.connection_id} {self.state.value} room={self.room_id}>"
