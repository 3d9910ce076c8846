"""Wire payloads for the relay event vocabulary.

Every frame on the socket is a JSON object ``{"event": <name>, "data": {...}}``.
Payload fields travel in camelCase (``roomId``, ``connectionId``) and are
exposed in snake_case on the models.
"""
import json
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from errors import InvalidJSONError


class Event(str, Enum):
    CONNECTED = "connected"
    JOIN = "join"
    JOINED = "joined"
    DISCONNECTED = "disconnected"
    CODE_CHANGE = "code-change"
    SYNC_CODE = "sync-code"
    MESSAGE = "message"
    ERROR = "error"


class EventPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class ConnectedPayload(EventPayload):
    connection_id: str

class JoinPayload(EventPayload):
    room_id: str = Field(min_length=1)
    display_name: Optional[str] = None

class Member(EventPayload):
    connection_id: str
    display_name: str

class JoinedPayload(EventPayload):
    members: list[Member]
    display_name: str
    connection_id: str

class DisconnectedPayload(EventPayload):
    connection_id: str
    display_name: str

class CodeChangePayload(EventPayload):
    room_id: str
    text: str

class SyncCodePayload(EventPayload):
    # null means "no document to offer" and is dropped by the relay
    text: Optional[str] = None
    connection_id: str

class ChatPayload(EventPayload):
    sender_name: str
    text: str

class ErrorPayload(EventPayload):
    code: str
    message: str


def encode_frame(event, data: dict) -> str:
    name = event.value if isinstance(event, Event) else event
    return json.dumps({"event": name, "data": data})


def decode_frame(raw: str) -> Tuple[str, dict]:
    try:
        frame = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidJSONError(f"Frame is not valid JSON: {e}") from e
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        raise InvalidJSONError("Frame must be an object with a string 'event' field")
    data = frame.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise InvalidJSONError("Frame 'data' must be an object")
    return frame["event"], data
