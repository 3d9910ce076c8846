from pydantic import BaseModel, ConfigDict


class Participant(BaseModel):
    """One connection admitted to a room. Snapshots handed out by the registry are frozen."""

    model_config = ConfigDict(frozen=True)

    connection_id: str
    display_name: str
    room_id: str
    joined_at: str

class CreateRoomResponse(BaseModel):
    room_id: str
    ws_url: str

class OnlineUser(BaseModel):
    connection_id: str
    display_name: str
    joined_at: str

class RoomDetailsResponse(BaseModel):
    room_id: str
    online_users_count: int
    online_users: list[OnlineUser]

class HealthResponse(BaseModel):
    status: str
    backend: str
    rooms: int
