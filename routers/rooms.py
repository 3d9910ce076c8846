import uuid

from fastapi import APIRouter, HTTPException, Request

from schemas.rooms import CreateRoomResponse, OnlineUser, RoomDetailsResponse
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def build_ws_url(request: Request) -> str:
    base_url = str(request.base_url).rstrip('/')
    # Replace http/https with ws/wss
    ws_base = base_url.replace("http://", "ws://").replace("https://", "wss://")
    return f"{ws_base}/ws"


@rooms_router.post("/", response_model=CreateRoomResponse, status_code=201)
async def create_room(request: Request):
    # Only mints an identifier. The room itself exists once the first JOIN for it arrives.
    room_id = uuid.uuid4().hex
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Room id {room_id} minted for {client_host}")
    return CreateRoomResponse(room_id=room_id, ws_url=build_ws_url(request))


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Get the live roster of a room.

    Returns:
    - room_id: Room identifier
    - online_users_count: Current number of connected participants
    - online_users: Participants in admission order
    """
    members = await request.app.state.registry.members_of(room_id)
    if not members:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    logger.info(f"Room details retrieved for {room_id}: {len(members)} users online")
    return RoomDetailsResponse(
        room_id=room_id,
        online_users_count=len(members),
        online_users=[
            OnlineUser(connection_id=m.connection_id, display_name=m.display_name, joined_at=m.joined_at)
            for m in members
        ],
    )
