import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from backend import connect_redis, create_registry
from broker import create_broker
from constants import RELAY_BACKEND, CORS_ALLOW_ORIGINS, LOG_LEVEL, LOG_FILE
from errors import RelayError, UnknownEventError, InvalidPayloadError
from presence import PresenceManager
from relay import SyncRelay
from routers.rooms import rooms_router
from schemas.events import Event, JoinPayload, CodeChangePayload, SyncCodePayload, ChatPayload, decode_frame
from schemas.rooms import HealthResponse
from transport import Connection
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


def _describe_validation_error(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'data'}: {err['msg']}"
        for err in error.errors()
    )


async def dispatch_event(state, connection: Connection, event: str, data: dict):
    handlers = {
        Event.JOIN.value: (JoinPayload, state.presence.join),
        Event.CODE_CHANGE.value: (CodeChangePayload, state.relay.code_change),
        Event.SYNC_CODE.value: (SyncCodePayload, state.relay.sync_code),
        Event.MESSAGE.value: (ChatPayload, state.relay.chat),
    }
    entry = handlers.get(event)
    if entry is None:
        raise UnknownEventError(f"Unknown event: {event}")

    model, handler = entry
    try:
        payload = model.model_validate(data)
    except ValidationError as e:
        raise InvalidPayloadError(f"Invalid {event} payload: {_describe_validation_error(e)}") from e
    await handler(connection, payload)


def create_app(registry=None, broker=None) -> FastAPI:
    if registry is None or broker is None:
        redis_client = connect_redis() if RELAY_BACKEND == "redis" else None
        registry = registry or create_registry(RELAY_BACKEND, redis_client)
        broker = broker or create_broker(RELAY_BACKEND, redis_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Relay starting with {registry.name} registry and {broker.name} broker")
        await registry.start()
        yield
        await broker.close()
        await registry.close()
        logger.info("Relay stopped")

    app = FastAPI(title="roomsync relay", lifespan=lifespan)
    app.state.registry = registry
    app.state.broker = broker
    app.state.presence = PresenceManager(registry, broker)
    app.state.relay = SyncRelay(registry, broker)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(rooms_router)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        rooms = await registry.rooms()
        return HealthResponse(status="ok", backend=registry.name, rooms=len(rooms))

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """One socket per participant. Frames are ``{"event": ..., "data": ...}``.

        Protocol errors are answered with an ``error`` event and the socket
        stays open; a closed or broken socket is treated as leaving the room.
        """
        state = websocket.app.state
        await websocket.accept()
        connection = Connection(websocket)
        logger.info(f"WebSocket connection accepted: {connection.connection_id}")

        try:
            await state.presence.connect(connection)
            message_count = 0
            while True:
                raw = await websocket.receive_text()
                message_count += 1
                logger.debug(f"Received message #{message_count} from connection {connection.connection_id}")
                try:
                    event, data = decode_frame(raw)
                    await dispatch_event(state, connection, event, data)
                except RelayError as e:
                    logger.warning(f"Rejected message from {connection.connection_id}: {e.code}: {e.message}")
                    await connection.send_error(e.code, e.message)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected normally for connection {connection.connection_id}")
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection.connection_id}: {e}", exc_info=True)
        finally:
            try:
                # eviction and the DISCONNECTED broadcast must finish even if this task is cancelled
                await asyncio.shield(state.presence.leave(connection))
            except Exception as e:
                logger.error(f"Error during cleanup for connection {connection.connection_id}: {e}", exc_info=True)
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")

    logger.info("FastAPI application initialized")
    return app


app = create_app()
