import asyncio
from typing import AsyncIterator, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, InvalidHandshake, InvalidURI

from client.session import ClientSession, SessionState
from errors import ConnectionFailure, InvalidJSONError
from schemas.events import encode_frame, decode_frame
from logging_config import get_logger

logger = get_logger(__name__)

# seconds close() waits for queued frames to reach the relay
FLUSH_TIMEOUT = 5.0


class WebSocketTransport:
    """Client end of the relay socket.

    ``emit`` never blocks: frames go into an unbounded queue that a writer
    task drains in order.
    """

    def __init__(self, url: str):
        self.url = url
        self._websocket = None
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None

    async def connect(self):
        try:
            self._websocket = await websockets.connect(self.url)
        except (OSError, InvalidURI, InvalidHandshake, asyncio.TimeoutError) as e:
            raise ConnectionFailure(f"Could not connect to {self.url}: {e}") from e
        self._writer = asyncio.create_task(self._drain())
        logger.info(f"Connected to {self.url}")

    def emit(self, event: str, data: dict):
        self._outbox.put_nowait(encode_frame(event, data))

    async def frames(self) -> AsyncIterator[Tuple[str, dict]]:
        try:
            async for raw in self._websocket:
                try:
                    yield decode_frame(raw)
                except InvalidJSONError as e:
                    logger.warning(f"Dropping malformed frame from relay: {e}")
        except ConnectionClosedError as e:
            raise ConnectionFailure(f"Connection to {self.url} dropped: {e}") from e

    async def close(self):
        if self._writer is not None:
            if not self._writer.done():
                try:
                    await asyncio.wait_for(self._outbox.join(), timeout=FLUSH_TIMEOUT)
                except asyncio.TimeoutError:
                    logger.warning(f"Gave up flushing {self._outbox.qsize()} queued frames to {self.url}")
            self._writer.cancel()
            self._writer = None
        if self._websocket is not None:
            await self._websocket.close()

    async def _drain(self):
        while True:
            frame = await self._outbox.get()
            try:
                await self._websocket.send(frame)
            except ConnectionClosed as e:
                logger.warning(f"Send failed, connection closed: {e}")
                self._discard_pending()
                return
            finally:
                self._outbox.task_done()

    def _discard_pending(self):
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._outbox.task_done()


async def run_session(session: ClientSession, transport: WebSocketTransport):
    """Connect, join and feed relay frames to the session until the socket ends."""
    try:
        await transport.connect()
    except ConnectionFailure as e:
        session.connection_lost(e)
        return

    session.join()
    try:
        async for event, data in transport.frames():
            session.handle(event, data)
    except ConnectionFailure as e:
        session.connection_lost(e)
        return

    if session.state != SessionState.DISCONNECTED:
        # the relay closed on us without the user leaving
        session.connection_lost()
