"""Participant-side state machine for one room.

The session owns the local copy of the document and the chat history. It is
driven by two inputs: frames delivered by the transport (``handle``) and the
text buffer's change callback. Handlers run one at a time against the
current state; nothing captures a stale snapshot.
"""
from enum import Enum
from typing import Optional

from pydantic import ValidationError

from client.buffer import TextBuffer
from schemas.events import (
    Event, ConnectedPayload, JoinPayload, JoinedPayload, DisconnectedPayload,
    CodeChangePayload, SyncCodePayload, ChatPayload, ErrorPayload, Member,
)
from logging_config import get_logger

logger = get_logger(__name__)

CONNECTION_FAILED_NOTICE = "Socket Connection failed, try again later."


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    JOINING = "joining"
    JOINED = "joined"


class SessionListener:
    """View hooks. Override what the UI needs; the defaults do nothing."""

    def members_changed(self, members: list[Member]):
        pass

    def notice(self, text: str):
        pass

    def chat_received(self, message: ChatPayload):
        """Called after a message is appended; the view scrolls to the latest entry."""

    def error(self, text: str):
        pass


class ClientSession:
    def __init__(self, transport, buffer: TextBuffer, room_id: str, display_name: str,
                 listener: Optional[SessionListener] = None):
        self.transport = transport
        self.buffer = buffer
        self.room_id = room_id
        self.display_name = display_name
        self.listener = listener or SessionListener()

        self.state = SessionState.DISCONNECTED
        self.connection_id: Optional[str] = None
        self.members: list[Member] = []
        self.text = buffer.get_text()
        self.chat_history: list[ChatPayload] = []

        # True while the session itself writes a remote update into the buffer
        self._applying_remote = False
        # whether this copy of the document is worth offering to a newcomer
        self._has_document = False

        self._handlers = {
            Event.CONNECTED.value: (ConnectedPayload, self._on_connected),
            Event.JOINED.value: (JoinedPayload, self._on_joined),
            Event.DISCONNECTED.value: (DisconnectedPayload, self._on_disconnected),
            Event.CODE_CHANGE.value: (CodeChangePayload, self._on_code_change),
            Event.SYNC_CODE.value: (SyncCodePayload, self._on_sync_code),
            Event.MESSAGE.value: (ChatPayload, self._on_message),
            Event.ERROR.value: (ErrorPayload, self._on_error),
        }
        buffer.on_change(self._on_buffer_change)

    def join(self):
        self.state = SessionState.JOINING
        self.transport.emit(Event.JOIN.value, JoinPayload(
            room_id=self.room_id,
            display_name=self.display_name,
        ).to_wire())
        logger.info(f"Joining room {self.room_id} as {self.display_name}")

    async def leave(self):
        self.state = SessionState.DISCONNECTED
        self.members = []
        self.listener.members_changed([])
        await self.transport.close()
        logger.info(f"Left room {self.room_id}")

    def connection_lost(self, error: Optional[Exception] = None):
        if error is not None:
            logger.warning(f"Connection lost: {error}")
        self.state = SessionState.DISCONNECTED
        self.connection_id = None
        self.members = []
        self.listener.members_changed([])
        self.listener.error(CONNECTION_FAILED_NOTICE)

    def send_chat(self, text: str) -> bool:
        if not text or not text.strip():
            return False
        if self.state != SessionState.JOINED:
            logger.debug("Chat submitted while not joined, ignoring")
            return False
        message = ChatPayload(sender_name=self.display_name, text=text)
        self.chat_history.append(message)
        self.listener.chat_received(message)
        self.transport.emit(Event.MESSAGE.value, message.to_wire())
        return True

    def handle(self, event: str, data: dict):
        entry = self._handlers.get(event)
        if entry is None:
            logger.warning(f"Ignoring unknown event {event}")
            return
        model, handler = entry
        try:
            payload = model.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed {event} payload: {e}")
            return
        handler(payload)

    def _on_connected(self, payload: ConnectedPayload):
        self.connection_id = payload.connection_id

    def _on_joined(self, payload: JoinedPayload):
        if self.state == SessionState.DISCONNECTED:
            return
        known = any(m.connection_id == payload.connection_id for m in self.members)
        self.members = list(payload.members)
        self.listener.members_changed(self.members)

        if payload.connection_id == self.connection_id:
            if self.state == SessionState.JOINING:
                self.state = SessionState.JOINED
                # first one in: whatever is in the buffer is the room's document.
                # Otherwise wait for a sync or an edit before offering ours.
                self._has_document = len(payload.members) == 1
                logger.info(f"Joined room {self.room_id} with {len(payload.members)} members")
            return

        # a member re-sending JOIN is not an arrival
        if self.state != SessionState.JOINED or known:
            return
        self.listener.notice(f"{payload.display_name} joined the room.")
        if self._has_document:
            self.transport.emit(Event.SYNC_CODE.value, SyncCodePayload(
                text=self.text,
                connection_id=payload.connection_id,
            ).to_wire())

    def _on_disconnected(self, payload: DisconnectedPayload):
        self.members = [m for m in self.members if m.connection_id != payload.connection_id]
        self.listener.notice(f"{payload.display_name} left the room.")
        self.listener.members_changed(self.members)

    def _on_code_change(self, payload: CodeChangePayload):
        if self.state != SessionState.JOINED:
            return
        self._apply_remote(payload.text)

    def _on_sync_code(self, payload: SyncCodePayload):
        if self.state != SessionState.JOINED or payload.text is None:
            return
        self._apply_remote(payload.text)

    def _on_message(self, payload: ChatPayload):
        self.chat_history.append(payload)
        self.listener.chat_received(payload)

    def _on_error(self, payload: ErrorPayload):
        self.listener.error(f"{payload.code}: {payload.message}")

    def _apply_remote(self, text: str):
        self._has_document = True
        if text == self.text:
            return
        self._applying_remote = True
        try:
            self.buffer.set_text(text)
        finally:
            self._applying_remote = False
        self.text = text

    def _on_buffer_change(self, text: str):
        self.text = text
        if self._applying_remote:
            return
        self._has_document = True
        if self.state != SessionState.JOINED:
            return
        self.transport.emit(Event.CODE_CHANGE.value, CodeChangePayload(
            room_id=self.room_id,
            text=text,
        ).to_wire())
