class RelayError(Exception):
    """Protocol error reported back to the offending connection as an ``error`` event.

    The connection stays open; nothing is broadcast to the rest of the room.
    """

    code = "relay_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidJSONError(RelayError):
    code = "invalid_json"


class UnknownEventError(RelayError):
    code = "unknown_event"


class InvalidPayloadError(RelayError):
    code = "invalid_payload"


class NotJoinedError(RelayError):
    code = "not_joined"


class RoomMismatchError(RelayError):
    code = "room_mismatch"


class ConnectionFailure(Exception):
    """Client side: the transport could not be established or dropped unexpectedly."""
