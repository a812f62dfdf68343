class RelayError(Exception):
    """Base class for conditions reported back to a client as an ``error`` frame."""

    code = "relay_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_frame(self, request: str = None) -> dict:
        frame = {"event": "error", "code": self.code, "message": self.message}
        if request:
            frame["request"] = request
        return frame


class InvalidRoom(RelayError):
    code = "invalid_room"

    def __init__(self, room_id, reason: str = "Session not found or not active"):
        super().__init__(f"{reason}: {room_id}")
        self.room_id = room_id


class SessionUnavailable(RelayError):
    code = "session_unavailable"


class NotRoomMember(RelayError):
    code = "not_room_member"

    def __init__(self, room_id: str, connection_id: str):
        super().__init__(f"Connection is not a member of session {room_id}")
        self.room_id = room_id
        self.connection_id = connection_id


class InvalidPayload(RelayError):
    code = "invalid_payload"


class DeliveryTimeout(RelayError):
    code = "delivery_timeout"

    def __init__(self, connection_id: str, timeout: float):
        super().__init__(f"Delivery to {connection_id} exceeded {timeout}s")
        self.connection_id = connection_id
        self.timeout = timeout


class UnknownConnection(RelayError):
    code = "unknown_connection"

    def __init__(self, connection_id: str):
        super().__init__(f"Unknown connection {connection_id}")
        self.connection_id = connection_id
