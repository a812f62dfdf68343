from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from constants import MAX_CHAT_LENGTH


class EventType(str, Enum):
    CAPTION_UPDATE = "caption-update"
    CHAT_MESSAGE = "chat-message"
    TYPING = "typing"
    SUMMARY_UPDATE = "summary-update"


class ControlType(str, Enum):
    JOIN_SESSION = "join-session"
    LEAVE_SESSION = "leave-session"


# Frames the server emits on its own behalf
CONNECTED = "connected"
SESSION_JOINED = "session-joined"
SESSION_LEFT = "session-left"
SESSION_ENDED = "session-ended"
PARTICIPANT_JOINED = "participant-joined"
PARTICIPANT_LEFT = "participant-left"


class _Payload(BaseModel):
    # unknown keys are kept and the payload is forwarded as the client sent it,
    # so values must already have the declared types
    model_config = ConfigDict(extra="allow", populate_by_name=True, strict=True)


class CaptionPayload(_Payload):
    text: str
    language: Optional[str] = None
    speaker: Optional[str] = None
    is_final: bool = Field(default=True, alias="isFinal")
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    translations: Optional[Dict[str, str]] = None


class ChatPayload(_Payload):
    text: str
    type: Literal["message", "question"] = "message"
    user_name: Optional[str] = Field(default=None, alias="userName")

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("chat text must not be empty")
        if len(stripped) > MAX_CHAT_LENGTH:
            raise ValueError(f"chat text must be at most {MAX_CHAT_LENGTH} characters")
        return value


class TypingPayload(_Payload):
    is_typing: bool = Field(alias="isTyping")


class SummaryPayload(_Payload):
    content: str
    summary_type: Literal["rolling", "final", "key_points"] = Field(default="rolling", alias="summaryType")
    key_points: List[str] = Field(default_factory=list, alias="keyPoints")
    action_items: List[str] = Field(default_factory=list, alias="actionItems")


PAYLOAD_SCHEMAS: Dict[EventType, Type[_Payload]] = {
    EventType.CAPTION_UPDATE: CaptionPayload,
    EventType.CHAT_MESSAGE: ChatPayload,
    EventType.TYPING: TypingPayload,
    EventType.SUMMARY_UPDATE: SummaryPayload,
}


class Sender(BaseModel):
    connection_id: Optional[str] = None
    user_id: Optional[str] = None


class Event(BaseModel):
    """One domain event on its way through the relay. Never persisted."""

    name: EventType
    room_id: str
    sender: Sender = Field(default_factory=Sender)
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_frame(self) -> dict:
        return {
            "event": self.name.value,
            "session_id": self.room_id,
            "payload": self.payload,
            "sender": self.sender.model_dump(),
            "timestamp": self.timestamp.isoformat(),
        }


class InboundFrame(BaseModel):
    event: str
    payload: Any = None


def validate_payload(name: EventType, payload: Any) -> Dict[str, Any]:
    """Check ``payload`` against the schema for ``name`` and return it unchanged.

    Raises ``pydantic.ValidationError`` (or ``TypeError`` for non-objects).
    """
    if not isinstance(payload, dict):
        raise TypeError(f"{name.value} payload must be an object")
    PAYLOAD_SCHEMAS[name].model_validate(payload)
    return payload


def payload_room_id(payload: Any):
    """Session id named by a payload: the payload itself, or its sessionId/session_id key."""
    if isinstance(payload, dict):
        for key in ("sessionId", "session_id"):
            if payload.get(key) is not None:
                return payload[key]
        return None
    return payload


def describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "payload"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)
