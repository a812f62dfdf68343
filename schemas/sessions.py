from pydantic import BaseModel, Field
from typing import Literal, Optional

SessionStatus = Literal["active", "paused", "ended"]


class CreateSessionRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    language: Optional[str] = "en"
    max_participants: Optional[int] = Field(default=100, ge=1)
    ttl_seconds: Optional[int] = Field(default=None, ge=60)

class CreateSessionResponse(BaseModel):
    session_id: str
    ws_url: str
    status: SessionStatus
    created_at: str
    expires_at: str

class UpdateStatusRequest(BaseModel):
    status: SessionStatus

class UpdateStatusResponse(BaseModel):
    session_id: str
    status: SessionStatus
    disconnected_participants: int = 0

class Participant(BaseModel):
    connection_id: str
    user_id: Optional[str] = None
    role: Optional[str] = None
    connected_at: str

class SessionDetailsResponse(BaseModel):
    session_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    language: Optional[str] = None
    host_id: Optional[str] = None
    status: str
    created_at: str
    expires_at: Optional[str] = None
    max_participants: int
    online_participants_count: int
    is_active: bool
    is_full: bool

class SummaryDeliveryResponse(BaseModel):
    session_id: str
    delivered: int
    failed: int
