import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import redis
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Request

from constants import SESSION_TTL_SECONDS
from logging_config import get_logger
from relay.bridge import session_is_live
from relay.errors import InvalidPayload
from relay.service import Relay
from schemas.sessions import (
    CreateSessionRequest,
    CreateSessionResponse,
    Participant,
    SessionDetailsResponse,
    SummaryDeliveryResponse,
    UpdateStatusRequest,
    UpdateStatusResponse,
)

logger = get_logger(__name__)

sessions_router = APIRouter(prefix="/sessions", tags=["sessions"])


def get_backend(request: Request):
    return request.app.state.backend


def get_relay(request: Request) -> Relay:
    return request.app.state.relay


def ws_url_for(request: Request) -> str:
    base_url = str(request.base_url).rstrip('/')
    ws_base = base_url.replace("http://", "ws://").replace("https://", "wss://")
    return f"{ws_base}/ws"


async def load_session(backend, session_id: str) -> dict:
    try:
        session = await backend.get_session(session_id)
    except redis.RedisError as e:
        logger.error(f"Session store error while loading {session_id}: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Session store unavailable")
    if not session:
        logger.warning(f"Session {session_id} not found")
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@sessions_router.post("/", status_code=201, response_model=CreateSessionResponse)
async def create_session(
    body: CreateSessionRequest,
    request: Request,
    x_user_id: Optional[str] = Header(None),
    backend=Depends(get_backend),
):
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity")
    ttl = body.ttl_seconds or SESSION_TTL_SECONDS
    session_id = uuid.uuid4().hex
    now = datetime.now(timezone.utc)
    created_at = now.isoformat()
    expires_at = (now + timedelta(seconds=ttl)).isoformat()
    logger.info(f"Session creation request from host {x_user_id}, title: {body.title}")

    try:
        await backend.create_session(session_id, {
            "session_id": session_id,
            "title": body.title,
            "description": body.description,
            "language": body.language or "en",
            "host_id": x_user_id,
            "max_participants": body.max_participants or 100,
            "status": "active",
            "created_at": created_at,
            "updated_at": created_at,
            "expires_at": expires_at,
        }, ttl=ttl)
    except redis.RedisError as e:
        logger.error(f"Error creating session: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Failed to create session")

    logger.info(f"Session {session_id} created: host={x_user_id}, expires_at={expires_at}")
    return CreateSessionResponse(
        session_id=session_id,
        ws_url=ws_url_for(request),
        status="active",
        created_at=created_at,
        expires_at=expires_at,
    )


@sessions_router.get("/{session_id}", response_model=SessionDetailsResponse)
async def get_session_details(session_id: str, backend=Depends(get_backend), relay: Relay = Depends(get_relay)):
    """Session metadata plus the number of participants connected to this instance."""
    session = await load_session(backend, session_id)
    online = len(relay.rooms.members_of(session_id))
    max_participants = int(session.get("max_participants", 100))
    return SessionDetailsResponse(
        session_id=session_id,
        title=session.get("title"),
        description=session.get("description"),
        language=session.get("language"),
        host_id=session.get("host_id"),
        status=session.get("status", "active"),
        created_at=session.get("created_at", ""),
        expires_at=session.get("expires_at"),
        max_participants=max_participants,
        online_participants_count=online,
        is_active=session_is_live(session),
        is_full=online >= max_participants,
    )


@sessions_router.patch("/{session_id}/status", response_model=UpdateStatusResponse)
async def update_session_status(
    session_id: str,
    body: UpdateStatusRequest,
    x_user_id: Optional[str] = Header(None),
    backend=Depends(get_backend),
    relay: Relay = Depends(get_relay),
):
    session = await load_session(backend, session_id)
    if not x_user_id or session.get("host_id") != x_user_id:
        logger.warning(f"Status change for session {session_id} refused for user {x_user_id}")
        raise HTTPException(status_code=403, detail="Only session host can update status")

    try:
        await backend.update_session(session_id, {
            "status": body.status,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        })
    except redis.RedisError as e:
        logger.error(f"Error updating session {session_id}: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Session store unavailable")

    disconnected = 0
    if body.status != "active":
        disconnected = await relay.end_session(session_id, body.status)
    logger.info(f"Session {session_id} status set to {body.status} by host {x_user_id}")
    return UpdateStatusResponse(session_id=session_id, status=body.status, disconnected_participants=disconnected)


@sessions_router.get("/{session_id}/participants", response_model=List[Participant])
async def list_participants(session_id: str, relay: Relay = Depends(get_relay)):
    return relay.participants(session_id)


@sessions_router.post("/{session_id}/summary", response_model=SummaryDeliveryResponse)
async def push_summary(
    session_id: str,
    payload: Dict[str, Any] = Body(...),
    backend=Depends(get_backend),
    relay: Relay = Depends(get_relay),
):
    """Entry point for the summarizer: broadcast a summary-update to the whole session."""
    session = await load_session(backend, session_id)
    if not session_is_live(session):
        raise HTTPException(status_code=409, detail="Session is not active")
    try:
        report = await relay.announce_summary(session_id, payload)
    except InvalidPayload as e:
        raise HTTPException(status_code=422, detail=e.message)
    logger.info(f"Summary pushed to session {session_id}: {len(report.delivered)} delivered, {report.attempted - len(report.delivered)} failed")
    return SummaryDeliveryResponse(
        session_id=session_id,
        delivered=len(report.delivered),
        failed=report.attempted - len(report.delivered),
    )
