from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from pydantic import ValidationError
import asyncio
import json
import os
from datetime import datetime, timezone
from typing import Optional

from backend import RedisBackend, create_redis_client
from constants import CORS_ORIGINS, DELIVERY_TIMEOUT_SECONDS, INSTANCE_ID, RELAY_BROKER_ENABLED
from logging_config import get_logger, setup_logging
from relay.bridge import RedisSessionBridge
from relay.broker import RoomBroker
from relay.errors import InvalidPayload, RelayError
from relay.service import Relay
from routers.sessions import sessions_router
from schemas.events import (
    CONNECTED,
    SESSION_JOINED,
    SESSION_LEFT,
    ControlType,
    EventType,
    InboundFrame,
    payload_room_id,
)

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)

EVENT_TYPES = {event_type.value: event_type for event_type in EventType}


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


async def dispatch_frame(relay: Relay, connection_id: str, data: str) -> Optional[dict]:
    """Handle one inbound text frame; returns the reply for the sender, if any."""
    name = None
    try:
        try:
            frame = InboundFrame.model_validate(json.loads(data))
        except (json.JSONDecodeError, ValidationError):
            raise InvalidPayload("Frames must be JSON objects with an 'event' field")
        name = frame.event

        if name == ControlType.JOIN_SESSION.value:
            joined = await relay.join(connection_id, payload_room_id(frame.payload))
            room_id = relay.rooms.room_of(connection_id)
            return {
                "event": SESSION_JOINED,
                "session_id": room_id,
                "already_joined": not joined,
                "online_count": len(relay.rooms.members_of(room_id)) if room_id else 0,
            }

        if name == ControlType.LEAVE_SESSION.value:
            room_id = payload_room_id(frame.payload)
            if room_id is None:
                room_id = relay.rooms.room_of(connection_id)
            left = False
            if room_id is not None:
                left = await relay.leave(connection_id, room_id)
            return {"event": SESSION_LEFT, "session_id": room_id, "left": left}

        event_type = EVENT_TYPES.get(name)
        if event_type is None:
            raise InvalidPayload(f"Unknown event '{name}'")
        await relay.publish(connection_id, event_type, frame.payload)
        return None
    except RelayError as e:
        logger.info(f"{e.code} for {name or 'frame'} from connection {connection_id}: {e.message}")
        return e.to_frame(request=name)


def create_app(relay: Optional[Relay] = None, backend=None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_backend = app.state.backend is None
        if owns_backend:
            app.state.backend = RedisBackend(create_redis_client())
        broker = None
        if app.state.relay is None:
            if RELAY_BROKER_ENABLED:
                broker = RoomBroker(app.state.backend, INSTANCE_ID)
            app.state.relay = Relay(
                RedisSessionBridge(app.state.backend),
                delivery_timeout=DELIVERY_TIMEOUT_SECONDS,
                broker=broker,
            )
        if broker is not None:
            broker.start(app.state.relay.deliver_remote)
        logger.info(f"Relay instance {INSTANCE_ID} started (broker: {broker is not None})")
        try:
            yield
        finally:
            if broker is not None:
                await broker.stop()
            if owns_backend:
                await app.state.backend.close()
            logger.info(f"Relay instance {INSTANCE_ID} stopped")

    app = FastAPI(title="Session Relay", lifespan=lifespan)
    app.state.relay = relay
    app.state.backend = backend

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sessions_router)

    @app.get("/health")
    async def health():
        relay = app.state.relay
        redis_ok = await app.state.backend.ping()
        body = {
            "status": "ok" if redis_ok else "degraded",
            "instance_id": INSTANCE_ID,
            "components": {"redis": {"ok": redis_ok}},
            "connections": len(relay.registry),
            "sessions": len(relay.rooms.room_ids()),
        }
        return JSONResponse(body, status_code=200 if redis_ok else 503)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, user_id: str = None, role: str = None):
        """Relay socket. ``user_id``/``role`` come from the identity gateway and are trusted.

        Frames are JSON objects: {"event": "<name>", "payload": ...}
        """
        relay: Relay = websocket.app.state.relay
        user_id = user_id or websocket.headers.get("x-user-id")
        await websocket.accept()
        connection_id = relay.connect(websocket, user_id=user_id, role=role)
        connection = relay.registry.lookup(connection_id)
        timeout = relay.router.delivery_timeout

        try:
            await asyncio.wait_for(
                connection.send({"event": CONNECTED, "connection_id": connection_id, "timestamp": utcnow()}),
                timeout=timeout,
            )
            message_count = 0
            while connection_id in relay.registry:
                try:
                    data = await websocket.receive_text()
                except WebSocketDisconnect:
                    logger.info(f"WebSocket disconnected normally for connection {connection_id}")
                    break
                message_count += 1
                logger.debug(f"Received frame #{message_count} from connection {connection_id}")

                reply = await dispatch_frame(relay, connection_id, data)
                if reply is not None and connection_id in relay.registry:
                    await asyncio.wait_for(connection.send(reply), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Connection {connection_id} stopped accepting replies, closing it")
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
        finally:
            await relay.disconnect(connection_id)
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")

    return app


app = create_app()
