import asyncio
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from logging_config import get_logger
from relay.bridge import SessionLifecycleBridge
from relay.connections import Connection, ConnectionRegistry, Transport
from relay.dispatch import DeliveryReport, EventRouter
from relay.errors import InvalidPayload, UnknownConnection
from relay.rooms import RoomManager, normalize_room_id
from schemas.events import (
    PARTICIPANT_JOINED,
    PARTICIPANT_LEFT,
    SESSION_ENDED,
    Event,
    EventType,
    Sender,
    describe_validation_error,
    payload_room_id,
    validate_payload,
)

logger = get_logger(__name__)

CLOSE_TIMEOUT_SECONDS = 1.0


class Relay:
    """One relay instance: registry, rooms and router wired together.

    Create one per application (or per shard) and pass it around; nothing
    here is module-global.
    """

    def __init__(self, bridge: SessionLifecycleBridge, delivery_timeout: float, broker=None):
        self.registry = ConnectionRegistry()
        self.rooms = RoomManager(self.registry, bridge)
        self.router = EventRouter(self.registry, self.rooms, delivery_timeout, on_stalled=self.drop)
        self.broker = broker

    def connect(self, transport: Transport, user_id: Optional[str] = None, role: Optional[str] = None) -> str:
        connection_id = self.registry.register(transport, user_id=user_id, role=role)
        logger.info(f"Connection {connection_id} opened (user: {user_id}, role: {role})")
        return connection_id

    async def join(self, connection_id: str, room_id) -> bool:
        """Join ``room_id``; returns False when it was already the connection's room."""
        try:
            result = await self.rooms.join(room_id, connection_id)
        except UnknownConnection:
            logger.debug(f"Join ignored for removed connection {connection_id}")
            return False
        if not result.joined:
            return False
        room_id = normalize_room_id(room_id)
        if result.previous_room is not None:
            await self._announce_presence(result.previous_room, connection_id, PARTICIPANT_LEFT)
        await self._announce_presence(room_id, connection_id, PARTICIPANT_JOINED)
        return True

    async def leave(self, connection_id: str, room_id) -> bool:
        if not self.rooms.leave(room_id, connection_id):
            return False
        await self._announce_presence(normalize_room_id(room_id), connection_id, PARTICIPANT_LEFT)
        return True

    async def publish(self, connection_id: str, name: EventType, payload: Any) -> Optional[DeliveryReport]:
        """Validate a client event and fan it out to the sender's room.

        The room is the one named in the payload, falling back to the room the
        sender is currently in. Returns None for a connection that is already gone.
        """
        connection = self.registry.lookup(connection_id)
        if connection is None:
            logger.debug(f"Dropping {name.value} from removed connection {connection_id}")
            return None
        try:
            payload = validate_payload(name, payload)
        except ValidationError as e:
            raise InvalidPayload(describe_validation_error(e)) from e
        except TypeError as e:
            raise InvalidPayload(str(e)) from e

        room_id = payload_room_id(payload)
        if room_id is None:
            room_id = self.rooms.room_of(connection_id)
        if room_id is None:
            raise InvalidPayload(f"{name.value} needs a session; join one first")

        event = Event(
            name=name,
            room_id=normalize_room_id(room_id),
            sender=Sender(**connection.identity()),
            payload=payload,
        )
        try:
            report = await self.router.publish(event)
        except UnknownConnection:
            return None
        await self._forward(event.room_id, event.to_frame())
        return report

    async def announce_summary(self, room_id, payload: dict) -> DeliveryReport:
        """Push a summary produced outside the relay to every member of a room."""
        try:
            payload = validate_payload(EventType.SUMMARY_UPDATE, payload)
        except ValidationError as e:
            raise InvalidPayload(describe_validation_error(e)) from e
        except TypeError as e:
            raise InvalidPayload(str(e)) from e
        event = Event(name=EventType.SUMMARY_UPDATE, room_id=normalize_room_id(room_id), payload=payload)
        frame = event.to_frame()
        report = await self.router.announce(event.room_id, frame)
        await self._forward(event.room_id, frame)
        return report

    async def end_session(self, room_id, status: str) -> int:
        """Tell every member the session stopped being active and empty the room."""
        room_id = normalize_room_id(room_id)
        frame = {"event": SESSION_ENDED, "session_id": room_id, "status": status}
        removed = await self._end_local(room_id, frame)
        await self._forward(room_id, frame)
        return removed

    async def deliver_remote(self, room_id, frame: dict) -> DeliveryReport:
        """Deliver a frame published by another instance to the local members of a room."""
        room_id = normalize_room_id(room_id)
        if frame.get("event") == SESSION_ENDED:
            await self._end_local(room_id, frame)
            return DeliveryReport()
        return await self.router.announce(room_id, frame)

    async def _end_local(self, room_id: str, frame: dict) -> int:
        await self.router.announce(room_id, frame)
        return len(self.rooms.close_room(room_id))

    async def _forward(self, room_id: str, frame: dict):
        if self.broker is not None:
            await self.broker.forward(room_id, frame)

    async def disconnect(self, connection_id: str) -> None:
        room_id = self.rooms.room_of(connection_id)
        connection = self.registry.deregister(connection_id)
        if connection is None:
            return
        logger.info(f"Connection {connection_id} closed")
        if room_id is not None:
            await self._announce_presence(room_id, connection_id, PARTICIPANT_LEFT, user_id=connection.user_id)

    async def drop(self, connection_ids: Iterable[str]) -> None:
        """Disconnect stalled recipients and close their transports.

        Every one of them is deregistered before any ``participant-left`` goes
        out, so no presence frame is addressed to a connection being dropped.
        """
        dropped = []
        for connection_id in connection_ids:
            room_id = self.rooms.room_of(connection_id)
            connection = self.registry.deregister(connection_id)
            if connection is None:
                continue
            logger.info(f"Connection {connection_id} dropped after delivery timeout")
            dropped.append((connection, room_id))

        pending = [self._close_stalled(connection) for connection, _ in dropped]
        pending += [
            self._announce_presence(room_id, connection.connection_id, PARTICIPANT_LEFT, user_id=connection.user_id)
            for connection, room_id in dropped
            if room_id is not None
        ]
        await asyncio.gather(*pending)

    async def _close_stalled(self, connection: Connection):
        try:
            await asyncio.wait_for(connection.transport.close(code=1011, reason="Delivery timeout"), timeout=CLOSE_TIMEOUT_SECONDS)
        except Exception as e:
            logger.debug(f"Error closing stalled connection {connection.connection_id}: {e}")

    def participants(self, room_id) -> list:
        participants = []
        for connection_id in self.rooms.members_of(room_id):
            connection = self.registry.lookup(connection_id)
            if connection is None:
                continue
            participants.append({
                "connection_id": connection.connection_id,
                "user_id": connection.user_id,
                "role": connection.role,
                "connected_at": connection.created_at.isoformat(),
            })
        participants.sort(key=lambda item: item["connected_at"])
        return participants

    async def _announce_presence(self, room_id: str, connection_id: str, event_name: str, user_id: Optional[str] = None):
        if user_id is None:
            connection = self.registry.lookup(connection_id)
            user_id = connection.user_id if connection else None
        await self.router.announce(
            room_id,
            {
                "event": event_name,
                "session_id": room_id,
                "connection_id": connection_id,
                "user_id": user_id,
                "online_count": len(self.rooms.members_of(room_id)),
            },
            exclude=(connection_id,),
        )
