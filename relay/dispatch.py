import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, List, Optional

from logging_config import get_logger
from relay.connections import ConnectionRegistry
from relay.errors import DeliveryTimeout, NotRoomMember, UnknownConnection
from relay.rooms import RoomManager, normalize_room_id
from schemas.events import Event

logger = get_logger(__name__)


@dataclass
class DeliveryReport:
    delivered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    timed_out: List[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.delivered) + len(self.failed) + len(self.timed_out)


class EventRouter:
    """Fans events out to the other members of a room.

    Delivery is best-effort: each recipient gets its own bounded attempt,
    failures are logged and isolated, and nothing is retried. A recipient
    that does not accept a frame within ``delivery_timeout`` is handed to
    ``on_stalled``, together with the others that stalled on the same frame.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        rooms: RoomManager,
        delivery_timeout: float,
        on_stalled: Optional[Callable[[List[str]], Awaitable[None]]] = None,
    ):
        self.registry = registry
        self.rooms = rooms
        self.delivery_timeout = delivery_timeout
        self.on_stalled = on_stalled

    async def publish(self, event: Event) -> DeliveryReport:
        sender_id = event.sender.connection_id
        if sender_id is None or sender_id not in self.registry:
            raise UnknownConnection(str(sender_id))
        room_id = normalize_room_id(event.room_id)
        if self.rooms.room_of(sender_id) != room_id:
            logger.warning(f"Rejected {event.name.value} from {sender_id}: not a member of room {room_id}")
            raise NotRoomMember(room_id, sender_id)

        recipients = self.rooms.members_of(room_id) - {sender_id}
        logger.debug(f"Publishing {event.name.value} from {sender_id} to {len(recipients)} members of room {room_id}")
        return await self.deliver(recipients, event.to_frame())

    async def announce(self, room_id, message: dict, exclude: Iterable[str] = ()) -> DeliveryReport:
        """Server-originated fan-out to a room, no sender authorization."""
        recipients = self.rooms.members_of(room_id) - set(exclude)
        logger.debug(f"Announcing {message.get('event')} to {len(recipients)} members of room {room_id}")
        return await self.deliver(recipients, message)

    async def deliver(self, recipients: Iterable[str], message: dict) -> DeliveryReport:
        report = DeliveryReport()
        targets = []
        for connection_id in recipients:
            connection = self.registry.lookup(connection_id)
            if connection is None:
                # deregistered after the membership snapshot was taken
                continue
            targets.append(connection)
        if not targets:
            return report

        results = await asyncio.gather(
            *(asyncio.wait_for(connection.send(message), timeout=self.delivery_timeout) for connection in targets),
            return_exceptions=True,
        )

        stalled = []
        for connection, result in zip(targets, results):
            connection_id = connection.connection_id
            if isinstance(result, asyncio.TimeoutError):
                error = DeliveryTimeout(connection_id, self.delivery_timeout)
                logger.warning(f"{error.message}, disconnecting it")
                report.timed_out.append(connection_id)
                stalled.append(connection_id)
            elif isinstance(result, BaseException):
                logger.warning(f"Error sending {message.get('event')} to connection {connection_id}: {result}")
                report.failed.append(connection_id)
            else:
                report.delivered.append(connection_id)

        if stalled and self.on_stalled is not None:
            await self.on_stalled(stalled)
        return report
