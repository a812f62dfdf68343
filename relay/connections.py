import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from logging_config import get_logger

logger = get_logger(__name__)


class Transport(Protocol):
    """The part of a WebSocket the relay needs. Starlette's ``WebSocket`` satisfies it."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


@dataclass
class Connection:
    connection_id: str
    transport: Transport
    user_id: Optional[str] = None
    role: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def send(self, message: dict) -> None:
        # one frame at a time per socket, in the order callers queued on the lock
        async with self.send_lock:
            await self.transport.send_json(message)

    def identity(self) -> dict:
        return {"connection_id": self.connection_id, "user_id": self.user_id}


class ConnectionRegistry:
    """Live connections keyed by connection id.

    Deregistration listeners run synchronously right after the entry is
    removed, so membership cleanup happens in the same event-loop step as
    the removal.
    """

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._listeners: List[Callable[[Connection], None]] = []

    def add_listener(self, callback: Callable[[Connection], None]):
        self._listeners.append(callback)

    def register(self, transport: Transport, user_id: Optional[str] = None, role: Optional[str] = None) -> str:
        connection_id = uuid.uuid4().hex
        self._connections[connection_id] = Connection(
            connection_id=connection_id,
            transport=transport,
            user_id=user_id,
            role=role,
        )
        logger.debug(f"Registered connection {connection_id} (user: {user_id}, total: {len(self._connections)})")
        return connection_id

    def deregister(self, connection_id: str) -> Optional[Connection]:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            logger.debug(f"Connection {connection_id} already deregistered")
            return None
        for callback in self._listeners:
            callback(connection)
        logger.debug(f"Deregistered connection {connection_id} (total: {len(self._connections)})")
        return connection

    def lookup(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)
