from typing import Dict, FrozenSet, NamedTuple, Optional, Set

from logging_config import get_logger
from relay.bridge import SessionLifecycleBridge
from relay.connections import Connection, ConnectionRegistry
from relay.errors import InvalidRoom, UnknownConnection

logger = get_logger(__name__)


class JoinResult(NamedTuple):
    joined: bool
    previous_room: Optional[str] = None


def normalize_room_id(room_id) -> str:
    if room_id is None or isinstance(room_id, bool) or not isinstance(room_id, (str, int)):
        raise InvalidRoom(room_id, reason="Invalid session id")
    normalized = str(room_id).strip()
    if not normalized:
        raise InvalidRoom(room_id, reason="Invalid session id")
    return normalized


class RoomManager:
    """Session id -> member connection ids.

    A connection belongs to at most one room; joining another room leaves the
    current one. Every mutation below runs without awaiting, so on the event
    loop each one is atomic and operations on one room never interleave.
    """

    def __init__(self, registry: ConnectionRegistry, bridge: SessionLifecycleBridge):
        self.registry = registry
        self.bridge = bridge
        # room_id -> connection ids
        self._rooms: Dict[str, Set[str]] = {}
        # connection_id -> room_id
        self._membership: Dict[str, str] = {}
        registry.add_listener(self._on_deregister)

    async def join(self, room_id, connection_id: str) -> JoinResult:
        room_id = normalize_room_id(room_id)
        if connection_id not in self.registry:
            raise UnknownConnection(connection_id)
        if self._membership.get(connection_id) == room_id:
            logger.debug(f"Connection {connection_id} already in room {room_id}")
            return JoinResult(joined=False)

        if not await self.bridge.session_is_active(room_id):
            logger.info(f"Join rejected: session {room_id} not found or not active")
            raise InvalidRoom(room_id)

        # the connection may have gone away while the bridge was consulted
        if connection_id not in self.registry:
            raise UnknownConnection(connection_id)
        current = self._membership.get(connection_id)
        if current == room_id:
            return JoinResult(joined=False)
        if current is not None:
            self._remove(current, connection_id)

        self._rooms.setdefault(room_id, set()).add(connection_id)
        self._membership[connection_id] = room_id
        logger.info(f"Connection {connection_id} joined room {room_id} (members: {len(self._rooms[room_id])})")
        return JoinResult(joined=True, previous_room=current)

    def leave(self, room_id, connection_id: str) -> bool:
        room_id = normalize_room_id(room_id)
        if self._membership.get(connection_id) != room_id:
            logger.debug(f"Leave ignored: connection {connection_id} not in room {room_id}")
            return False
        self._remove(room_id, connection_id)
        logger.info(f"Connection {connection_id} left room {room_id}")
        return True

    def prune(self, connection_id: str) -> Optional[str]:
        room_id = self._membership.get(connection_id)
        if room_id is not None:
            self._remove(room_id, connection_id)
            logger.debug(f"Pruned connection {connection_id} from room {room_id}")
        return room_id

    def close_room(self, room_id) -> FrozenSet[str]:
        """Drop every member of a room at once; returns who was removed."""
        room_id = normalize_room_id(room_id)
        members = self._rooms.pop(room_id, set())
        for connection_id in members:
            self._membership.pop(connection_id, None)
        if members:
            logger.info(f"Closed room {room_id} with {len(members)} members")
        return frozenset(members)

    def members_of(self, room_id) -> FrozenSet[str]:
        try:
            room_id = normalize_room_id(room_id)
        except InvalidRoom:
            return frozenset()
        return frozenset(self._rooms.get(room_id, ()))

    def room_of(self, connection_id: str) -> Optional[str]:
        return self._membership.get(connection_id)

    def room_ids(self) -> FrozenSet[str]:
        return frozenset(self._rooms)

    def _remove(self, room_id: str, connection_id: str):
        self._membership.pop(connection_id, None)
        members = self._rooms.get(room_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._rooms[room_id]
            logger.info(f"Room {room_id} is empty, removed")

    def _on_deregister(self, connection: Connection):
        self.prune(connection.connection_id)
