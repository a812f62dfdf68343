from datetime import datetime, timezone
from typing import Protocol

import redis

from logging_config import get_logger
from relay.errors import SessionUnavailable

logger = get_logger(__name__)


class SessionLifecycleBridge(Protocol):
    async def session_is_active(self, session_id: str) -> bool: ...


def session_is_live(session: dict) -> bool:
    """True for a stored session whose status is active and that has not expired."""
    if not session or session.get("status") != "active":
        return False
    expires_at = session.get("expires_at")
    if not expires_at:
        return True
    try:
        expires = datetime.fromisoformat(str(expires_at).replace("Z", "+00:00"))
    except ValueError:
        # unparseable expiry, rely on the key TTL instead
        return True
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    return expires > datetime.now(timezone.utc)


class RedisSessionBridge:
    """Answers join authorization from the session hashes kept by ``RedisBackend``."""

    def __init__(self, backend):
        self.backend = backend

    async def session_is_active(self, session_id: str) -> bool:
        try:
            session = await self.backend.get_session(session_id)
        except redis.RedisError as e:
            logger.error(f"Session lookup failed for {session_id}: {e}", exc_info=True)
            raise SessionUnavailable("Session store is unavailable, try joining again") from e
        active = session_is_live(session)
        logger.debug(f"Session {session_id} active: {active}")
        return active
