import asyncio
import json
from typing import Awaitable, Callable, Optional

import redis

from logging_config import get_logger

logger = get_logger(__name__)

RECONNECT_DELAY_SECONDS = 1.0


class RoomBroker:
    """Carries room frames between relay instances over Redis pub/sub.

    Each instance publishes what it fanned out locally, tagged with its
    instance id, and runs one pattern subscriber that hands frames from
    other instances to ``deliver``. The sender of a forwarded event is never
    local to the receiving instance, so self-echo suppression still holds.
    """

    def __init__(self, backend, instance_id: str):
        self.backend = backend
        self.instance_id = instance_id
        self._task: Optional[asyncio.Task] = None

    async def forward(self, room_id: str, frame: dict):
        envelope = {"origin": self.instance_id, "session_id": room_id, "frame": frame}
        try:
            await self.backend.publish_event(room_id, envelope)
        except redis.RedisError as e:
            logger.warning(f"Could not forward {frame.get('event')} for room {room_id} to other instances: {e}")

    async def handle_message(self, message: dict, deliver: Callable[[str, dict], Awaitable]) -> bool:
        """Deliver one pub/sub message; returns False when it was skipped."""
        if message.get("type") not in ("message", "pmessage"):
            return False
        try:
            envelope = json.loads(message["data"])
        except (json.JSONDecodeError, TypeError) as e:
            logger.error(f"Error parsing broker message on {message.get('channel')}: {e}")
            return False
        if envelope.get("origin") == self.instance_id:
            return False
        room_id = envelope.get("session_id")
        frame = envelope.get("frame")
        if room_id is None or not isinstance(frame, dict):
            logger.warning(f"Ignoring malformed broker message on {message.get('channel')}")
            return False
        logger.debug(f"Received {frame.get('event')} for room {room_id} from instance {envelope.get('origin')}")
        await deliver(room_id, frame)
        return True

    def start(self, deliver: Callable[[str, dict], Awaitable]):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._listen(deliver))
            logger.info(f"Started room broker listener for instance {self.instance_id}")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped room broker listener")

    async def _listen(self, deliver: Callable[[str, dict], Awaitable]):
        while True:
            pubsub = None
            try:
                pubsub = await self.backend.subscribe_sessions()
                while True:
                    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    if message is None:
                        continue
                    try:
                        await self.handle_message(message, deliver)
                    except Exception as e:
                        logger.error(f"Error delivering broker message: {e}", exc_info=True)
            except redis.RedisError as e:
                logger.error(f"Room broker lost its Redis subscription: {e}", exc_info=True)
                await asyncio.sleep(RECONNECT_DELAY_SECONDS)
            finally:
                if pubsub is not None:
                    try:
                        await pubsub.aclose()
                    except redis.RedisError as e:
                        logger.debug(f"Error closing broker pub/sub: {e}")
