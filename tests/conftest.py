import asyncio
from typing import Iterable, Optional

import pytest

from relay.service import Relay


class FakeTransport:
    """Records frames; ``stall()`` makes every later send hang until released."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.sent = []
        self.closed = False
        self.close_code = None
        self.fail_with = fail_with
        self._gate = None

    def stall(self):
        self._gate = asyncio.Event()

    def release(self):
        if self._gate is not None:
            self._gate.set()

    async def send_json(self, data):
        if self.fail_with is not None:
            raise self.fail_with
        if self._gate is not None:
            await self._gate.wait()
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: Optional[str] = None):
        self.closed = True
        self.close_code = code

    def events(self, name: str = None):
        return [frame for frame in self.sent if name is None or frame.get("event") == name]


class FakeBridge:
    def __init__(self, active: Iterable[str] = ()):
        self.active = set(active)
        self.calls = []

    async def session_is_active(self, session_id: str) -> bool:
        self.calls.append(session_id)
        return session_id in self.active


class FakeBackend:
    """In-memory stand-in for ``RedisBackend``."""

    def __init__(self, healthy: bool = True):
        self.sessions = {}
        self.published = []
        self.healthy = healthy

    async def ping(self) -> bool:
        return self.healthy

    async def close(self):
        pass

    async def create_session(self, session_id, session_data, ttl=86400):
        self.sessions[session_id] = {k: v for k, v in session_data.items() if v is not None}
        return session_id

    async def get_session(self, session_id):
        session = self.sessions.get(session_id)
        return dict(session) if session else None

    async def update_session(self, session_id, fields):
        if session_id not in self.sessions:
            return False
        self.sessions[session_id].update(fields)
        return True

    async def publish_event(self, session_id, message):
        self.published.append((session_id, message))
        return 0


@pytest.fixture
def bridge():
    return FakeBridge({"sess-1", "sess-2"})


@pytest.fixture
def relay(bridge):
    return Relay(bridge, delivery_timeout=0.2)


@pytest.fixture
def connect(relay):
    """Register a fake transport and return (connection_id, transport)."""

    def _connect(user_id: str = None, **kwargs):
        transport = FakeTransport(**kwargs)
        connection_id = relay.connect(transport, user_id=user_id)
        return connection_id, transport

    return _connect
