"""Shared test fixtures and configuration for backend tests."""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import pytest
import pytest_asyncio
from jose import jwt

from teamchat.client.connection import ConnectionManager
from teamchat.client.transport import Transport
from teamchat.config import (
    AppConfig,
    ClientSettings,
    JWTSecrets,
    PresenceSettings,
    Secrets,
    reset_config,
    set_config,
)
from teamchat.errors import AuthError, TransportError
from teamchat.relay import relay

TEST_SECRET = "test-secret"


def make_token(
    user_id: str = "user-1",
    name: str = "Alice",
    expires_in: timedelta = timedelta(minutes=30),
    secret: str = TEST_SECRET,
) -> str:
    """Mint a bearer token the way the external auth service would."""
    claims = {"sub": user_id, "name": name, "exp": datetime.now(timezone.utc) + expires_in}
    return jwt.encode(claims, secret, algorithm="HS256")


def fast_client_settings(**overrides) -> ClientSettings:
    """Client settings with near-zero reconnect delays and no jitter."""
    values = dict(
        reconnect_delay_ms=1,
        max_reconnect_delay_ms=5,
        randomization_factor=0.0,
        connect_timeout_ms=1000,
    )
    values.update(overrides)
    return ClientSettings(**values)


async def settle(rounds: int = 5) -> None:
    """Let queued callbacks, the writer task and the read loop run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Poll ``predicate`` until it holds; fail the test after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
    await settle()


@pytest.fixture(autouse=True)
def app_config():
    """Install a config with a known JWT secret for every test."""
    config = AppConfig(
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
        client=fast_client_settings(),
        presence=PresenceSettings(typing_idle_ms=1000, remote_typing_ttl_ms=5000),
    )
    set_config(config)
    yield config
    reset_config()


@pytest.fixture
def clean_relay():
    """Clear relay rooms, sockets and backlogs after a test."""
    yield relay
    for workspace_id in set(relay.room_connections) | set(relay.message_history):
        relay.clear_room(workspace_id)
    relay.identities.clear()
    relay.socket_rooms.clear()


# ---------------------------------------------------------------------------
# In-memory relay for client-side tests
# ---------------------------------------------------------------------------


class FakeTransport(Transport):
    """Transport whose far end is a ``FakeRelay``."""

    def __init__(self, relay: "FakeRelay") -> None:
        self.relay = relay
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def open(self, token: str) -> None:
        self.relay.opened_tokens.append(token)
        if self.relay.open_errors:
            raise self.relay.open_errors.pop(0)
        if token in self.relay.rejected_tokens:
            raise AuthError("Authentication error")
        self.inbox.put_nowait({"event": "connected", "data": dict(self.relay.identity)})

    async def send(self, frame: dict) -> None:
        if self.closed:
            raise TransportError("closed")
        self.relay.sent.append(frame)

    async def receive(self) -> dict:
        item = await self.inbox.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class FakeRelay:
    """Scriptable far end: records client frames, pushes relay frames."""

    def __init__(self, user_id: str = "me", user_name: str = "Me") -> None:
        self.identity = {"userId": user_id, "userName": user_name}
        self.sent: List[dict] = []
        self.transports: List[FakeTransport] = []
        self.opened_tokens: List[str] = []
        self.open_errors: List[Exception] = []
        self.rejected_tokens: set = set()

    def factory(self) -> FakeTransport:
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> Optional[FakeTransport]:
        return self.transports[-1] if self.transports else None

    def push(self, event: str, data: Any = None) -> None:
        self.current.inbox.put_nowait({"event": event, "data": data})

    def drop(self, error: Optional[Exception] = None) -> None:
        """Break the current link from the relay side."""
        self.current.inbox.put_nowait(error or TransportError("link lost"))

    def events(self, name: Optional[str] = None) -> List[tuple]:
        """(event, data) pairs sent by the client, optionally filtered by name."""
        return [
            (frame["event"], frame["data"]) for frame in self.sent
            if name is None or frame["event"] == name
        ]


@pytest.fixture
def fake_relay():
    return FakeRelay()


@pytest_asyncio.fixture
async def manager(fake_relay):
    """Connection manager wired to the in-memory relay; disconnected afterwards."""
    manager = ConnectionManager(fake_relay.factory, fast_client_settings())
    yield manager
    await manager.disconnect()


@pytest_asyncio.fixture
async def connection(manager):
    """A CONNECTED handle authenticated as user "me"."""
    conn = await manager.connect("token-1")
    await settle()
    return conn
