"""Pytest configuration and fixtures for sparecompute tests."""

import asyncio
import json
from pathlib import Path

import pytest

from sparecompute.config import AgentConfig
from sparecompute.connection import TransportError
from sparecompute.schemas import PluginIdentity
from sparecompute.store import CredentialStore


class FakeTransport:
    """In-memory stand-in for a websocket client connection."""

    def __init__(self, auto_ack: bool = True):
        self.auto_ack = auto_ack
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.closed = False

    async def send(self, message: str) -> None:
        if self.closed:
            raise TransportError("socket is closed")
        frame = json.loads(message)
        self.sent.append(frame)
        if self.auto_ack and frame.get("type") == "connect":
            self.push({"type": "connected"})

    async def recv(self) -> str:
        message = await self.inbound.get()
        if message is None:
            raise TransportError("socket closed by broker")
        return message

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbound.put_nowait(None)

    def push(self, frame: dict) -> None:
        self.inbound.put_nowait(json.dumps(frame))

    def push_raw(self, message: str) -> None:
        self.inbound.put_nowait(message)

    def drop(self) -> None:
        """Simulate the broker closing the socket."""
        self.closed = True
        self.inbound.put_nowait(None)

    def sent_of_type(self, frame_type: str) -> list[dict]:
        return [frame for frame in self.sent if frame.get("type") == frame_type]


class FakeBroker:
    """Connector handing out a fresh FakeTransport per connection."""

    def __init__(self, auto_ack: bool = True, refuse: int = 0):
        self.auto_ack = auto_ack
        self.refuse = refuse
        self.transports: list[FakeTransport] = []
        self.urls: list[str] = []

    async def __call__(self, url: str) -> FakeTransport:
        self.urls.append(url)
        if self.refuse > 0:
            self.refuse -= 1
            raise ConnectionRefusedError("connection refused")
        transport = FakeTransport(auto_ack=self.auto_ack)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll predicate on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Temporary path for the credential store database."""
    return tmp_path / "agent.db"


@pytest.fixture
def store(db_path: Path) -> CredentialStore:
    return CredentialStore(db_path=db_path)


@pytest.fixture
def config(db_path: Path) -> AgentConfig:
    """Config with short timeouts and near-zero reconnect delays."""
    return AgentConfig(
        db_path=db_path,
        local_candidates=[],
        connect_timeout=1.0,
        heartbeat_timeout=None,
        reconnect_initial_delay=0.01,
        reconnect_max_delay=0.05,
        reconnect_jitter=0.0,
    )


@pytest.fixture
def identity() -> PluginIdentity:
    return PluginIdentity(plugin_id="plugin-123", connection_token="tok-abc")


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()
