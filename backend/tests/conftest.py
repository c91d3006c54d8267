"""Shared test fixtures and fakes for the livesync test suite."""
import asyncio
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from livesync.backend_api.schemas import Conversation, Profile
from livesync.errors import NotConnected, TransportError
from livesync.realtime.connection import ConnectionManager
from livesync.realtime.event_router import EventRouter
from livesync.realtime.registry import SubscriptionRegistry
from livesync.realtime.transport import Transport


class FakeTransport(Transport):
    """In-memory transport.

    Confirms every open with a ``connected`` frame unless ``auto_confirm`` is
    off. ``fail_opens`` makes the next N opens raise TransportError and
    ``drop_after_confirm`` makes the next N opens close right after the
    confirmation frame.
    ``drop()`` simulates a remote close and ``emit()`` a server frame.
    """

    def __init__(self, auto_confirm: bool = True) -> None:
        self.auto_confirm = auto_confirm
        self.fail_opens = 0
        self.drop_after_confirm = 0
        self.open_count = 0
        self.close_count = 0
        self.is_open = False
        self.sent: List[Dict[str, Any]] = []
        self._on_frame = None
        self._on_close = None

    async def open(self, on_frame, on_close) -> None:
        self.open_count += 1
        if self.fail_opens > 0:
            self.fail_opens -= 1
            raise TransportError("connection refused")
        self.is_open = True
        self._on_frame = on_frame
        self._on_close = on_close
        if self.auto_confirm:
            asyncio.get_running_loop().call_soon(on_frame, {"type": "connected"})
        if self.drop_after_confirm > 0:
            self.drop_after_confirm -= 1
            asyncio.get_running_loop().call_soon(self.drop, ConnectionError("reset after handshake"))

    async def send(self, frame: Dict[str, Any]) -> None:
        if not self.is_open:
            raise NotConnected()
        self.sent.append(frame)

    async def close(self) -> None:
        self.close_count += 1
        self.is_open = False

    def emit(self, frame: Dict[str, Any]) -> None:
        assert self._on_frame is not None, "transport was never opened"
        self._on_frame(frame)

    def drop(self, error: Optional[BaseException] = None) -> None:
        self.is_open = False
        self._on_close(error)

    def frames(self, frame_type: str) -> List[Dict[str, Any]]:
        return [f for f in self.sent if f.get("type") == frame_type]


class RecordingSleep:
    """Backoff sleep that records the requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


async def settle(rounds: int = 20) -> None:
    """Let scheduled tasks and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def change_frame(
    topic: str,
    event_type: str,
    table: str,
    new: Optional[Dict[str, Any]] = None,
    old: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "type": "change",
        "topic": topic,
        "payload": {
            "eventType": event_type,
            "table": table,
            "schema": "public",
            "new": new,
            "old": old,
        },
    }


def make_backend(
    profiles: Optional[Dict[str, Profile]] = None,
    conversations: Optional[Dict[str, Conversation]] = None,
) -> MagicMock:
    """Backend double with async fetch_profile / fetch_conversation."""
    profiles = profiles or {}
    conversations = conversations or {}
    backend = MagicMock()
    backend.fetch_profile = AsyncMock(side_effect=lambda user_id: profiles.get(user_id))
    backend.fetch_conversation = AsyncMock(side_effect=lambda cid: conversations.get(cid))
    backend.aclose = AsyncMock()
    return backend


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def connection(transport, sleeper):
    return ConnectionManager(
        transport,
        connect_timeout=0.5,
        base_delay_ms=1000,
        max_delay_ms=30000,
        max_attempts=5,
        sleep=sleeper,
    )


@pytest.fixture
def backend():
    return make_backend(
        profiles={
            "u-alice": Profile(id="u-alice", username="alice", full_name="Alice"),
            "u-bob": Profile(id="u-bob", username="bob", full_name="Bob"),
        },
        conversations={
            "c-ab": Conversation(id="c-ab", participant_1="u-alice", participant_2="u-bob"),
            "c-xy": Conversation(id="c-xy", participant_1="u-xavier", participant_2="u-yara"),
        },
    )


@pytest.fixture
def router(backend):
    return EventRouter(backend)


@pytest.fixture
def registry(connection, router):
    return SubscriptionRegistry(connection, router, max_channels=5)
