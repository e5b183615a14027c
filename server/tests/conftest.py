from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional, Union

import pytest
from websockets.exceptions import ConnectionClosedOK
from websockets.frames import Close

from coach_relay.config import Settings
from coach_relay.models.schemas import ConversationHistoryRecord
from coach_relay.services.session_bootstrap import SessionPlan


class FakeClientSocket:
    """Stands in for a Starlette ``WebSocket`` that has already been accepted."""

    def __init__(self) -> None:
        self.incoming: asyncio.Queue[Any] = asyncio.Queue()
        self.sent: list[Union[str, bytes]] = []
        self.closed = False
        self.close_code: Optional[int] = None

    def feed_bytes(self, data: bytes) -> None:
        self.incoming.put_nowait({"type": "websocket.receive", "bytes": data})

    def feed_text(self, text: str) -> None:
        self.incoming.put_nowait({"type": "websocket.receive", "text": text})

    def disconnect(self, code: int = 1000) -> None:
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": code})

    def fail(self, exc: BaseException) -> None:
        self.incoming.put_nowait(exc)

    async def receive(self) -> dict[str, Any]:
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def send_text(self, data: str) -> None:
        if self.closed:
            raise RuntimeError("Cannot call send once a close message has been sent.")
        self.sent.append(data)

    async def send_bytes(self, data: bytes) -> None:
        if self.closed:
            raise RuntimeError("Cannot call send once a close message has been sent.")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.closed = True
        self.close_code = code

    def sent_json(self) -> list[Any]:
        return [json.loads(item) for item in self.sent if isinstance(item, str)]


class FakeUpstream:
    """Scripted stand-in for the ElevenLabs websocket connection."""

    def __init__(self) -> None:
        self.incoming: asyncio.Queue[Any] = asyncio.Queue()
        self.sent: list[Union[str, bytes]] = []
        self.closed = False
        self.close_calls = 0
        self._hang_up: Optional[tuple[int, int, str]] = None

    def push(self, message: Union[str, bytes, dict]) -> None:
        if isinstance(message, dict):
            message = json.dumps(message)
        self.incoming.put_nowait(message)

    def fail(self, exc: BaseException) -> None:
        self.incoming.put_nowait(exc)

    def hang_up_after_audio(self, chunks: int, code: int = 1000, reason: str = "") -> None:
        """Close from the remote side once ``chunks`` audio chunks have arrived."""

        self._hang_up = (chunks, code, reason)

    def close_from_remote(self, code: int = 1000, reason: str = "") -> None:
        frame = Close(code, reason)
        self.incoming.put_nowait(ConnectionClosedOK(frame, None))

    async def recv(self) -> Union[str, bytes]:
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            self.closed = True
            raise item
        return item

    async def send(self, message: Union[str, bytes]) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(message)
        if self._hang_up is not None:
            chunks, code, reason = self._hang_up
            received = sum(1 for item in self.sent if isinstance(item, str) and "user_audio_chunk" in item)
            if received == chunks:
                self._hang_up = None
                self.close_from_remote(code, reason)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_calls += 1
        self.incoming.put_nowait(ConnectionClosedOK(None, Close(code, reason)))

    def sent_json(self) -> list[Any]:
        return [json.loads(item) for item in self.sent if isinstance(item, str)]


class RecordingHistoryStore:
    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.records: list[ConversationHistoryRecord] = []

    async def upsert_conversation_history(self, record: ConversationHistoryRecord) -> bool:
        self.records.append(record)
        return self.succeed


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate`` holds."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def relay_settings() -> Settings:
    return Settings(
        elevenlabs_api_key="xi-test-key",
        elevenlabs_api_base_url="https://api.elevenlabs.test",
        supabase_url="https://proj.supabase.test",
        supabase_service_role_key="service-role-key",
        supabase_jwt_secret=None,
        default_voice_id="default-voice",
        voice_override_enabled=False,
        agent_id_prefix="agent_",
        activity_flush_interval_seconds=30.0,
        conversation_start_delay_seconds=0.0,
    )


@pytest.fixture
def make_plan() -> Callable[..., SessionPlan]:
    def factory(user_id: Optional[str] = "user-123", agent_id: str = "agent_abc", **overrides: Any) -> SessionPlan:
        values: dict[str, Any] = {
            "coach_reference": agent_id,
            "agent_id": agent_id,
            "voice_id": "default-voice",
            "voice_explicit": False,
            "user_id": user_id,
            "signed_url": "wss://api.elevenlabs.test/v1/convai/conversation?token=signed",
        }
        values.update(overrides)
        return SessionPlan(**values)

    return factory


@pytest.fixture
def fake_client() -> FakeClientSocket:
    return FakeClientSocket()


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def history_store() -> RecordingHistoryStore:
    return RecordingHistoryStore()


@pytest.fixture(name="eventually")
def eventually_fixture() -> Callable[..., Any]:
    return eventually
