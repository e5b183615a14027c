from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient
from starlette.testclient import WebSocketDenialResponse
from starlette.websockets import WebSocketDisconnect

from coach_relay.exceptions import UpstreamUnavailable
from coach_relay.main import create_app
from coach_relay.services.coach_directory import CoachDirectory
from coach_relay.services.relay import RelayManager
from coach_relay.services.tool_dispatch import ToolDispatcher


class StubCoachStore:
    def __init__(self, rows: dict[str, str]) -> None:
        self.rows = rows

    async def fetch_coach_agent_id(self, coach_id: str):  # noqa: ANN201
        return self.rows.get(coach_id)


class StubConnector:
    def __init__(self, upstream, fail_signed_url: bool = False) -> None:  # noqa: ANN001
        self.upstream = upstream
        self.fail_signed_url = fail_signed_url
        self.signed_url_requests: list[str] = []
        self.connected: list[str] = []

    async def get_signed_url(self, agent_id: str) -> str:
        self.signed_url_requests.append(agent_id)
        if self.fail_signed_url:
            raise UpstreamUnavailable("ElevenLabs API error: 500 - boom")
        return f"wss://upstream.test/{agent_id}"

    async def connect(self, signed_url: str):  # noqa: ANN201
        self.connected.append(signed_url)
        return self.upstream


@pytest.fixture
def connector(fake_upstream) -> StubConnector:  # noqa: ANN001
    return StubConnector(fake_upstream)


@pytest.fixture
def client(connector, history_store, relay_settings):  # noqa: ANN001, ANN201
    import httpx

    manager = RelayManager(
        directory=CoachDirectory(StubCoachStore({"coach-1": "agent_from_db"}), relay_settings.agent_id_prefix),
        upstream=connector,
        dispatcher=ToolDispatcher(httpx.AsyncClient(), config=relay_settings),
        store=history_store,
        config=relay_settings,
    )
    with TestClient(create_app(manager)) as test_client:
        yield test_client


def test_health_endpoint(client):  # noqa: ANN001
    response = client.get("/")

    assert response.status_code == 200
    assert response.json() == {"service": "coach-voice-relay", "status": "ok", "active_sessions": 0}


def test_plain_http_request_is_rejected(client):  # noqa: ANN001
    response = client.get("/realtime/voice", params={"coachId": "agent_1"})

    assert response.status_code == 400
    assert response.json() == {"error": "Expected WebSocket connection"}


def test_missing_coach_id_is_denied(client, connector):  # noqa: ANN001
    with pytest.raises(WebSocketDenialResponse) as excinfo:
        with client.websocket_connect("/realtime/voice"):
            pass

    assert excinfo.value.status_code == 400
    assert excinfo.value.json() == {"error": "Missing coachId"}
    assert connector.signed_url_requests == []


def test_unknown_coach_is_denied_without_upstream(client, connector):  # noqa: ANN001
    with pytest.raises(WebSocketDenialResponse) as excinfo:
        with client.websocket_connect("/realtime/voice?coachId=nobody"):
            pass

    assert excinfo.value.status_code == 404
    assert connector.signed_url_requests == []
    assert connector.connected == []


def test_signed_url_failure_is_denied(client, connector):  # noqa: ANN001
    connector.fail_signed_url = True

    with pytest.raises(WebSocketDenialResponse) as excinfo:
        with client.websocket_connect("/realtime/voice?coachId=coach-1"):
            pass

    assert excinfo.value.status_code == 502
    assert connector.signed_url_requests == ["agent_from_db"]
    assert connector.connected == []


def test_end_to_end_audio_relay(client, connector, fake_upstream, history_store):  # noqa: ANN001
    fake_upstream.hang_up_after_audio(3, code=1000, reason="conversation ended")

    with client.websocket_connect("/realtime/voice?coachId=coach-1") as websocket:
        assert websocket.receive_json() == {"type": "connected"}
        for chunk in (b"\x01\x02", b"\x03", b"\x04\x05\x06"):
            websocket.send_bytes(chunk)
        # The relay finishes the session itself, so the socket is closed before the block exits.
        assert websocket.receive_json() == {"type": "disconnected", "code": 1000, "reason": "conversation ended"}
        with pytest.raises(WebSocketDisconnect):
            websocket.receive_json()

    chunks = [
        json.loads(message)["user_audio_chunk"]
        for message in fake_upstream.sent
        if "user_audio_chunk" in message
    ]
    assert chunks == ["AQI=", "Aw==", "BAUG"]
    assert connector.connected == ["wss://upstream.test/agent_from_db"]
    assert fake_upstream.closed
    assert history_store.records == []
