"""Tests for the realtime status HTTP endpoints."""
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import FakeTransport, RecordingSleep, make_backend
from livesync.config import AppConfig
from livesync.main import app as main_app
from livesync.realtime.client import LiveSyncClient
from livesync.realtime.router import router as realtime_router


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def api(transport):
    app = FastAPI()
    app.include_router(realtime_router)
    app.state.livesync = LiveSyncClient(
        transport,
        backend=make_backend(),
        config=AppConfig(),
        actor_id="u-alice",
        sleep=RecordingSleep(),
    )
    return TestClient(app)


def test_health():
    client = TestClient(main_app)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_status_before_connect(api):
    response = api.get("/realtime/status")
    assert response.status_code == 200
    assert response.json() == {
        "state": "disconnected",
        "indicator": "offline",
        "active_subscriptions": 0,
        "reconnect": {"attempts": 0, "delay_ms": 0, "max_attempts": 5},
    }


def test_reconnect_connects(api, transport):
    response = api.post("/realtime/reconnect")
    assert response.status_code == 200
    assert response.json()["state"] == "connected"
    assert response.json()["indicator"] == "online"
    assert transport.open_count == 1


def test_reconnect_failure_returns_503(api, transport):
    transport.fail_opens = 1
    response = api.post("/realtime/reconnect")
    assert response.status_code == 503
    assert "connection refused" in response.json()["detail"]


def test_missing_client_returns_503():
    app = FastAPI()
    app.include_router(realtime_router)
    response = TestClient(app).get("/realtime/status")
    assert response.status_code == 503
