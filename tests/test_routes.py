from datetime import datetime, timezone

from fastapi.testclient import TestClient

import dashboard.routes as routes_module
from dashboard.app import app
from jellypulse.cache import EphemeralCache, stream_key
from jellypulse.models import RuntimeIntervals, SessionSnapshot
from jellypulse.monitor import SchedulerState
from jellypulse.webhook import WebhookPayloadError


class _DummyDB:
    def __init__(self, connected: bool = False):
        self.connected = connected
        self.saved = []

    @property
    def conn(self):
        if not self.connected:
            raise RuntimeError("not connected")
        return object()

    async def get_active_streams(self):
        return []


class _DummyMonitor:
    def __init__(self, connected: bool = False):
        self.db = _DummyDB(connected)
        self.cache = EphemeralCache()
        self.state = SchedulerState(active_ms=1000, idle_ms=5000, error_ms=30000)

    def status(self):
        return self.state.status()

    async def update_intervals(self, active_ms, idle_ms):
        intervals = self.state.set_intervals(active_ms, idle_ms)
        self.db.saved.append(intervals)
        return intervals


def _client(monkeypatch, monitor=None) -> TestClient:
    monkeypatch.setattr(routes_module, "session_monitor", monitor or _DummyMonitor())
    return TestClient(app)


def test_health_reports_disconnected_db(monkeypatch):
    client = _client(monkeypatch)
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["db_connected"] is False
    assert data["monitor"]["regime"] == "idle"


def test_health_reports_connected_db(monkeypatch):
    client = _client(monkeypatch, _DummyMonitor(connected=True))
    assert client.get("/health").json()["db_connected"] is True


def test_metrics_endpoint(monkeypatch):
    monitor = _DummyMonitor()
    monitor.state.record_success(True, datetime(2024, 1, 1, tzinfo=timezone.utc))
    monitor.state.live_session_count = 2
    client = _client(monkeypatch, monitor)

    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "jellypulse_live_streams 2.0" in resp.text
    assert "jellypulse_poll_interval_seconds 1.0" in resp.text


def test_live_streams_lists_cached_snapshots(monkeypatch):
    monitor = _DummyMonitor()
    monitor.cache.set(
        stream_key("S1"),
        SessionSnapshot(session_id="S1", user_id="U", media_id="I", media_title="Pilot"),
        60,
    )
    monitor.cache.set("pause:1", "paused", 60)
    client = _client(monkeypatch, monitor)

    data = client.get("/api/streams").json()
    assert [s["session_id"] for s in data] == ["S1"]
    assert data[0]["media_title"] == "Pilot"


def test_get_and_update_intervals(monkeypatch):
    monitor = _DummyMonitor()
    client = _client(monkeypatch, monitor)

    assert client.get("/api/settings/intervals").json() == {
        "monitor_interval_active_ms": 1000,
        "monitor_interval_idle_ms": 5000,
    }

    resp = client.put("/api/settings/intervals", json={"monitor_interval_active_ms": 100})
    assert resp.status_code == 200
    assert resp.json() == {"monitor_interval_active_ms": 500, "monitor_interval_idle_ms": 5000}
    assert monitor.db.saved == [
        RuntimeIntervals(monitor_interval_active_ms=500, monitor_interval_idle_ms=5000)
    ]
    assert monitor.state.active_interval_ms == 500


def test_webhook_rejects_invalid_json(monkeypatch):
    client = _client(monkeypatch)
    resp = client.post(
        "/api/webhook/jellyfin",
        content="not json",
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid JSON"}

    resp = client.post("/api/webhook/jellyfin", json=[1, 2])
    assert resp.status_code == 400


def test_webhook_dispatches_with_forwarded_ip(monkeypatch):
    calls = []

    async def fake_handle(payload, monitor, forwarded_ip=None):
        calls.append((payload, forwarded_ip))
        return payload["NotificationType"]

    monkeypatch.setattr(routes_module, "handle_webhook", fake_handle)
    client = _client(monkeypatch)

    resp = client.post(
        "/api/webhook/jellyfin",
        json={"NotificationType": "PlaybackStop"},
        headers={"x-forwarded-for": "198.51.100.4, 10.0.0.1"},
    )
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "event": "PlaybackStop"}
    assert calls == [({"NotificationType": "PlaybackStop"}, "198.51.100.4")]

    client.post(
        "/api/webhook/jellyfin",
        json={"NotificationType": "PlaybackStart"},
        headers={"x-real-ip": "198.51.100.9"},
    )
    assert calls[-1][1] == "198.51.100.9"


def test_webhook_payload_error_is_400(monkeypatch):
    async def fake_handle(payload, monitor, forwarded_ip=None):
        raise WebhookPayloadError("UserId or ItemId missing")

    monkeypatch.setattr(routes_module, "handle_webhook", fake_handle)
    client = _client(monkeypatch)

    resp = client.post("/api/webhook/jellyfin", json={"NotificationType": "PlaybackStart"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "UserId or ItemId missing"}
