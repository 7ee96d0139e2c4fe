from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, Gauge, generate_latest
from pydantic import BaseModel

from jellypulse.cache import STREAM_PREFIX
from jellypulse.models import SessionSnapshot
from jellypulse.monitor import session_monitor
from jellypulse.webhook import WebhookPayloadError, handle_webhook

router = APIRouter()

LIVE_STREAMS = Gauge("jellypulse_live_streams", "Sessions seen playing in the last poll")
ACTIVE_STREAM_ROWS = Gauge("jellypulse_active_stream_rows", "Rows in the active_streams table")
POLL_ERRORS = Gauge("jellypulse_poll_consecutive_errors", "Consecutive failed session polls")
POLL_INTERVAL = Gauge("jellypulse_poll_interval_seconds", "Delay before the next session poll")
LAST_POLL = Gauge("jellypulse_last_poll_timestamp", "Last successful poll unix timestamp")


class IntervalsUpdate(BaseModel):
    monitor_interval_active_ms: Optional[int] = None
    monitor_interval_idle_ms: Optional[int] = None


@router.get("/health")
async def health():
    """Basic health check."""
    try:
        _ = session_monitor.db.conn
        db_connected = True
    except RuntimeError:
        db_connected = False
    return {
        "status": "ok",
        "db_connected": db_connected,
        "monitor": session_monitor.status(),
    }


@router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    status = session_monitor.status()
    rows = await session_monitor.db.get_active_streams()

    LIVE_STREAMS.set(status["live_sessions"])
    ACTIVE_STREAM_ROWS.set(len(rows))
    POLL_ERRORS.set(status["consecutive_errors"])
    POLL_INTERVAL.set(status["interval_ms"] / 1000)
    if session_monitor.state.last_poll_at:
        LAST_POLL.set(session_monitor.state.last_poll_at.timestamp())
    else:
        LAST_POLL.set(0)

    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/api/streams")
async def live_streams() -> list[SessionSnapshot]:
    """Live sessions as currently held in the ephemeral cache."""
    cache = session_monitor.cache
    snapshots = [cache.get(key) for key in cache.keys(STREAM_PREFIX)]
    return [s for s in snapshots if isinstance(s, SessionSnapshot)]


@router.get("/api/settings/intervals")
async def get_intervals():
    state = session_monitor.state
    return {
        "monitor_interval_active_ms": state.active_interval_ms,
        "monitor_interval_idle_ms": state.idle_interval_ms,
    }


@router.put("/api/settings/intervals")
async def update_intervals(update: IntervalsUpdate):
    """Change poll intervals without restarting the monitor."""
    state = session_monitor.state
    active = update.monitor_interval_active_ms
    idle = update.monitor_interval_idle_ms
    intervals = await session_monitor.update_intervals(
        active if active is not None else state.active_interval_ms,
        idle if idle is not None else state.idle_interval_ms,
    )
    return intervals.model_dump()


@router.post("/api/webhook/jellyfin")
async def jellyfin_webhook(request: Request):
    """Out-of-band playback events from the Jellyfin webhook plugin."""
    try:
        payload = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"error": "Invalid payload"}, status_code=400)

    forwarded_for = request.headers.get("x-forwarded-for")
    forwarded_ip = (
        forwarded_for.split(",")[0].strip() if forwarded_for else request.headers.get("x-real-ip")
    )
    try:
        kind = await handle_webhook(payload, session_monitor, forwarded_ip)
    except WebhookPayloadError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return {"success": True, "event": kind}
