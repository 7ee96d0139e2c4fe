"""Out-of-band playback events posted by the Jellyfin webhook plugin.

These never create ledger entries: only the polling monitor opens history
rows. Starts refresh dimensions and fire alerts, progress events feed the
telemetry debouncer, stops close the open entry.
"""

import logging
from typing import Any, Optional

from .jellyfin_client import _as_int
from .models import PlaybackStartEvent, SessionSnapshot
from .monitor import SessionMonitor
from .playback import clean_ip_address

logger = logging.getLogger(__name__)


class WebhookPayloadError(ValueError):
    """The payload is missing the fields needed to process it."""


def _first(payload: dict, *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def _play_state(payload: dict) -> dict:
    return payload.get("PlayState") or {}


def event_type(payload: dict) -> Optional[str]:
    return _first(payload, "NotificationType", "Notification_Type", "Event")


def _track_index(payload: dict, key: str) -> Optional[int]:
    """Track index from PlayState, then the flat template field, as an int."""
    index = _as_int(_play_state(payload).get(key))
    if index is None:
        index = _as_int(payload.get(key))
    return index


async def handle_webhook(
    payload: dict, monitor: SessionMonitor, forwarded_ip: Optional[str] = None
) -> str:
    """Dispatch a webhook payload. Returns the event type that was handled."""
    kind = event_type(payload)
    if not kind:
        raise WebhookPayloadError("Unrecognized payload")

    user_id = _first(payload, "UserId", "User_Id")
    media_id = _first(payload, "ItemId", "Item_Id", "MediaId")

    if kind == "PlaybackStart":
        if not user_id or not media_id:
            raise WebhookPayloadError("UserId or ItemId missing")
        await _handle_start(payload, monitor, user_id, media_id, forwarded_ip)
    elif kind == "PlaybackProgress":
        if user_id and media_id:
            await _handle_progress(payload, monitor, user_id, media_id)
    elif kind == "PlaybackStop":
        if user_id and media_id:
            await _handle_stop(payload, monitor, user_id, media_id)
    else:
        logger.debug(f"Ignoring webhook event {kind}")
    return kind


async def _handle_start(
    payload: dict,
    monitor: SessionMonitor,
    user_id: str,
    media_id: str,
    forwarded_ip: Optional[str],
) -> None:
    play_method = _first(payload, "PlayMethod") or _play_state(payload).get("PlayMethod")
    if not play_method:
        play_method = "Transcode" if payload.get("IsTranscoding") else "DirectPlay"

    snapshot = SessionSnapshot(
        session_id=_first(payload, "SessionId", "Id") or f"webhook:{user_id}:{media_id}",
        user_id=user_id,
        user_name=_first(payload, "UserName", "Username", "NotificationUsername") or "Unknown",
        media_id=media_id,
        media_title=_first(payload, "Name", "Title", "ItemName") or "Unknown",
        media_type=_first(payload, "ItemType", "Type") or "Unknown",
        client_name=_first(payload, "ClientName", "Client") or "Unknown",
        device_name=_first(payload, "DeviceName", "Device") or "Unknown",
        ip_address=clean_ip_address(
            forwarded_ip or _first(payload, "RemoteEndPoint", "IpAddress", "ClientIp")
        ),
        play_method=play_method,
        series_name=_first(payload, "SeriesName"),
    )
    geo = monitor.geo.lookup(snapshot.ip_address)

    await monitor.db.upsert_user(user_id, snapshot.user_name)
    await monitor.db.upsert_media(snapshot)

    is_new_ip = await monitor.db.count_history_for_ip(user_id, snapshot.ip_address) == 0
    await monitor.notifier.notify(
        PlaybackStartEvent(
            user_id=user_id,
            user_name=snapshot.user_name,
            media_id=media_id,
            media_title=snapshot.media_title,
            client_name=snapshot.client_name,
            device_name=snapshot.device_name,
            ip_address=snapshot.ip_address,
            play_method=play_method,
            country=geo.country,
            city=geo.city,
            is_new_ip=is_new_ip,
        ),
        monitor.notifier.policy,
    )


async def _handle_progress(
    payload: dict, monitor: SessionMonitor, user_id: str, media_id: str
) -> None:
    entry = await monitor.db.get_open_history(user_id, media_id)
    if entry is None:
        return

    play_state = _play_state(payload)
    is_paused = payload.get("IsPaused") is True or play_state.get("IsPaused") is True
    audio_index = _track_index(payload, "AudioStreamIndex")
    subtitle_index = _track_index(payload, "SubtitleStreamIndex")
    # Share debouncer state with the polled session that owns the entry
    session_id = _first(payload, "SessionId") or entry.session_id or "webhook"

    delta = monitor.telemetry.observe(
        entry.id, session_id, is_paused, audio_index, subtitle_index
    )
    if not delta.is_empty:
        await monitor.db.increment_history_counters(
            entry.id,
            pause_count=delta.pauses,
            audio_changes=delta.audio_changes,
            subtitle_changes=delta.subtitle_changes,
        )


async def _handle_stop(payload: dict, monitor: SessionMonitor, user_id: str, media_id: str) -> None:
    entry = await monitor.db.get_open_history(user_id, media_id)
    if entry is None:
        return

    position_ticks = _first(payload, "PlaybackPositionTicks", "PositionTicks")
    if position_ticks is None:
        position_ticks = _play_state(payload).get("PositionTicks")
    try:
        position_ticks = int(position_ticks) if position_ticks is not None else None
    except (TypeError, ValueError):
        position_ticks = None

    duration = await monitor.finalize_history(entry, position_ticks, monitor.now())
    logger.info(f"Webhook stop closed history entry {entry.id} ({duration}s)")
