from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class SessionSnapshot(BaseModel):
    """One live playback session as parsed from Jellyfin's /Sessions payload."""

    session_id: str
    user_id: Optional[str] = None
    user_name: str = "Unknown"
    media_id: Optional[str] = None
    media_title: str = "Unknown"
    media_type: str = "Unknown"
    client_name: str = "Unknown"
    device_name: str = "Unknown"
    ip_address: str = "127.0.0.1"
    play_method: str = "DirectPlay"
    position_ticks: Optional[int] = None
    runtime_ticks: Optional[int] = None
    is_paused: bool = False
    audio_index: Optional[int] = None
    audio_language: Optional[str] = None
    audio_codec: Optional[str] = None
    subtitle_index: Optional[int] = None
    subtitle_language: Optional[str] = None
    subtitle_codec: Optional[str] = None
    video_width: Optional[int] = None
    resolution: Optional[str] = None
    video_codec: Optional[str] = None
    transcode_audio_codec: Optional[str] = None
    transcode_fps: Optional[float] = None
    bitrate: Optional[int] = None
    series_id: Optional[str] = None
    series_name: Optional[str] = None
    season_id: Optional[str] = None
    album_id: Optional[str] = None
    season_number: Optional[int] = None
    episode_number: Optional[int] = None
    country: str = "Unknown"
    city: str = "Unknown"

    @property
    def is_trackable(self) -> bool:
        """Sessions without a user or item are cached but never persisted."""
        return bool(self.user_id and self.media_id)


class ActiveStream(BaseModel):
    """Durable mirror of a live session."""

    session_id: str
    user_id: str
    media_id: str
    user_name: str = "Unknown"
    media_title: str = "Unknown"
    play_method: str = "DirectPlay"
    client_name: str = "Unknown"
    device_name: str = "Unknown"
    ip_address: str = "127.0.0.1"
    country: str = "Unknown"
    city: str = "Unknown"
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    transcode_fps: Optional[float] = None
    bitrate: Optional[int] = None
    position_ticks: Optional[int] = None
    runtime_ticks: Optional[int] = None
    is_paused: bool = False
    started_at: datetime
    last_ping_at: datetime


class PlaybackHistory(BaseModel):
    """One ledger entry: a user watching a media item."""

    id: Optional[int] = None
    session_id: Optional[str] = None
    user_id: str
    media_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_watched: int = 0
    play_method: str = "DirectPlay"
    client_name: str = "Unknown"
    device_name: str = "Unknown"
    ip_address: str = "127.0.0.1"
    country: str = "Unknown"
    city: str = "Unknown"
    audio_language: Optional[str] = None
    audio_codec: Optional[str] = None
    subtitle_language: Optional[str] = None
    subtitle_codec: Optional[str] = None
    pause_count: int = 0
    audio_changes: int = 0
    subtitle_changes: int = 0

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


class GeoLocation(BaseModel):
    country: str = "Unknown"
    city: str = "Unknown"


class NotifyPolicy(str, Enum):
    ALL = "all"
    TRANSCODE_ONLY = "transcode-only"
    NEW_IP_ONLY = "new-ip-only"


class PlaybackStartEvent(BaseModel):
    """Payload handed to the notifier when a playback starts."""

    user_id: str
    user_name: str
    media_id: str
    media_title: str
    client_name: str
    device_name: str
    ip_address: str
    play_method: str
    country: str = "Unknown"
    city: str = "Unknown"
    is_new_ip: bool = False

    @property
    def is_transcode(self) -> bool:
        return self.play_method == "Transcode"


class TelemetryDelta(BaseModel):
    pauses: int = 0
    audio_changes: int = 0
    subtitle_changes: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.pauses or self.audio_changes or self.subtitle_changes)


class SnapshotDiff(BaseModel):
    """Classification of a poll against the previously cached sessions."""

    new: list[SessionSnapshot] = []
    continuing: list[SessionSnapshot] = []
    item_changed: list[tuple[SessionSnapshot, SessionSnapshot]] = []
    disappeared: list[str] = []


class RuntimeIntervals(BaseModel):
    monitor_interval_active_ms: int
    monitor_interval_idle_ms: int
