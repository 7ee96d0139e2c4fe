from typing import Any, Optional

import httpx

from .config import Settings, settings
from .models import SessionSnapshot
from .playback import classify_resolution, clean_ip_address


class JellyfinNotConfiguredError(Exception):
    """Jellyfin URL or API key is missing."""


class JellyfinUnavailableError(Exception):
    """Jellyfin answered /Sessions with a non-success status."""

    def __init__(self, status_code: int):
        super().__init__(f"Jellyfin returned HTTP {status_code}")
        self.status_code = status_code


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _find_stream(streams: list[dict], stream_type: str, index: Optional[int]) -> dict:
    """Find a media stream by type, matching the index when one is given."""
    for stream in streams:
        if stream.get("Type") != stream_type:
            continue
        if index is None or stream.get("Index") == index:
            return stream
    return {}


def parse_session(payload: dict) -> Optional[SessionSnapshot]:
    """Build a SessionSnapshot from one /Sessions entry.

    Returns None for sessions that are not playing anything: an entry is live
    only when it has both a NowPlayingItem and a PlayState block.
    """
    item = payload.get("NowPlayingItem")
    play_state = payload.get("PlayState")
    session_id = payload.get("Id")
    if not item or not play_state or not session_id:
        return None

    transcoding = payload.get("TranscodingInfo") or {}
    streams = item.get("MediaStreams") or []

    play_method = play_state.get("PlayMethod")
    if not play_method:
        play_method = "Transcode" if transcoding else "DirectPlay"

    audio_index = _as_int(play_state.get("AudioStreamIndex"))
    if audio_index is None:
        audio_index = _as_int(item.get("DefaultAudioStreamIndex"))
    subtitle_index = _as_int(play_state.get("SubtitleStreamIndex"))
    if subtitle_index is None:
        subtitle_index = _as_int(item.get("DefaultSubtitleStreamIndex"))

    # Jellyfin uses -1 for "subtitles off"
    audio = _find_stream(streams, "Audio", audio_index) if audio_index is not None else {}
    subtitle = (
        _find_stream(streams, "Subtitle", subtitle_index)
        if subtitle_index is not None and subtitle_index >= 0
        else {}
    )
    video = _find_stream(streams, "Video", None)
    video_width = _as_int(video.get("Width"))

    return SessionSnapshot(
        session_id=session_id,
        user_id=payload.get("UserId") or None,
        user_name=payload.get("UserName") or payload.get("Username") or "Unknown",
        media_id=item.get("Id") or None,
        media_title=item.get("Name") or "Unknown",
        media_type=item.get("Type") or "Unknown",
        client_name=payload.get("Client") or payload.get("AppName") or "Unknown",
        device_name=payload.get("DeviceName") or "Unknown",
        ip_address=clean_ip_address(payload.get("RemoteEndPoint")),
        play_method=play_method,
        position_ticks=_as_int(play_state.get("PositionTicks")),
        runtime_ticks=_as_int(item.get("RunTimeTicks")),
        is_paused=bool(play_state.get("IsPaused", False)),
        audio_index=audio_index,
        audio_language=audio.get("Language"),
        audio_codec=audio.get("Codec"),
        subtitle_index=subtitle_index,
        subtitle_language=subtitle.get("Language"),
        subtitle_codec=subtitle.get("Codec"),
        video_width=video_width,
        resolution=classify_resolution(video_width),
        video_codec=transcoding.get("VideoCodec"),
        transcode_audio_codec=transcoding.get("AudioCodec"),
        transcode_fps=_as_float(transcoding.get("Framerate")),
        bitrate=_as_int(transcoding.get("Bitrate")),
        series_id=item.get("SeriesId"),
        series_name=item.get("SeriesName"),
        season_id=item.get("SeasonId"),
        album_id=item.get("AlbumId"),
        season_number=_as_int(item.get("ParentIndexNumber")),
        episode_number=_as_int(item.get("IndexNumber")),
    )


class JellyfinClient:
    """Minimal REST client for the Jellyfin /Sessions endpoint."""

    def __init__(self, config: Optional[Settings] = None):
        self.settings = config or settings
        self._client: Optional[httpx.AsyncClient] = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def fetch_sessions(self) -> list[SessionSnapshot]:
        """Fetch live sessions from Jellyfin."""
        if not self.settings.jellyfin_configured:
            raise JellyfinNotConfiguredError("Jellyfin URL or API key missing")

        response = await self._http().get(
            f"{self.settings.jellyfin_url.rstrip('/')}/Sessions",
            params={"api_key": self.settings.jellyfin_api_key},
        )
        if response.status_code != 200:
            raise JellyfinUnavailableError(response.status_code)

        snapshots = []
        for payload in response.json() or []:
            snapshot = parse_session(payload)
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# Global client instance
jellyfin_client = JellyfinClient()
