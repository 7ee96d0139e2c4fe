import pytest

from jellypulse.config import Settings
from jellypulse.jellyfin_client import (
    JellyfinClient,
    JellyfinNotConfiguredError,
    JellyfinUnavailableError,
    parse_session,
)


class _FakeResponse:
    def __init__(self, status_code: int, payload: dict | list | None = None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload


class _FakeHttpClient:
    def __init__(self, response: _FakeResponse):
        self.response = response
        self.requests = []

    async def get(self, url, **kwargs):
        self.requests.append((url, kwargs))
        return self.response

    async def aclose(self):
        pass


def _payload(**overrides) -> dict:
    payload = {
        "Id": "session-1",
        "UserId": "user-1",
        "UserName": "Alice",
        "Client": "Jellyfin Android",
        "DeviceName": "Pixel",
        "RemoteEndPoint": "::ffff:192.168.1.20",
        "NowPlayingItem": {
            "Id": "item-1",
            "Name": "Pilot",
            "Type": "Episode",
            "SeriesId": "series-1",
            "SeriesName": "Show",
            "SeasonId": "season-1",
            "ParentIndexNumber": 1,
            "IndexNumber": 2,
            "RunTimeTicks": 30_000_000_000,
            "MediaStreams": [
                {"Type": "Video", "Index": 0, "Width": 1280, "Codec": "h264"},
                {"Type": "Audio", "Index": 1, "Language": "eng", "Codec": "aac"},
                {"Type": "Audio", "Index": 2, "Language": "jpn", "Codec": "flac"},
                {"Type": "Subtitle", "Index": 3, "Language": "eng", "Codec": "ass"},
            ],
        },
        "PlayState": {
            "PositionTicks": 600_000_000,
            "IsPaused": True,
            "PlayMethod": "Transcode",
            "AudioStreamIndex": 2,
            "SubtitleStreamIndex": 3,
        },
        "TranscodingInfo": {
            "VideoCodec": "h264",
            "AudioCodec": "aac",
            "Framerate": "23.976",
            "Bitrate": "8000000",
        },
    }
    payload.update(overrides)
    return payload


def test_parse_session_full_payload():
    snapshot = parse_session(_payload())

    assert snapshot.session_id == "session-1"
    assert snapshot.user_id == "user-1"
    assert snapshot.media_id == "item-1"
    assert snapshot.ip_address == "192.168.1.20"
    assert snapshot.play_method == "Transcode"
    assert snapshot.position_ticks == 600_000_000
    assert snapshot.is_paused is True
    assert snapshot.audio_language == "jpn"
    assert snapshot.audio_codec == "flac"
    assert snapshot.subtitle_language == "eng"
    assert snapshot.subtitle_codec == "ass"
    assert snapshot.resolution == "720p"
    assert snapshot.transcode_fps == pytest.approx(23.976)
    assert snapshot.bitrate == 8_000_000
    assert snapshot.series_name == "Show"
    assert snapshot.season_number == 1
    assert snapshot.episode_number == 2


@pytest.mark.parametrize("missing", ["NowPlayingItem", "PlayState"])
def test_parse_session_requires_item_and_play_state(missing):
    payload = _payload()
    del payload[missing]
    assert parse_session(payload) is None


def test_parse_session_tolerates_sparse_payload():
    snapshot = parse_session(
        {
            "Id": "session-2",
            "Username": "Bob",
            "AppName": "Infuse",
            "NowPlayingItem": {"Id": "item-2"},
            "PlayState": {"PositionTicks": None},
        }
    )

    assert snapshot.user_id is None
    assert snapshot.is_trackable is False
    assert snapshot.user_name == "Bob"
    assert snapshot.client_name == "Infuse"
    assert snapshot.ip_address == "127.0.0.1"
    assert snapshot.play_method == "DirectPlay"
    assert snapshot.position_ticks is None
    assert snapshot.audio_language is None
    assert snapshot.resolution is None


def test_parse_session_infers_transcode_and_default_tracks():
    payload = _payload()
    payload["PlayState"] = {"PositionTicks": 0}
    payload["NowPlayingItem"]["DefaultAudioStreamIndex"] = 1
    payload["NowPlayingItem"]["DefaultSubtitleStreamIndex"] = -1

    snapshot = parse_session(payload)

    assert snapshot.play_method == "Transcode"
    assert snapshot.audio_index == 1
    assert snapshot.audio_language == "eng"
    assert snapshot.subtitle_index == -1
    assert snapshot.subtitle_language is None


@pytest.mark.asyncio
async def test_fetch_sessions_filters_idle_sessions():
    client = JellyfinClient(Settings(jellyfin_url="http://example.test/", jellyfin_api_key="key"))
    http = _FakeHttpClient(_FakeResponse(200, [_payload(), {"Id": "idle-session"}]))
    client._client = http

    sessions = await client.fetch_sessions()

    assert [s.session_id for s in sessions] == ["session-1"]
    url, kwargs = http.requests[0]
    assert url == "http://example.test/Sessions"
    assert kwargs["params"] == {"api_key": "key"}


@pytest.mark.asyncio
async def test_fetch_sessions_raises_on_bad_status():
    client = JellyfinClient(Settings(jellyfin_url="http://example.test", jellyfin_api_key="key"))
    client._client = _FakeHttpClient(_FakeResponse(401))

    with pytest.raises(JellyfinUnavailableError) as exc_info:
        await client.fetch_sessions()
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_fetch_sessions_requires_configuration():
    client = JellyfinClient(Settings(jellyfin_url="http://example.test", jellyfin_api_key=""))

    with pytest.raises(JellyfinNotConfiguredError):
        await client.fetch_sessions()
