from datetime import datetime, timedelta, timezone

import pytest

from jellypulse.playback import (
    TICKS_PER_SECOND,
    classify_resolution,
    clean_ip_address,
    resolve_duration_seconds,
    wall_clock_seconds,
)

START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
DAY = 24 * 3600


def test_resolve_duration_prefers_positive_position():
    now = START + timedelta(minutes=30)
    assert resolve_duration_seconds(120 * TICKS_PER_SECOND, START, now, DAY) == 120


@pytest.mark.parametrize("ticks", [None, 0, -5])
def test_resolve_duration_falls_back_to_wall_clock(ticks):
    now = START + timedelta(seconds=95)
    assert resolve_duration_seconds(ticks, START, now, DAY) == 95


def test_resolve_duration_is_clamped():
    assert resolve_duration_seconds(3 * DAY * TICKS_PER_SECOND, START, START, DAY) == DAY
    assert resolve_duration_seconds(None, START, START + timedelta(days=5), DAY) == DAY
    # Clock went backwards
    assert resolve_duration_seconds(None, START, START - timedelta(minutes=1), DAY) == 0


def test_wall_clock_ignores_position():
    assert wall_clock_seconds(START, START + timedelta(seconds=42), DAY) == 42


@pytest.mark.parametrize(
    "width,expected",
    [
        (3840, "4K"),
        (3800, "4K"),
        (1920, "1080p"),
        (1900, "1080p"),
        (1280, "720p"),
        (1200, "720p"),
        (720, "SD"),
        (0, None),
        (None, None),
    ],
)
def test_classify_resolution(width, expected):
    assert classify_resolution(width) == expected


@pytest.mark.parametrize(
    "raw,expected",
    [
        (None, "127.0.0.1"),
        ("", "127.0.0.1"),
        ("::ffff:192.168.1.10", "192.168.1.10"),
        ("192.168.1.10:8096", "192.168.1.10"),
        ("10.0.0.2", "10.0.0.2"),
        ("2001:db8::1", "2001:db8::1"),
    ],
)
def test_clean_ip_address(raw, expected):
    assert clean_ip_address(raw) == expected
