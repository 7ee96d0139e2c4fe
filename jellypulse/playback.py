from datetime import datetime
from typing import Optional

# Jellyfin reports positions in 100ns ticks
TICKS_PER_SECOND = 10_000_000


def ticks_to_seconds(ticks: Optional[int]) -> int:
    if not ticks or ticks <= 0:
        return 0
    return ticks // TICKS_PER_SECOND


def wall_clock_seconds(started_at: datetime, now: datetime, max_seconds: int) -> int:
    """Elapsed wall-clock seconds since started_at, clamped to [0, max_seconds]."""
    elapsed = int((now - started_at).total_seconds())
    return min(max(elapsed, 0), max_seconds)


def resolve_duration_seconds(
    position_ticks: Optional[int],
    started_at: datetime,
    now: datetime,
    max_seconds: int,
) -> int:
    """Best-effort watched seconds for a playback.

    Prefers the reported position counter when it is positive, otherwise falls
    back to wall-clock time since the start. Always clamped to max_seconds.
    """
    if position_ticks and position_ticks > 0:
        return min(ticks_to_seconds(position_ticks), max_seconds)
    return wall_clock_seconds(started_at, now, max_seconds)


def classify_resolution(width: Optional[int]) -> Optional[str]:
    """Map a video stream width to a quality bucket."""
    if not width or width <= 0:
        return None
    if width >= 3800:
        return "4K"
    if width >= 1900:
        return "1080p"
    if width >= 1200:
        return "720p"
    return "SD"


def clean_ip_address(ip: Optional[str]) -> str:
    """Normalize Jellyfin's RemoteEndPoint (IPv6-mapped or with a port)."""
    if not ip:
        return "127.0.0.1"
    ip = ip.strip()
    if "::ffff:" in ip:
        ip = ip.split("::ffff:", 1)[1]
    # Only strip a port from IPv4 style "host:port"
    if ip.count(":") == 1:
        ip = ip.split(":", 1)[0]
    return ip or "127.0.0.1"
