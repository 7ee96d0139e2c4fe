from typing import Optional

from .cache import EphemeralCache
from .models import TelemetryDelta

PAUSED = "paused"
PLAYING = "playing"

_PREFIXES = ("pause", "audio", "sub")


class TelemetryDebouncer:
    """Count pause and track-change transitions per open ledger entry.

    The last observed state lives in the ephemeral cache under
    pause:/audio:/sub: keys, separate from the stream snapshots. State is kept
    per (entry, session) so two sessions sharing one open entry do not
    overwrite each other's last state.
    """

    def __init__(self, cache: EphemeralCache, ttl_seconds: int = 3600):
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _keys(history_id: int, session_id: str) -> tuple[str, ...]:
        return tuple(f"{prefix}:{history_id}:{session_id}" for prefix in _PREFIXES)

    def observe(
        self,
        history_id: int,
        session_id: str,
        is_paused: bool,
        audio_index: Optional[int],
        subtitle_index: Optional[int],
    ) -> TelemetryDelta:
        pause_key, audio_key, sub_key = self._keys(history_id, session_id)
        delta = TelemetryDelta()

        previous_pause = self.cache.get(pause_key)
        if is_paused and previous_pause != PAUSED:
            delta.pauses = 1
        self.cache.set(pause_key, PAUSED if is_paused else PLAYING, self.ttl_seconds)

        if audio_index is not None:
            previous_audio = self.cache.get(audio_key)
            if previous_audio is not None and previous_audio != audio_index:
                delta.audio_changes = 1
            self.cache.set(audio_key, audio_index, self.ttl_seconds)

        if subtitle_index is not None:
            previous_sub = self.cache.get(sub_key)
            if previous_sub is not None and previous_sub != subtitle_index:
                delta.subtitle_changes = 1
            self.cache.set(sub_key, subtitle_index, self.ttl_seconds)

        return delta

    def forget(self, history_id: int) -> None:
        """Drop the state of every session that fed this entry."""
        for prefix in _PREFIXES:
            self.cache.delete_prefix(f"{prefix}:{history_id}:")
