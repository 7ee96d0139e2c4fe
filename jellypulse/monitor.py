import asyncio
import logging
import math
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional

from .cache import STREAM_PREFIX, EphemeralCache, stream_cache, stream_key
from .config import Settings, settings
from .database import Database, db
from .geoip import GeoResolver, geo_resolver
from .jellyfin_client import JellyfinClient, JellyfinNotConfiguredError, jellyfin_client
from .models import (
    ActiveStream,
    PlaybackHistory,
    PlaybackStartEvent,
    RuntimeIntervals,
    SessionSnapshot,
    SnapshotDiff,
)
from .notifier import Notifier, notifier
from .playback import resolve_duration_seconds
from .telemetry import TelemetryDebouncer

logger = logging.getLogger(__name__)

_STREAM_FIELDS = ("audio_language", "audio_codec", "subtitle_language", "subtitle_codec")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerState:
    """Mutable scheduler state owned by a single SessionMonitor.

    Interval setters may be called from other threads (e.g. a settings
    endpoint), so reads and writes of the intervals go through a lock.
    """

    def __init__(
        self,
        active_ms: int,
        idle_ms: int,
        error_ms: int,
        min_active_ms: int = 500,
        min_idle_ms: int = 1000,
        error_log_every: int = 60,
    ):
        self._lock = threading.Lock()
        self.min_active_ms = min_active_ms
        self.min_idle_ms = min_idle_ms
        self.error_ms = error_ms
        self.error_log_every = max(1, error_log_every)
        self._active_ms = max(active_ms, min_active_ms)
        self._idle_ms = max(idle_ms, min_idle_ms)
        self.running = False
        self.consecutive_errors = 0
        self.last_active = False
        self.last_poll_at: Optional[datetime] = None
        self.live_session_count = 0

    @classmethod
    def from_settings(cls, config: Settings) -> "SchedulerState":
        return cls(
            active_ms=config.monitor_interval_active_ms,
            idle_ms=config.monitor_interval_idle_ms,
            error_ms=config.monitor_interval_error_ms,
            min_active_ms=config.min_interval_active_ms,
            min_idle_ms=config.min_interval_idle_ms,
            error_log_every=config.error_log_every,
        )

    @property
    def active_interval_ms(self) -> int:
        with self._lock:
            return self._active_ms

    @property
    def idle_interval_ms(self) -> int:
        with self._lock:
            return self._idle_ms

    def set_intervals(self, active_ms: int, idle_ms: int) -> RuntimeIntervals:
        """Clamp and apply new active/idle intervals; takes effect next cycle."""
        with self._lock:
            self._active_ms = max(int(active_ms), self.min_active_ms)
            self._idle_ms = max(int(idle_ms), self.min_idle_ms)
            return RuntimeIntervals(
                monitor_interval_active_ms=self._active_ms,
                monitor_interval_idle_ms=self._idle_ms,
            )

    @property
    def regime(self) -> str:
        if self.consecutive_errors:
            return "error"
        return "active" if self.last_active else "idle"

    def next_interval_ms(self) -> int:
        regime = self.regime
        if regime == "error":
            return self.error_ms
        if regime == "active":
            return self.active_interval_ms
        return self.idle_interval_ms

    def cache_ttl_seconds(self) -> int:
        """TTL for stream snapshots: long enough to ride out a couple of missed polls."""
        with self._lock:
            window_ms = max(self._active_ms * 12, self._idle_ms * 2)
        return max(1, math.ceil(window_ms / 1000))

    def record_success(self, has_active: bool, now: Optional[datetime] = None) -> int:
        """Record a successful cycle. Returns the number of failures it recovered from."""
        recovered = self.consecutive_errors
        self.consecutive_errors = 0
        self.last_active = has_active
        self.last_poll_at = now or _utcnow()
        return recovered

    def record_failure(self) -> bool:
        """Record a failed cycle. Returns whether this failure should be logged."""
        self.consecutive_errors += 1
        return self.consecutive_errors == 1 or self.consecutive_errors % self.error_log_every == 0

    def status(self) -> dict:
        return {
            "running": self.running,
            "regime": self.regime,
            "interval_ms": self.next_interval_ms(),
            "active_interval_ms": self.active_interval_ms,
            "idle_interval_ms": self.idle_interval_ms,
            "consecutive_errors": self.consecutive_errors,
            "live_sessions": self.live_session_count,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
        }


def diff_snapshots(
    previous: dict[str, SessionSnapshot], current: list[SessionSnapshot]
) -> SnapshotDiff:
    """Classify polled sessions against the previously cached ones."""
    diff = SnapshotDiff()
    current_ids = set()
    for snapshot in current:
        current_ids.add(snapshot.session_id)
        cached = previous.get(snapshot.session_id)
        if cached is None:
            diff.new.append(snapshot)
        elif cached.media_id != snapshot.media_id:
            diff.item_changed.append((cached, snapshot))
        else:
            diff.continuing.append(snapshot)
    diff.disappeared = [sid for sid in previous if sid not in current_ids]
    return diff


class SessionMonitor:
    """Polls Jellyfin and reconciles live sessions into the cache and ledger."""

    def __init__(
        self,
        database: Optional[Database] = None,
        cache: Optional[EphemeralCache] = None,
        client: Optional[JellyfinClient] = None,
        alert_notifier: Optional[Notifier] = None,
        geo: Optional[GeoResolver] = None,
        config: Optional[Settings] = None,
        state: Optional[SchedulerState] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = database or db
        self.cache = cache or stream_cache
        self.client = client or jellyfin_client
        self.notifier = alert_notifier or notifier
        self.geo = geo or geo_resolver
        self.settings = config or settings
        self.state = state or SchedulerState.from_settings(self.settings)
        self.telemetry = TelemetryDebouncer(self.cache, self.settings.telemetry_ttl_seconds)
        self._clock = clock or _utcnow
        self._stop_event = asyncio.Event()
        self._config_warned = False

    def now(self) -> datetime:
        return self._clock()

    # Runtime configuration

    async def load_runtime_intervals(self) -> RuntimeIntervals:
        """Apply intervals persisted by the settings endpoint, if any."""
        stored = await self.db.get_runtime_intervals()
        if stored is None:
            return self.state.set_intervals(
                self.state.active_interval_ms, self.state.idle_interval_ms
            )
        return self.state.set_intervals(
            stored.monitor_interval_active_ms, stored.monitor_interval_idle_ms
        )

    async def update_intervals(self, active_ms: int, idle_ms: int) -> RuntimeIntervals:
        intervals = self.state.set_intervals(active_ms, idle_ms)
        await self.db.save_runtime_intervals(intervals)
        logger.info(
            f"Poll intervals updated: active={intervals.monitor_interval_active_ms}ms "
            f"idle={intervals.monitor_interval_idle_ms}ms"
        )
        return intervals

    # Scheduler

    async def run(self) -> None:
        """Recover from the previous run, then poll until stop() is called."""
        self.state.running = True
        self._stop_event.clear()
        try:
            await self.load_runtime_intervals()
        except Exception as e:
            logger.error(f"Could not load runtime intervals, using defaults: {e}")
        try:
            await self.recover_on_startup()
        except Exception as e:
            logger.error(f"Startup recovery failed: {e}")

        logger.info(
            f"Session polling started (active={self.state.active_interval_ms}ms, "
            f"idle={self.state.idle_interval_ms}ms)"
        )
        try:
            while not self._stop_event.is_set():
                await self.run_cycle()
                delay = self.state.next_interval_ms() / 1000
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.state.running = False
            logger.info("Session polling stopped")

    def stop(self) -> None:
        self._stop_event.set()

    async def run_cycle(self) -> bool:
        """Run one cycle; failures only affect the next interval."""
        try:
            has_active = await self.poll_once()
        except Exception as e:
            if self.state.record_failure():
                logger.error(
                    f"Session poll failed ({self.state.consecutive_errors} consecutive, "
                    f"retrying every {self.state.error_ms // 1000}s): {e}"
                )
            return False

        recovered = self.state.record_success(has_active, self.now())
        if recovered:
            logger.info(f"Session polling recovered after {recovered} failed cycle(s)")
        return has_active

    # Reconciliation cycle

    def _cached_snapshots(self) -> dict[str, SessionSnapshot]:
        snapshots = {}
        for key in self.cache.keys(STREAM_PREFIX):
            value = self.cache.get(key)
            if isinstance(value, SessionSnapshot):
                snapshots[value.session_id] = value
        return snapshots

    async def poll_once(self) -> bool:
        """Fetch sessions and reconcile them. Returns whether anything is playing."""
        try:
            sessions = await self.client.fetch_sessions()
        except JellyfinNotConfiguredError:
            if not self._config_warned:
                logger.warning("Jellyfin URL or API key missing, skipping session poll")
                self._config_warned = True
            return False
        self._config_warned = False

        now = self.now()
        diff = diff_snapshots(self._cached_snapshots(), sessions)
        new_ids = {snapshot.session_id for snapshot in diff.new}
        changed = {current.session_id: previous for previous, current in diff.item_changed}

        # Poll order, one session at a time
        for snapshot in sessions:
            if snapshot.session_id in new_ids:
                await self.handle_start(snapshot, now)
            elif snapshot.session_id in changed:
                await self.handle_item_change(changed[snapshot.session_id], snapshot, now)
            else:
                await self.handle_progress(snapshot, now)

        for session_id in diff.disappeared:
            await self.handle_stop(session_id, now)

        live_ids = {snapshot.session_id for snapshot in sessions}
        await self.reconcile_ghosts(live_ids, now)

        self.state.live_session_count = len(sessions)
        return bool(sessions)

    def _enrich(self, snapshot: SessionSnapshot) -> SessionSnapshot:
        geo = self.geo.lookup(snapshot.ip_address)
        return snapshot.model_copy(update={"country": geo.country, "city": geo.city})

    def _cache_snapshot(self, snapshot: SessionSnapshot) -> None:
        self.cache.set(stream_key(snapshot.session_id), snapshot, self.state.cache_ttl_seconds())

    def _to_active_stream(self, snapshot: SessionSnapshot, now: datetime) -> ActiveStream:
        return ActiveStream(
            session_id=snapshot.session_id,
            user_id=snapshot.user_id,
            media_id=snapshot.media_id,
            user_name=snapshot.user_name,
            media_title=snapshot.media_title,
            play_method=snapshot.play_method,
            client_name=snapshot.client_name,
            device_name=snapshot.device_name,
            ip_address=snapshot.ip_address,
            country=snapshot.country,
            city=snapshot.city,
            video_codec=snapshot.video_codec,
            audio_codec=snapshot.transcode_audio_codec,
            transcode_fps=snapshot.transcode_fps,
            bitrate=snapshot.bitrate,
            position_ticks=snapshot.position_ticks,
            runtime_ticks=snapshot.runtime_ticks,
            is_paused=snapshot.is_paused,
            started_at=now,
            last_ping_at=now,
        )

    async def handle_start(self, snapshot: SessionSnapshot, now: datetime) -> Optional[int]:
        """Handle a newly seen session. Returns the id of a created ledger entry."""
        snapshot = self._enrich(snapshot)
        self._cache_snapshot(snapshot)
        if not snapshot.is_trackable:
            logger.debug(f"Session {snapshot.session_id} has no user or item, not persisted")
            return None

        await self.db.upsert_user(snapshot.user_id, snapshot.user_name)
        await self.db.upsert_media(snapshot)

        # The durable row may still point at the previous item if the cache
        # entry was lost while the session moved on.
        existing = await self.db.get_active_stream(snapshot.session_id)
        if existing and existing.media_id != snapshot.media_id:
            await self._close_open_entry(existing.user_id, existing.media_id, None, now)

        await self.db.upsert_active_stream(self._to_active_stream(snapshot, now))

        entry = await self.db.get_open_history(snapshot.user_id, snapshot.media_id)
        if entry is not None:
            await self._track_entry(entry, snapshot)
            return None

        is_new_ip = await self.db.count_history_for_ip(snapshot.user_id, snapshot.ip_address) == 0
        history_id = await self.db.create_history(
            PlaybackHistory(
                session_id=snapshot.session_id,
                user_id=snapshot.user_id,
                media_id=snapshot.media_id,
                started_at=now,
                play_method=snapshot.play_method,
                client_name=snapshot.client_name,
                device_name=snapshot.device_name,
                ip_address=snapshot.ip_address,
                country=snapshot.country,
                city=snapshot.city,
                audio_language=snapshot.audio_language,
                audio_codec=snapshot.audio_codec,
                subtitle_language=snapshot.subtitle_language,
                subtitle_codec=snapshot.subtitle_codec,
            )
        )
        if history_id is None:
            return None

        logger.info(
            f"Playback started: {snapshot.user_name} - {snapshot.media_title} "
            f"on {snapshot.device_name} ({snapshot.play_method})"
        )
        entry = await self.db.get_history(history_id)
        if entry is not None:
            await self._track_entry(entry, snapshot)

        await self.notifier.notify(
            PlaybackStartEvent(
                user_id=snapshot.user_id,
                user_name=snapshot.user_name,
                media_id=snapshot.media_id,
                media_title=snapshot.media_title,
                client_name=snapshot.client_name,
                device_name=snapshot.device_name,
                ip_address=snapshot.ip_address,
                play_method=snapshot.play_method,
                country=snapshot.country,
                city=snapshot.city,
                is_new_ip=is_new_ip,
            ),
            self.notifier.policy,
        )
        return history_id

    async def handle_progress(self, snapshot: SessionSnapshot, now: datetime) -> None:
        snapshot = self._enrich(snapshot)
        self._cache_snapshot(snapshot)
        if not snapshot.is_trackable:
            return

        await self.db.upsert_active_stream(self._to_active_stream(snapshot, now))
        entry = await self.db.get_open_history(snapshot.user_id, snapshot.media_id)
        if entry is not None:
            await self._track_entry(entry, snapshot)

    async def handle_item_change(
        self, previous: SessionSnapshot, snapshot: SessionSnapshot, now: datetime
    ) -> Optional[int]:
        logger.info(
            f"Item changed on session {snapshot.session_id}: "
            f"{previous.media_title} -> {snapshot.media_title}"
        )
        # The position counter now belongs to the new item
        if previous.user_id and previous.media_id:
            await self._close_open_entry(previous.user_id, previous.media_id, None, now)
        return await self.handle_start(snapshot, now)

    async def handle_stop(self, session_id: str, now: datetime, reason: str = "stopped") -> bool:
        """Close out a session that is no longer live. Returns whether a durable row existed."""
        self.cache.delete(stream_key(session_id))
        stream = await self.db.get_active_stream(session_id)
        if stream is None:
            return False

        duration = await self._close_open_entry(
            stream.user_id, stream.media_id, stream.position_ticks, now
        )
        await self.db.delete_active_stream(session_id)
        logger.info(
            f"Playback {reason}: {stream.user_name} - {stream.media_title}"
            + (f" ({duration}s)" if duration is not None else "")
        )
        return True

    async def _track_entry(self, entry: PlaybackHistory, snapshot: SessionSnapshot) -> None:
        """Count telemetry transitions and backfill stream details on an open entry."""
        delta = self.telemetry.observe(
            entry.id,
            snapshot.session_id,
            snapshot.is_paused,
            snapshot.audio_index,
            snapshot.subtitle_index,
        )
        if not delta.is_empty:
            await self.db.increment_history_counters(
                entry.id,
                pause_count=delta.pauses,
                audio_changes=delta.audio_changes,
                subtitle_changes=delta.subtitle_changes,
            )

        backfill = {}
        for field in _STREAM_FIELDS:
            value = getattr(snapshot, field)
            if value is not None and value != getattr(entry, field):
                backfill[field] = value
        if backfill:
            await self.db.update_history_streams(entry.id, **backfill)

    # History finalizer

    async def finalize_history(
        self, entry: PlaybackHistory, position_ticks: Optional[int], now: datetime
    ) -> int:
        """Close an open entry; positive position ticks win over wall-clock time."""
        duration = resolve_duration_seconds(
            position_ticks, entry.started_at, now, self.settings.max_session_seconds
        )
        await self.db.close_history(entry.id, now, duration)
        self.telemetry.forget(entry.id)
        return duration

    async def _close_open_entry(
        self, user_id: str, media_id: str, position_ticks: Optional[int], now: datetime
    ) -> Optional[int]:
        entry = await self.db.get_open_history(user_id, media_id)
        if entry is None:
            return None
        return await self.finalize_history(entry, position_ticks, now)

    # Ghost reconciler

    async def reconcile_ghosts(self, live_ids: set[str], now: datetime) -> int:
        """Stop every durable active stream that is not in the live set."""
        ghosts = 0
        for stream in await self.db.get_active_streams():
            if stream.session_id in live_ids:
                continue
            if await self.handle_stop(stream.session_id, now, reason="ghost cleaned"):
                ghosts += 1
        if ghosts:
            logger.info(f"Cleaned up {ghosts} ghost session(s)")
        return ghosts

    async def close_orphans(self, now: datetime) -> int:
        """Close open entries that no active stream accounts for (wall clock, capped)."""
        closed = 0
        for entry in await self.db.get_open_histories():
            if await self.db.has_active_stream_for(entry.user_id, entry.media_id):
                continue
            await self.finalize_history(entry, None, now)
            closed += 1
        if closed:
            logger.info(f"Closed {closed} orphaned playback history entries")
        return closed

    async def recover_on_startup(self) -> dict:
        """Reconcile state left behind by a previous process."""
        now = self.now()
        cleared = self.cache.delete_prefix(STREAM_PREFIX)

        ghosts = 0
        try:
            sessions = await self.client.fetch_sessions()
        except JellyfinNotConfiguredError:
            sessions = None
        except Exception as e:
            # The first successful cycle runs the durable pass instead
            logger.warning(f"Could not fetch sessions during startup recovery: {e}")
            sessions = None
        if sessions is not None:
            ghosts = await self.reconcile_ghosts({s.session_id for s in sessions}, now)

        orphans = await self.close_orphans(now)
        logger.info(
            f"Startup recovery: cleared {cleared} cached stream(s), "
            f"closed {ghosts} ghost(s) and {orphans} orphan(s)"
        )
        return {"cleared": cleared, "ghosts": ghosts, "orphans": orphans}

    def status(self) -> dict:
        return self.state.status()


# Global monitor instance
session_monitor = SessionMonitor()
