from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiosqlite

from .config import settings
from .models import ActiveStream, PlaybackHistory, RuntimeIntervals, SessionSnapshot

_HISTORY_STREAM_FIELDS = ("audio_language", "audio_codec", "subtitle_language", "subtitle_codec")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or settings.database_path_resolved
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        """Connect to the database and create tables if needed."""
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._create_tables()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._connection:
            raise RuntimeError("Database not connected")
        return self._connection

    async def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                jellyfin_user_id TEXT PRIMARY KEY,
                username TEXT,
                created_at TIMESTAMP,
                updated_at TIMESTAMP
            )
        """)
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS media (
                jellyfin_media_id TEXT PRIMARY KEY,
                title TEXT,
                type TEXT,
                series_id TEXT,
                series_name TEXT,
                season_id TEXT,
                album_id TEXT,
                season_number INTEGER,
                episode_number INTEGER,
                resolution TEXT,
                created_at TIMESTAMP,
                updated_at TIMESTAMP
            )
        """)
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS active_streams (
                session_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                media_id TEXT NOT NULL,
                user_name TEXT,
                media_title TEXT,
                play_method TEXT,
                client_name TEXT,
                device_name TEXT,
                ip_address TEXT,
                country TEXT,
                city TEXT,
                video_codec TEXT,
                audio_codec TEXT,
                transcode_fps REAL,
                bitrate INTEGER,
                position_ticks INTEGER,
                runtime_ticks INTEGER,
                is_paused BOOLEAN DEFAULT FALSE,
                started_at TIMESTAMP,
                last_ping_at TIMESTAMP
            )
        """)
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS playback_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT,
                user_id TEXT NOT NULL,
                media_id TEXT NOT NULL,
                started_at TIMESTAMP NOT NULL,
                ended_at TIMESTAMP,
                duration_watched INTEGER DEFAULT 0,
                play_method TEXT,
                client_name TEXT,
                device_name TEXT,
                ip_address TEXT,
                country TEXT,
                city TEXT,
                audio_language TEXT,
                audio_codec TEXT,
                subtitle_language TEXT,
                subtitle_codec TEXT,
                pause_count INTEGER DEFAULT 0,
                audio_changes INTEGER DEFAULT 0,
                subtitle_changes INTEGER DEFAULT 0
            )
        """)
        # At most one open entry per (user, media)
        await self.conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_history_open
            ON playback_history(user_id, media_id) WHERE ended_at IS NULL
            """
        )
        await self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_history_user_ip "
            "ON playback_history(user_id, ip_address)"
        )
        await self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_history_started ON playback_history(started_at)"
        )
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS runtime_settings (
                id TEXT PRIMARY KEY,
                monitor_interval_active_ms INTEGER,
                monitor_interval_idle_ms INTEGER,
                updated_at TIMESTAMP
            )
        """)
        await self.conn.commit()

    # Dimensions

    async def upsert_user(self, user_id: str, username: str) -> None:
        now = _now().isoformat()
        await self.conn.execute(
            """
            INSERT INTO users (jellyfin_user_id, username, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(jellyfin_user_id) DO UPDATE SET
                username = excluded.username,
                updated_at = excluded.updated_at
            """,
            (user_id, username or "Unknown", now, now),
        )
        await self.conn.commit()

    async def upsert_media(self, snapshot: SessionSnapshot) -> None:
        """Create the media row or patch its display fields."""
        now = _now().isoformat()
        await self.conn.execute(
            """
            INSERT INTO media (jellyfin_media_id, title, type, series_id, series_name,
                               season_id, album_id, season_number, episode_number,
                               resolution, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(jellyfin_media_id) DO UPDATE SET
                title = excluded.title,
                type = excluded.type,
                series_id = COALESCE(excluded.series_id, media.series_id),
                series_name = COALESCE(excluded.series_name, media.series_name),
                season_id = COALESCE(excluded.season_id, media.season_id),
                album_id = COALESCE(excluded.album_id, media.album_id),
                season_number = COALESCE(excluded.season_number, media.season_number),
                episode_number = COALESCE(excluded.episode_number, media.episode_number),
                resolution = COALESCE(excluded.resolution, media.resolution),
                updated_at = excluded.updated_at
            """,
            (
                snapshot.media_id,
                snapshot.media_title,
                snapshot.media_type,
                snapshot.series_id,
                snapshot.series_name,
                snapshot.season_id,
                snapshot.album_id,
                snapshot.season_number,
                snapshot.episode_number,
                snapshot.resolution,
                now,
                now,
            ),
        )
        await self.conn.commit()

    async def get_media(self, media_id: str) -> Optional[dict]:
        cursor = await self.conn.execute(
            "SELECT * FROM media WHERE jellyfin_media_id = ?", (media_id,)
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def get_user(self, user_id: str) -> Optional[dict]:
        cursor = await self.conn.execute(
            "SELECT * FROM users WHERE jellyfin_user_id = ?", (user_id,)
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    # Active streams

    async def upsert_active_stream(self, stream: ActiveStream) -> None:
        """Create or refresh the durable mirror of a live session (UPSERT).

        started_at is kept from the first observation.
        """
        await self.conn.execute(
            """
            INSERT INTO active_streams (session_id, user_id, media_id, user_name, media_title,
                                        play_method, client_name, device_name, ip_address,
                                        country, city, video_codec, audio_codec, transcode_fps,
                                        bitrate, position_ticks, runtime_ticks, is_paused,
                                        started_at, last_ping_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                user_id = excluded.user_id,
                media_id = excluded.media_id,
                user_name = excluded.user_name,
                media_title = excluded.media_title,
                play_method = excluded.play_method,
                client_name = excluded.client_name,
                device_name = excluded.device_name,
                ip_address = excluded.ip_address,
                country = excluded.country,
                city = excluded.city,
                video_codec = excluded.video_codec,
                audio_codec = excluded.audio_codec,
                transcode_fps = excluded.transcode_fps,
                bitrate = excluded.bitrate,
                position_ticks = excluded.position_ticks,
                runtime_ticks = excluded.runtime_ticks,
                is_paused = excluded.is_paused,
                started_at = CASE
                    WHEN active_streams.media_id = excluded.media_id
                    THEN active_streams.started_at
                    ELSE excluded.started_at
                END,
                last_ping_at = excluded.last_ping_at
            """,
            (
                stream.session_id,
                stream.user_id,
                stream.media_id,
                stream.user_name,
                stream.media_title,
                stream.play_method,
                stream.client_name,
                stream.device_name,
                stream.ip_address,
                stream.country,
                stream.city,
                stream.video_codec,
                stream.audio_codec,
                stream.transcode_fps,
                stream.bitrate,
                stream.position_ticks,
                stream.runtime_ticks,
                stream.is_paused,
                stream.started_at.isoformat(),
                stream.last_ping_at.isoformat(),
            ),
        )
        await self.conn.commit()

    async def get_active_stream(self, session_id: str) -> Optional[ActiveStream]:
        cursor = await self.conn.execute(
            "SELECT * FROM active_streams WHERE session_id = ?", (session_id,)
        )
        row = await cursor.fetchone()
        if row:
            return self._row_to_active_stream(row)
        return None

    async def get_active_streams(self) -> list[ActiveStream]:
        cursor = await self.conn.execute("SELECT * FROM active_streams ORDER BY started_at")
        rows = await cursor.fetchall()
        return [self._row_to_active_stream(row) for row in rows]

    async def delete_active_stream(self, session_id: str) -> None:
        await self.conn.execute("DELETE FROM active_streams WHERE session_id = ?", (session_id,))
        await self.conn.commit()

    async def has_active_stream_for(self, user_id: str, media_id: str) -> bool:
        cursor = await self.conn.execute(
            "SELECT 1 FROM active_streams WHERE user_id = ? AND media_id = ? LIMIT 1",
            (user_id, media_id),
        )
        return await cursor.fetchone() is not None

    # Playback history

    async def create_history(self, entry: PlaybackHistory) -> Optional[int]:
        """Insert an open ledger entry.

        Returns None when an open entry already exists for (user, media).
        """
        cursor = await self.conn.execute(
            """
            INSERT OR IGNORE INTO playback_history (
                session_id, user_id, media_id, started_at, ended_at, duration_watched,
                play_method, client_name, device_name, ip_address, country, city,
                audio_language, audio_codec, subtitle_language, subtitle_codec,
                pause_count, audio_changes, subtitle_changes
            )
            VALUES (?, ?, ?, ?, NULL, 0, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 0, 0)
            """,
            (
                entry.session_id,
                entry.user_id,
                entry.media_id,
                entry.started_at.isoformat(),
                entry.play_method,
                entry.client_name,
                entry.device_name,
                entry.ip_address,
                entry.country,
                entry.city,
                entry.audio_language,
                entry.audio_codec,
                entry.subtitle_language,
                entry.subtitle_codec,
            ),
        )
        await self.conn.commit()
        if cursor.rowcount == 0:
            return None
        return cursor.lastrowid

    async def get_history(self, history_id: int) -> Optional[PlaybackHistory]:
        cursor = await self.conn.execute(
            "SELECT * FROM playback_history WHERE id = ?", (history_id,)
        )
        row = await cursor.fetchone()
        if row:
            return self._row_to_history(row)
        return None

    async def get_open_history(self, user_id: str, media_id: str) -> Optional[PlaybackHistory]:
        cursor = await self.conn.execute(
            """
            SELECT * FROM playback_history
            WHERE user_id = ? AND media_id = ? AND ended_at IS NULL
            ORDER BY started_at DESC
            LIMIT 1
            """,
            (user_id, media_id),
        )
        row = await cursor.fetchone()
        if row:
            return self._row_to_history(row)
        return None

    async def get_open_histories(self) -> list[PlaybackHistory]:
        cursor = await self.conn.execute(
            "SELECT * FROM playback_history WHERE ended_at IS NULL ORDER BY started_at"
        )
        rows = await cursor.fetchall()
        return [self._row_to_history(row) for row in rows]

    async def get_history_for(self, user_id: str, media_id: str) -> list[PlaybackHistory]:
        cursor = await self.conn.execute(
            """
            SELECT * FROM playback_history
            WHERE user_id = ? AND media_id = ?
            ORDER BY started_at, id
            """,
            (user_id, media_id),
        )
        rows = await cursor.fetchall()
        return [self._row_to_history(row) for row in rows]

    async def close_history(self, history_id: int, ended_at: datetime, duration: int) -> bool:
        """Close an open entry. Already closed entries are left untouched."""
        cursor = await self.conn.execute(
            """
            UPDATE playback_history
            SET ended_at = ?, duration_watched = ?
            WHERE id = ? AND ended_at IS NULL
            """,
            (ended_at.isoformat(), duration, history_id),
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    async def increment_history_counters(
        self,
        history_id: int,
        pause_count: int = 0,
        audio_changes: int = 0,
        subtitle_changes: int = 0,
    ) -> None:
        await self.conn.execute(
            """
            UPDATE playback_history
            SET pause_count = pause_count + ?,
                audio_changes = audio_changes + ?,
                subtitle_changes = subtitle_changes + ?
            WHERE id = ?
            """,
            (pause_count, audio_changes, subtitle_changes, history_id),
        )
        await self.conn.commit()

    async def update_history_streams(self, history_id: int, **fields: Optional[str]) -> None:
        """Backfill audio/subtitle language and codec on an entry."""
        updates = {k: v for k, v in fields.items() if k in _HISTORY_STREAM_FIELDS}
        if not updates:
            return
        assignments = ", ".join(f"{column} = ?" for column in updates)
        await self.conn.execute(
            f"UPDATE playback_history SET {assignments} WHERE id = ?",
            (*updates.values(), history_id),
        )
        await self.conn.commit()

    async def count_history_for_ip(self, user_id: str, ip_address: str) -> int:
        cursor = await self.conn.execute(
            "SELECT COUNT(*) AS count FROM playback_history WHERE user_id = ? AND ip_address = ?",
            (user_id, ip_address),
        )
        row = await cursor.fetchone()
        return row["count"] if row else 0

    # Runtime settings

    async def get_runtime_intervals(self) -> Optional[RuntimeIntervals]:
        cursor = await self.conn.execute(
            "SELECT * FROM runtime_settings WHERE id = 'global'"
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return RuntimeIntervals(
            monitor_interval_active_ms=row["monitor_interval_active_ms"],
            monitor_interval_idle_ms=row["monitor_interval_idle_ms"],
        )

    async def save_runtime_intervals(self, intervals: RuntimeIntervals) -> None:
        await self.conn.execute(
            """
            INSERT INTO runtime_settings (id, monitor_interval_active_ms,
                                          monitor_interval_idle_ms, updated_at)
            VALUES ('global', ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                monitor_interval_active_ms = excluded.monitor_interval_active_ms,
                monitor_interval_idle_ms = excluded.monitor_interval_idle_ms,
                updated_at = excluded.updated_at
            """,
            (
                intervals.monitor_interval_active_ms,
                intervals.monitor_interval_idle_ms,
                _now().isoformat(),
            ),
        )
        await self.conn.commit()

    def _row_to_active_stream(self, row: aiosqlite.Row) -> ActiveStream:
        started_at = _parse_dt(row["started_at"]) or datetime.fromtimestamp(0, timezone.utc)
        return ActiveStream(
            session_id=row["session_id"],
            user_id=row["user_id"],
            media_id=row["media_id"],
            user_name=row["user_name"] or "Unknown",
            media_title=row["media_title"] or "Unknown",
            play_method=row["play_method"] or "DirectPlay",
            client_name=row["client_name"] or "Unknown",
            device_name=row["device_name"] or "Unknown",
            ip_address=row["ip_address"] or "127.0.0.1",
            country=row["country"] or "Unknown",
            city=row["city"] or "Unknown",
            video_codec=row["video_codec"],
            audio_codec=row["audio_codec"],
            transcode_fps=row["transcode_fps"],
            bitrate=row["bitrate"],
            position_ticks=row["position_ticks"],
            runtime_ticks=row["runtime_ticks"],
            is_paused=bool(row["is_paused"]),
            started_at=started_at,
            last_ping_at=_parse_dt(row["last_ping_at"]) or started_at,
        )

    def _row_to_history(self, row: aiosqlite.Row) -> PlaybackHistory:
        """Convert a database row to a PlaybackHistory model."""
        return PlaybackHistory(
            id=row["id"],
            session_id=row["session_id"],
            user_id=row["user_id"],
            media_id=row["media_id"],
            started_at=_parse_dt(row["started_at"]),
            ended_at=_parse_dt(row["ended_at"]),
            duration_watched=row["duration_watched"] or 0,
            play_method=row["play_method"] or "DirectPlay",
            client_name=row["client_name"] or "Unknown",
            device_name=row["device_name"] or "Unknown",
            ip_address=row["ip_address"] or "127.0.0.1",
            country=row["country"] or "Unknown",
            city=row["city"] or "Unknown",
            audio_language=row["audio_language"],
            audio_codec=row["audio_codec"],
            subtitle_language=row["subtitle_language"],
            subtitle_codec=row["subtitle_codec"],
            pause_count=row["pause_count"] or 0,
            audio_changes=row["audio_changes"] or 0,
            subtitle_changes=row["subtitle_changes"] or 0,
        )


# Global database instance
db = Database()
