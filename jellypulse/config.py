from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    jellyfin_url: str = "http://localhost:8096"
    jellyfin_api_key: str = ""
    database_path: str = "./data/jellypulse.db"
    api_port: int = 8085

    # Poll regimes (milliseconds). Active/idle may be changed at runtime,
    # the error backoff is fixed.
    monitor_interval_active_ms: int = 1000
    monitor_interval_idle_ms: int = 5000
    monitor_interval_error_ms: int = 30000
    min_interval_active_ms: int = 500
    min_interval_idle_ms: int = 1000
    error_log_every: int = 60

    max_session_seconds: int = 24 * 3600
    telemetry_ttl_seconds: int = 3600

    # MaxMind GeoLite2 Country or City database; empty disables lookups
    geoip_database_path: str = ""

    discord_webhook_url: str = ""
    discord_alerts_enabled: bool = False
    discord_alert_policy: str = "all"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def jellyfin_configured(self) -> bool:
        return bool(self.jellyfin_url and self.jellyfin_api_key)

    @property
    def database_path_resolved(self) -> Path:
        """Get resolved database path."""
        path = Path(self.database_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


settings = Settings()
