import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from .config import Settings, settings
from .models import NotifyPolicy, PlaybackStartEvent

logger = logging.getLogger(__name__)

# Jellyfin purple
EMBED_COLOR = 10181046


def parse_policy(value: str) -> NotifyPolicy:
    """Accept both "transcode-only" and the legacy "TRANSCODE_ONLY" spelling."""
    normalized = (value or "").strip().lower().replace("_", "-")
    try:
        return NotifyPolicy(normalized)
    except ValueError:
        logger.warning(f"Unknown alert policy {value!r}, falling back to 'all'")
        return NotifyPolicy.ALL


def should_notify(event: PlaybackStartEvent, policy: NotifyPolicy) -> bool:
    if policy == NotifyPolicy.TRANSCODE_ONLY:
        return event.is_transcode
    if policy == NotifyPolicy.NEW_IP_ONLY:
        return event.is_new_ip
    return True


class Notifier:
    """Fire-and-forget Discord alerts for playback starts."""

    def __init__(self, config: Optional[Settings] = None):
        self.settings = config or settings

    @property
    def policy(self) -> NotifyPolicy:
        return parse_policy(self.settings.discord_alert_policy)

    def build_payload(self, event: PlaybackStartEvent) -> dict:
        location = (
            f"{event.city}, {event.country}" if event.country != "Unknown" else "Unknown"
        )
        poster_url = (
            f"{self.settings.jellyfin_url.rstrip('/')}/Items/{event.media_id}/Images/Primary"
        )
        return {
            "embeds": [
                {
                    "title": f"Now playing: {event.media_title}",
                    "color": EMBED_COLOR,
                    "fields": [
                        {"name": "User", "value": event.user_name, "inline": True},
                        {
                            "name": "Device",
                            "value": f"{event.client_name} ({event.device_name})",
                            "inline": True,
                        },
                        {"name": "Location", "value": location, "inline": True},
                        {"name": "Quality", "value": event.play_method, "inline": True},
                    ],
                    "thumbnail": {"url": poster_url},
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            ]
        }

    async def notify(
        self, event: PlaybackStartEvent, policy: Optional[NotifyPolicy] = None
    ) -> bool:
        """Send the alert if enabled and allowed by policy. Never raises."""
        if not self.settings.discord_alerts_enabled or not self.settings.discord_webhook_url:
            return False
        if not should_notify(event, policy or self.policy):
            return False

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.settings.discord_webhook_url,
                    json=self.build_payload(event),
                    timeout=10.0,
                )
            if response.status_code >= 300:
                logger.warning(f"Discord webhook returned {response.status_code}")
                return False
        except Exception as e:
            logger.error(f"Failed to send Discord webhook: {e}")
            return False

        logger.info(f"Discord alert sent for {event.media_title}")
        return True


notifier = Notifier()
