"""
Webhook notifier for the activity log.

- Sends a POST with JSON body to NOTIFY_WEBHOOK_URL for each log entry.
- Failed submissions are WARNING, successful ones INFO; respects NOTIFY_MIN_LEVEL.
- Best-effort: failures are logged but do not crash the app.
"""

from __future__ import annotations
import logging
import requests

from nowplaying.log_sink import LogEntry

_LEVELS = {
    "DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40, "CRITICAL": 50
}

log = logging.getLogger("notifier")


class WebhookNotifier:
    def __init__(self, webhook_url: str | None, min_level: str = "WARNING",
                 app_tag: str = "NowPlaying→Last.fm", timeout: float = 5):
        self.webhook_url = webhook_url.strip() if webhook_url else None
        self.min_level = _LEVELS.get(min_level.upper(), 30)
        self.app_tag = app_tag
        self.timeout = timeout

    @staticmethod
    def level_for(entry: LogEntry) -> str:
        return "WARNING" if entry.failed else "INFO"

    def record(self, entry: LogEntry) -> None:
        if not self.webhook_url:
            return
        level = self.level_for(entry)
        if _LEVELS[level] < self.min_level:
            return

        what = "Scrobble" if entry.kind == "scrobble" else "Now playing"
        payload = {
            "level": level,
            "title": f"{self.app_tag}: {what} {entry.status}",
            "message": f"{entry.artist} - {entry.track}" + (f" ({entry.extra})" if entry.extra else ""),
            "extra": {"kind": entry.kind, "status": entry.status, "album": entry.album, "date": entry.date},
        }
        try:
            # Most webhooks accept JSON; Slack/Discord-compatible webhooks also work.
            requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            log.debug("Notification send failed: %s", e)
