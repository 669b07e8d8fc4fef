import os
from dataclasses import dataclass
from typing import Mapping
from urllib.parse import urlparse

from nowplaying.lastfm_client import API_ROOT, AUTH_ROOT


class ConfigurationError(ValueError):
    pass


def _float_or_none(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    return float(value)


@dataclass
class Settings:
    api_key: str
    api_secret: str
    endpoint: str = API_ROOT
    auth_url: str = AUTH_ROOT
    timeout: float | None = None
    bluos_host: str = "127.0.0.1"
    bluos_port: int = 11000
    poll_interval: int = 3
    log_level: str = "INFO"
    credentials_path: str = "/data/credentials.json"
    log_path: str = "/data/scrobble_log.json"
    log_limit: int = 500
    webhook_url: str | None = None
    notify_min_level: str = "WARNING"
    app_tag: str = "NowPlaying→Last.fm"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        """Read configuration from environment variables."""
        env = os.environ if env is None else env
        try:
            return cls(
                api_key=env.get("LASTFM_API_KEY", "").strip(),
                api_secret=env.get("LASTFM_API_SECRET", "").strip(),
                endpoint=env.get("LASTFM_API_ENDPOINT") or API_ROOT,
                auth_url=env.get("LASTFM_AUTH_URL") or AUTH_ROOT,
                timeout=_float_or_none(env.get("LASTFM_TIMEOUT")),
                bluos_host=env.get("BLUOS_HOST", "127.0.0.1"),
                bluos_port=int(env.get("BLUOS_PORT", "11000")),
                poll_interval=max(1, int(env.get("POLL_INTERVAL", "3"))),
                log_level=env.get("LOG_LEVEL", "INFO").upper(),
                credentials_path=env.get("CREDENTIALS_PATH", "/data/credentials.json"),
                log_path=env.get("SCROBBLE_LOG_PATH", "/data/scrobble_log.json"),
                log_limit=int(env.get("SCROBBLE_LOG_LIMIT", "500")),
                webhook_url=env.get("NOTIFY_WEBHOOK_URL") or None,
                notify_min_level=env.get("NOTIFY_MIN_LEVEL", "WARNING"),
                app_tag=env.get("APP_TAG", "NowPlaying→Last.fm"),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

    def validate(self) -> None:
        if not self.api_key:
            raise ConfigurationError("LASTFM_API_KEY is required")
        if not self.api_secret:
            raise ConfigurationError("LASTFM_API_SECRET is required")
        parsed = urlparse(self.endpoint)
        if parsed.scheme != "https" or not parsed.netloc:
            raise ConfigurationError(f"LASTFM_API_ENDPOINT must be an https URL, got {self.endpoint!r}")

    def summary(self) -> str:
        return (f"endpoint={self.endpoint} api_key={self.api_key[:8]}... "
                f"bluos={self.bluos_host}:{self.bluos_port} poll={self.poll_interval}s "
                f"log={self.log_path} (limit={self.log_limit})")
