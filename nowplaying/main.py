import argparse
import asyncio
import logging

from nowplaying.bluos import BluOSAdapter
from nowplaying.config import ConfigurationError, Settings
from nowplaying.coordinator import ScrobbleCoordinator
from nowplaying.credentials import FileSecretStore
from nowplaying.lastfm_client import LastFMClient, LastFMError
from nowplaying.log_sink import FanoutSink, ScrobbleLog
from nowplaying.notifier import WebhookNotifier
from nowplaying.progress import ProgressTracker

log = logging.getLogger("nowplaying")


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        force=True,  # ensure our config is used even if libs pre-configure logging
    )


def build_client(settings: Settings) -> LastFMClient:
    client = LastFMClient(
        settings.api_key,
        settings.api_secret,
        FileSecretStore(settings.credentials_path),
        endpoint=settings.endpoint,
        auth_root=settings.auth_url,
        timeout=settings.timeout,
    )
    client.load_credentials()
    return client


async def run_bridge(settings: Settings, client: LastFMClient) -> None:
    activity = ScrobbleLog(settings.log_path, settings.log_limit)
    webhook = WebhookNotifier(settings.webhook_url, settings.notify_min_level, settings.app_tag)
    progress = ProgressTracker()
    coordinator = ScrobbleCoordinator(client, FanoutSink(activity, webhook), progress=progress)
    adapter = BluOSAdapter(settings.bluos_host, settings.bluos_port)
    adapter.subscribe(coordinator.handle)

    if not client.authenticated:
        log.warning("Not signed in to Last.fm; run `nowplaying login` to enable scrobbling")
    log.info("Starting player → Last.fm bridge. %s | log size=%s", settings.summary(), activity.size())
    try:
        await adapter.run(settings.poll_interval)
    finally:
        adapter.close()
        progress.pause()
        await coordinator.aclose()


def login(client: LastFMClient) -> None:
    token = client.request_token()
    print("Open this URL and allow access:")
    print(client.build_auth_url(token))
    input("Press Enter once you have approved the application… ")
    client.exchange_session(token)
    print(f"Signed in as {client.username}")


def show_recent(client: LastFMClient, limit: int) -> None:
    for t in client.fetch_recent_tracks(limit=limit):
        when = "now playing" if t.now_playing else (t.played_at or "")
        print(f"{t.artist} — {t.name}{f' [{t.album}]' if t.album else ''}  {when}")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="nowplaying", description="Scrobble a music player to Last.fm")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="bridge player events to Last.fm (default)")
    sub.add_parser("login", help="authorize this application with Last.fm")
    sub.add_parser("logout", help="forget the stored Last.fm session")
    recent = sub.add_parser("recent", help="list recently scrobbled tracks")
    recent.add_argument("--limit", type=int, default=30)
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    try:
        settings = Settings.from_env()
        settings.validate()
    except ConfigurationError as e:
        raise SystemExit(str(e))
    setup_logging(settings.log_level)

    client = build_client(settings)
    command = args.command or "run"
    try:
        if command == "login":
            login(client)
        elif command == "logout":
            client.sign_out()
        elif command == "recent":
            show_recent(client, args.limit)
        else:
            asyncio.run(run_bridge(settings, client))
    except LastFMError as e:
        raise SystemExit(f"Last.fm error: {e}")
    except KeyboardInterrupt:
        log.info("Shutting down…")


if __name__ == "__main__":
    main()
