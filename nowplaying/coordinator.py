import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Set

from nowplaying.events import PlaybackEvent, PlaybackState
from nowplaying.lastfm_client import LastFMClient
from nowplaying.log_sink import (
    KIND_NOW_PLAYING, KIND_SCROBBLE, STATUS_FAILED, STATUS_OK, LogEntry, LogSink,
)
from nowplaying.progress import ProgressTracker
from nowplaying.state import (
    MIN_SCROBBLE_LENGTH_SEC, ScrobbleTarget, TrackIdentity, TrackSession, scrobble_threshold,
)

log = logging.getLogger("scrobbler")

ArtworkListener = Callable[[TrackIdentity, "str | None"], None]


@dataclass
class NowPlaying:
    title: str
    artist: str
    album: str | None = None
    artwork_url: str | None = None


class ScrobbleCoordinator:
    """Turns player events into now-playing updates and scrobbles.

    `handle()` must be called from the event loop, one event at a time. It
    never waits on the network: now-playing updates, artwork lookups and
    scrobbles run as background tasks whose failures are only logged.

    At most one TrackSession is active. A Playing event for a new track
    replaces it and schedules a deferred scrobble at the threshold; Paused
    cancels that scrobble; Stopped scrobbles immediately if the threshold
    was already reached, then clears the session.
    """

    def __init__(self, client: LastFMClient, sink: LogSink, *,
                 progress: ProgressTracker | None = None,
                 on_artwork: ArtworkListener | None = None,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.client = client
        self.sink = sink
        self.progress = progress
        self.on_artwork = on_artwork
        self.now_playing: NowPlaying | None = None
        self._clock = clock
        self._sleep = sleep
        self._session: TrackSession | None = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def session(self) -> TrackSession | None:
        return self._session

    # -------- state transitions --------
    def handle(self, event: PlaybackEvent) -> None:
        if event.state is PlaybackState.PLAYING:
            self._on_playing(event)
        elif event.state is PlaybackState.PAUSED:
            self._on_paused(event)
        elif event.state is PlaybackState.STOPPED:
            self._on_stopped()
        else:
            log.debug("Ignoring player state %s", event.state.value)

    def _on_playing(self, event: PlaybackEvent) -> None:
        if not event.artist or not event.title:
            log.debug("Playing without artist/title; skipping.")
            return

        identity = TrackIdentity.of(event.artist, event.title, event.album)
        if self._session is not None and self._session.identity == identity:
            # Players repeat Playing on seek/resume; same track, no transition
            if self.progress is not None:
                if event.position_sec is not None:
                    self.progress.update(event.position_sec)
                self.progress.play()
            return

        if self._session is not None:
            self._session.cancel_pending()

        total = event.duration_sec
        session = TrackSession(identity=identity, started_at=self._clock(), total_duration_sec=total)
        self._session = session
        self.now_playing = NowPlaying(title=identity.title, artist=identity.artist,
                                      album=event.album or None)
        log.info("Now playing: %s - %s%s (%ss)", identity.artist, identity.title,
                 f" [{identity.album}]" if identity.album else "", total or "?")

        if self.progress is not None:
            self.progress.set_track(total, start_at=event.position_sec or 0, playing=True)

        self._spawn(self._update_now_playing(identity, total))
        self._spawn(self._resolve_artwork(identity))

        if total > MIN_SCROBBLE_LENGTH_SEC:
            session.pending = asyncio.get_running_loop().create_task(
                self._deferred_scrobble(session.target(), session.threshold)
            )
            log.debug("Scrobble scheduled in %ss", session.threshold)

    def _on_paused(self, event: PlaybackEvent) -> None:
        if self._session is not None and self._session.pending is not None:
            self._session.cancel_pending()
            log.debug("Paused; pending scrobble cancelled")
        if self.progress is not None:
            if event.position_sec is not None:
                self.progress.update(event.position_sec)
            self.progress.pause()

    def _on_stopped(self) -> None:
        session = self._session
        if session is not None and session.total_duration_sec > 0 and not session.scrobbled:
            played = session.played(self._clock())
            threshold = scrobble_threshold(session.total_duration_sec)
            if played >= threshold:
                log.info("Stopped after %ds (threshold %ss); scrobbling now", played, threshold)
                self._fire(session.target())
            else:
                log.info("Stopped early (%ds < %ss); no scrobble", played, threshold)

        if session is not None:
            session.cancel_pending()
        self._session = None

        if self.progress is not None:
            self.progress.pause()
            self.progress.update(0)

    # -------- scrobbling --------
    async def _deferred_scrobble(self, target: ScrobbleTarget, delay: int) -> None:
        await self._sleep(delay)
        if self._session is not None and self._session.pending is asyncio.current_task():
            self._session.pending = None
        self._fire(target)

    def _fire(self, target: ScrobbleTarget) -> None:
        session = self._session
        if session is not None and session.target() == target:
            session.scrobbled = True
        self._spawn(self._scrobble(target))

    async def _scrobble(self, target: ScrobbleTarget) -> None:
        ident = target.identity
        log.info("Scrobbling: %s - %s", ident.artist, ident.title)
        try:
            await asyncio.to_thread(
                self.client.submit_scrobble,
                artist=ident.artist,
                track=ident.title,
                album=ident.album or None,
                timestamp=target.timestamp,
                duration_sec=target.total_duration_sec or None,
            )
        except Exception as e:
            log.warning("Scrobble failed for %s - %s: %s", ident.artist, ident.title, e)
            await self._record(KIND_SCROBBLE, STATUS_FAILED, ident, str(e))
            return
        log.info("Scrobbled: %s - %s", ident.artist, ident.title)
        await self._record(KIND_SCROBBLE, STATUS_OK, ident)

    async def _update_now_playing(self, identity: TrackIdentity, total: int) -> None:
        try:
            await asyncio.to_thread(
                self.client.update_now_playing,
                artist=identity.artist,
                track=identity.title,
                album=identity.album or None,
                duration_sec=total or None,
            )
        except Exception as e:
            # NOW PLAYING failures aren't critical
            log.debug("update_now_playing failed: %s", e)
            await self._record(KIND_NOW_PLAYING, STATUS_FAILED, identity, str(e))
            return
        await self._record(KIND_NOW_PLAYING, STATUS_OK, identity)

    async def _resolve_artwork(self, identity: TrackIdentity) -> None:
        url = await asyncio.to_thread(
            self.client.fetch_artwork_url, artist=identity.artist, track=identity.title,
            album=identity.album or None,
        )
        if self._session is None or self._session.identity != identity:
            return
        if self.now_playing is not None:
            self.now_playing.artwork_url = url
        if self.on_artwork is not None:
            self.on_artwork(identity, url)

    async def _record(self, kind: str, status: str, identity: TrackIdentity, extra: str | None = None) -> None:
        entry = LogEntry(kind=kind, status=status, track=identity.title,
                         artist=identity.artist, album=identity.album or None, extra=extra)
        try:
            # Sinks may write files or post webhooks; keep them off the loop
            await asyncio.to_thread(self.sink.record, entry)
        except Exception as e:
            log.warning("Could not record %s %s: %s", kind, status, e)

    # -------- task bookkeeping --------
    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for in-flight now-playing, artwork and scrobble calls."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        if self._session is not None:
            self._session.cancel_pending()
        await self.wait_idle()
