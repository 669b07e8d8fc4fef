import asyncio
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass

import requests

from nowplaying.events import PlaybackEvent, PlaybackEventAdapter, PlaybackState

log = logging.getLogger("bluos")

_STATES = {
    "play": PlaybackState.PLAYING,
    "stream": PlaybackState.PLAYING,
    "pause": PlaybackState.PAUSED,
    "stop": PlaybackState.STOPPED,
}


@dataclass
class BluOSStatus:
    title: str | None
    artist: str | None
    album: str | None
    duration: int | None  # seconds
    secs: int | None      # elapsed seconds
    state: str | None     # 'play', 'pause', 'stop'

    def to_event(self) -> PlaybackEvent:
        return PlaybackEvent(
            state=_STATES.get(self.state or "", PlaybackState.UNKNOWN),
            title=self.title,
            artist=self.artist,
            album=self.album,
            duration_ms=self.duration * 1000 if self.duration is not None else None,
            position_sec=float(self.secs) if self.secs is not None else None,
        )


def _findtext_any(root: ET.Element, *tags: str):
    for t in tags:
        el = root.find(f".//{t}")
        if el is not None and el.text:
            return el.text.strip()
    return None


def _to_int(s):
    if s is None:
        return None
    try:
        return int(float(s))
    except (ValueError, OverflowError):
        return None


def parse_status(xml_text: str) -> BluOSStatus:
    """Parse a /Status document. Recursive lookup with tag fallbacks per field."""
    root = ET.fromstring(xml_text)

    # title appears as <name> and also as <title1>
    title = _findtext_any(root, "name", "title1", "title", "song")
    artist = _findtext_any(root, "artist", "title2")
    album = _findtext_any(root, "album", "title3")

    secs = _findtext_any(root, "secs", "elapsed", "position", "time")
    duration = _findtext_any(root, "totlen", "duration", "total", "trackLength", "length")

    state = _findtext_any(root, "state", "status", "mode")
    return BluOSStatus(
        title=title,
        artist=artist,
        album=album,
        duration=_to_int(duration),
        secs=_to_int(secs),
        state=state.lower() if state else None,
    )


class BluOSAdapter(PlaybackEventAdapter):
    """Polls a BluOS player's /Status and emits one PlaybackEvent per poll."""

    def __init__(self, host: str, port: int = 11000, timeout: int = 5,
                 http: requests.Session | None = None):
        super().__init__()
        self.base = f"http://{host}:{port}"
        self.timeout = timeout
        self.http = http or requests.Session()
        self._stop = asyncio.Event()

    def get_status(self) -> BluOSStatus | None:
        try:
            resp = self.http.get(f"{self.base}/Status", timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            log.warning("BluOS status fetch failed: %s", e)
            return None

        try:
            return parse_status(resp.text)
        except ET.ParseError as e:
            log.warning("BluOS status XML parse failed: %s", e)
            return None

    async def poll_once(self) -> PlaybackEvent | None:
        # Fetch off the loop, emit on it: subscribers expect the loop's thread
        status = await asyncio.to_thread(self.get_status)
        if status is None:
            return None
        log.debug("Parsed: state=%s artist=%s title=%s album=%s elapsed=%s duration=%s",
                  status.state, status.artist, status.title, status.album, status.secs, status.duration)
        event = status.to_event()
        self.emit(event)
        return event

    async def run(self, interval: float) -> None:
        log.info("Polling BluOS device at %s every %ss", self.base, interval)
        while not self.closed:
            try:
                await self.poll_once()
            except Exception:
                log.exception("BluOS poll failed; retrying in %ss", interval)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def close(self) -> None:
        super().close()
        self._stop.set()
