import asyncio

import pytest

from nowplaying.events import PlaybackEvent, PlaybackState
from nowplaying.log_sink import ScrobbleLog

T0 = 1_700_000_000.0


class FakeClock:
    """Wall clock plus sleep() that only wakes when advance() passes its deadline."""

    def __init__(self, start: float = T0):
        self.now = start
        self._sleepers = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay):
        fut = asyncio.get_running_loop().create_future()
        self._sleepers.append((self.now + delay, fut))
        await fut

    async def advance(self, seconds, coordinator=None):
        await settle()  # let freshly created tasks reach their sleep first
        self.now += seconds
        for deadline, fut in list(self._sleepers):
            if deadline <= self.now and not fut.done():
                fut.set_result(None)
        self._sleepers = [(d, f) for d, f in self._sleepers if not f.done()]
        await settle(coordinator)


async def settle(coordinator=None):
    for _ in range(10):
        await asyncio.sleep(0)
    if coordinator is not None:
        await coordinator.wait_idle()


class FakeClient:
    """Stands in for LastFMClient; records the calls the coordinator makes."""

    def __init__(self, artwork="https://img.example/cover.png"):
        self.now_playing = []
        self.scrobbles = []
        self.artwork_lookups = []
        self.artwork = artwork
        self.scrobble_error = None
        self.now_playing_error = None

    def update_now_playing(self, *, artist, track, album=None, duration_sec=None):
        if self.now_playing_error is not None:
            raise self.now_playing_error
        self.now_playing.append(dict(artist=artist, track=track, album=album, duration_sec=duration_sec))

    def submit_scrobble(self, *, artist, track, timestamp, album=None, duration_sec=None):
        if self.scrobble_error is not None:
            raise self.scrobble_error
        self.scrobbles.append(dict(artist=artist, track=track, album=album,
                                   timestamp=timestamp, duration_sec=duration_sec))

    def fetch_artwork_url(self, *, artist, track, album=None):
        self.artwork_lookups.append((artist, track, album))
        return self.artwork


def playing(title="Song", artist="Artist", album="Album", duration_sec=200, position=None):
    return PlaybackEvent(
        state=PlaybackState.PLAYING, title=title, artist=artist, album=album,
        duration_ms=duration_sec * 1000 if duration_sec is not None else None,
        position_sec=position,
    )


def paused(position=None):
    return PlaybackEvent(state=PlaybackState.PAUSED, position_sec=position)


def stopped():
    return PlaybackEvent(state=PlaybackState.STOPPED)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def activity():
    return ScrobbleLog(None)
