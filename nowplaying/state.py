import asyncio
from dataclasses import dataclass

MIN_THRESHOLD_SEC = 30
MAX_THRESHOLD_SEC = 240
MIN_SCROBBLE_LENGTH_SEC = 30


def scrobble_threshold(total_duration_sec: int) -> int:
    """Seconds of play before a track counts.

    Last.fm guideline: half the track, but at least 30s and never more
    than 240s (4min).
    """
    return min(max(MIN_THRESHOLD_SEC, int(total_duration_sec) // 2), MAX_THRESHOLD_SEC)


# -------------------------
# Stateless identity for a track
# -------------------------
@dataclass(frozen=True)
class TrackIdentity:
    artist: str
    title: str
    album: str = ""

    @classmethod
    def of(cls, artist: str, title: str, album: str | None = None) -> "TrackIdentity":
        return cls(artist=artist, title=title, album=album or "")

    @property
    def key(self) -> str:
        return f"{self.artist}|{self.title}|{self.album}"


@dataclass(frozen=True)
class ScrobbleTarget:
    """Copy of a session's data, taken when a scrobble is scheduled or fired."""
    identity: TrackIdentity
    started_at: float
    total_duration_sec: int

    @property
    def timestamp(self) -> int:
        return int(self.started_at)


@dataclass
class TrackSession:
    """The one track currently considered active."""
    identity: TrackIdentity
    started_at: float
    total_duration_sec: int = 0
    pending: asyncio.Task | None = None
    scrobbled: bool = False

    @property
    def threshold(self) -> int:
        return scrobble_threshold(self.total_duration_sec)

    def played(self, now: float) -> float:
        return now - self.started_at

    def target(self) -> ScrobbleTarget:
        return ScrobbleTarget(self.identity, self.started_at, self.total_duration_sec)

    def cancel_pending(self) -> None:
        if self.pending is not None:
            self.pending.cancel()
            self.pending = None
