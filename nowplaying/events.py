from __future__ import annotations
import enum
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping


class PlaybackState(str, enum.Enum):
    PLAYING = "Playing"
    PAUSED = "Paused"
    STOPPED = "Stopped"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, raw: str | None) -> "PlaybackState":
        for state in cls:
            if raw and raw.strip().lower() == state.value.lower():
                return state
        return cls.UNKNOWN


@dataclass(frozen=True)
class PlaybackEvent:
    state: PlaybackState
    title: str | None = None
    artist: str | None = None
    album: str | None = None
    duration_ms: int | None = None
    position_sec: float | None = None  # player-reported position, if the source has one

    @property
    def duration_sec(self) -> int:
        return max(0, (self.duration_ms or 0) // 1000)


PlaybackHandler = Callable[[PlaybackEvent], None]


def _to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class PlaybackEventAdapter:
    """Fan-out point between a player's notifications and their consumers.

    Concrete sources call `emit()`; consumers `subscribe()` and get back a
    callable that unsubscribes them. `close()` drops every subscriber and
    stops the source.
    """

    def __init__(self):
        self._handlers: List[PlaybackHandler] = []
        self.closed = False

    def subscribe(self, handler: PlaybackHandler) -> Callable[[], None]:
        self._handlers.append(handler)
        return lambda: self.unsubscribe(handler)

    def unsubscribe(self, handler: PlaybackHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def emit(self, event: PlaybackEvent) -> None:
        if self.closed:
            return
        for handler in list(self._handlers):
            handler(event)

    def close(self) -> None:
        self.closed = True
        self._handlers.clear()

    @staticmethod
    def normalize(info: Mapping[str, Any]) -> PlaybackEvent:
        """Map a raw player-info notification into a PlaybackEvent."""
        total = _to_number(info.get("Total Time"))
        position = _to_number(info.get("Player Position"))
        return PlaybackEvent(
            state=PlaybackState.parse(info.get("Player State")),
            title=info.get("Name") or None,
            artist=info.get("Artist") or None,
            album=info.get("Album") or None,
            duration_ms=int(total) if total is not None else None,
            position_sec=position,
        )
