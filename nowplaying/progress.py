import asyncio
import logging
from typing import Awaitable, Callable

log = logging.getLogger("progress")

TICK_INTERVAL = 0.5


def format_clock(seconds: float) -> str:
    total = int(round(seconds))
    return f"{total // 60:02d}:{total % 60:02d}"


class ProgressTracker:
    """Elapsed/duration/playing state for the current track.

    While playing, a background task advances `elapsed` every TICK_INTERVAL
    seconds and pauses itself once the end is reached. Methods that start
    the tick loop must be called from a running event loop.
    """

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.elapsed: float = 0.0
        self.duration: float = 0.0
        self.is_playing: bool = False
        self._sleep = sleep
        self._tick_task: asyncio.Task | None = None

    # -------- derived values --------
    @property
    def fraction(self) -> float:
        if self.duration <= 0:
            return 0.0
        return min(max(self.elapsed / self.duration, 0.0), 1.0)

    @property
    def remaining(self) -> float:
        return max(self.duration - self.elapsed, 0.0)

    @property
    def elapsed_string(self) -> str:
        return format_clock(self.elapsed)

    @property
    def remaining_string(self) -> str:
        if self.duration <= 0:
            return "--:--"
        return f"-{format_clock(self.remaining)}"

    @property
    def ticking(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    # -------- operations --------
    def set_track(self, duration: float, start_at: float = 0.0, playing: bool = True) -> None:
        self.duration = max(float(duration), 0.0)
        self.elapsed = self._clamp(start_at)
        self.is_playing = playing
        self._restart()

    def update(self, elapsed: float) -> None:
        self.elapsed = self._clamp(elapsed)

    def play(self) -> None:
        self.is_playing = True
        self._restart()

    def pause(self) -> None:
        self.is_playing = False
        self._stop_ticking()

    def tick(self) -> None:
        """Advance one interval; auto-pause at the end of the track."""
        self.elapsed = min(self.elapsed + TICK_INTERVAL, self.duration)
        if self.elapsed >= self.duration:
            log.debug("Reached end of track (%.1fs); pausing progress", self.duration)
            self.pause()

    # -------- internals --------
    def _clamp(self, value: float) -> float:
        return min(max(float(value), 0.0), self.duration)

    def _stop_ticking(self) -> None:
        task, self._tick_task = self._tick_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _restart(self) -> None:
        self._stop_ticking()
        if not self.is_playing or self.duration <= 0:
            return
        self._tick_task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        me = asyncio.current_task()
        while True:
            await self._sleep(TICK_INTERVAL)
            if self._tick_task is not me:
                return
            self.tick()
            if not self.is_playing:
                return
