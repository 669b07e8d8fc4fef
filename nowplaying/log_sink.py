"""
Activity log for now-playing updates and scrobbles.

- One LogEntry per submission attempt: kind (nowPlaying|scrobble), status (ok|failed).
- ScrobbleLog keeps a capped history, optionally persisted to a JSON file.
- FanoutSink forwards to several sinks; one broken sink never blocks the others.
"""

from __future__ import annotations
import json
import logging
import os
import threading
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Deque, List, Protocol

KIND_NOW_PLAYING = "nowPlaying"
KIND_SCROBBLE = "scrobble"
STATUS_OK = "ok"
STATUS_FAILED = "failed"

log = logging.getLogger("log_sink")


@dataclass
class LogEntry:
    kind: str
    status: str
    track: str
    artist: str
    album: str | None = None
    extra: str | None = None
    date: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def failed(self) -> bool:
        return self.status == STATUS_FAILED


class LogSink(Protocol):
    def record(self, entry: LogEntry) -> None: ...


class ScrobbleLog:
    def __init__(self, path: str | None = None, maxlen: int = 500):
        self.path = path
        self.maxlen = maxlen
        self._lock = threading.Lock()
        self._entries: Deque[LogEntry] = deque(maxlen=maxlen)
        self._load()

    # -------- persistence --------
    def _load(self) -> None:
        if not self.path:
            return
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            if os.path.isfile(self.path):
                with open(self.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if isinstance(data, list):
                    for item in data[-self.maxlen:]:
                        self._entries.append(LogEntry(**item))
        except (OSError, ValueError, TypeError) as e:
            # Corrupt or unreadable file? Start fresh.
            log.warning("Discarding unreadable activity log %s: %s", self.path, e)
            self._entries.clear()

    def _save(self) -> None:
        if not self.path:
            return
        # Write atomically to avoid corruption
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump([asdict(e) for e in self._entries], f, ensure_ascii=False)
        os.replace(tmp, self.path)

    # -------- public API --------
    def record(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)  # deque drops the oldest at capacity
            self._save()

    def recent(self, limit: int = 200) -> List[LogEntry]:
        """Newest first."""
        with self._lock:
            return list(reversed(self._entries))[:limit]

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._save()


class FanoutSink:
    def __init__(self, *sinks: LogSink):
        self.sinks = list(sinks)

    def record(self, entry: LogEntry) -> None:
        for sink in self.sinks:
            try:
                sink.record(entry)
            except Exception as e:
                log.warning("Log sink %s failed: %s", type(sink).__name__, e)
