"""
Secret store for the Last.fm session.

- Values are plain strings keyed by account name.
- FileSecretStore keeps them in a 0600 JSON file, written atomically.
- Deleting an account that isn't there is a no-op.
"""

from __future__ import annotations
import json
import logging
import os
import threading
from typing import Dict, Protocol

ACCOUNT_SESSION_KEY = "lastfm_session_key"
ACCOUNT_USERNAME = "lastfm_username"

log = logging.getLogger("credentials")


class SecretStore(Protocol):
    def get(self, account: str) -> str | None: ...
    def set(self, value: str, account: str) -> None: ...
    def delete(self, account: str) -> None: ...


class MemorySecretStore:
    def __init__(self, initial: Dict[str, str] | None = None):
        self._items: Dict[str, str] = dict(initial or {})

    def get(self, account: str) -> str | None:
        return self._items.get(account)

    def set(self, value: str, account: str) -> None:
        self._items[account] = value

    def delete(self, account: str) -> None:
        self._items.pop(account, None)


class FileSecretStore:
    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    # -------- persistence --------
    def _load(self) -> Dict[str, str]:
        if not os.path.isfile(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            # Corrupt or unreadable file? Treat as signed out.
            log.warning("Ignoring unreadable credentials file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, items: Dict[str, str]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        # Write atomically; the file holds a session key, keep it private
        tmp = f"{self.path}.tmp"
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(items, f)
        os.replace(tmp, self.path)

    # -------- public API --------
    def get(self, account: str) -> str | None:
        with self._lock:
            value = self._load().get(account)
        return value if isinstance(value, str) else None

    def set(self, value: str, account: str) -> None:
        with self._lock:
            items = self._load()
            items[account] = value
            self._save(items)

    def delete(self, account: str) -> None:
        with self._lock:
            items = self._load()
            if account not in items:
                return
            del items[account]
            self._save(items)
