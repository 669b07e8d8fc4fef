import logging
from dataclasses import dataclass, field
from typing import Any, Mapping
from urllib.parse import quote, urlencode

import pylast
import requests

from nowplaying.credentials import ACCOUNT_SESSION_KEY, ACCOUNT_USERNAME, SecretStore

log = logging.getLogger("lastfm")

API_ROOT = "https://ws.audioscrobbler.com/2.0/"
AUTH_ROOT = "https://www.last.fm/api/auth/"

# Keys the provider leaves out of the signature base string
_UNSIGNED_KEYS = ("format", "callback")
# Largest first; anything else falls back to the last image listed
_IMAGE_SIZES = ("extralarge", "mega", "large", "medium")


# Custom error classes so callers can branch
class LastFMError(Exception):
    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"[Last.fm {code}] {message}")

class LastFMProviderError(LastFMError): ...
class LastFMAuthError(LastFMProviderError): ...
class LastFMSignatureError(LastFMProviderError): ...
class LastFMRateLimitError(LastFMProviderError): ...
class LastFMInvalidSessionError(LastFMError): ...
class LastFMNetworkError(LastFMError): ...


def sign(params: Mapping[str, str], secret: str) -> str:
    """Last.fm api_sig: sorted key+value pairs, secret appended, md5 hex."""
    base = "".join(
        f"{k}{params[k]}" for k in sorted(params) if k not in _UNSIGNED_KEYS
    )
    return pylast.md5(base + secret)


def encode_form(params: Mapping[str, str]) -> str:
    # Only A-Z a-z 0-9 - _ . ~ go through unescaped
    return "&".join(f"{quote(k, safe='')}={quote(v, safe='')}" for k, v in params.items())


def _raise_for_error(payload: dict) -> None:
    if "error" not in payload:
        return
    code = payload.get("error")
    msg = str(payload.get("message", ""))
    code = code if isinstance(code, int) else -1
    # Map common Last.fm error codes
    if code in (4, 9, 14, 15):  # auth failed, invalid session, token unauthorized/expired
        raise LastFMAuthError(code, msg)
    if code == 13:
        raise LastFMSignatureError(code, msg)
    if code == 29:
        raise LastFMRateLimitError(code, msg)
    raise LastFMProviderError(code, msg)


@dataclass
class RecentTrack:
    name: str
    artist: str
    album: str
    played_at: int | None
    now_playing: bool
    raw: dict = field(repr=False, default_factory=dict)

    @classmethod
    def from_api(cls, item: Mapping[str, Any]) -> "RecentTrack":
        def text(key):
            value = item.get(key)
            if isinstance(value, Mapping):
                return value.get("#text") or ""
            return value or ""

        uts = (item.get("date") or {}).get("uts")
        try:
            played_at = int(uts) if uts is not None else None
        except (TypeError, ValueError):
            played_at = None
        attr = item.get("@attr") or {}
        return cls(
            name=text("name"),
            artist=text("artist"),
            album=text("album"),
            played_at=played_at,
            now_playing=attr.get("nowplaying") == "true",
            raw=dict(item),
        )


class LastFMClient:
    """Signed Last.fm web-service client with a persisted session.

    Every call is a form-encoded POST to a single endpoint. Mutating methods
    are signed with the shared secret and require a session key obtained
    through the token -> browser approval -> session exchange.
    """

    def __init__(self, api_key: str, api_secret: str, store: SecretStore, *,
                 endpoint: str = API_ROOT, auth_root: str = AUTH_ROOT,
                 timeout: float | None = None, http: requests.Session | None = None):
        if not api_key or not api_secret:
            raise ValueError("Missing Last.fm credentials")
        self.api_key = api_key
        self.api_secret = api_secret
        self.endpoint = endpoint
        self.auth_root = auth_root
        self.timeout = timeout
        self.store = store
        self.http = http or requests.Session()
        self.session_key: str | None = None
        self.username: str | None = None

    @property
    def authenticated(self) -> bool:
        return self.session_key is not None

    def load_credentials(self) -> bool:
        """Restore a previously persisted session, if both parts are present."""
        session_key = self.store.get(ACCOUNT_SESSION_KEY)
        username = self.store.get(ACCOUNT_USERNAME)
        if session_key and username:
            self.session_key = session_key
            self.username = username
            log.info("Loaded Last.fm session for %s", username)
            return True
        log.info("No stored Last.fm session (signed out)")
        return False

    # -------- transport --------
    def _post(self, params: dict[str, str], *, signed: bool) -> dict:
        params = dict(params)
        if signed:
            params["api_sig"] = sign(params, self.api_secret)
        params["format"] = "json"

        try:
            resp = self.http.post(
                self.endpoint,
                data=encode_form(params).encode("utf-8"),
                headers={"Content-Type": "application/x-www-form-urlencoded; charset=utf-8"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise LastFMNetworkError(-10, str(e)) from e

        try:
            payload = resp.json()
        except ValueError as e:
            if not resp.ok:
                raise LastFMNetworkError(resp.status_code, f"HTTP {resp.status_code}") from e
            raise LastFMProviderError(-3, "Invalid response") from e
        if not isinstance(payload, dict):
            raise LastFMProviderError(-3, "Invalid response")
        if not resp.ok and "error" not in payload:
            raise LastFMNetworkError(resp.status_code, f"HTTP {resp.status_code}")
        return payload

    def _call(self, params: dict[str, str], *, signed: bool) -> dict:
        payload = self._post(params, signed=signed)
        _raise_for_error(payload)
        return payload

    # -------- authentication --------
    def request_token(self) -> str:
        payload = self._post({"api_key": self.api_key, "method": "auth.getToken"}, signed=True)
        token = payload.get("token")
        if not isinstance(token, str) or not token:
            if "error" in payload:
                raise LastFMAuthError(payload.get("error", -1), str(payload.get("message", "")))
            raise LastFMAuthError(-1, "Token missing")
        return token

    def build_auth_url(self, token: str) -> str:
        return f"{self.auth_root}?{urlencode({'api_key': self.api_key, 'token': token})}"

    def exchange_session(self, token: str) -> None:
        """Trade an approved token for a session key and persist it."""
        payload = self._post(
            {"api_key": self.api_key, "method": "auth.getSession", "token": token},
            signed=True,
        )
        if "error" in payload:
            code = payload.get("error")
            raise LastFMAuthError(code if isinstance(code, int) else -1,
                                  str(payload.get("message", "")))

        session = payload.get("session")
        key = session.get("key") if isinstance(session, dict) else None
        name = session.get("name") if isinstance(session, dict) else None
        if not isinstance(key, str) or not isinstance(name, str):
            raise LastFMInvalidSessionError(-2, "Invalid session")

        self.session_key = key
        self.username = name
        self.store.set(key, ACCOUNT_SESSION_KEY)
        self.store.set(name, ACCOUNT_USERNAME)
        log.info("Signed in to Last.fm as %s", name)

    def sign_out(self) -> None:
        self.session_key = None
        self.username = None
        for account in (ACCOUNT_SESSION_KEY, ACCOUNT_USERNAME):
            try:
                self.store.delete(account)
            except OSError as e:
                log.warning("Could not remove stored credential %s: %s", account, e)
        log.info("Signed out of Last.fm")

    # -------- scrobbling --------
    def _track_params(self, method: str, artist: str, track: str,
                      album: str | None, duration_sec: int | None) -> dict[str, str]:
        params = {
            "method": method,
            "api_key": self.api_key,
            "sk": self.session_key or "",
            "artist": artist,
            "track": track,
        }
        if album:
            params["album"] = album
        if duration_sec and duration_sec > 0:
            params["duration"] = str(int(duration_sec))
        return params

    def update_now_playing(self, *, artist: str, track: str, album: str | None = None,
                           duration_sec: int | None = None) -> None:
        """Push a Now Playing update. Does nothing while signed out."""
        if not self.session_key:
            log.debug("Not signed in; skipping now playing for %s - %s", artist, track)
            return
        self._call(self._track_params("track.updateNowPlaying", artist, track, album, duration_sec),
                   signed=True)

    def submit_scrobble(self, *, artist: str, track: str, timestamp: int,
                        album: str | None = None, duration_sec: int | None = None) -> None:
        """Submit a scrobble; timestamp is when the track started (unix seconds)."""
        if not self.session_key:
            log.debug("Not signed in; skipping scrobble for %s - %s", artist, track)
            return
        params = self._track_params("track.scrobble", artist, track, album, duration_sec)
        params["timestamp"] = str(int(timestamp))
        self._call(params, signed=True)

    # -------- read-only --------
    def fetch_recent_tracks(self, username: str | None = None, limit: int = 30) -> list[RecentTrack]:
        user = username or self.username
        if not user:
            raise LastFMAuthError(-1, "No username; sign in first")
        payload = self._call(
            {"method": "user.getRecentTracks", "user": user, "api_key": self.api_key,
             "limit": str(limit)},
            signed=False,
        )
        items = (payload.get("recenttracks") or {}).get("track") or []
        if isinstance(items, dict):
            items = [items]
        return [RecentTrack.from_api(item) for item in items if isinstance(item, dict)]

    def fetch_artwork_url(self, *, artist: str, track: str, album: str | None = None) -> str | None:
        """Best-effort cover art lookup. Never raises."""
        try:
            payload = self._call(
                {"method": "track.getInfo", "api_key": self.api_key, "artist": artist, "track": track},
                signed=False,
            )
            url = best_image_url(payload["track"]["album"]["image"])
            if url:
                return url
        except Exception as e:
            log.debug("track.getInfo artwork lookup failed for %s - %s: %s", artist, track, e)

        if album:
            try:
                payload = self._call(
                    {"method": "album.getInfo", "api_key": self.api_key, "artist": artist, "album": album},
                    signed=False,
                )
                url = best_image_url(payload["album"]["image"])
                if url:
                    return url
            except Exception as e:
                log.debug("album.getInfo artwork lookup failed for %s - %s: %s", artist, album, e)
        return None


def best_image_url(images: list) -> str | None:
    by_size = {}
    for image in images:
        if isinstance(image, dict) and image.get("#text"):
            by_size[image.get("size")] = image["#text"]
    for size in _IMAGE_SIZES:
        if size in by_size:
            return by_size[size]
    if images and isinstance(images[-1], dict):
        return images[-1].get("#text") or None
    return None
