import hashlib
from urllib.parse import parse_qs, urlparse

import pytest
import requests
import responses

from nowplaying.credentials import (
    ACCOUNT_SESSION_KEY, ACCOUNT_USERNAME, FileSecretStore, MemorySecretStore,
)
from nowplaying.lastfm_client import (
    API_ROOT, LastFMAuthError, LastFMClient, LastFMInvalidSessionError, LastFMNetworkError,
    LastFMProviderError, LastFMRateLimitError, LastFMSignatureError, best_image_url,
    encode_form, sign,
)

KEY = "k" * 32
SECRET = "s" * 32


def form(call):
    body = call.request.body
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    return {k: v[0] for k, v in parse_qs(body, keep_blank_values=True).items()}


@pytest.fixture
def store():
    return MemorySecretStore()


@pytest.fixture
def client(store):
    return LastFMClient(KEY, SECRET, store)


@pytest.fixture
def signed_in(store):
    store.set("SK", ACCOUNT_SESSION_KEY)
    store.set("alice", ACCOUNT_USERNAME)
    c = LastFMClient(KEY, SECRET, store)
    assert c.load_credentials()
    return c


# -------- signing / encoding --------
def test_sign_matches_sorted_concatenation():
    params = {"method": "auth.getToken", "api_key": "KEY"}
    expected = hashlib.md5("api_keyKEYmethodauth.getTokenSECRET".encode("utf-8")).hexdigest()
    assert sign(params, "SECRET") == expected


def test_sign_ignores_order_and_format_keys():
    a = {"track": "Song", "artist": "Artist", "sk": "SK", "format": "json"}
    b = {"sk": "SK", "callback": "cb", "artist": "Artist", "track": "Song"}
    assert sign(a, "x") == sign(b, "x")


def test_sign_hashes_utf8():
    expected = hashlib.md5("artistBjörkSECRET".encode("utf-8")).hexdigest()
    assert sign({"artist": "Björk"}, "SECRET") == expected


def test_encode_form_uses_unreserved_allow_list():
    assert encode_form({"q": "a b&c=d/é", "safe": "AZaz09-_.~"}) == "q=a%20b%26c%3Dd%2F%C3%A9&safe=AZaz09-_.~"


def test_build_auth_url_round_trips_token(client):
    token = "tok en/&=+?"
    url = client.build_auth_url(token)
    query = parse_qs(urlparse(url).query)
    assert url.startswith("https://www.last.fm/api/auth/")
    assert query == {"api_key": [KEY], "token": [token]}


# -------- authentication --------
@responses.activate
def test_request_token_is_signed(client):
    responses.add(responses.POST, API_ROOT, json={"token": "TOKEN"})
    assert client.request_token() == "TOKEN"

    sent = form(responses.calls[0])
    assert sent["method"] == "auth.getToken"
    assert sent["format"] == "json"
    assert sent["api_sig"] == sign({"api_key": KEY, "method": "auth.getToken"}, SECRET)
    assert responses.calls[0].request.headers["Content-Type"].startswith("application/x-www-form-urlencoded")


@responses.activate
def test_request_token_missing_raises(client):
    responses.add(responses.POST, API_ROOT, json={})
    with pytest.raises(LastFMAuthError):
        client.request_token()


@responses.activate
def test_exchange_session_stores_credentials(client, store):
    responses.add(responses.POST, API_ROOT,
                  json={"session": {"name": "alice", "key": "SK", "subscriber": 0}})
    client.exchange_session("TOKEN")

    assert (client.session_key, client.username) == ("SK", "alice")
    assert store.get(ACCOUNT_SESSION_KEY) == "SK"
    assert store.get(ACCOUNT_USERNAME) == "alice"
    sent = form(responses.calls[0])
    assert sent["token"] == "TOKEN"
    assert sent["api_sig"] == sign({"api_key": KEY, "method": "auth.getSession", "token": "TOKEN"}, SECRET)


@responses.activate
def test_exchange_session_error_body(client, store):
    responses.add(responses.POST, API_ROOT, status=403,
                  json={"error": 14, "message": "This token has not been authorized"})
    with pytest.raises(LastFMAuthError) as exc:
        client.exchange_session("TOKEN")
    assert exc.value.code == 14
    assert "not been authorized" in exc.value.message
    assert client.session_key is None
    assert store.get(ACCOUNT_SESSION_KEY) is None


@responses.activate
def test_exchange_session_missing_fields(client):
    responses.add(responses.POST, API_ROOT, json={"session": {"name": "alice"}})
    with pytest.raises(LastFMInvalidSessionError):
        client.exchange_session("TOKEN")


def test_sign_out_is_idempotent(signed_in, store):
    signed_in.sign_out()
    signed_in.sign_out()
    assert signed_in.session_key is None and signed_in.username is None
    assert store.get(ACCOUNT_SESSION_KEY) is None


def test_load_credentials_needs_both_parts(store):
    store.set("SK", ACCOUNT_SESSION_KEY)
    c = LastFMClient(KEY, SECRET, store)
    assert c.load_credentials() is False
    assert not c.authenticated


# -------- scrobbling --------
@responses.activate
def test_now_playing_is_noop_when_signed_out(client):
    client.update_now_playing(artist="A", track="T")
    client.submit_scrobble(artist="A", track="T", timestamp=1)
    assert len(responses.calls) == 0


@responses.activate
def test_now_playing_params(signed_in):
    responses.add(responses.POST, API_ROOT, json={"nowplaying": {}})
    signed_in.update_now_playing(artist="Artist", track="Song", album="", duration_sec=0)

    sent = form(responses.calls[0])
    assert sent["method"] == "track.updateNowPlaying"
    assert sent["sk"] == "SK"
    assert "album" not in sent and "duration" not in sent


@responses.activate
def test_scrobble_params_and_signature(signed_in):
    responses.add(responses.POST, API_ROOT, json={"scrobbles": {"@attr": {"accepted": 1}}})
    signed_in.submit_scrobble(artist="Sigur Rós", track="Hoppípolla", album="Takk...",
                              timestamp=1_700_000_000, duration_sec=268)

    sent = form(responses.calls[0])
    assert sent["method"] == "track.scrobble"
    assert sent["timestamp"] == "1700000000"
    assert sent["duration"] == "268"
    assert sent["album"] == "Takk..."
    unsigned = {k: v for k, v in sent.items() if k not in ("api_sig", "format")}
    assert sent["api_sig"] == sign(unsigned, SECRET)


@responses.activate
@pytest.mark.parametrize("code, error", [
    (6, LastFMProviderError),
    (9, LastFMAuthError),
    (13, LastFMSignatureError),
    (29, LastFMRateLimitError),
])
def test_provider_errors_are_mapped(signed_in, code, error):
    responses.add(responses.POST, API_ROOT, json={"error": code, "message": "nope"})
    with pytest.raises(error) as exc:
        signed_in.submit_scrobble(artist="A", track="T", timestamp=1)
    assert isinstance(exc.value, LastFMProviderError)
    assert exc.value.code == code


@responses.activate
def test_transport_failure(signed_in):
    responses.add(responses.POST, API_ROOT, body=requests.ConnectionError("no route"))
    with pytest.raises(LastFMNetworkError):
        signed_in.update_now_playing(artist="A", track="T")


@responses.activate
def test_non_json_error_page(signed_in):
    responses.add(responses.POST, API_ROOT, status=502, body="<html>Bad Gateway</html>")
    with pytest.raises(LastFMNetworkError) as exc:
        signed_in.update_now_playing(artist="A", track="T")
    assert exc.value.code == 502


# -------- read-only --------
@responses.activate
def test_fetch_recent_tracks(signed_in):
    responses.add(responses.POST, API_ROOT, json={"recenttracks": {"track": [
        {"name": "Now", "artist": {"#text": "A"}, "album": {"#text": "X"},
         "@attr": {"nowplaying": "true"}},
        {"name": "Before", "artist": {"#text": "B"}, "album": {"#text": ""},
         "date": {"uts": "1700000000", "#text": "14 Nov 2023"}},
    ]}})
    tracks = signed_in.fetch_recent_tracks(limit=2)

    assert [(t.name, t.artist, t.now_playing, t.played_at) for t in tracks] == [
        ("Now", "A", True, None),
        ("Before", "B", False, 1_700_000_000),
    ]
    sent = form(responses.calls[0])
    assert sent["user"] == "alice" and sent["limit"] == "2"
    assert "api_sig" not in sent


@responses.activate
def test_fetch_recent_tracks_single_item(client):
    responses.add(responses.POST, API_ROOT, json={"recenttracks": {"track": {"name": "Only", "artist": {"#text": "A"}}}})
    [track] = client.fetch_recent_tracks("bob")
    assert track.name == "Only"


@responses.activate
def test_fetch_recent_tracks_error(client):
    responses.add(responses.POST, API_ROOT, json={"error": 6, "message": "User not found"})
    with pytest.raises(LastFMProviderError):
        client.fetch_recent_tracks("nobody")


def images(**sizes):
    return [{"size": size, "#text": url} for size, url in sizes.items()]


def test_best_image_url_preference():
    assert best_image_url(images(small="s", mega="m", extralarge="xl")) == "xl"
    assert best_image_url(images(small="s", medium="md", large="l")) == "l"
    assert best_image_url(images(small="s", tiny="t")) == "t"
    assert best_image_url(images(large="")) is None
    assert best_image_url([]) is None


@responses.activate
def test_artwork_from_track_info(client):
    responses.add(responses.POST, API_ROOT,
                  json={"track": {"album": {"image": images(medium="md", extralarge="xl")}}})
    assert client.fetch_artwork_url(artist="A", track="T", album="X") == "xl"
    assert len(responses.calls) == 1


@responses.activate
def test_artwork_falls_back_to_album_info(client):
    responses.add(responses.POST, API_ROOT, json={"error": 6, "message": "Track not found"})
    responses.add(responses.POST, API_ROOT, json={"album": {"image": images(large="l")}})
    assert client.fetch_artwork_url(artist="A", track="T", album="X") == "l"
    assert form(responses.calls[1])["method"] == "album.getInfo"


@responses.activate
def test_artwork_never_raises(client):
    responses.add(responses.POST, API_ROOT, body=requests.ConnectionError("offline"))
    assert client.fetch_artwork_url(artist="A", track="T", album="X") is None
    assert client.fetch_artwork_url(artist="A", track="T") is None


def test_corrupt_credentials_file_does_not_break_sign_in_state(tmp_path):
    path = tmp_path / "credentials.json"
    path.write_text("{not json")
    c = LastFMClient(KEY, SECRET, FileSecretStore(str(path)))

    assert c.load_credentials() is False
    c.sign_out()
    assert c.session_key is None


@responses.activate
def test_non_2xx_json_without_error_code(signed_in):
    responses.add(responses.POST, API_ROOT, status=500, json={"detail": "upstream exploded"})
    with pytest.raises(LastFMNetworkError) as exc:
        signed_in.submit_scrobble(artist="A", track="T", timestamp=1)
    assert exc.value.code == 500
