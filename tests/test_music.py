import base64
import hashlib
import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

import main
import music
from music import SpotifyClient

TRACK = {
    "id": "t1",
    "name": "Zinc",
    "uri": "spotify:track:t1",
    "preview_url": "https://p.scdn.co/mp3-preview/t1",
    "duration_ms": 185000,
    "artists": [{"name": "Ada"}, {"name": "Lin"}],
    "album": {"name": "Metals", "images": [{"url": "https://i.scdn.co/large"}, {"url": "https://i.scdn.co/small"}]},
}


class FakeSpotify:
    """Records provider calls and answers like the Spotify endpoints."""

    def __init__(self, play_status=204):
        self.calls = []
        self.play_status = play_status

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path
        if path == "/api/token":
            return httpx.Response(200, json={"access_token": "acc-1", "expires_in": 3600, "token_type": "Bearer"})
        if path == "/v1/search":
            return httpx.Response(200, json={"tracks": {"items": [TRACK]}})
        if path == "/v1/me/player/play":
            if self.play_status == 403:
                return httpx.Response(403, json={"error": {"status": 403, "reason": "PREMIUM_REQUIRED"}})
            return httpx.Response(self.play_status)
        if path == "/v1/me/player/pause":
            return httpx.Response(204)
        return httpx.Response(404)


@pytest.fixture
def fake_spotify():
    return FakeSpotify()


@pytest.fixture
def spotify_client(fake_spotify):
    client = SpotifyClient(client_id="cid", redirect_uri="http://testserver/music/callback", transport=httpx.MockTransport(fake_spotify))
    main.app.dependency_overrides[main.get_spotify] = lambda: client
    yield client
    client.close()


def _connect(client, headers):
    authorize_url = client.get("/music/login", headers=headers).json()["authorize_url"]
    state = parse_qs(urlparse(authorize_url).query)["state"][0]
    resp = client.get("/music/callback", params={"code": "abc", "state": state}, follow_redirects=False)
    assert resp.status_code == 303
    return state


def test_code_challenge_is_unpadded_base64url_sha256():
    verifier = music.generate_random_string(64)
    assert len(verifier) == 64
    challenge = music.generate_code_challenge(verifier)
    expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
    assert challenge == expected
    assert len(challenge) == 43
    assert "=" not in challenge and "+" not in challenge and "/" not in challenge


def test_random_strings_differ():
    assert music.generate_random_string() != music.generate_random_string()


def test_authorize_url_carries_pkce_parameters(client, signup, fake_db):
    headers = signup("alice")
    assert client.get("/music/status", headers=headers).json()["state"] == "unauthenticated"
    url = client.get("/music/login", headers=headers).json()["authorize_url"]
    parsed = urlparse(url)
    params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == music.AUTHORIZE_URL
    assert params["response_type"] == "code"
    assert params["code_challenge_method"] == "S256"
    assert "streaming" in params["scope"].split(" ")
    stored = fake_db["pkcerequest"].find_one({"state": params["state"]})
    assert params["code_challenge"] == music.generate_code_challenge(stored["code_verifier"])
    assert client.get("/music/status", headers=headers).json()["state"] == "authorizing"


def test_callback_exchanges_code_with_stored_verifier(client, signup, fake_db, fake_spotify, spotify_client):
    headers = signup("alice")
    url = client.get("/music/login", headers=headers).json()["authorize_url"]
    verifier = fake_db["pkcerequest"].find_one({})["code_verifier"]
    state = parse_qs(urlparse(url).query)["state"][0]

    resp = client.get("/music/callback", params={"code": "abc", "state": state}, follow_redirects=False)
    assert resp.headers["location"] == "/music"

    token_request = fake_spotify.calls[0]
    form = parse_qs(token_request.content.decode())
    assert form["grant_type"] == ["authorization_code"]
    assert form["code"] == ["abc"]
    assert form["code_verifier"] == [verifier]
    assert form["client_id"] == ["cid"]
    assert fake_db["pkcerequest"].count_documents({}) == 0
    assert client.get("/music/status", headers=headers).json()["state"] == "authenticated"


def test_callback_rejects_unknown_state_and_provider_errors(client, spotify_client):
    assert client.get("/music/callback", params={"code": "abc", "state": "forged"}).status_code == 400
    denied = client.get("/music/callback", params={"error": "access_denied"})
    assert denied.status_code == 400
    assert "access_denied" in denied.json()["detail"]


def test_failed_token_exchange_is_reported(client, signup):
    def refuse(request):
        return httpx.Response(400, json={"error": "invalid_grant"})

    failing = SpotifyClient(transport=httpx.MockTransport(refuse))
    main.app.dependency_overrides[main.get_spotify] = lambda: failing
    headers = signup("alice")
    url = client.get("/music/login", headers=headers).json()["authorize_url"]
    state = parse_qs(urlparse(url).query)["state"][0]
    resp = client.get("/music/callback", params={"code": "abc", "state": state})
    assert resp.status_code == 502


def test_token_expiry(client, signup, fake_db, spotify_client):
    headers = signup("alice")
    _connect(client, headers)
    user_id = client.get("/auth/session", headers=headers).json()["user"]["id"]
    assert music.load_token(user_id) == "acc-1"
    fake_db["providertoken"].update_one(
        {"user_id": user_id},
        {"$set": {"expires_at": datetime.now(timezone.utc) - timedelta(seconds=1)}},
    )
    assert music.load_token(user_id) is None
    assert client.get("/music/status", headers=headers).json()["state"] == "unauthenticated"
    assert client.get("/music/search", params={"q": "zinc"}, headers=headers).status_code == 401


def test_search_returns_presentable_tracks(client, signup, spotify_client, fake_spotify):
    headers = signup("alice")
    _connect(client, headers)
    resp = client.get("/music/search", params={"q": "zinc"}, headers=headers)
    assert resp.json()["tracks"] == [{
        "id": "t1",
        "name": "Zinc",
        "artists": "Ada, Lin",
        "album": "Metals",
        "image": "https://i.scdn.co/large",
        "uri": "spotify:track:t1",
        "preview_url": "https://p.scdn.co/mp3-preview/t1",
        "duration": "3:05",
    }]
    search_request = fake_spotify.calls[-1]
    assert search_request.headers["authorization"] == "Bearer acc-1"
    assert search_request.url.params["type"] == "track"
    assert search_request.url.params["limit"] == "12"


def test_play_on_registered_device_then_toggle(client, signup, spotify_client, fake_spotify):
    headers = signup("alice")
    _connect(client, headers)
    device = client.post("/music/device", json={"device_id": "dev-1"}, headers=headers).json()
    assert device == {"device_id": "dev-1", "state": "device_ready"}

    played = client.post("/music/play", json={"uri": TRACK["uri"], "preview_url": TRACK["preview_url"]}, headers=headers).json()
    assert played["mode"] == "spotify"
    play_request = fake_spotify.calls[-1]
    assert play_request.url.params["device_id"] == "dev-1"
    assert json.loads(play_request.content) == {"uris": [TRACK["uri"]]}
    assert client.get("/music/status", headers=headers).json()["state"] == "playing"

    assert client.post("/music/toggle", headers=headers).json() == {"state": "paused"}
    assert fake_spotify.calls[-1].url.path == "/v1/me/player/pause"
    assert client.post("/music/toggle", headers=headers).json() == {"state": "playing"}


def test_premium_required_falls_back_to_preview(client, signup, spotify_client, fake_spotify):
    fake_spotify.play_status = 403
    headers = signup("alice")
    _connect(client, headers)
    client.post("/music/device", json={"device_id": "dev-1"}, headers=headers)
    resp = client.post("/music/play", json={"uri": TRACK["uri"], "preview_url": TRACK["preview_url"]}, headers=headers)
    assert resp.json() == {"mode": "preview", "state": "playing", "preview_url": TRACK["preview_url"]}

    no_preview = client.post("/music/play", json={"uri": TRACK["uri"]}, headers=headers)
    assert no_preview.status_code == 409
    assert no_preview.json()["detail"] == "No preview available for this track."


def test_without_device_play_uses_preview_and_toggle_refuses(client, signup, spotify_client):
    headers = signup("alice")
    _connect(client, headers)
    resp = client.post("/music/play", json={"uri": TRACK["uri"], "preview_url": TRACK["preview_url"]}, headers=headers)
    assert resp.json()["mode"] == "preview"
    assert client.post("/music/toggle", headers=headers).status_code == 409


def test_device_going_offline_returns_to_authenticated(client, signup, spotify_client):
    headers = signup("alice")
    _connect(client, headers)
    client.post("/music/device", json={"device_id": "dev-1"}, headers=headers)
    assert client.delete("/music/device", headers=headers).json() == {"state": "authenticated"}
    assert client.get("/music", headers=headers).json()["state"] == "authenticated"


def test_device_registration_needs_token(client, signup):
    headers = signup("alice")
    assert client.post("/music/device", json={"device_id": "dev-1"}, headers=headers).status_code == 401


@pytest.mark.parametrize("ms,expected", [(None, "0:00"), (0, "0:00"), (59999, "0:59"), (61000, "1:01"), (600000, "10:00")])
def test_format_ms(ms, expected):
    assert music.format_ms(ms) == expected
