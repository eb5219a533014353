"""
Music player: Spotify authorization (PKCE) and playback

The browser never sees a client secret or talks to the token endpoint; the
code exchange happens here, so the provider's CORS policy does not apply.
Playback goes to the Web Playback SDK device the page registered, with a
fall back to the track's 30 s preview for accounts that cannot stream.
"""
import os
import base64
import hashlib
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from urllib.parse import urlencode

import httpx
from fastapi import HTTPException
from pymongo import ReturnDocument

from database import get_collection
from schemas import PkceRequest, PlayerDevice, ProviderToken

logger = logging.getLogger(__name__)

SPOTIFY_CLIENT_ID = os.getenv("SPOTIFY_CLIENT_ID", "")
SPOTIFY_REDIRECT_URI = os.getenv("SPOTIFY_REDIRECT_URI", "http://localhost:8000/music/callback")

AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
TOKEN_URL = "https://accounts.spotify.com/api/token"
API_BASE = "https://api.spotify.com/v1"

SCOPES = " ".join([
    "streaming",
    "user-read-email",
    "user-read-private",
    "user-modify-playback-state",
    "user-read-playback-state",
    "playlist-read-private",
    "playlist-read-collaborative",
    "user-library-read",
    "user-read-currently-playing",
])

# Player states, in the order a session normally moves through them.
UNAUTHENTICATED = "unauthenticated"
AUTHORIZING = "authorizing"
AUTHENTICATED = "authenticated"
DEVICE_READY = "device_ready"
PLAYING = "playing"
PAUSED = "paused"

NO_PREVIEW_MESSAGE = "No preview available for this track."
PLAYER_NOT_READY_MESSAGE = (
    "Spotify Player not ready. Make sure you have a premium Spotify account and allow the player to start."
)


# ----- PKCE helpers -----

def base64_url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def generate_random_string(length: int = 64) -> str:
    return base64_url_encode(secrets.token_bytes(length))[:length]


def generate_code_challenge(code_verifier: str) -> str:
    return base64_url_encode(hashlib.sha256(code_verifier.encode()).digest())


def build_authorize_url(code_challenge: str, state: str, client_id: str = None, redirect_uri: str = None) -> str:
    params = {
        "response_type": "code",
        "client_id": client_id or SPOTIFY_CLIENT_ID,
        "scope": SCOPES,
        "redirect_uri": redirect_uri or SPOTIFY_REDIRECT_URI,
        "code_challenge_method": "S256",
        "code_challenge": code_challenge,
        "state": state,
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"


# ----- Provider client -----

class ProviderError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.body = body


class SpotifyClient:
    def __init__(self, client_id: str = None, redirect_uri: str = None, transport: httpx.BaseTransport = None, timeout: float = 15.0):
        self.client_id = client_id or SPOTIFY_CLIENT_ID
        self.redirect_uri = redirect_uri or SPOTIFY_REDIRECT_URI
        self.http = httpx.Client(timeout=timeout, transport=transport)

    def close(self):
        self.http.close()

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            resp = self.http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(f"Could not reach Spotify: {e}") from e
        if resp.status_code >= 400:
            raise ProviderError(f"Spotify request failed: {resp.status_code}", status=resp.status_code, body=resp.text)
        return resp

    def exchange_code(self, code: str, code_verifier: str) -> dict:
        resp = self._request(
            "POST",
            TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "client_id": self.client_id,
                "code_verifier": code_verifier,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        return resp.json()

    def search(self, access_token: str, query: str, limit: int = 12) -> List[dict]:
        resp = self._request(
            "GET",
            f"{API_BASE}/search",
            params={"q": query, "type": "track", "limit": limit},
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return (resp.json().get("tracks") or {}).get("items") or []

    def play(self, access_token: str, device_id: str, uri: Optional[str] = None):
        self._request(
            "PUT",
            f"{API_BASE}/me/player/play",
            params={"device_id": device_id},
            headers={"Authorization": f"Bearer {access_token}"},
            json={"uris": [uri]} if uri else None,
        )

    def pause(self, access_token: str, device_id: str):
        self._request(
            "PUT",
            f"{API_BASE}/me/player/pause",
            params={"device_id": device_id},
            headers={"Authorization": f"Bearer {access_token}"},
        )


# ----- Token and session persistence -----

def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def begin_authorization(user_id: str) -> str:
    """Store a fresh verifier for ``user_id`` and return the consent URL."""
    code_verifier = generate_random_string(64)
    state = secrets.token_urlsafe(16)
    pending = get_collection("pkcerequest")
    pending.delete_many({"user_id": user_id})
    pending.insert_one({
        **PkceRequest(state=state, user_id=user_id, code_verifier=code_verifier).model_dump(),
        "created_at": datetime.now(timezone.utc),
    })
    return build_authorize_url(generate_code_challenge(code_verifier), state)


def save_token(user_id: str, data: dict) -> dict:
    doc = ProviderToken(
        user_id=user_id,
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        scope=data.get("scope"),
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(data.get("expires_in", 3600))),
    ).model_dump(exclude={"user_id"})
    return get_collection("providertoken").find_one_and_update(
        {"user_id": user_id},
        {"$set": doc},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def load_token(user_id: str) -> Optional[str]:
    doc = get_collection("providertoken").find_one({"user_id": user_id})
    if not doc or not doc.get("access_token"):
        return None
    if _as_utc(doc["expires_at"]) <= datetime.now(timezone.utc):
        return None
    return doc["access_token"]


def complete_authorization(client: SpotifyClient, state: str, code: str) -> str:
    """Exchange the callback code for a token; returns the owning user id."""
    pending = get_collection("pkcerequest").find_one_and_delete({"state": state})
    if not pending:
        raise HTTPException(status_code=400, detail="Unknown or expired authorization request")
    try:
        data = client.exchange_code(code, pending["code_verifier"])
    except ProviderError as e:
        logger.error(f"Token exchange failed for {pending['user_id']}: {e} {e.body or ''}")
        raise HTTPException(status_code=502, detail="Token exchange failed. Please connect Spotify again.")
    if not data.get("access_token"):
        raise HTTPException(status_code=502, detail="No access token in response.")
    save_token(pending["user_id"], data)
    logger.info(f"Spotify connected for {pending['user_id']}")
    return pending["user_id"]


def require_token(user_id: str) -> str:
    token = load_token(user_id)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated with Spotify")
    return token


def get_device(user_id: str) -> Optional[dict]:
    doc = get_collection("playerdevice").find_one({"user_id": user_id})
    if doc and doc.get("device_id"):
        return doc
    return None


def register_device(user_id: str, device_id: str) -> dict:
    require_token(user_id)
    device = PlayerDevice(user_id=user_id, device_id=device_id, state=DEVICE_READY)
    return get_collection("playerdevice").find_one_and_update(
        {"user_id": user_id},
        {"$set": device.model_dump(exclude={"user_id"})},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def drop_device(user_id: str) -> None:
    get_collection("playerdevice").delete_many({"user_id": user_id})


def set_player_state(user_id: str, state: str) -> None:
    get_collection("playerdevice").update_one({"user_id": user_id}, {"$set": {"state": state}})


def player_state(user_id: str) -> str:
    if load_token(user_id) is None:
        if get_collection("pkcerequest").find_one({"user_id": user_id}):
            return AUTHORIZING
        return UNAUTHENTICATED
    device = get_device(user_id)
    if device is None:
        return AUTHENTICATED
    return device.get("state") or DEVICE_READY


# ----- Playback -----

def preview_playback(preview_url: Optional[str]) -> dict:
    if not preview_url:
        raise HTTPException(status_code=409, detail=NO_PREVIEW_MESSAGE)
    return {"mode": "preview", "state": PLAYING, "preview_url": preview_url}


def start_playback(client: SpotifyClient, user_id: str, uri: str, preview_url: Optional[str] = None) -> dict:
    token = require_token(user_id)
    device = get_device(user_id)
    if device is None:
        return preview_playback(preview_url)
    try:
        client.play(token, device["device_id"], uri)
    except ProviderError as e:
        if e.status != 403:
            logger.error(f"Playback request failed for {user_id}: {e}")
            raise HTTPException(status_code=502, detail="Playback request failed.")
        logger.info(f"Full playback refused for {user_id}, falling back to preview")
        return preview_playback(preview_url)
    set_player_state(user_id, PLAYING)
    return {"mode": "spotify", "state": PLAYING, "device_id": device["device_id"], "uri": uri}


def toggle_playback(client: SpotifyClient, user_id: str) -> dict:
    token = require_token(user_id)
    device = get_device(user_id)
    if device is None:
        raise HTTPException(status_code=409, detail=PLAYER_NOT_READY_MESSAGE)
    try:
        if device.get("state") == PLAYING:
            client.pause(token, device["device_id"])
            state = PAUSED
        else:
            client.play(token, device["device_id"])
            state = PLAYING
    except ProviderError as e:
        logger.error(f"Toggle playback failed for {user_id}: {e}")
        raise HTTPException(status_code=502, detail="Playback request failed.")
    set_player_state(user_id, state)
    return {"state": state}


def format_ms(ms: Optional[int]) -> str:
    if ms is None:
        return "0:00"
    s = int(ms) // 1000
    return f"{s // 60}:{s % 60:02d}"


def serialize_track(track: dict) -> dict:
    album = track.get("album") or {}
    images = album.get("images") or []
    return {
        "id": track.get("id"),
        "name": track.get("name"),
        "artists": ", ".join(a.get("name", "") for a in track.get("artists") or []),
        "album": album.get("name"),
        "image": images[0].get("url") if images else None,
        "uri": track.get("uri"),
        "preview_url": track.get("preview_url"),
        "duration": format_ms(track.get("duration_ms")),
    }
