import os
import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import Cookie, Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from pymongo.errors import PyMongoError

import database
from auth import (
    SESSION_COOKIE,
    SESSION_TTL_MINUTES,
    AuthError,
    AuthUser,
    delete_account,
    get_current_user,
    get_optional_user,
    get_user_from_token,
    login,
    logout,
    register,
    request_token,
    resolve_redirect,
    session_state,
)
from landing import (
    LandingPage,
    RedirectState,
    RedirectStateError,
    countdowns,
    describe,
    get_landing_page,
    refresh_header,
)
from links import (
    add_link,
    dashboard_stats,
    delete_link,
    list_links,
    record_click,
    reorder_links,
    toggle_link,
    update_link,
)
from music import (
    AUTHENTICATED,
    ProviderError,
    SpotifyClient,
    begin_authorization,
    complete_authorization,
    drop_device,
    player_state,
    register_device,
    require_token,
    serialize_track,
    start_playback,
    toggle_playback,
)
from profiles import (
    find_by_username,
    get_profile,
    is_username_available,
    normalize_username,
    serialize_profile,
    update_profile,
    validate_username,
)
from public import load_public_profile, username_from_request
from realtime import OWNER, PUBLIC, manager, owner_snapshot, public_snapshot, publish

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
EMPTY_PREVIEW_MESSAGE = "Your links will appear here."

_spotify: Optional[SpotifyClient] = None


def get_spotify() -> SpotifyClient:
    global _spotify
    if _spotify is None:
        _spotify = SpotifyClient()
    return _spotify


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting LinkSpark API...")
    if database.db is not None:
        try:
            database.ensure_indexes()
        except PyMongoError as e:
            logger.error(f"Could not ensure indexes: {e}")
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; data routes will answer 500")
    yield
    await countdowns.shutdown()
    if _spotify is not None:
        _spotify.close()


app = FastAPI(title="LinkSpark API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


# --- Helpers ---
def gate(path: str, user: Optional[AuthUser]) -> Optional[RedirectResponse]:
    target = resolve_redirect(path, user is not None)
    if target:
        return RedirectResponse(target, status_code=303)
    return None


def public_url(username: str) -> str:
    return f"{PUBLIC_BASE_URL}/profile?username={username}"


def with_session_cookie(payload: dict, token: str) -> JSONResponse:
    response = JSONResponse(payload)
    response.set_cookie(SESSION_COOKIE, token, max_age=SESSION_TTL_MINUTES * 60, httponly=True, samesite="lax")
    return response


def dashboard_view(user: AuthUser) -> dict:
    profile = get_profile(user.id, user.email)
    links = list_links(user.id)
    active = [l for l in links if l["active"]]
    return {
        "page": "dashboard",
        "profile": serialize_profile(profile),
        "public_url": public_url(profile["username"]),
        "links": links,
        "preview": {"links": active, "message": None if active else EMPTY_PREVIEW_MESSAGE},
        "stats": dashboard_stats(links, profile.get("views", 0)),
    }


# --- Pages (session gate) ---
@app.get("/")
async def root(user: Optional[AuthUser] = Depends(get_optional_user)):
    return gate("/", user) or {"service": "LinkSpark API", "status": "ok"}


@app.get("/login")
async def login_page(user: Optional[AuthUser] = Depends(get_optional_user)):
    return gate("/login", user) or {"page": "login"}


@app.get("/register")
async def register_page(user: Optional[AuthUser] = Depends(get_optional_user)):
    return gate("/register", user) or {"page": "register"}


@app.get("/dashboard")
async def dashboard_page(user: Optional[AuthUser] = Depends(get_optional_user)):
    return gate("/dashboard", user) or dashboard_view(user)


# --- Auth ---
class RegisterBody(BaseModel):
    email: str = ""
    password: str = ""
    username: str = ""


class LoginBody(BaseModel):
    email: str = ""
    password: str = ""


@app.post("/auth/register")
def register_account(body: RegisterBody):
    result = register(body.email, body.password, body.username)
    profile = serialize_profile(result["profile"])
    return with_session_cookie(
        {"token": result["token"], "user": result["user"], "profile": profile, "redirect": "/dashboard"},
        result["token"],
    )


@app.post("/auth/login")
def login_account(body: LoginBody):
    result = login(body.email, body.password)
    return with_session_cookie({**result, "redirect": "/dashboard"}, result["token"])


@app.post("/auth/logout")
def logout_account(
    authorization: Optional[str] = Header(None),
    session: Optional[str] = Cookie(None),
):
    logout(request_token(authorization, session))
    response = JSONResponse({"ok": True, "redirect": "/login"})
    response.delete_cookie(SESSION_COOKIE)
    return response


@app.get("/auth/session")
async def current_session(user: Optional[AuthUser] = Depends(get_optional_user)):
    return session_state(user)


@app.delete("/auth/account")
async def remove_account(current: AuthUser = Depends(get_current_user)):
    delete_account(current.id)
    await publish(current.id)
    response = JSONResponse({"status": "deleted", "redirect": "/register"})
    response.delete_cookie(SESSION_COOKIE)
    return response


# --- Profile ---
class UpdateProfileBody(BaseModel):
    display_name: Optional[str] = None
    bio: Optional[str] = None
    profile_image_url: Optional[str] = None
    template_id: Optional[str] = None
    username: Optional[str] = None
    socials: Optional[Dict[str, str]] = None
    embed_code: Optional[str] = None


@app.get("/me/profile")
async def my_profile(current: AuthUser = Depends(get_current_user)):
    return serialize_profile(get_profile(current.id, current.email))


@app.patch("/me/profile")
async def edit_profile(body: UpdateProfileBody, current: AuthUser = Depends(get_current_user)):
    doc = update_profile(current.id, body.model_dump(exclude_none=True))
    await publish(current.id)
    return serialize_profile(doc)


@app.get("/username-available")
async def username_available(username: str, user: Optional[AuthUser] = Depends(get_optional_user)):
    candidate = validate_username(normalize_username(username))
    available = is_username_available(candidate, excluding_owner=user.id if user else None)
    return {"username": candidate, "available": available}


@app.get("/me/stats")
async def my_stats(current: AuthUser = Depends(get_current_user)):
    profile = get_profile(current.id, current.email)
    return dashboard_stats(list_links(current.id), profile.get("views", 0))


# --- Links ---
class CreateLinkBody(BaseModel):
    title: Optional[str] = None
    url: Optional[str] = None


class UpdateLinkBody(BaseModel):
    title: Optional[str] = None
    url: Optional[str] = None


class LinkActiveBody(BaseModel):
    active: bool


class LinkOrderBody(BaseModel):
    ids: List[str]


@app.get("/me/links")
async def my_links(current: AuthUser = Depends(get_current_user)):
    return {"links": list_links(current.id)}


@app.post("/me/links", status_code=201)
async def create_link(body: CreateLinkBody, current: AuthUser = Depends(get_current_user)):
    link = add_link(current.id, body.title, body.url)
    await publish(current.id)
    return link


@app.patch("/me/links/{link_id}")
async def edit_link(link_id: str, body: UpdateLinkBody, current: AuthUser = Depends(get_current_user)):
    link = update_link(current.id, link_id, title=body.title, url=body.url)
    await publish(current.id)
    return link


@app.put("/me/links/{link_id}/active")
async def set_link_active(link_id: str, body: LinkActiveBody, current: AuthUser = Depends(get_current_user)):
    link = toggle_link(current.id, link_id, body.active)
    await publish(current.id)
    return link


@app.delete("/me/links/{link_id}")
async def remove_link(link_id: str, current: AuthUser = Depends(get_current_user)):
    delete_link(current.id, link_id)
    await publish(current.id)
    return {"status": "deleted"}


@app.put("/me/links/order")
async def set_link_order(body: LinkOrderBody, current: AuthUser = Depends(get_current_user)):
    links = reorder_links(current.id, body.ids)
    await publish(current.id)
    return {"links": links}


@app.get("/l/{link_id}")
async def follow_link(link_id: str):
    owner, link = record_click(link_id)
    await publish(owner)
    return RedirectResponse(link["url"], status_code=302)


# --- Public profile ---
def public_response(username: Optional[str]) -> JSONResponse:
    status_code, view = load_public_profile(username)
    return JSONResponse(status_code=status_code, content=view)


@app.get("/profile")
def public_profile(username: Optional[str] = None):
    return public_response(username_from_request(query_username=username))


@app.get("/profile/{path_username}")
def public_profile_by_path(path_username: str, username: Optional[str] = None):
    return public_response(username_from_request(query_username=username, path_username=path_username))


@app.get("/u/{path_username}")
def public_profile_short(path_username: str):
    return public_response(username_from_request(path_username=path_username))


# --- Live snapshots ---
@app.websocket("/ws/dashboard")
async def dashboard_socket(websocket: WebSocket, token: Optional[str] = None):
    user = get_user_from_token(token)
    if not user:
        await websocket.close(code=4401)
        return
    channel = (OWNER, user.id)
    await manager.connect(websocket, channel, owner_snapshot(user.id))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket, channel)


@app.websocket("/ws/profile/{username}")
async def profile_socket(websocket: WebSocket, username: str):
    profile = find_by_username(username)
    if not profile:
        await websocket.close(code=4404)
        return
    channel = (PUBLIC, profile["user_id"])
    await manager.connect(websocket, channel, public_snapshot(profile["user_id"]))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket, channel)


# --- Landing redirects ---
def landing_page_or_404(name: str) -> LandingPage:
    page = get_landing_page(name)
    if page is None:
        raise HTTPException(status_code=404, detail="Landing page not found")
    return page


@app.get("/go/{name}")
async def landing_page(name: str):
    page = landing_page_or_404(name)
    if page.delay_seconds <= 0:
        return RedirectResponse(page.target, status_code=307)
    return describe(page, RedirectState.IDLE)


@app.post("/go/{name}")
async def start_landing_redirect(name: str):
    page = landing_page_or_404(name)
    countdown_id, redirect = countdowns.start(page)
    # cancellable countdowns are followed by polling, so no Refresh header
    headers = {} if page.cancellable else {"Refresh": refresh_header(page)}
    return JSONResponse(describe(page, redirect.state, countdown_id), status_code=202, headers=headers)


@app.get("/go/{name}/{countdown_id}")
async def landing_redirect_state(name: str, countdown_id: str):
    page = landing_page_or_404(name)
    redirect = countdowns.get(countdown_id, page.name)
    if redirect is None:
        raise HTTPException(status_code=404, detail="Countdown not found")
    return describe(page, redirect.state, countdown_id)


@app.post("/go/{name}/{countdown_id}/cancel")
async def cancel_landing_redirect(name: str, countdown_id: str):
    page = landing_page_or_404(name)
    try:
        redirect = countdowns.cancel(countdown_id, page.name)
    except RedirectStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if redirect is None:
        raise HTTPException(status_code=404, detail="Countdown not found")
    return describe(page, redirect.state, countdown_id)


# --- Music player ---
class DeviceBody(BaseModel):
    device_id: str


class PlayBody(BaseModel):
    uri: str
    preview_url: Optional[str] = None


@app.get("/music")
@app.get("/music/status")
def music_status(user: Optional[AuthUser] = Depends(get_optional_user)):
    if user is None:
        return {"page": "music", "state": "unauthenticated", "signed_in": False}
    return {"page": "music", "state": player_state(user.id), "signed_in": True}


@app.get("/music/login")
def music_login(current: AuthUser = Depends(get_current_user)):
    return {"authorize_url": begin_authorization(current.id)}


@app.get("/music/callback")
def music_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    spotify: SpotifyClient = Depends(get_spotify),
):
    if error:
        logger.warning(f"Spotify auth error: {error}")
        raise HTTPException(status_code=400, detail=f"Spotify authorization failed: {error}")
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")
    complete_authorization(spotify, state, code)
    return RedirectResponse("/music", status_code=303)


@app.post("/music/device")
def music_device_ready(body: DeviceBody, current: AuthUser = Depends(get_current_user)):
    device = register_device(current.id, body.device_id)
    return {"device_id": device["device_id"], "state": device["state"]}


@app.delete("/music/device")
def music_device_gone(current: AuthUser = Depends(get_current_user)):
    drop_device(current.id)
    return {"state": AUTHENTICATED}


@app.get("/music/search")
def music_search(q: str = "", current: AuthUser = Depends(get_current_user), spotify: SpotifyClient = Depends(get_spotify)):
    token = require_token(current.id)
    if not q.strip():
        raise HTTPException(status_code=400, detail="Search query is required")
    try:
        tracks = spotify.search(token, q.strip())
    except ProviderError as e:
        logger.error(f"Spotify search failed: {e}")
        raise HTTPException(status_code=502, detail="Search failed. Please try again.")
    return {"tracks": [serialize_track(t) for t in tracks]}


@app.post("/music/play")
def music_play(body: PlayBody, current: AuthUser = Depends(get_current_user), spotify: SpotifyClient = Depends(get_spotify)):
    return start_playback(spotify, current.id, body.uri, body.preview_url)


@app.post("/music/toggle")
def music_toggle(current: AuthUser = Depends(get_current_user), spotify: SpotifyClient = Depends(get_spotify)):
    return toggle_playback(spotify, current.id)


# Health and DB test
@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
            response["connection_status"] = "Connected"
            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
