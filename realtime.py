"""
Live snapshots over WebSocket

Subscribers are grouped per owner into an ``owner`` channel (dashboard link
list) and a ``public`` channel (public page view). Each change pushes a full
snapshot; clients render the latest one they received.
"""
import logging
from typing import Dict, List, Tuple

from fastapi import WebSocket

from database import get_collection
from links import list_links
from public import render_profile

logger = logging.getLogger(__name__)

OWNER = "owner"
PUBLIC = "public"

Channel = Tuple[str, str]


class ConnectionManager:
    def __init__(self):
        self.active: Dict[Channel, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, channel: Channel, snapshot: dict = None):
        await websocket.accept()
        self.active.setdefault(channel, []).append(websocket)
        if snapshot is not None:
            await websocket.send_json(snapshot)

    def disconnect(self, websocket: WebSocket, channel: Channel):
        sockets = self.active.get(channel, [])
        if websocket in sockets:
            sockets.remove(websocket)
        if not sockets:
            self.active.pop(channel, None)

    def has_subscribers(self, channel: Channel) -> bool:
        return bool(self.active.get(channel))

    async def broadcast(self, channel: Channel, data: dict):
        for ws in list(self.active.get(channel, [])):
            try:
                await ws.send_json(data)
            except Exception as e:
                logger.info(f"Dropping subscriber on {channel[0]}:{channel[1]} after send failure: {e}")
                self.disconnect(ws, channel)


manager = ConnectionManager()


def owner_snapshot(owner: str) -> dict:
    return {"type": "links", "links": list_links(owner)}


def public_snapshot(owner: str) -> dict:
    profile = get_collection("profile").find_one({"user_id": owner})
    if profile is None:
        return {"type": "profile", "state": "not_found", "message": "Profile not found."}
    return {"type": "profile", **render_profile(profile)}


async def publish(owner: str):
    """Push fresh snapshots to everyone watching ``owner``."""
    if manager.has_subscribers((OWNER, owner)):
        await manager.broadcast((OWNER, owner), owner_snapshot(owner))
    if manager.has_subscribers((PUBLIC, owner)):
        await manager.broadcast((PUBLIC, owner), public_snapshot(owner))
