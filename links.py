"""
Link collection

Ordered links owned by a profile. New links take their ``order`` from an
atomic counter on the owner's profile so they always sort last.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from bson import ObjectId
from fastapi import HTTPException
from pymongo import ASCENDING, ReturnDocument

from database import create_document, get_collection
from profiles import get_profile
from schemas import Link

logger = logging.getLogger(__name__)

DEFAULT_LINK_TITLE = "New Link Title"


def _link_oid(link_id: str) -> ObjectId:
    if not ObjectId.is_valid(link_id):
        raise HTTPException(status_code=404, detail="Link not found")
    return ObjectId(link_id)


def validate_url(url: str, title: str = "") -> str:
    url = (url or "").strip()
    if not url:
        return url
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise HTTPException(status_code=400, detail=f'Invalid URL provided for link "{title}".')
    return url


def serialize_link(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "title": doc.get("title"),
        "url": doc.get("url") or "",
        "order": doc.get("order", 0),
        "active": bool(doc.get("active", True)),
        "clicks": int(doc.get("clicks", 0)),
    }


def _next_order(owner: str) -> int:
    profiles = get_collection("profile")
    profile = profiles.find_one_and_update(
        {"user_id": owner},
        {"$inc": {"link_seq": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if profile is None:
        get_profile(owner)
        profile = profiles.find_one_and_update(
            {"user_id": owner},
            {"$inc": {"link_seq": 1}},
            return_document=ReturnDocument.AFTER,
        )
    return profile["link_seq"] - 1


def add_link(owner: str, title: Optional[str] = None, url: Optional[str] = None) -> dict:
    title = (title or "").strip() or DEFAULT_LINK_TITLE
    url = validate_url(url, title)
    doc = Link(user_id=owner, title=title, url=url, order=_next_order(owner)).model_dump()
    link_id = create_document("link", doc)
    doc["_id"] = ObjectId(link_id)
    logger.info(f"Added link {link_id} for {owner} at order {doc['order']}")
    return serialize_link(doc)


def _update_owned(owner: str, link_id: str, update: dict) -> dict:
    update["updated_at"] = datetime.now(timezone.utc)
    doc = get_collection("link").find_one_and_update(
        {"_id": _link_oid(link_id), "user_id": owner},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=404, detail="Link not found")
    return serialize_link(doc)


def update_link(owner: str, link_id: str, title: Optional[str] = None, url: Optional[str] = None) -> dict:
    update = {}
    if title is not None:
        update["title"] = title.strip() or DEFAULT_LINK_TITLE
    if url is not None:
        update["url"] = validate_url(url, update.get("title", title or ""))
    return _update_owned(owner, link_id, update)


def toggle_link(owner: str, link_id: str, active: bool) -> dict:
    return _update_owned(owner, link_id, {"active": bool(active)})


def delete_link(owner: str, link_id: str) -> None:
    res = get_collection("link").delete_one({"_id": _link_oid(link_id), "user_id": owner})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Link not found")
    logger.info(f"Deleted link {link_id} for {owner}")


def list_links(owner: str, active_only: bool = False) -> List[dict]:
    query = {"user_id": owner}
    if active_only:
        query["active"] = True
    docs = get_collection("link").find(query).sort([("order", ASCENDING), ("_id", ASCENDING)])
    return [serialize_link(d) for d in docs]


def reorder_links(owner: str, ids: List[str]) -> List[dict]:
    links = get_collection("link")
    current = {str(d["_id"]) for d in links.find({"user_id": owner}, {"_id": 1})}
    if len(ids) != len(current) or set(ids) != current:
        raise HTTPException(status_code=400, detail="Link order must list every link exactly once.")
    now = datetime.now(timezone.utc)
    for position, link_id in enumerate(ids):
        links.update_one({"_id": ObjectId(link_id), "user_id": owner}, {"$set": {"order": position, "updated_at": now}})
    return list_links(owner)


def record_click(link_id: str) -> Tuple[str, dict]:
    """Count a click-through on an active link; returns (owner id, link)."""
    doc = get_collection("link").find_one_and_update(
        {"_id": _link_oid(link_id), "active": True, "url": {"$nin": ["", None]}},
        {"$inc": {"clicks": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=404, detail="Link not found")
    return doc["user_id"], serialize_link(doc)


def dashboard_stats(links: List[dict], views: int) -> dict:
    total_clicks = sum(l["clicks"] for l in links)
    ctr = (total_clicks / views) * 100 if views > 0 else 0
    return {
        "total_clicks": total_clicks,
        "total_views": views,
        "ctr": round(ctr, 2),
    }
