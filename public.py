"""
Public profile resolution

Turns a username from the query string or path into the rendered public
page state. Every load goes to the database; nothing is cached.
"""
import logging
from typing import Optional, Tuple

from pymongo.errors import PyMongoError

from database import get_collection
from links import list_links
from profiles import find_by_username, normalize_username, serialize_profile

logger = logging.getLogger(__name__)

SITE_NAME = "LinkSpark"

MISSING_USERNAME_MESSAGE = "No username found. Use the format: ?username=YOUR_USERNAME"
NO_LINKS_MESSAGE = "No links posted yet."
LOAD_ERROR_MESSAGE = "Could not load data."

STATUS_BY_STATE = {
    "ok": 200,
    "no_links": 200,
    "missing_username": 400,
    "not_found": 404,
    "error": 502,
}


def username_from_request(query_username: Optional[str] = None, path_username: Optional[str] = None) -> Optional[str]:
    """Query parameter wins; the path segment is accepted as a fallback."""
    for candidate in (query_username, path_username):
        username = normalize_username(candidate)
        if username and username != "profile.html":
            return username
    return None


def meta_description(bio: str) -> str:
    return bio[:150] + "..."


def render_profile(profile: dict) -> dict:
    """Build the public payload for an already-resolved profile document."""
    header = serialize_profile(profile)
    header.pop("id", None)
    links = [
        {"id": l["id"], "title": l["title"], "url": l["url"]}
        for l in list_links(profile["user_id"], active_only=True)
    ]
    view = {
        "state": "ok" if links else "no_links",
        "profile": header,
        "title": f"{header['display_name']} | {SITE_NAME}",
        "description": meta_description(header["bio"]),
        "links": links,
    }
    if not links:
        view["message"] = NO_LINKS_MESSAGE
    return view


def load_public_profile(username: Optional[str], count_view: bool = True) -> Tuple[int, dict]:
    """Resolve ``username`` and return ``(status_code, view)``."""
    if not username:
        return STATUS_BY_STATE["missing_username"], {"state": "missing_username", "message": MISSING_USERNAME_MESSAGE}
    try:
        profile = find_by_username(username)
        if profile is None:
            return STATUS_BY_STATE["not_found"], {
                "state": "not_found",
                "username": username,
                "message": f"Profile @{username} not found.",
            }
        if count_view:
            get_collection("profile").update_one({"_id": profile["_id"]}, {"$inc": {"views": 1}})
        view = render_profile(profile)
    except PyMongoError:
        logger.exception(f"Failed to load public profile @{username}")
        return STATUS_BY_STATE["error"], {"state": "error", "message": LOAD_ERROR_MESSAGE}
    return STATUS_BY_STATE[view["state"]], view
