"""
Profile store

One profile document per account, keyed by the owner's user id. The unique
indexes on ``user_id`` and ``username`` make the first-load heal and the
username claim atomic.
"""
import re
import uuid
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import get_collection
from schemas import Profile, TEMPLATES, SOCIAL_PLATFORMS, USERNAME_PATTERN

logger = logging.getLogger(__name__)

USERNAME_TAKEN_MESSAGE = "This username is already taken. Choose something unique."
INVALID_USERNAME_MESSAGE = "Invalid username. Must be 3-15 alphanumeric characters or underscore."

EDITABLE_FIELDS = ("display_name", "bio", "profile_image_url", "template_id", "username", "socials", "embed_code")

SOCIAL_URL_PREFIXES = {
    "instagram": "https://instagram.com/",
    "twitter": "https://x.com/",
    "youtube": "",
    "tiktok": "https://tiktok.com/@",
    "linkedin": "https://linkedin.com/in/",
}
AT_HANDLE_PLATFORMS = ("instagram", "twitter", "tiktok")

IMAGE_URL_RE = re.compile(r"\.(jpeg|jpg|gif|png|webp)$", re.IGNORECASE)


class UsernameTakenError(HTTPException):
    def __init__(self):
        super().__init__(status_code=409, detail=USERNAME_TAKEN_MESSAGE)


def normalize_username(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def validate_username(username: str) -> str:
    if not re.fullmatch(USERNAME_PATTERN, username):
        raise HTTPException(status_code=400, detail=INVALID_USERNAME_MESSAGE)
    return username


def default_display_name(username: str) -> str:
    return username[:1].upper() + username[1:]


def is_username_available(candidate: str, excluding_owner: Optional[str] = None) -> bool:
    query = {"username": normalize_username(candidate)}
    if excluding_owner:
        query["user_id"] = {"$ne": excluding_owner}
    return not list(get_collection("profile").find(query).limit(1))


def create_profile(owner: str, username: str, defaults: Optional[dict] = None) -> dict:
    username = validate_username(normalize_username(username))
    fields = {"display_name": default_display_name(username)}
    fields.update(defaults or {})
    doc = Profile(user_id=owner, username=username, **fields).model_dump()
    now = datetime.now(timezone.utc)
    doc["created_at"] = now
    doc["updated_at"] = now
    profiles = get_collection("profile")
    try:
        res = profiles.insert_one(doc)
    except DuplicateKeyError:
        if profiles.find_one({"user_id": owner}):
            raise HTTPException(status_code=409, detail="Profile already exists")
        raise UsernameTakenError()
    except PyMongoError:
        logger.exception(f"Could not create profile for {owner}")
        raise HTTPException(status_code=502, detail="Could not save profile. Please try again.")
    doc["_id"] = res.inserted_id
    logger.info(f"Created profile @{username} for {owner}")
    return doc


def _healed_username(owner: str, email: Optional[str]) -> str:
    if email:
        local = re.sub(r"[^a-z0-9_]", "_", email.split("@")[0].lower())[:15]
        if len(local) >= 3 and is_username_available(local):
            return local
    return f"user_{uuid.uuid4().hex[:10]}"


def get_profile(owner: str, email: Optional[str] = None) -> dict:
    """Read the owner's profile, creating a default one on first access.

    The create path is a single upsert with ``$setOnInsert``; concurrent
    first loads converge on the same document.
    """
    profiles = get_collection("profile")
    existing = profiles.find_one({"user_id": owner})
    if existing:
        return existing

    for attempt in range(2):
        username = _healed_username(owner, email if attempt == 0 else None)
        defaults = Profile(user_id=owner, username=username, display_name=default_display_name(username)).model_dump()
        defaults.pop("user_id")
        now = datetime.now(timezone.utc)
        defaults["created_at"] = now
        defaults["updated_at"] = now
        try:
            doc = profiles.find_one_and_update(
                {"user_id": owner},
                {"$setOnInsert": defaults},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            doc = profiles.find_one({"user_id": owner})
            if doc:
                return doc
            logger.warning(f"Healed username @{username} collided for {owner}, retrying")
            continue
        logger.info(f"Healed missing profile for {owner} as @{doc['username']}")
        return doc
    raise UsernameTakenError()


def normalize_socials(socials: dict) -> dict:
    cleaned = {}
    for platform in SOCIAL_PLATFORMS:
        handle = (socials.get(platform) or "").strip()
        if platform in AT_HANDLE_PLATFORMS and handle.startswith("@"):
            handle = handle[1:]
        if handle:
            cleaned[platform] = handle
    return cleaned


def social_links(socials: dict) -> list:
    return [
        {"platform": platform, "url": f"{SOCIAL_URL_PREFIXES[platform]}{socials[platform]}"}
        for platform in SOCIAL_PLATFORMS
        if socials.get(platform)
    ]


def classify_embed(code: Optional[str]) -> Optional[dict]:
    if not code:
        return None
    if "<iframe" in code or "<blockquote" in code:
        kind = "html"
    elif IMAGE_URL_RE.search(code):
        kind = "image"
    else:
        kind = "text"
    return {"kind": kind, "value": code}


def update_profile(owner: str, fields: dict) -> dict:
    """Merge-write the given fields and return the document as stored."""
    get_profile(owner)
    update = {k: v for k, v in fields.items() if k in EDITABLE_FIELDS and v is not None}

    if "username" in update:
        update["username"] = validate_username(normalize_username(update["username"]))
        if not is_username_available(update["username"], excluding_owner=owner):
            raise UsernameTakenError()
    if "template_id" in update and update["template_id"] not in TEMPLATES:
        raise HTTPException(status_code=400, detail=f"Unknown template: {update['template_id']}")
    if "socials" in update:
        update["socials"] = normalize_socials(update["socials"])
    if "display_name" in update and not update["display_name"].strip():
        raise HTTPException(status_code=400, detail="Display name cannot be empty.")

    if not update:
        return get_profile(owner)
    update["updated_at"] = datetime.now(timezone.utc)
    try:
        doc = get_collection("profile").find_one_and_update(
            {"user_id": owner},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise UsernameTakenError()
    if doc is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return doc


def find_by_username(username: str) -> Optional[dict]:
    found = list(get_collection("profile").find({"username": normalize_username(username)}).limit(1))
    return found[0] if found else None


def delete_profile(owner: str) -> None:
    get_collection("link").delete_many({"user_id": owner})
    get_collection("profile").delete_many({"user_id": owner})


def serialize_profile(doc: dict) -> dict:
    socials = doc.get("socials") or {}
    template_id = doc.get("template_id")
    return {
        "id": str(doc.get("_id")) if doc.get("_id") else None,
        "username": doc.get("username"),
        "display_name": doc.get("display_name"),
        "bio": doc.get("bio") or "",
        "profile_image_url": doc.get("profile_image_url"),
        "template_id": template_id,
        "template": TEMPLATES.get(template_id),
        "socials": socials,
        "social_links": social_links(socials),
        "embed": classify_embed(doc.get("embed_code")),
    }
