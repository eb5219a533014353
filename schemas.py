"""
Database Schemas

Pydantic models defining MongoDB collections. Class name lowercased is the collection name.
"""
from pydantic import BaseModel, Field, EmailStr
from typing import Optional, Dict, Literal
from datetime import datetime

USERNAME_PATTERN = r"^[a-z0-9_]{3,15}$"

DEFAULT_TEMPLATE = "black_white"
DEFAULT_BIO = "👋 Hello! Check out my links."
DEFAULT_PROFILE_IMAGE = "https://via.placeholder.com/150/000000/FFFFFF?text=SPARK"

# Page templates are data; the public page picks its look from here.
TEMPLATES: Dict[str, dict] = {
    "black_white": {"name": "Black & White", "background": "#000000", "text": "#ffffff", "button": "#ffffff"},
    "neon": {"name": "Neon", "background": "#0b0221", "text": "#f8f8ff", "button": "#ff2fd6"},
    "sunset": {"name": "Sunset", "background": "#ff7e5f", "text": "#2d1b12", "button": "#feb47b"},
    "midnight": {"name": "Midnight", "background": "#0f172a", "text": "#e2e8f0", "button": "#6366f1"},
}

SOCIAL_PLATFORMS = ("instagram", "twitter", "youtube", "tiktok", "linkedin")


# Accounts and sessions
class User(BaseModel):
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hashed password")
    is_active: bool = True


class Session(BaseModel):
    token: str
    user_id: str
    expires_at: datetime


# Link-in-bio data
class Profile(BaseModel):
    user_id: str = Field(..., description="Owner user id")
    username: str = Field(..., pattern=USERNAME_PATTERN, description="Unique public handle")
    display_name: str
    bio: str = DEFAULT_BIO
    profile_image_url: str = DEFAULT_PROFILE_IMAGE
    template_id: str = DEFAULT_TEMPLATE
    socials: Dict[str, str] = {}
    embed_code: Optional[str] = None
    link_seq: int = Field(0, description="Next link order value")
    views: int = 0


class Link(BaseModel):
    user_id: str
    title: str
    url: str = ""
    order: int
    active: bool = True
    clicks: int = 0


# Music player
class ProviderToken(BaseModel):
    user_id: str
    access_token: str
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    expires_at: datetime


class PkceRequest(BaseModel):
    state: str
    user_id: str
    code_verifier: str


class PlayerDevice(BaseModel):
    user_id: str
    device_id: Optional[str] = None
    state: Literal["device_ready", "playing", "paused"] = "device_ready"
