"""
Database Schemas for the Video Storefront

Each Pydantic model represents a MongoDB collection. Collection names come
from config (defaults: "video", "user", "siteconfig").

Stored video documents have used two naming schemes for the file references
(video_id / videoFileId, thumbnail_id / thumbnailFileId). `video_from_document`
is the only place that knows about both; everything past it sees
`media_file_id` and `thumbnail_file_id`.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from durations import format_duration, format_timecode, format_views, to_seconds

SITE_NAME_DEFAULT = "VideosPlus"
VIDEO_LIST_TITLE_DEFAULT = "Available Videos"
MAX_CRYPTO_WALLETS = 5


class Video(BaseModel):
    """
    Videos collection schema
    Collection name: "video"
    """
    id: str = Field(..., description="Document id")
    title: str = Field(..., min_length=1, description="Video title")
    description: str = Field("", description="Long description")
    price: float = Field(0.0, ge=0, description="Price in USD")
    duration: Optional[Union[int, float, str]] = Field(None, description="Seconds or MM:SS / HH:MM:SS")
    views: int = Field(0, ge=0, description="View counter")
    created_at: Optional[str] = Field(None, description="ISO-8601 creation timestamp")
    media_file_id: Optional[str] = Field(None, description="File id in the videos bucket")
    thumbnail_file_id: Optional[str] = Field(None, description="File id in the thumbnails bucket")
    product_link: Optional[str] = Field(None, description="Link to the full product after purchase")
    is_active: bool = Field(True, description="Whether the video is visible in the catalog")


class VideoOut(Video):
    thumbnail_url: str
    duration_seconds: int = 0
    duration_timecode: str = "00:00"
    duration_label: str = "Unknown"
    views_label: str = "0 views"

    @classmethod
    def build(cls, video: Video, thumbnail_url: str) -> "VideoOut":
        seconds = to_seconds(video.duration)
        return cls(
            **video.model_dump(),
            thumbnail_url=thumbnail_url,
            duration_seconds=seconds,
            duration_timecode=format_timecode(seconds),
            duration_label=format_duration(video.duration),
            views_label=format_views(video.views),
        )


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Email address")
    password: str = Field(..., description="Password hash, produced upstream")
    created_at: Optional[str] = None


class UserOut(BaseModel):
    id: str
    name: str
    email: str
    created_at: Optional[str] = None


class SiteConfig(BaseModel):
    """
    Site configuration schema (at most one document)
    Collection name: "siteconfig"
    """
    site_name: str = Field(SITE_NAME_DEFAULT, description="Brand shown in header and receipts")
    video_list_title: str = Field(VIDEO_LIST_TITLE_DEFAULT, description="Catalog page title")
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    stripe_publishable_key: str = ""
    stripe_secret_key: str = ""
    telegram_username: str = Field("", description="Manual contact channel handle")
    crypto: List[str] = Field(default_factory=list, max_length=MAX_CRYPTO_WALLETS, description='"CODE - Name\\naddress" entries')


def _first(doc: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = doc.get(key)
        if value not in (None, ""):
            return value
    return None


def document_id(doc: Dict[str, Any]) -> str:
    return str(_first(doc, "_id", "$id") or "")


def _timestamp(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return str(value) if value is not None else None


def video_from_document(doc: Dict[str, Any]) -> Video:
    """Adapt a raw stored video document to the canonical Video model."""
    views = doc.get("views") or 0
    try:
        views = max(0, int(views))
    except (TypeError, ValueError):
        views = 0
    try:
        price = max(0.0, float(doc.get("price") or 0))
    except (TypeError, ValueError):
        price = 0.0
    is_active = doc.get("is_active")

    return Video(
        id=document_id(doc),
        title=doc.get("title") or "Untitled",
        description=doc.get("description") or "",
        price=price,
        duration=doc.get("duration"),
        views=views,
        created_at=_timestamp(_first(doc, "created_at", "createdAt", "$createdAt")),
        media_file_id=_first(doc, "video_id", "videoFileId"),
        thumbnail_file_id=_first(doc, "thumbnail_id", "thumbnailFileId"),
        product_link=_first(doc, "product_link"),
        is_active=True if is_active is None else bool(is_active),
    )


def user_from_document(doc: Dict[str, Any]) -> UserOut:
    return UserOut(
        id=document_id(doc),
        name=doc.get("name") or "",
        email=doc.get("email") or "",
        created_at=_timestamp(doc.get("created_at")),
    )
