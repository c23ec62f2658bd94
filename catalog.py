"""Read side of the video catalog: listing, search, sorting and pagination."""

import logging
import math
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from pymongo.errors import PyMongoError

from database import get_documents, id_filter
from durations import to_seconds
from errors import FieldValidationError, StorefrontError, UpstreamUnavailableError
from schemas import Video, VideoOut, video_from_document
from storage import PLACEHOLDER_THUMBNAIL_URL

logger = logging.getLogger(__name__)

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


class SortOption(str, Enum):
    NEWEST = "newest"
    PRICE_ASC = "price_asc"
    PRICE_DESC = "price_desc"
    VIEWS_DESC = "views_desc"
    DURATION_DESC = "duration_desc"


def _created_at(video: Video) -> datetime:
    if not video.created_at:
        return _OLDEST
    try:
        parsed = datetime.fromisoformat(video.created_at.replace("Z", "+00:00"))
    except ValueError:
        return _OLDEST
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_SORTS = {
    SortOption.NEWEST: (_created_at, True),
    SortOption.PRICE_ASC: (lambda v: v.price, False),
    SortOption.PRICE_DESC: (lambda v: v.price, True),
    SortOption.VIEWS_DESC: (lambda v: v.views, True),
    SortOption.DURATION_DESC: (lambda v: to_seconds(v.duration), True),
}


def sort_videos(videos: List[Video], sort: SortOption = SortOption.NEWEST) -> List[Video]:
    key, reverse = _SORTS[SortOption(sort)]
    return sorted(videos, key=key, reverse=reverse)


def matches_query(video: Video, query: str) -> bool:
    needle = query.strip().lower()
    if not needle:
        return True
    return needle in video.title.lower() or needle in video.description.lower()


class CatalogRepository:
    def __init__(self, collection, thumbnails):
        self._collection = collection
        self._thumbnails = thumbnails

    def _fetch_active(self) -> List[Video]:
        try:
            docs = get_documents(self._collection)
        except PyMongoError as e:
            logger.error("Error getting videos: %s", e)
            raise UpstreamUnavailableError("Failed to load videos. Please try again later.")
        videos = [video_from_document(d) for d in docs]
        return [v for v in videos if v.is_active]

    def thumbnail_url(self, video: Video) -> str:
        if not video.thumbnail_file_id:
            return PLACEHOLDER_THUMBNAIL_URL
        try:
            return self._thumbnails.view_url(video.thumbnail_file_id)
        except (StorefrontError, PyMongoError) as e:
            logger.warning("Error getting thumbnail for video %s: %s", video.id, e)
            return PLACEHOLDER_THUMBNAIL_URL

    def _with_thumbnails(self, videos: List[Video]) -> List[VideoOut]:
        return [VideoOut.build(v, self.thumbnail_url(v)) for v in videos]

    def list_videos(self, sort: SortOption = SortOption.NEWEST, search_query: str = "") -> List[VideoOut]:
        videos = self._fetch_active()
        if search_query and search_query.strip():
            videos = [v for v in videos if matches_query(v, search_query)]
        return self._with_thumbnails(sort_videos(videos, sort))

    def list_videos_paged(
        self,
        page: int = 1,
        per_page: int = 12,
        sort: SortOption = SortOption.NEWEST,
        search_query: str = "",
    ) -> Tuple[List[VideoOut], int]:
        if per_page < 1:
            raise FieldValidationError({"per_page": "must be 1 or greater"})

        videos = self.list_videos(sort, search_query)
        total_pages = math.ceil(len(videos) / per_page)
        if page < 1:
            return [], total_pages
        start = (page - 1) * per_page
        return videos[start:start + per_page], total_pages

    def get_video(self, video_id: str) -> Optional[VideoOut]:
        try:
            doc = self._collection.find_one(id_filter(video_id))
        except PyMongoError as e:
            logger.error("Error getting video %s: %s", video_id, e)
            raise UpstreamUnavailableError("Failed to load video. Please try again later.")
        if not doc:
            return None
        video = video_from_document(doc)
        if not video.is_active:
            return None
        return VideoOut.build(video, self.thumbnail_url(video))

    def suggested_videos(self, exclude_id: str, limit: int = 8) -> List[VideoOut]:
        videos = [v for v in self._fetch_active() if v.id != exclude_id]
        return self._with_thumbnails(sort_videos(videos)[:limit])
