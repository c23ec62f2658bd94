"""Playback URLs and view counting."""

import logging
from typing import Optional

from pymongo.errors import PyMongoError

from database import id_filter
from errors import StorefrontError
from schemas import video_from_document

logger = logging.getLogger(__name__)


class ReadModifyWriteViewCounter:
    """Reads the stored count and writes back count + 1.

    Two viewers incrementing at the same moment can both read N and both
    write N + 1 (last write wins). Swap this class for one issuing an atomic
    $inc to change that; callers only see `increment`.
    """

    def __init__(self, collection):
        self._collection = collection

    def increment(self, video_id: str) -> None:
        doc = self._collection.find_one(id_filter(video_id), {"views": 1})
        if doc is None:
            logger.warning("Cannot increment views, video %s not found", video_id)
            return
        current = doc.get("views") or 0
        self._collection.update_one({"_id": doc["_id"]}, {"$set": {"views": int(current) + 1}})


class MediaResolver:
    def __init__(self, collection, videos_storage, view_counter=None):
        self._collection = collection
        self._storage = videos_storage
        self._view_counter = view_counter or ReadModifyWriteViewCounter(collection)

    def get_playback_url(self, video_id: str) -> Optional[str]:
        """Preview URL anyone may watch, or None when there is nothing playable.

        None means "show the thumbnail", never an error page.
        """
        try:
            doc = self._collection.find_one(id_filter(video_id))
        except PyMongoError as e:
            logger.error("Error getting video %s: %s", video_id, e)
            return None
        if not doc:
            logger.warning("Video %s not found", video_id)
            return None

        video = video_from_document(doc)
        if not video.media_file_id:
            logger.warning("Video %s has no media file id", video_id)
            return None
        try:
            return self._storage.view_url(video.media_file_id)
        except (StorefrontError, PyMongoError) as e:
            logger.error("Error getting file URL for video %s: %s", video_id, e)
            return None

    def increment_views(self, video_id: str) -> None:
        try:
            self._view_counter.increment(video_id)
        except (PyMongoError, ValueError, TypeError) as e:
            logger.error("Error incrementing views for video %s: %s", video_id, e)

    def record_visit(self, video_id: str) -> Optional[str]:
        """One page visit: count the view once, then resolve the playback URL."""
        self.increment_views(video_id)
        return self.get_playback_url(video_id)
