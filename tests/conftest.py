"""Shared fixtures: an in-memory Mongo database and fake file buckets."""

from unittest.mock import MagicMock

import mongomock
import pytest
from bson import ObjectId


def make_storage(bucket_name):
    """A file bucket double whose URLs follow the real /api/files layout."""
    storage = MagicMock()
    storage.bucket_name = bucket_name
    storage.view_url.side_effect = lambda file_id: f"http://testserver/api/files/{bucket_name}/{file_id}"
    storage.upload.side_effect = lambda upload: str(ObjectId())
    return storage


@pytest.fixture
def db():
    return mongomock.MongoClient().storefront_test


@pytest.fixture
def videos(db):
    return db["video"]


@pytest.fixture
def users(db):
    return db["user"]


@pytest.fixture
def site_config_collection(db):
    return db["siteconfig"]


@pytest.fixture
def media_storage():
    return make_storage("videos")


@pytest.fixture
def thumbnail_storage():
    return make_storage("thumbnails")


@pytest.fixture
def add_video(videos):
    """Insert a video document and return its id as a string."""

    def _add(**fields):
        doc = {
            "title": "Sunset Timelapse",
            "description": "Golden hour over the bay",
            "price": 9.99,
            "duration": 90,
            "views": 0,
            "created_at": "2024-01-01T00:00:00+00:00",
            "video_id": "media-1",
            "thumbnail_id": "thumb-1",
            "product_link": "https://x/y",
            "is_active": True,
        }
        doc.update(fields)
        return str(videos.insert_one(doc).inserted_id)

    return _add
