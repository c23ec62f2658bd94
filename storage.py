"""File buckets backed by GridFS.

A stored file is addressed by the id returned from `upload` and dereferenced
to a fetchable URL with `view_url`.
"""

import logging
from typing import NamedTuple, Optional

import gridfs
from gridfs.errors import NoFile
from bson import ObjectId
from bson.errors import InvalidId

from errors import NotFoundError

logger = logging.getLogger(__name__)

PLACEHOLDER_THUMBNAIL_URL = "https://via.placeholder.com/300x180?text=Video+Thumbnail"


class UploadedFile(NamedTuple):
    filename: str
    content_type: Optional[str]
    data: bytes


def _object_id(file_id: str) -> ObjectId:
    try:
        return ObjectId(file_id)
    except (InvalidId, TypeError):
        raise NotFoundError("file", file_id)


class FileStorage:
    def __init__(self, db, bucket_name: str, public_base_url: str):
        self.bucket_name = bucket_name
        self.public_base_url = public_base_url.rstrip("/")
        self._files = db[f"{bucket_name}.files"]
        self._bucket = gridfs.GridFSBucket(db, bucket_name=bucket_name)

    def upload(self, upload: UploadedFile) -> str:
        file_id = self._bucket.upload_from_stream(
            upload.filename or "upload",
            upload.data,
            metadata={"content_type": upload.content_type},
        )
        logger.info("Stored %s in bucket %s as %s", upload.filename, self.bucket_name, file_id)
        return str(file_id)

    def delete(self, file_id: str) -> None:
        try:
            self._bucket.delete(_object_id(file_id))
        except NoFile:
            raise NotFoundError("file", file_id)

    def open(self, file_id: str):
        """Return a readable GridOut; its metadata carries the content type."""
        try:
            return self._bucket.open_download_stream(_object_id(file_id))
        except NoFile:
            raise NotFoundError("file", file_id)

    def view_url(self, file_id: str) -> str:
        if self._files.find_one({"_id": _object_id(file_id)}, {"_id": 1}) is None:
            raise NotFoundError("file", file_id)
        return f"{self.public_base_url}/api/files/{self.bucket_name}/{file_id}"

