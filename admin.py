"""
Back-office mutations: videos (with their stored files), users and the site
configuration.

Video writes always upload files first and write metadata last, so a video
document only ever references files whose upload was confirmed. Removing
replaced or deleted files is best effort: a failed file delete is logged and
never undoes or blocks the metadata change.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from pymongo.errors import PyMongoError

from database import create_document, get_documents, id_filter, utcnow_iso
from errors import FieldValidationError, NotFoundError, StorefrontError, UpstreamUnavailableError
from purchase_flow import available_paths
from schemas import SiteConfig, Video, UserOut, user_from_document, video_from_document
from site_config import SECRET_MASK, mask_secret
from storage import UploadedFile
from wallets import WalletEdit

logger = logging.getLogger(__name__)


class VideoForm(BaseModel):
    title: str = ""
    description: str = ""
    price: str = ""
    product_link: str = ""
    is_active: Optional[bool] = None


class UserForm(BaseModel):
    name: str = ""
    email: str = ""
    password: str = ""


class SiteConfigForm(BaseModel):
    site_name: str = ""
    video_list_title: str = ""
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    stripe_publishable_key: str = ""
    stripe_secret_key: str = ""
    telegram_username: str = ""


def _parse_price(raw: str, errors: Dict[str, str]) -> Optional[float]:
    try:
        price = float(raw)
    except (TypeError, ValueError):
        errors["price"] = "must be a number"
        return None
    if price < 0:
        errors["price"] = "must not be negative"
        return None
    return price


class AdminService:
    def __init__(self, videos, users, media_storage, thumbnail_storage, config_store, config_provider, wallets):
        self._videos = videos
        self._users = users
        self._media = media_storage
        self._thumbnails = thumbnail_storage
        self._config_store = config_store
        self._config_provider = config_provider
        self._wallets = wallets

    # Videos

    def list_videos(self) -> List[Video]:
        try:
            docs = get_documents(self._videos)
        except PyMongoError as e:
            logger.error("Error fetching videos: %s", e)
            raise UpstreamUnavailableError("Failed to load videos. Please try again.")
        return [video_from_document(d) for d in docs]

    def _validate_video(self, form: VideoForm, errors: Dict[str, str]) -> Optional[float]:
        for field in ("title", "description", "price", "product_link"):
            if not str(getattr(form, field) or "").strip():
                errors[field] = "is required"
        if "price" in errors:
            return None
        return _parse_price(form.price, errors)

    def _discard_file(self, storage, file_id: Optional[str], reason: str) -> None:
        if not file_id:
            return
        try:
            storage.delete(file_id)
        except (StorefrontError, PyMongoError) as e:
            logger.error("Error deleting %s file %s: %s", reason, file_id, e)

    def create_video(
        self,
        form: VideoForm,
        media: Optional[UploadedFile],
        thumbnail: Optional[UploadedFile],
        duration: Optional[int],
    ) -> str:
        errors: Dict[str, str] = {}
        price = self._validate_video(form, errors)
        if media is None:
            errors["media"] = "is required"
        if thumbnail is None:
            errors["thumbnail"] = "is required"
        if not duration or duration <= 0:
            errors["duration"] = "is required"
        if errors:
            raise FieldValidationError(errors)

        thumbnail_id = media_id = None
        try:
            thumbnail_id = self._thumbnails.upload(thumbnail)
            media_id = self._media.upload(media)
            video_id = create_document(self._videos, {
                "title": form.title.strip(),
                "description": form.description,
                "price": price,
                "product_link": form.product_link.strip(),
                "video_id": media_id,
                "thumbnail_id": thumbnail_id,
                "created_at": utcnow_iso(),
                "is_active": True if form.is_active is None else form.is_active,
                "duration": int(duration),
                "views": 0,
            })
        except PyMongoError as e:
            logger.error("Error uploading video: %s", e)
            self._discard_file(self._thumbnails, thumbnail_id, "orphaned thumbnail")
            self._discard_file(self._media, media_id, "orphaned video")
            raise UpstreamUnavailableError("Failed to save video. Please try again.")

        logger.info("Video %s created", video_id)
        return video_id

    def update_video(
        self,
        video_id: str,
        form: VideoForm,
        media: Optional[UploadedFile] = None,
        thumbnail: Optional[UploadedFile] = None,
        duration: Optional[int] = None,
    ) -> Video:
        errors: Dict[str, str] = {}
        price = self._validate_video(form, errors)
        if duration is not None and duration <= 0:
            errors["duration"] = "must be positive"
        if errors:
            raise FieldValidationError(errors)

        try:
            doc = self._videos.find_one(id_filter(video_id))
        except PyMongoError as e:
            logger.error("Error loading video %s: %s", video_id, e)
            raise UpstreamUnavailableError("Failed to save video. Please try again.")
        if not doc:
            raise NotFoundError("video", video_id)
        existing = video_from_document(doc)

        changes: Dict[str, Any] = {
            "title": form.title.strip(),
            "description": form.description,
            "price": price,
            "product_link": form.product_link.strip(),
        }
        if form.is_active is not None:
            changes["is_active"] = form.is_active
        if duration:
            changes["duration"] = int(duration)

        new_thumbnail_id = new_media_id = None
        try:
            if thumbnail is not None:
                new_thumbnail_id = self._thumbnails.upload(thumbnail)
                changes["thumbnail_id"] = new_thumbnail_id
            if media is not None:
                new_media_id = self._media.upload(media)
                changes["video_id"] = new_media_id
            self._videos.update_one({"_id": doc["_id"]}, {"$set": changes})
        except PyMongoError as e:
            logger.error("Error updating video %s: %s", video_id, e)
            self._discard_file(self._thumbnails, new_thumbnail_id, "orphaned thumbnail")
            self._discard_file(self._media, new_media_id, "orphaned video")
            raise UpstreamUnavailableError("Failed to save video. Please try again.")

        if new_thumbnail_id:
            self._discard_file(self._thumbnails, existing.thumbnail_file_id, "old thumbnail")
        if new_media_id:
            self._discard_file(self._media, existing.media_file_id, "old video")

        logger.info("Video %s updated", video_id)
        return video_from_document({**doc, **changes})

    def delete_video(self, video_id: str) -> None:
        try:
            doc = self._videos.find_one(id_filter(video_id))
        except PyMongoError as e:
            logger.error("Error loading video %s: %s", video_id, e)
            raise UpstreamUnavailableError("Failed to delete video. Please try again.")
        if not doc:
            raise NotFoundError("video", video_id)
        video = video_from_document(doc)

        self._discard_file(self._media, video.media_file_id, "video")
        self._discard_file(self._thumbnails, video.thumbnail_file_id, "thumbnail")

        try:
            self._videos.delete_one({"_id": doc["_id"]})
        except PyMongoError as e:
            logger.error("Error deleting video %s: %s", video_id, e)
            raise UpstreamUnavailableError("Failed to delete video. Please try again.")
        logger.info("Video %s deleted", video_id)

    # Users

    def list_users(self) -> List[UserOut]:
        try:
            docs = get_documents(self._users)
        except PyMongoError as e:
            logger.error("Error fetching users: %s", e)
            raise UpstreamUnavailableError("Failed to load users. Please try again.")
        return [user_from_document(d) for d in docs]

    def create_user(self, form: UserForm) -> str:
        errors = {f: "is required" for f in ("name", "email", "password") if not getattr(form, f).strip()}
        if errors:
            raise FieldValidationError(errors)
        try:
            return create_document(self._users, {
                "name": form.name.strip(),
                "email": form.email.strip(),
                "password": form.password,
                "created_at": utcnow_iso(),
            })
        except PyMongoError as e:
            logger.error("Error saving user: %s", e)
            raise UpstreamUnavailableError("Failed to save user. Please try again.")

    def update_user(self, user_id: str, form: UserForm) -> None:
        errors = {f: "is required" for f in ("name", "email") if not getattr(form, f).strip()}
        if errors:
            raise FieldValidationError(errors)
        changes = {"name": form.name.strip(), "email": form.email.strip()}
        if form.password:
            changes["password"] = form.password
        try:
            result = self._users.update_one(id_filter(user_id), {"$set": changes})
        except PyMongoError as e:
            logger.error("Error saving user %s: %s", user_id, e)
            raise UpstreamUnavailableError("Failed to save user. Please try again.")
        if result.matched_count == 0:
            raise NotFoundError("user", user_id)

    def delete_user(self, user_id: str) -> None:
        try:
            result = self._users.delete_one(id_filter(user_id))
        except PyMongoError as e:
            logger.error("Error deleting user %s: %s", user_id, e)
            raise UpstreamUnavailableError("Failed to delete user. Please try again.")
        if result.deleted_count == 0:
            raise NotFoundError("user", user_id)

    # Site configuration

    def get_site_config(self) -> Dict[str, Any]:
        self._wallets.sync()
        config = self._config_provider.config
        data = config.model_dump()
        data["stripe_secret_key"] = mask_secret(config.stripe_secret_key)
        data["paypal_client_secret"] = mask_secret(config.paypal_client_secret)
        wallets, stored = self._wallets.current()
        data["crypto"] = wallets
        data["crypto_stored"] = stored
        return data

    def save_site_config(self, form: SiteConfigForm) -> SiteConfig:
        current = self._config_provider.config
        defaults = SiteConfig()
        fields = {
            "site_name": form.site_name.strip() or defaults.site_name,
            "video_list_title": form.video_list_title.strip() or defaults.video_list_title,
            "paypal_client_id": form.paypal_client_id.strip(),
            "paypal_client_secret": form.paypal_client_secret.strip(),
            "stripe_publishable_key": form.stripe_publishable_key.strip(),
            "stripe_secret_key": form.stripe_secret_key.strip(),
            "telegram_username": form.telegram_username.strip(),
        }
        # the masked value coming back from the form means "unchanged"
        if fields["stripe_secret_key"] == SECRET_MASK:
            fields["stripe_secret_key"] = current.stripe_secret_key
        if fields["paypal_client_secret"] == SECRET_MASK:
            fields["paypal_client_secret"] = current.paypal_client_secret
        wallets, _ = self._wallets.current()
        fields["crypto"] = wallets

        try:
            self._config_store.save(fields)
        except PyMongoError as e:
            logger.error("Error saving site config: %s", e)
            raise UpstreamUnavailableError("Failed to save site configuration")

        self._wallets.sync()
        snapshot = self._config_provider.refresh()
        logger.info("Site configuration saved")
        return snapshot.config

    def add_wallet(self, code: str, address: str) -> WalletEdit:
        return self._wallets.add_wallet(code, address)

    def remove_wallet(self, index: int) -> WalletEdit:
        return self._wallets.remove_wallet(index)

    # Summary

    def summary(self) -> Dict[str, Any]:
        videos = self.list_videos()
        try:
            total_users = self._users.count_documents({})
        except PyMongoError as e:
            logger.error("Error counting users: %s", e)
            raise UpstreamUnavailableError("Failed to load summary")

        config = self._config_provider.config
        paths = available_paths(config)
        warnings = []
        if not paths:
            warnings.append("No payment method is configured: buyers cannot purchase any video.")
        if config.stripe_publishable_key and not config.stripe_secret_key:
            warnings.append("Card checkout needs the secret key as well as the publishable key.")
        if config.paypal_client_id and not config.paypal_client_secret:
            warnings.append("PayPal stays hidden until the client secret is set.")
        if self._config_provider.error:
            warnings.append(self._config_provider.error)
        missing_links = sum(1 for v in videos if not v.product_link)
        if missing_links:
            warnings.append(f"{missing_links} video(s) have no product link; buyers will be sent to the contact channel.")

        return {
            "total_videos": len(videos),
            "active_videos": sum(1 for v in videos if v.is_active),
            "total_users": total_users,
            "total_views": sum(v.views for v in videos),
            "payment_paths": [p.value for p in paths],
            "warnings": warnings,
        }
