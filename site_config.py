"""
Site configuration: one shared record, many readers.

`SiteConfigProvider` loads the record once when constructed and hands every
consumer the current immutable snapshot. Admin writes go through the store
and are followed by `refresh()`, which replaces the whole snapshot and
notifies subscribers. When the collection is empty or unreachable, consumers
get the defaults from `SiteConfig`.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from pymongo.errors import PyMongoError

from errors import NotFoundError
from schemas import MAX_CRYPTO_WALLETS, SiteConfig, document_id

logger = logging.getLogger(__name__)

SECRET_MASK = "********"


class SiteConfigSnapshot(NamedTuple):
    config: SiteConfig
    document_id: Optional[str] = None


DEFAULT_SNAPSHOT = SiteConfigSnapshot(SiteConfig())


def mask_secret(value: str) -> str:
    return SECRET_MASK if value else ""


def config_from_document(doc: Dict[str, Any]) -> SiteConfig:
    defaults = SiteConfig()
    wallets = [w for w in (doc.get("crypto") or []) if isinstance(w, str) and w.strip()]
    if len(wallets) > MAX_CRYPTO_WALLETS:
        logger.warning("Site config holds %d crypto wallets, only the first %d are used", len(wallets), MAX_CRYPTO_WALLETS)
        wallets = wallets[:MAX_CRYPTO_WALLETS]
    return SiteConfig(
        site_name=doc.get("site_name") or defaults.site_name,
        video_list_title=doc.get("video_list_title") or defaults.video_list_title,
        paypal_client_id=doc.get("paypal_client_id") or "",
        paypal_client_secret=doc.get("paypal_client_secret") or "",
        stripe_publishable_key=doc.get("stripe_publishable_key") or "",
        stripe_secret_key=doc.get("stripe_secret_key") or "",
        telegram_username=doc.get("telegram_username") or "",
        crypto=wallets,
    )


class MongoSiteConfigStore:
    """The first document of the site-config collection is the configuration."""

    def __init__(self, collection):
        self._collection = collection

    def load(self) -> Optional[Dict[str, Any]]:
        return self._collection.find_one({})

    def save(self, fields: Dict[str, Any]) -> str:
        """Update the existing document in place, creating it on first save."""
        doc = self._collection.find_one({}, {"_id": 1})
        if doc is None:
            result = self._collection.insert_one(dict(fields))
            logger.info("Created site configuration %s", result.inserted_id)
            return str(result.inserted_id)
        self._collection.update_one({"_id": doc["_id"]}, {"$set": dict(fields)})
        return str(doc["_id"])

    def update(self, fields: Dict[str, Any]) -> None:
        doc = self._collection.find_one({}, {"_id": 1})
        if doc is None:
            raise NotFoundError("site configuration")
        self._collection.update_one({"_id": doc["_id"]}, {"$set": dict(fields)})


class SiteConfigProvider:
    def __init__(self, store):
        self._store = store
        self._snapshot = DEFAULT_SNAPSHOT
        self._subscribers: List[Callable[[SiteConfigSnapshot], None]] = []
        self._lock = threading.Lock()
        self.error: Optional[str] = None
        self.refresh()

    @property
    def snapshot(self) -> SiteConfigSnapshot:
        return self._snapshot

    @property
    def config(self) -> SiteConfig:
        return self._snapshot.config

    def load(self) -> SiteConfigSnapshot:
        """Fetch the record from the store without publishing it."""
        doc = self._store.load()
        if not doc:
            return DEFAULT_SNAPSHOT
        return SiteConfigSnapshot(config_from_document(doc), document_id(doc))

    def refresh(self) -> SiteConfigSnapshot:
        try:
            snapshot = self.load()
        except PyMongoError as e:
            logger.error("Error fetching site config: %s", e)
            self.error = "Failed to load site configuration"
            return self._snapshot

        with self._lock:
            self._snapshot = snapshot
            self.error = None
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(snapshot)
        return snapshot

    def subscribe(self, callback: Callable[[SiteConfigSnapshot], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # Read accessors

    @property
    def site_name(self) -> str:
        return self.config.site_name

    @property
    def video_list_title(self) -> str:
        return self.config.video_list_title

    @property
    def paypal_client_id(self) -> str:
        return self.config.paypal_client_id

    @property
    def stripe_publishable_key(self) -> str:
        return self.config.stripe_publishable_key

    @property
    def stripe_secret_key(self) -> str:
        return self.config.stripe_secret_key

    @property
    def telegram_username(self) -> str:
        return self.config.telegram_username

    @property
    def crypto_wallets(self) -> List[str]:
        return list(self.config.crypto)

    def public_view(self) -> Dict[str, Any]:
        """Fields the storefront may show to anyone. Secrets are left out."""
        config = self.config
        return {
            "site_name": config.site_name,
            "video_list_title": config.video_list_title,
            "paypal_client_id": config.paypal_client_id,
            "stripe_publishable_key": config.stripe_publishable_key,
            "telegram_username": config.telegram_username,
            "crypto": list(config.crypto),
        }
