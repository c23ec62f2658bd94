"""
Runtime configuration for the storefront API.

Everything is read from environment variables (a local .env file is read
as well when present). Missing database settings are not a startup error:
the endpoints that need the database answer 500 instead.
"""

from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    database_url: str = Field(default="", validation_alias="DATABASE_URL")
    database_name: str = Field(
        default="",
        validation_alias=AliasChoices("DATABASE_NAME", "APPWRITE_DATABASE_ID"),
        description="Mongo database name",
    )

    video_collection: str = Field(default="video", validation_alias="VIDEO_COLLECTION_ID")
    user_collection: str = Field(default="user", validation_alias="USER_COLLECTION_ID")
    site_config_collection: str = Field(
        default="siteconfig",
        validation_alias=AliasChoices("SITE_CONFIG_COLLECTION_ID", "APPWRITE_SITE_CONFIG_COLLECTION_ID"),
    )

    videos_bucket: str = Field(default="videos", validation_alias="VIDEOS_BUCKET_ID")
    thumbnails_bucket: str = Field(default="thumbnails", validation_alias="THUMBNAILS_BUCKET_ID")

    public_base_url: str = Field(default="http://localhost:8000", validation_alias="PUBLIC_BASE_URL")
    checkout_api_url: str = Field(
        default="",
        validation_alias="CHECKOUT_API_URL",
        description="Checkout helper base URL, defaults to PUBLIC_BASE_URL",
    )
    paypal_api_base: str = Field(default="https://api-m.sandbox.paypal.com", validation_alias="PAYPAL_API_BASE")
    wallet_cache_path: str = Field(default=".wallet_cache.json", validation_alias="WALLET_CACHE_PATH")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_json: bool = Field(default=False, validation_alias="LOG_JSON")
    port: Optional[int] = Field(default=None, validation_alias="PORT")

    @field_validator("public_base_url", "checkout_api_url", "paypal_api_base")
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")

    @field_validator("port", mode="before")
    @classmethod
    def blank_port(cls, v):
        return v or None

    @property
    def database_configured(self) -> bool:
        return bool(self.database_url and self.database_name)

    @property
    def checkout_base_url(self) -> str:
        return self.checkout_api_url or self.public_base_url


settings = Settings()
