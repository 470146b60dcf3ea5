import os
from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


def _get_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _get_list(name: str) -> frozenset:
    raw = os.getenv(name, "")
    return frozenset(s.strip().lower() for s in raw.split(",") if s.strip())


class Settings(BaseModel):
    """Process-wide configuration, resolved once from the environment."""

    model_config = ConfigDict(frozen=True)

    cashfree_app_id: str = ""
    cashfree_secret: str = ""
    cashfree_webhook_secret: str = ""
    cashfree_mode: Literal["TEST", "PROD"] = "PROD"
    cashfree_api_version: str = "2022-09-01"
    cashfree_notify_url: Optional[str] = None
    checkout_return_url: Optional[str] = None
    gateway_timeout_seconds: float = 5.0

    order_currency: str = "INR"
    require_phone: bool = False
    entitlement_mode: Literal["token", "email"] = "token"

    download_token_ttl_seconds: int = 3600
    signed_url_ttl_seconds: int = 900
    upload_url_ttl_seconds: int = 600

    admin_emails: frozenset = frozenset()

    blob_bucket: str = ""
    blob_endpoint_url: Optional[str] = None
    blob_region: Optional[str] = None
    deliverable_key: str = "courses/current.zip"
    deliverable_content_type: str = "application/zip"

    auto_create_tables: bool = False
    cors_origins: tuple = ("*",)

    @classmethod
    def from_env(cls) -> "Settings":
        mode = os.getenv("CASHFREE_MODE", "PROD").strip().upper()
        origins = tuple(s.strip() for s in os.getenv("CORS_ORIGINS", "*").split(",") if s.strip())
        return cls(
            cashfree_app_id=os.getenv("CASHFREE_APP_ID", ""),
            cashfree_secret=os.getenv("CASHFREE_SECRET", ""),
            cashfree_webhook_secret=os.getenv("CASHFREE_WEBHOOK_SECRET", ""),
            cashfree_mode="TEST" if mode == "TEST" else "PROD",
            cashfree_api_version=os.getenv("CASHFREE_API_VERSION", "2022-09-01"),
            cashfree_notify_url=os.getenv("CASHFREE_NOTIFY_URL") or None,
            checkout_return_url=os.getenv("CHECKOUT_RETURN_URL") or None,
            gateway_timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "5")),
            order_currency=os.getenv("ORDER_CURRENCY", "INR").strip().upper(),
            require_phone=_get_bool("REQUIRE_PHONE"),
            entitlement_mode=os.getenv("ENTITLEMENT_MODE", "token").strip().lower(),
            download_token_ttl_seconds=int(os.getenv("DOWNLOAD_TOKEN_TTL_SECONDS", "3600")),
            signed_url_ttl_seconds=int(os.getenv("SIGNED_URL_TTL_SECONDS", "900")),
            upload_url_ttl_seconds=int(os.getenv("UPLOAD_URL_TTL_SECONDS", "600")),
            admin_emails=_get_list("ADMIN_EMAILS"),
            blob_bucket=os.getenv("BLOB_BUCKET", ""),
            blob_endpoint_url=os.getenv("BLOB_ENDPOINT_URL") or None,
            blob_region=os.getenv("BLOB_REGION") or None,
            deliverable_key=os.getenv("DELIVERABLE_KEY", "courses/current.zip"),
            auto_create_tables=_get_bool("AUTO_CREATE_TABLES"),
            cors_origins=origins or ("*",),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
