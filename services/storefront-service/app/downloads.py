import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import Settings
from .errors import Expired, Forbidden, NotFound, TransientError
from .models import DownloadToken, Entitlement, as_utc, utcnow
from .storage import S3BlobStore

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _signed_deliverable_url(blob_store: S3BlobStore, settings: Settings) -> str:
    if not blob_store.exists(settings.deliverable_key):
        raise NotFound("No course uploaded yet")
    return blob_store.read_url(settings.deliverable_key, settings.signed_url_ttl_seconds)


def resolve_token(db: Session, blob_store: S3BlobStore, settings: Settings, token: str) -> str:
    """Redeem a one-time download token and return a signed read URL."""
    row = db.get(DownloadToken, token)
    if not row or row.used:
        raise Forbidden("Invalid token")

    now = utcnow()
    if as_utc(row.expires_at) <= now:
        raise Expired("Token expired")

    # Checked before redeeming so a missing upload does not burn the token
    if not blob_store.exists(settings.deliverable_key):
        raise NotFound("No course uploaded yet")

    try:
        claimed = (
            db.query(DownloadToken)
            .filter(DownloadToken.token == token, DownloadToken.used == False)  # noqa: E712
            .update({DownloadToken.used: True, DownloadToken.used_at: now}, synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to redeem download token order_id=%s", row.order_id)
        raise TransientError("Failed to redeem token")

    if claimed != 1:
        logger.info("Lost redemption race order_id=%s", row.order_id)
        raise Forbidden("Invalid token")

    logger.info("Download token redeemed order_id=%s", row.order_id)
    return blob_store.read_url(settings.deliverable_key, settings.signed_url_ttl_seconds)


def resolve_email(db: Session, blob_store: S3BlobStore, settings: Settings, email: str) -> str:
    ent = db.get(Entitlement, email.strip().lower())
    if not ent or not ent.granted:
        raise Forbidden("No entitlement")

    url = _signed_deliverable_url(blob_store, settings)
    logger.info("Entitlement download source=%s", ent.source)
    return url
