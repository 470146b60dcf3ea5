import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import Settings
from .errors import InvalidInput, NotFound, TransientError
from .models import (
    AccessRequest,
    Entitlement,
    REQUEST_APPROVED,
    REQUEST_PENDING,
    SOURCE_ADMIN,
    utcnow,
)
from .schemas import AccessRequestOut, EntitlementOut, UploadUrlOut
from .storage import S3BlobStore

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def request_out(r: AccessRequest) -> AccessRequestOut:
    return AccessRequestOut(email=r.email, status=r.status, createdAt=r.created_at, updatedAt=r.updated_at)


def entitlement_out(e: Entitlement) -> EntitlementOut:
    return EntitlementOut(
        email=e.email,
        granted=e.granted,
        source=e.source,
        orderId=e.order_id,
        updatedAt=e.updated_at,
    )


def upload_url(blob_store: S3BlobStore, settings: Settings) -> UploadUrlOut:
    url = blob_store.write_url(
        settings.deliverable_key,
        settings.upload_url_ttl_seconds,
        settings.deliverable_content_type,
    )
    return UploadUrlOut(
        putUrl=url,
        objectPath=settings.deliverable_key,
        contentType=settings.deliverable_content_type,
        expiresIn=settings.upload_url_ttl_seconds,
    )


def file_request(db: Session, email: str) -> AccessRequestOut:
    """Record that a signed-in buyer asked for access. Repeats are no-ops."""
    r = db.get(AccessRequest, email)
    if r:
        return request_out(r)

    r = AccessRequest(email=email, status=REQUEST_PENDING)
    try:
        db.add(r)
        db.commit()
        db.refresh(r)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to store access request")
        raise TransientError("Failed to store request")
    return request_out(r)


def list_requests(db: Session, status: Optional[str] = None) -> List[AccessRequestOut]:
    q = db.query(AccessRequest)
    if status:
        if status not in (REQUEST_PENDING, REQUEST_APPROVED):
            raise InvalidInput("Unknown status")
        q = q.filter(AccessRequest.status == status)
    return [request_out(r) for r in q.order_by(AccessRequest.created_at.desc()).all()]


def approve_request(db: Session, email: str, approved_by: str) -> EntitlementOut:
    email = email.strip().lower()
    r = db.get(AccessRequest, email)
    if not r:
        raise NotFound("Request not found")

    now = utcnow()
    try:
        ent = db.get(Entitlement, email)
        if ent is None:
            ent = Entitlement(email=email, granted=True, source=SOURCE_ADMIN, updated_at=now)
            db.add(ent)
        elif not ent.granted:
            ent.granted = True
            ent.source = SOURCE_ADMIN
            ent.updated_at = now

        r.status = REQUEST_APPROVED
        r.updated_at = now
        db.commit()
        db.refresh(ent)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to approve access request")
        raise TransientError("Failed to approve request")

    logger.info("Access request approved by=%s", approved_by)
    return entitlement_out(ent)
