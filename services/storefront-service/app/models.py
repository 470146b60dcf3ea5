from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, Numeric, Index
from sqlalchemy.orm import Mapped, mapped_column
from .db import Base

ORDER_CREATED = "created"
ORDER_PAID = "paid"

REQUEST_PENDING = "pending"
REQUEST_APPROVED = "approved"

SOURCE_PAYMENT = "payment"
SOURCE_ADMIN = "admin"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back naive; they are always stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)

    email: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # money => NUMERIC, not FLOAT
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=ORDER_CREATED, nullable=False)  # created | paid
    payment_session_id: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class DownloadToken(Base):
    __tablename__ = "download_tokens"

    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


Index("ix_download_tokens_order_created", DownloadToken.order_id, DownloadToken.created_at)


class Entitlement(Base):
    __tablename__ = "entitlements"

    email: Mapped[str] = mapped_column(String(255), primary_key=True)
    granted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    source: Mapped[str] = mapped_column(String(20), default=SOURCE_PAYMENT, nullable=False)  # payment | admin
    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class AccessRequest(Base):
    __tablename__ = "access_requests"

    email: Mapped[str] = mapped_column(String(255), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), default=REQUEST_PENDING, nullable=False)  # pending | approved

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
