"""
Order lifecycle: created --(verified paid signal)--> paid.

An order only becomes paid after the gateway's order API confirms it,
whether the trigger was a signed webhook or a buyer polling. Winning the
created -> paid transition is a conditional UPDATE, so exactly one caller
issues the entitlement for an order no matter how many deliveries race.
"""
import hashlib
import json
import logging
import re
import secrets
import uuid
from datetime import timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared.events import publish

from .config import Settings
from .errors import InvalidInput, NotFound, TransientError
from .gateway import CashfreeGateway, is_paid_status, normalize_signal, verify_webhook_signature
from .models import (
    Order,
    DownloadToken,
    Entitlement,
    ORDER_CREATED,
    ORDER_PAID,
    SOURCE_PAYMENT,
    utcnow,
)
from .schemas import CreateOrderIn, CreateOrderOut, OrderStatusOut

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_AMOUNT = Decimal("99999999.99")

OUTCOME_PAID = "paid"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_UNCONFIRMED = "unconfirmed"


def normalize_email(raw: Any) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidInput("Missing email")
    email = raw.strip().lower()
    if len(email) > 255 or not EMAIL_RE.match(email):
        raise InvalidInput("Invalid email")
    return email


def parse_amount(raw: Any) -> Decimal:
    if raw is None or raw == "":
        raise InvalidInput("Missing amount")
    if isinstance(raw, bool):
        raise InvalidInput("Invalid amount")
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise InvalidInput("Invalid amount")
    if not value.is_finite():
        raise InvalidInput("Invalid amount")

    value = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if value <= 0 or value > MAX_AMOUNT:
        raise InvalidInput("Invalid amount")
    return value


def normalize_phone(raw: Any, required: bool) -> Optional[str]:
    digits = re.sub(r"\D", "", str(raw)) if raw is not None else ""
    if not digits:
        if required:
            raise InvalidInput("Missing phone")
        return None
    if len(digits) != 10:
        raise InvalidInput("Invalid phone")
    return digits


def new_order_id() -> str:
    # Opaque: nothing about the buyer ends up in URLs or gateway dashboards
    return f"order_{uuid.uuid4().hex}"


def customer_ref(email: str) -> str:
    return "cust_" + hashlib.sha256(email.encode("utf-8")).hexdigest()[:24]


async def create_order(
    db: Session,
    gateway: CashfreeGateway,
    settings: Settings,
    payload: CreateOrderIn,
) -> CreateOrderOut:
    email = normalize_email(payload.email)
    amount = parse_amount(payload.amountINR)
    phone = normalize_phone(payload.phone, settings.require_phone)

    order_id = new_order_id()

    # Nothing is stored unless the gateway accepted the order
    session = await gateway.create_order(
        order_id=order_id,
        amount=amount,
        currency=settings.order_currency,
        customer_id=customer_ref(email),
        email=email,
        phone=phone,
        return_url=settings.checkout_return_url,
        notify_url=settings.cashfree_notify_url,
    )

    order = Order(
        order_id=order_id,
        email=email,
        phone=phone,
        amount=amount,
        currency=settings.order_currency,
        status=ORDER_CREATED,
        payment_session_id=session.payment_session_id,
    )
    try:
        db.add(order)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to persist order order_id=%s", order_id)
        raise TransientError("Failed to create order")

    logger.info("Order created order_id=%s amount=%s %s", order_id, amount, settings.order_currency)
    return CreateOrderOut(orderId=order_id, paymentSessionId=session.payment_session_id)


def _grant(db: Session, order: Order, email: str, settings: Settings) -> None:
    now = utcnow()
    if settings.entitlement_mode == "email":
        ent = db.get(Entitlement, email)
        if ent is None:
            db.add(Entitlement(email=email, granted=True, source=SOURCE_PAYMENT, order_id=order.order_id, updated_at=now))
        else:
            ent.granted = True
            ent.source = SOURCE_PAYMENT
            ent.order_id = order.order_id
            ent.updated_at = now
        return

    db.add(
        DownloadToken(
            token=secrets.token_urlsafe(32),
            order_id=order.order_id,
            email=email,
            created_at=now,
            expires_at=now + timedelta(seconds=settings.download_token_ttl_seconds),
            used=False,
        )
    )


def mark_paid(db: Session, order: Order, email: str, settings: Settings) -> bool:
    """Move `order` to paid and issue its entitlement in one transaction.

    Returns False when another caller already made the transition.
    """
    try:
        won = (
            db.query(Order)
            .filter(Order.order_id == order.order_id, Order.status == ORDER_CREATED)
            .update({Order.status: ORDER_PAID, Order.updated_at: utcnow()}, synchronize_session=False)
        )
        if won != 1:
            db.rollback()
            return False

        _grant(db, order, email, settings)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record payment order_id=%s", order.order_id)
        raise TransientError("Failed to record payment")

    return True


def _amount_matches(order: Order, remote_amount: Optional[Decimal]) -> bool:
    if remote_amount is None:
        return True
    return Decimal(remote_amount).quantize(Decimal("0.01")) == Decimal(order.amount).quantize(Decimal("0.01"))


async def confirm_payment(db: Session, gateway: CashfreeGateway, settings: Settings, order_id: str) -> str:
    """Ask the gateway whether `order_id` is paid and record it if so."""
    order = db.query(Order).filter(Order.order_id == order_id).first()
    if not order:
        raise NotFound("Order not found")
    if order.status == ORDER_PAID:
        return OUTCOME_DUPLICATE

    remote = await gateway.fetch_order(order_id)

    if not is_paid_status(remote.order_status):
        logger.info("Gateway reports order not paid order_id=%s status=%s", order_id, remote.order_status)
        return OUTCOME_UNCONFIRMED
    if not _amount_matches(order, remote.order_amount):
        logger.warning(
            "Amount mismatch, dropping order_id=%s expected=%s gateway=%s",
            order_id, order.amount, remote.order_amount,
        )
        return OUTCOME_UNCONFIRMED
    if remote.order_currency and remote.order_currency.upper() != order.currency:
        logger.warning("Currency mismatch, dropping order_id=%s gateway=%s", order_id, remote.order_currency)
        return OUTCOME_UNCONFIRMED

    email = (remote.customer_email or order.email).strip().lower()
    amount, currency = order.amount, order.currency

    if not mark_paid(db, order, email, settings):
        logger.info("Duplicate paid signal order_id=%s", order_id)
        return OUTCOME_DUPLICATE

    logger.info("Order paid order_id=%s mode=%s", order_id, settings.entitlement_mode)
    publish(
        "order.paid",
        {"order_id": order_id, "email": email, "amount": str(amount), "currency": currency},
        safe=True,
    )
    return OUTCOME_PAID


async def handle_webhook(
    db: Session,
    gateway: CashfreeGateway,
    settings: Settings,
    raw_body: bytes,
    headers: Mapping[str, str],
) -> str:
    signature = headers.get("x-webhook-signature") or headers.get("x-cf-signature")
    verify_webhook_signature(
        settings.cashfree_webhook_secret,
        raw_body,
        signature,
        headers.get("x-webhook-timestamp"),
    )

    try:
        payload = json.loads(raw_body or b"null")
    except ValueError:
        raise InvalidInput("Webhook body is not JSON")

    signal = normalize_signal(payload)
    if not is_paid_status(signal.status_code):
        logger.info("Ignoring webhook order_id=%s status=%s", signal.order_id, signal.status_code)
        return OUTCOME_IGNORED

    return await confirm_payment(db, gateway, settings, signal.order_id)


def get_status(db: Session, order_id: str) -> OrderStatusOut:
    order = db.query(Order).filter(Order.order_id == order_id).first()
    if not order:
        return OrderStatusOut(status="not_found")

    token = None
    if order.status == ORDER_PAID:
        row = (
            db.query(DownloadToken)
            .filter(DownloadToken.order_id == order_id, DownloadToken.used == False)  # noqa: E712
            .order_by(DownloadToken.created_at.desc())
            .first()
        )
        if row:
            token = row.token

    return OrderStatusOut(status=order.status, downloadToken=token)
