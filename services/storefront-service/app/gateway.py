"""
Cashfree payment gateway adapter.

Registers orders, fetches their authoritative status and authenticates
webhook deliveries. Everything here talks to the gateway or inspects what
it sent; no database access.
"""
import base64
import hashlib
import hmac
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from .config import Settings
from .errors import AuthenticityError, GatewayError, InvalidInput, TransientError
from .schemas import PaymentSession, PaymentSignal, RemoteOrder

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

BASE_URLS = {
    "TEST": "https://sandbox.cashfree.com",
    "PROD": "https://api.cashfree.com",
}

# Cashfree has reported success under all of these across API versions
PAID_STATUSES = frozenset({"PAID", "SUCCESS", "SUCCESSFUL", "PAYMENT_SUCCESS", "COMPLETED"})


def is_paid_status(code: Optional[str]) -> bool:
    return str(code or "").strip().upper() in PAID_STATUSES


class CashfreeGateway:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        app_id: str,
        secret: str,
        mode: str = "PROD",
        api_version: str = "2022-09-01",
    ):
        self.client = client
        self.app_id = app_id
        self.secret = secret
        self.base_url = BASE_URLS.get(mode, BASE_URLS["PROD"])
        self.api_version = api_version

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: Settings) -> "CashfreeGateway":
        return cls(
            client,
            app_id=settings.cashfree_app_id,
            secret=settings.cashfree_secret,
            mode=settings.cashfree_mode,
            api_version=settings.cashfree_api_version,
        )

    @property
    def configured(self) -> bool:
        return bool(self.app_id and self.secret)

    def _headers(self) -> dict:
        return {
            "x-client-id": self.app_id,
            "x-client-secret": self.secret,
            "x-api-version": self.api_version,
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        if not self.configured:
            logger.error("Cashfree credentials are not configured")
            raise GatewayError("Payment gateway not configured")

        try:
            r = await self.client.request(method, f"{self.base_url}{path}", headers=self._headers(), **kwargs)
        except httpx.TimeoutException:
            logger.warning("Cashfree timeout method=%s path=%s", method, path)
            raise TransientError("Payment gateway timeout")
        except httpx.RequestError as e:
            logger.warning("Cashfree unreachable method=%s path=%s error=%r", method, path, e)
            raise TransientError("Payment gateway unavailable")

        try:
            data = r.json()
        except ValueError:
            data = None

        if not r.is_success:
            # Upstream detail stays in the logs
            logger.error("Cashfree rejected request status=%s path=%s body=%s", r.status_code, path, data)
            raise GatewayError()

        if not isinstance(data, dict):
            logger.error("Cashfree returned non-JSON body path=%s", path)
            raise GatewayError("Bad response from payment gateway")
        return data

    async def create_order(
        self,
        *,
        order_id: str,
        amount: Decimal,
        currency: str,
        customer_id: str,
        email: str,
        phone: Optional[str] = None,
        return_url: Optional[str] = None,
        notify_url: Optional[str] = None,
    ) -> PaymentSession:
        customer = {"customer_id": customer_id, "customer_email": email}
        if phone:
            customer["customer_phone"] = phone

        body: Dict[str, Any] = {
            "order_id": order_id,
            "order_amount": float(amount),
            "order_currency": currency,
            "customer_details": customer,
        }
        meta = {}
        if return_url:
            sep = "&" if "?" in return_url else "?"
            meta["return_url"] = f"{return_url}{sep}order_id={{order_id}}"
        if notify_url:
            meta["notify_url"] = notify_url
        if meta:
            body["order_meta"] = meta

        data = await self._request("POST", "/pg/orders", json=body)
        session_id = data.get("payment_session_id")
        if not session_id:
            logger.error("Cashfree order has no payment_session_id order_id=%s", order_id)
            raise GatewayError("Bad response from payment gateway")
        return PaymentSession(order_id=data.get("order_id") or order_id, payment_session_id=session_id)

    async def fetch_order(self, order_id: str) -> RemoteOrder:
        data = await self._request("GET", f"/pg/orders/{order_id}")
        customer = data.get("customer_details") or data.get("customer") or {}
        try:
            return RemoteOrder(
                order_id=str(data.get("order_id") or order_id),
                order_status=str(data.get("order_status") or ""),
                order_amount=data.get("order_amount"),
                order_currency=data.get("order_currency"),
                customer_email=customer.get("customer_email"),
            )
        except ValueError:
            logger.error("Cashfree order payload could not be parsed order_id=%s", order_id)
            raise GatewayError("Bad response from payment gateway")


def _signatures(secret: bytes, raw_body: bytes, timestamp: Optional[str]) -> list:
    candidates = [hmac.new(secret, raw_body, hashlib.sha256).hexdigest()]
    if timestamp:
        # 2022-09-01 webhooks sign timestamp + body and send base64
        digest = hmac.new(secret, timestamp.encode("utf-8") + raw_body, hashlib.sha256).digest()
        candidates.append(base64.b64encode(digest).decode("ascii"))
    return candidates


def verify_webhook_signature(
    secret: str,
    raw_body: bytes,
    signature: Optional[str],
    timestamp: Optional[str] = None,
) -> None:
    """Raise AuthenticityError unless `signature` is a valid HMAC-SHA256 of the body."""
    if not secret:
        logger.error("Webhook secret is not configured; rejecting delivery")
        raise AuthenticityError()
    if not signature:
        raise AuthenticityError("Missing signature")

    sig = signature.strip()
    for expected in _signatures(secret.encode("utf-8"), raw_body, timestamp):
        if hmac.compare_digest(expected, sig):
            return
    raise AuthenticityError()


def _dig(payload: Dict[str, Any], *path: str) -> Any:
    node: Any = payload
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


_ORDER_ID_PATHS = (
    ("data", "order", "order_id"),
    ("order", "order_id"),
    ("order", "id"),
    ("order_id",),
)
_STATUS_PATHS = (
    ("data", "payment", "payment_status"),
    ("payment", "payment_status"),
    ("payment", "status"),
    ("data", "order", "order_status"),
    ("data", "order", "status"),
    ("payment_status",),
    ("order_status",),
)


def normalize_signal(payload: Any) -> PaymentSignal:
    """Map the gateway's varying webhook shapes onto one PaymentSignal.

    Raises InvalidInput when either the order id or a status code cannot be
    found at any known location.
    """
    if not isinstance(payload, dict):
        raise InvalidInput("Unrecognised webhook payload")

    order_id = next((v for v in (_dig(payload, *p) for p in _ORDER_ID_PATHS) if v), None)
    status = next((v for v in (_dig(payload, *p) for p in _STATUS_PATHS) if v), None)

    if not isinstance(order_id, (str, int)) or not isinstance(status, str):
        raise InvalidInput("Unrecognised webhook payload")

    return PaymentSignal(order_id=str(order_id), status_code=status.strip().upper())
