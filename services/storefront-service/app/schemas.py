from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateOrderIn(BaseModel):
    # Loosely typed on purpose: field checks live in lifecycle so that
    # every malformed value is reported as a 400 with one message shape.
    email: Any = None
    amountINR: Any = None
    phone: Any = None


class CreateOrderOut(BaseModel):
    orderId: str
    paymentSessionId: str


class VerifyOrderIn(BaseModel):
    orderId: str = Field(min_length=1, max_length=64)


class OrderStatusOut(BaseModel):
    status: str  # created | paid | not_found
    downloadToken: Optional[str] = None


class UploadUrlOut(BaseModel):
    putUrl: str
    objectPath: str
    contentType: str
    expiresIn: int


class AccessRequestOut(BaseModel):
    email: str
    status: str
    createdAt: datetime
    updatedAt: datetime


class EntitlementOut(BaseModel):
    email: str
    granted: bool
    source: str
    orderId: Optional[str] = None
    updatedAt: datetime


class PaymentSession(BaseModel):
    """What the hosted checkout needs from a freshly registered order."""

    order_id: str
    payment_session_id: str


class RemoteOrder(BaseModel):
    """The gateway's own view of an order, fetched server-to-server."""

    model_config = ConfigDict(extra="ignore")

    order_id: str
    order_status: str = ""
    order_amount: Optional[Decimal] = None
    order_currency: Optional[str] = None
    customer_email: Optional[str] = None


class PaymentSignal(BaseModel):
    order_id: str
    status_code: str
