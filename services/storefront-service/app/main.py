import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
from fastapi import FastAPI, Depends, Header, Request, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, get_settings
from .db import get_db, init_schema
from .errors import Forbidden, StorefrontError
from .gateway import CashfreeGateway
from .storage import S3BlobStore
from .schemas import (
    AccessRequestOut,
    CreateOrderIn,
    CreateOrderOut,
    EntitlementOut,
    OrderStatusOut,
    UploadUrlOut,
    VerifyOrderIn,
)
from . import admin, downloads, lifecycle
from shared.security import require_user, optional_user, is_admin

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

_http_client: httpx.AsyncClient | None = None
_blob_store: S3BlobStore | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Keep cold start lightweight for Lambda.
    Tables are only created here for local/dev (AUTO_CREATE_TABLES=true).
    """
    global _http_client
    settings = get_settings()
    if settings.auto_create_tables:
        init_schema()
    _http_client = httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)
    yield
    if _http_client:
        await _http_client.aclose()
        _http_client = None


app = FastAPI(title="storefront-service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(get_settings().cors_origins),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "x-webhook-signature", "x-webhook-timestamp", "x-cf-signature"],
)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid request"})


def get_gateway(settings: Settings = Depends(get_settings)) -> CashfreeGateway:
    global _http_client
    if _http_client is None:
        # fallback in case lifespan didn't run
        _http_client = httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)
    return CashfreeGateway.from_settings(_http_client, settings)


def get_blob_store(settings: Settings = Depends(get_settings)) -> S3BlobStore:
    global _blob_store
    if _blob_store is None:
        _blob_store = S3BlobStore.from_settings(settings)
    return _blob_store


def require_admin(claims: dict = Depends(require_user), settings: Settings = Depends(get_settings)) -> dict:
    if not is_admin(claims.get("email"), settings.admin_emails):
        raise Forbidden("Admin only")
    return claims


# Payments
@app.post("/payments/create-order", response_model=CreateOrderOut)
async def create_order(
    payload: CreateOrderIn,
    db: Session = Depends(get_db),
    gateway: CashfreeGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    return await lifecycle.create_order(db, gateway, settings, payload)


@app.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: CashfreeGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    # Always acknowledge: the gateway retries on delivery status only
    raw_body = await request.body()
    try:
        outcome = await lifecycle.handle_webhook(db, gateway, settings, raw_body, request.headers)
        logger.info("Webhook processed outcome=%s", outcome)
    except StorefrontError as e:
        logger.warning("Webhook not processed error=%s detail=%s", type(e).__name__, e.detail)
    except Exception:
        logger.exception("Webhook processing failed")
    return {"ok": True}


@app.post("/payments/verify", response_model=OrderStatusOut)
async def verify_order(
    payload: VerifyOrderIn,
    db: Session = Depends(get_db),
    gateway: CashfreeGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    await lifecycle.confirm_payment(db, gateway, settings, payload.orderId)
    return lifecycle.get_status(db, payload.orderId)


@app.get("/payments/order-status", response_model=OrderStatusOut)
def order_status(orderId: str = Query(min_length=1, max_length=64), db: Session = Depends(get_db)):
    return lifecycle.get_status(db, orderId)


# Download
@app.get("/download")
def download(
    token: Optional[str] = None,
    email: Optional[str] = None,
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    blob_store: S3BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_settings),
):
    if token:
        url = downloads.resolve_token(db, blob_store, settings, token)
        return RedirectResponse(url, status_code=302)

    # Bearer is checked on the email path only
    claims = optional_user(authorization)
    if claims is None:
        return JSONResponse(status_code=401, content={"error": "Missing bearer token"})

    verified = claims["email"]
    if email and email.strip().lower() != verified:
        raise Forbidden("Email does not match signed-in user")

    url = downloads.resolve_email(db, blob_store, settings, verified)
    return RedirectResponse(url, status_code=302)


# Access requests
@app.post("/access-requests", response_model=AccessRequestOut)
def create_access_request(claims: dict = Depends(require_user), db: Session = Depends(get_db)):
    return admin.file_request(db, claims["email"])


# Admin endpoints
@app.post("/admin/upload-url", response_model=UploadUrlOut)
def admin_upload_url(
    claims: dict = Depends(require_admin),
    blob_store: S3BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_settings),
):
    logger.info("Upload URL issued to=%s", claims["email"])
    return admin.upload_url(blob_store, settings)


@app.get("/admin/access-requests", response_model=List[AccessRequestOut])
def admin_list_requests(
    status: Optional[str] = None,
    claims: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return admin.list_requests(db, status)


@app.post("/admin/access-requests/{email}/approve", response_model=EntitlementOut)
def admin_approve_request(email: str, claims: dict = Depends(require_admin), db: Session = Depends(get_db)):
    return admin.approve_request(db, email, approved_by=claims["email"])


@app.get("/health")
def health():
    return {"ok": True}
