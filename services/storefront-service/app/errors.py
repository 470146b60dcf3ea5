from typing import Optional


class StorefrontError(Exception):
    """Base for failures that map onto a terse client-facing message."""

    status_code = 500
    default_detail = "Request failed"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class InvalidInput(StorefrontError):
    status_code = 400
    default_detail = "Invalid input"


class AuthenticityError(StorefrontError):
    status_code = 401
    default_detail = "Invalid signature"


class Forbidden(StorefrontError):
    status_code = 403
    default_detail = "Forbidden"


class NotFound(StorefrontError):
    status_code = 404
    default_detail = "Not found"


class Expired(StorefrontError):
    status_code = 403
    default_detail = "Expired"


class GatewayError(StorefrontError):
    status_code = 502
    default_detail = "Payment gateway error"


class TransientError(StorefrontError):
    # Safe for the caller to retry
    status_code = 503
    default_detail = "Service temporarily unavailable"
