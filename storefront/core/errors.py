"""
Error taxonomy for the credit ledger and job pipeline, plus the FastAPI
handlers that render it as a standard error envelope.
"""
import logging
import time
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger("storefront.errors")


class ErrorDetail(BaseModel):
    code: str
    message: str
    context: Optional[Dict[str, Any]] = None


class StandardErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    timestamp: float


class StorefrontError(Exception):
    """Base class for every error a service raises on purpose."""
    code = "ERROR"
    status_code = 400

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)


class ValidationError(StorefrontError):
    """Bad input; nothing was charged or written."""
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(StorefrontError):
    code = "NOT_FOUND"
    status_code = 404


class ForbiddenError(StorefrontError):
    code = "FORBIDDEN"
    status_code = 403


class InsufficientFunds(StorefrontError):
    code = "INSUFFICIENT_FUNDS"
    status_code = 402

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient credits (required {required}, available {available})",
            {"required": required, "available": available},
        )
        self.required = required
        self.available = available


class ConflictError(StorefrontError):
    """Double appeal, re-resolving an appeal, redeeming a used code, busy edit slot."""
    code = "CONFLICT"
    status_code = 409


class FulfillmentError(StorefrontError):
    """External service error, timeout, or malformed response."""
    code = "FULFILLMENT_FAILED"
    status_code = 502

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None, refunded: bool = False):
        super().__init__(message, context)
        self.refunded = refunded


class StoreError(StorefrontError):
    """Ledger or queue persistence unavailable."""
    code = "STORE_UNAVAILABLE"
    status_code = 503


def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    context: Dict[str, Any] = None,
) -> JSONResponse:
    body = StandardErrorResponse(
        error=ErrorDetail(code=error_code, message=message, context=context or None),
        timestamp=time.time(),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


async def storefront_exception_handler(request: Request, exc: StorefrontError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}", extra={"context": exc.context})
    else:
        logger.warning(f"{exc.code} on {request.url.path}: {exc.message}")
    return create_error_response(exc.code, exc.message, exc.status_code, exc.context)


async def general_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unexpected error on {request.url.path}: {exc}")
    return create_error_response(
        "INTERNAL_SERVER_ERROR",
        "An unexpected error occurred. Please try again later.",
        500,
    )


def add_error_handlers(app):
    app.add_exception_handler(StorefrontError, storefront_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
