"""Error taxonomy and FastAPI handlers."""

import logging
from typing import Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from gateway.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None, headers: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.headers = headers or {}


class ConfigurationError(AppError, RuntimeError):
    """A required secret or setting is missing; the operation cannot proceed."""
    code = "configuration_error"
    status_code = 500


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class LinkMissingError(AppError, LookupError):
    """
    Subscription event for a customer with no linked user.

    The billing processor parks the event and acknowledges the webhook, so
    this only reaches a response when raised outside that path.
    """
    code = "link_missing"
    status_code = 404

    def __init__(self, customer_id: str):
        super().__init__(f"No user linked to customer {customer_id}")
        self.customer_id = customer_id


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class UpstreamError(AppError):
    code = "upstream_error"
    status_code = 502


class GatewayTimeoutError(UpstreamError):
    code = "upstream_timeout"
    status_code = 504


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 429


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    logger = logging.getLogger("gateway")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("gateway")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("gateway")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
