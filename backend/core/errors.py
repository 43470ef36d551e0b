"""Error taxonomy and normalized HTTP error handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from backend.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class InvalidRequest(AppError, ValueError):
    """Caller error; not retried."""
    code = "invalid_request"
    status_code = 400


class ConfigurationError(AppError):
    """Deployment error; operator-fixable."""
    code = "configuration_error"
    status_code = 500


class SignatureInvalid(AppError):
    """Webhook payload failed authenticity checks; never retried."""
    code = "signature_invalid"
    status_code = 400


class UserReferenceMissing(AppError):
    """A paid event carries no user reference in any channel.

    Handled inside the reconciler: logged as an alarm and acknowledged,
    because redelivery cannot add the missing field.
    """
    code = "user_reference_missing"
    status_code = 200


class UpstreamError(AppError):
    """Payment provider call failed or timed out."""
    code = "upstream_error"
    status_code = 500


class PersistenceError(AppError):
    """Transient storage failure; the provider should redeliver."""
    code = "persistence_error"
    status_code = 503


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


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
    logger = logging.getLogger("logedin")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("logedin")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def validation_error_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    payload = _error_payload(InvalidRequest.code, "Invalid request body", rid)
    logging.getLogger("logedin").warning(
        "request.invalid",
        extra={"request_id": rid, "error_code": InvalidRequest.code, "status": 400},
    )
    response = JSONResponse(status_code=400, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("logedin")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
