"""Error taxonomy and HTTP handlers for callers that mount the core behind FastAPI."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from metered.core.logging import get_request_id


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

    def to_payload(self) -> dict:
        return {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class AccountNotFoundError(NotFoundError):
    code = "account_not_found"


class JobNotFoundError(NotFoundError):
    code = "job_not_found"


class BatchNotFoundError(NotFoundError):
    code = "batch_not_found"


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class InvalidJobTransitionError(ConflictError):
    """Raised when a status-guarded job update matched no row."""
    code = "invalid_transition"


class ReferralLedgerError(ConflictError):
    code = "referral_ledger_error"


class BillingError(AppError):
    """Billing failure that the caller can resolve by upgrading or topping up."""
    code = "billing_error"
    status_code = 402

    def __init__(self, message: str, *, recommended_plan: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.recommended_plan = recommended_plan

    def to_payload(self) -> dict:
        return {"recommended_plan": self.recommended_plan}


class InsufficientTokensError(BillingError):
    code = "insufficient_tokens"
    status_code = 402


class SubscriptionExpiredError(BillingError):
    code = "subscription_expired"
    status_code = 403


class PlanRestrictedError(BillingError):
    """The plan does not include the requested mode, model or batch size."""
    code = "plan_restricted"
    status_code = 403


class RateLimitedError(AppError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, message: str, *, retry_after_seconds: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds

    def to_payload(self) -> dict:
        return {"retry_after_seconds": self.retry_after_seconds}


class DailyLimitExceededError(AppError):
    code = "daily_limit_exceeded"
    status_code = 429


class PersistenceError(AppError):
    code = "persistence_error"
    status_code = 500


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, extra: Optional[dict] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if extra:
        error.update(extra)
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    # Infrastructure faults are logged in full but surfaced generically
    public_message = "Unexpected error" if exc.status_code >= 500 else exc.message
    payload = _error_payload(exc.code, public_message, rid, exc.to_payload())
    logger = logging.getLogger("metered")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    if isinstance(exc, RateLimitedError) and exc.retry_after_seconds:
        response.headers["Retry-After"] = str(exc.retry_after_seconds)
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("metered")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("metered")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response


def install_error_handlers(app: FastAPI) -> None:
    """Register the normalized error handlers on a FastAPI app."""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
