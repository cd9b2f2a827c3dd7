from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class AppError(Exception):
    """业务错误：统一转换为 {ok: false, error: {code, message}}。"""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "An unexpected error occurred"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthorized(AppError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Authentication required"


class Forbidden(AppError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Access denied"


class BadRequest(AppError):
    code = "BAD_REQUEST"
    status_code = 400
    default_message = "Bad request"


class UnsupportedPair(AppError):
    code = "UNSUPPORTED_PAIR"
    status_code = 400
    default_message = "Currency pair is not supported"


class BelowMinimum(AppError):
    code = "BELOW_MINIMUM"
    status_code = 400
    default_message = "Amount is below one exchange unit"


class NotFound(AppError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")


class Conflict(AppError):
    code = "CONFLICT"
    status_code = 409
    default_message = "Duplicate action"


class InsufficientFunds(AppError):
    code = "INSUFFICIENT_FUNDS"
    status_code = 400

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(f"Not enough {currency}")


class ResourceExhausted(AppError):
    code = "RESOURCE_EXHAUSTED"
    status_code = 409
    default_message = "Requested quantity exceeds availability"


class DailyLimitExceeded(AppError):
    code = "DAILY_LIMIT_EXCEEDED"
    status_code = 429
    default_message = "Daily limit exceeded"


class UpstreamTimeout(AppError):
    code = "UPSTREAM_TIMEOUT"
    status_code = 503
    default_message = "Upstream service timed out, please retry"


class InternalError(AppError):
    pass


_STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "BAD_REQUEST",
    409: "CONFLICT",
    429: "DAILY_LIMIT_EXCEEDED",
}


def success(data: Any = None) -> dict[str, Any]:
    return {"ok": True, "data": data}


def error_body(code: str, message: str) -> dict[str, Any]:
    return {"ok": False, "error": {"code": code, "message": message}}


def _where(request: Request) -> str:
    return f"{request.method} {request.url.path}"


async def handle_app_error(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("[%s] %s -> %s: %s", exc.code, _where(request), exc.status_code, exc.message)
    else:
        logger.warning("[%s] %s -> %s: %s", exc.code, _where(request), exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.message))


async def handle_validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    logger.warning("[BAD_REQUEST] %s -> 400: %s", _where(request), errors)
    first = errors[0] if errors else {}
    loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{loc}: {first.get('msg')}" if loc else str(first.get("msg", "Invalid request"))
    return JSONResponse(status_code=400, content=error_body("BAD_REQUEST", message))


async def handle_http_exception(request: Request, exc: StarletteHTTPException):
    code = _STATUS_CODES.get(exc.status_code, "INTERNAL_ERROR" if exc.status_code >= 500 else "BAD_REQUEST")
    logger.warning("[%s] %s -> %s: %s", code, _where(request), exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=error_body(code, str(exc.detail)))


async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception("[INTERNAL_ERROR] %s: %s", _where(request), exc)
    return JSONResponse(status_code=500, content=error_body("INTERNAL_ERROR", "An unexpected error occurred"))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, handle_app_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(Exception, handle_unexpected_error)
