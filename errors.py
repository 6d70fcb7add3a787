import time
import traceback
import uuid
from datetime import datetime, timezone

import structlog
from bson.errors import InvalidId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings

logger = structlog.get_logger(__name__)


class StoreError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(StoreError):
    status_code = 404


class InvalidStatusTransition(StoreError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot change order status from {current} to {requested}")
        self.current = current
        self.requested = requested


class InsufficientStockError(StoreError):
    pass


class OrderTotalsMismatch(StoreError):
    pass


class CategoryInUseError(StoreError):
    def __init__(self, product_count: int):
        super().__init__(
            f"Cannot delete category. It has {product_count} product(s) associated with it."
        )
        self.product_count = product_count


class ConcurrentUpdateError(StoreError):
    status_code = 409


def error_response(request: Request, status_code: int, message: str, **extra) -> JSONResponse:
    body = {
        "success": False,
        "message": message,
        "requestId": getattr(request.state, "request_id", None),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


def _log_client_error(request: Request, status_code: int, message: str, category: str) -> None:
    logger.warning(
        "client_error",
        category=category,
        status=status_code,
        method=request.method,
        path=request.url.path,
        message=message,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    _log_client_error(request, exc.status_code, message, "HTTP_ERROR")
    return error_response(request, exc.status_code, message)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append({"field": ".".join(loc), "message": err.get("msg")})
    message = ", ".join(f"{e['field']}: {e['message']}" if e["field"] else e["message"] for e in errors)
    _log_client_error(request, 400, message, "VALIDATION_ERROR")
    return error_response(request, 400, message or "Validation failed", errors=errors)


async def store_error_handler(request: Request, exc: StoreError):
    _log_client_error(request, exc.status_code, exc.message, type(exc).__name__)
    extra = {}
    if isinstance(exc, CategoryInUseError):
        extra["productCount"] = exc.product_count
    return error_response(request, exc.status_code, exc.message, **extra)


async def invalid_id_handler(request: Request, exc: InvalidId):
    message = f"Resource not found - Invalid id: {exc}"
    _log_client_error(request, 404, message, "INVALID_RESOURCE_ID")
    return error_response(request, 404, "Resource not found - Invalid id")


async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    key_value = (exc.details or {}).get("keyValue") or {}
    if key_value:
        field, value = next(iter(key_value.items()))
        message = f"Duplicate {field}: {value} already exists"
    else:
        message = "Duplicate entry already exists"
    _log_client_error(request, 400, message, "DUPLICATE_ENTRY")
    return error_response(request, 400, message)


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        "server_error",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        exc_info=exc,
    )
    extra = {}
    if get_settings().debug:
        extra["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return error_response(request, 500, str(exc) or "Internal Server Error", **extra)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(InvalidId, invalid_id_handler)
    app.add_exception_handler(DuplicateKeyError, duplicate_key_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        # Errors with no registered handler surface here rather than in the app
        response = await unhandled_exception_handler(request, exc)
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
        user_id=getattr(request.state, "user_id", None),
    )
    return response
