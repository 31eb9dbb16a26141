from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from wowziri.logging import get_logger, sanitize_error_message
from wowziri.service.errors import RateLimitedError, ServiceError
from wowziri.service.runtime import get_runtime
from wowziri.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_GENERIC_SERVER_ERROR = "Something went wrong"


def _is_production() -> bool:
    return get_runtime().settings.is_production


def _error_response(
    status_code: int,
    message: str,
    extra: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    content: Dict[str, Any] = {"error": message}
    if extra:
        content.update(extra)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def _field_errors(exc: RequestValidationError) -> List[Dict[str, str]]:
    items = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        msg = str(err.get("msg", "Invalid value"))
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        items.append({"field": ".".join(loc) or "body", "msg": msg})
    return items


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers that render every failure as ``{"error": ...}``."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = _field_errors(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[e["field"] for e in errors],
        )
        return JSONResponse(status_code=400, content={"errors": errors})

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return _error_response(409, exc.message)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        headers = None
        extra: Dict[str, Any] = {}
        if isinstance(exc, RateLimitedError):
            extra["retryAfter"] = exc.retry_after_seconds
            headers = {"Retry-After": str(exc.retry_after_seconds)}
        message = exc.message
        if exc.status_code >= 500 and _is_production():
            message = _GENERIC_SERVER_ERROR
        return _error_response(exc.status_code, message, extra, headers)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        extra = None
        if not _is_production():
            extra = {"details": sanitize_error_message(str(exc))}
        return _error_response(500, _GENERIC_SERVER_ERROR, extra)
