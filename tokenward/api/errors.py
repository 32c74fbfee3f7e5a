# tokenward/api/errors.py
"""
Maps exceptions to HTTP responses. Every error leaves the service in the
``{success, message, data}`` envelope and the status is chosen by exception
type alone.
"""
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from tokenward.core.exceptions import AuthError, FieldValidationError, InvalidToken, RateLimited
from tokenward.schemas.common import ApiResponse


def error_response(
    status_code: int,
    message: str,
    data: Any = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body = ApiResponse.error(message, data).model_dump()
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def validation_errors_to_fields(exc: RequestValidationError) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for error in exc.errors():
        # Drop the "body"/"query" prefix; nested locations are dotted
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "header", "path")]
        field = ".".join(loc) or "body"
        fields.setdefault(field, error.get("msg", "Invalid value"))
    return fields


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):
        log_fn = logger.error if exc.status_code >= 500 else logger.info
        log_fn(f"{request.method} {request.url.path} -> {exc.status_code} {type(exc).__name__}: {exc.message}")
        data = exc.errors if isinstance(exc, FieldValidationError) else None
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, InvalidToken) else None
        if isinstance(exc, RateLimited):
            headers = {"Retry-After": "60"}
        return error_response(exc.status_code, exc.message, data, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = validation_errors_to_fields(exc)
        logger.info(f"{request.method} {request.url.path} -> 400 validation failed: {fields}")
        return error_response(400, FieldValidationError.default_message, fields)

    # Must stay synchronous: SlowAPIMiddleware skips coroutine handlers
    @app.exception_handler(RateLimitExceeded)
    def handle_rate_limit_exceeded(request: Request, exc: RateLimitExceeded):
        client = request.client.host if request.client else None
        logger.warning(f"Request rate limit exceeded on {request.url.path} for {client}: {exc.detail}")
        # slowapi's handler computes the X-RateLimit-* and Retry-After headers
        limited = _rate_limit_exceeded_handler(request, exc)
        headers = {
            name: value
            for name, value in limited.headers.items()
            if name not in ("content-length", "content-type")
        }
        return error_response(429, f"Rate limit exceeded: {exc.detail}", headers=headers)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.opt(exception=exc).error(f"Unhandled error on {request.method} {request.url.path}")
        return error_response(500, "An unexpected error occurred")
