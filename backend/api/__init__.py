import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from errors import (
    AuthenticationError,
    AuthorizationError,
    ChatApiError,
    KeySetUnavailableError,
    RateLimitError,
    SessionMismatchError,
    UpstreamError,
)
from logging_utils import get_logger

from .chat import router as chat_router

logger = get_logger("api")

_AUTH_ERRORS = (
    AuthenticationError,
    AuthorizationError,
    SessionMismatchError,
    KeySetUnavailableError,
    RateLimitError,
)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def error_body(code: str, message: str, request_id: str) -> dict:
    return {
        "ok": False,
        "error": {"code": code, "message": message, "request_id": request_id},
    }


def _event_for(exc: ChatApiError) -> str:
    if isinstance(exc, _AUTH_ERRORS):
        return "request.auth_error"
    if isinstance(exc, UpstreamError):
        return "request.upstream_error"
    if exc.status >= 500:
        return "request.config_error"
    return "request.validation_error"


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ChatApiError)
    async def _handle_chat_api_error(request: Request, exc: ChatApiError):
        request_id = _request_id(request)
        logger.log(
            logging.ERROR if exc.status >= 500 else logging.WARNING,
            _event_for(exc),
            request_id=request_id,
            path=request.url.path,
            code=exc.code,
            status=exc.status,
            reason=exc.message,
            **exc.meta,
        )
        return JSONResponse(
            status_code=exc.status,
            content=error_body(exc.code, exc.message, request_id),
        )

    @app.exception_handler(RequestValidationError)
    async def _handle_request_validation(request: Request, exc: RequestValidationError):
        request_id = _request_id(request)
        logger.warning(
            "request.validation_error",
            request_id=request_id,
            path=request.url.path,
            status=400,
        )
        return JSONResponse(
            status_code=400,
            content=error_body("BAD_REQUEST", "Malformed request.", request_id),
        )

    @app.exception_handler(StarletteHTTPException)
    async def _handle_http_exception(request: Request, exc: StarletteHTTPException):
        request_id = _request_id(request)
        if exc.status_code == 404:
            code, message = "NOT_FOUND", "Route not found."
        elif exc.status_code == 405:
            code, message = "METHOD_NOT_ALLOWED", "Method not allowed."
        else:
            code, message = "HTTP_ERROR", str(exc.detail)
        logger.warning(
            "request.not_found" if exc.status_code == 404 else "request.http_error",
            request_id=request_id,
            path=request.url.path,
            status=exc.status_code,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(code, message, request_id),
        )

    @app.exception_handler(Exception)
    async def _handle_unexpected(request: Request, exc: Exception):
        request_id = _request_id(request)
        logger.error(
            "request.internal_error",
            request_id=request_id,
            path=request.url.path,
            status=500,
            error_type=type(exc).__name__,
        )
        return JSONResponse(
            status_code=500,
            content=error_body("INTERNAL", "Internal server error.", request_id),
        )


__all__ = ["chat_router", "error_body", "register_error_handlers"]
