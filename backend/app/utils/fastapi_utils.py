from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.exception_handlers import http_exception_handler as _http_exception_handler
from fastapi.exception_handlers import request_validation_exception_handler as _request_validation_exception_handler
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.responses import JSONResponse

from common.core.app_error import AppException, Errors
from common.utils.msgspec import decode_json
from common.utils.utils import get_logger

logger = get_logger()

# Webhook payloads hold customer payment data
_UNLOGGED_BODY_PATHS = ("/api/v1/billing/webhook",)


def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:  # pyright: ignore
        logger.warning("Validation error", path=request.url.path, request=await _get_request_json(request), errors=exc.errors())
        return await _request_validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> Response:  # pyright: ignore
        # 4xx errors are client errors, not server errors
        if exc.status_code >= 500:
            logger.exception("HTTP error", request=await _get_request_json(request), exc_info=exc)
        else:
            logger.warning("HTTP client error", status_code=exc.status_code, detail=exc.detail, path=request.url.path)
        return await _http_exception_handler(request, exc)

    @app.exception_handler(AppException)
    async def app_error_exception_handler(request: Request, exc: AppException) -> JSONResponse:  # pyright: ignore
        status_code = exc.http_status or 500
        if status_code >= 500:
            logger.exception("App error", error=exc.details, retryable=exc.retryable, request=await _get_request_json(request), exc_info=exc)
        else:
            logger.warning("App client error", status_code=status_code, error=exc.details, path=request.url.path)
        return JSONResponse(status_code=status_code, content=exc.details.to_dict(mode="json"))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # pyright: ignore
        logger.exception("Unhandled exception", request=await _get_request_json(request), exc_info=exc)
        return JSONResponse(status_code=500, content=Errors.Generic.INTERNAL_ERROR.create(cause=exc).details.to_dict(mode="json"))


async def _get_request_json(request: Request) -> dict[str, Any] | None:
    if request.url.path in _UNLOGGED_BODY_PATHS:
        return None
    try:
        body = await request.body()
        return decode_json(body) if body else None
    except Exception:
        return None
