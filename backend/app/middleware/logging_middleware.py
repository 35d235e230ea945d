"""Middleware for request context and HTTP request logging."""

import time
from collections.abc import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from common.core.request_context import RequestContext
from common.utils.utils import get_logger

logger = get_logger()


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a fresh RequestContext (request id, endpoint) to every request."""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        with RequestContext.context(trigger="http") as request_context:
            request_context.endpoint = f"{request.method} {request.url.path}"
            response = await call_next(request)
            response.headers["X-Request-Id"] = request_context.request_id
            return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs request start, completion status and timing.
    Webhook bodies are never logged: they carry customer payment data.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        client_host = request.client.host if request.client else "unknown"
        request_path = request.url.path
        request_method = request.method

        log_data = {
            "type": "request_started",
            "client_ip": client_host,
            "method": request_method,
            "path": request_path,
            "query_params": str(request.query_params),
        }

        # GET requests are mostly balance polling
        if request_method == "GET":
            logger.debug(f"Request started: {request_method} {request_path}", **log_data)
        else:
            logger.info(f"Request started: {request_method} {request_path}", **log_data)

        start_time = time.perf_counter()
        try:
            response: Response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request_method} {request_path}",
                type="request_failed",
                method=request_method,
                path=request_path,
                error=str(e),
                process_time_ms=int((time.perf_counter() - start_time) * 1000),
                exc_info=True,
            )
            raise

        response_log_data = {
            "type": "request_completed",
            "method": request_method,
            "path": request_path,
            "status_code": response.status_code,
            "process_time_ms": int((time.perf_counter() - start_time) * 1000),
        }
        if response.status_code >= 500:
            logger.error(f"Request completed: {request_method} {request_path} - {response.status_code}", **response_log_data)
        elif request_method == "GET" and 200 <= response.status_code < 300:
            logger.debug(f"Request completed: {request_method} {request_path} - {response.status_code}", **response_log_data)
        else:
            logger.info(f"Request completed: {request_method} {request_path} - {response.status_code}", **response_log_data)
        return response
