# shared/middleware.py
"""
Centralized middleware for the story service.
Provides request size limits, request logging, security headers and standard error bodies.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from fastapi import HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from shared.llm_client import LLMError

logger = logging.getLogger(__name__)


def error_response(
    status_code: int, message: str, details: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    """Create standardized error response"""
    content = {
        "error": True,
        "message": message,
        "status_code": status_code,
        "timestamp": time.time(),
    }
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


class RequestValidationMiddleware(BaseHTTPMiddleware):
    """
    Request validation middleware with:
    - Request size limits (default plus per-endpoint overrides)
    - Request/response logging with timing
    """

    def __init__(
        self,
        app: ASGIApp,
        max_request_size: int = 10 * 1024 * 1024,
        endpoint_limits: Optional[Dict[str, int]] = None,
        log_requests: bool = True,
    ):
        super().__init__(app)
        self.max_request_size = max_request_size
        self.endpoint_limits = endpoint_limits or {}
        self.log_requests = log_requests

    def _limit_for(self, path: str) -> int:
        for endpoint_pattern, endpoint_limit in self.endpoint_limits.items():
            if path.startswith(endpoint_pattern):
                return endpoint_limit
        return self.max_request_size

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        path = request.url.path

        if path.startswith(("/health", "/docs", "/redoc", "/openapi.json")):
            return await call_next(request)

        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit():
            limit = self._limit_for(path)
            if int(content_length) > limit:
                return error_response(
                    413,
                    f"Request too large. Maximum size: {limit} bytes",
                    {"max_size": limit, "received_size": int(content_length), "endpoint": path},
                )

        if self.log_requests:
            logger.info(
                f"{request.method} {path} - Client: {request.client.host if request.client else 'unknown'}"
            )

        response = await call_next(request)

        if self.log_requests:
            process_time = time.time() - start_time
            logger.info(f"{request.method} {path} - {response.status_code} - {process_time:.3f}s")

        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""

    def __init__(self, app: ASGIApp, service_name: str = "story"):
        super().__init__(app)
        self.service_name = service_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["X-Service-Name"] = self.service_name

        if "json" in response.headers.get("content-type", ""):
            response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"

        return response


def create_standard_error_handlers() -> dict[type, Callable]:
    """Exception class -> handler mapping shared by all services"""

    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return error_response(422, "Validation error", {"errors": exc.errors()})

    async def http_exception_handler(request: Request, exc: HTTPException):
        return error_response(exc.status_code, str(exc.detail))

    async def not_found_handler(request: Request, exc: LookupError):
        return error_response(404, str(exc) or "Not found")

    async def upstream_error_handler(request: Request, exc: LLMError):
        logger.error(f"❌ UPSTREAM: {type(exc).__name__} on {request.url.path}: {exc}")
        return error_response(
            502,
            "Upstream model provider failed",
            {"provider": exc.provider, "provider_status": exc.status_code},
        )

    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return error_response(500, "Internal server error")

    return {
        RequestValidationError: validation_exception_handler,
        HTTPException: http_exception_handler,
        LookupError: not_found_handler,
        LLMError: upstream_error_handler,
        Exception: general_exception_handler,
    }


def add_middleware_to_app(
    app,
    service_name: str,
    max_request_size: int = 10 * 1024 * 1024,
    endpoint_limits: Optional[Dict[str, int]] = None,
    log_requests: bool = True,
):
    """
    Add all standard middleware and exception handlers to a FastAPI app

    Args:
        app: FastAPI application instance
        service_name: Name of the service (for headers and logging)
        max_request_size: Default maximum request size in bytes
        endpoint_limits: Dict of endpoint path prefixes to size limits
        log_requests: Whether to log requests
    """
    # Last added is executed first
    app.add_middleware(SecurityHeadersMiddleware, service_name=service_name)
    app.add_middleware(
        RequestValidationMiddleware,
        max_request_size=max_request_size,
        endpoint_limits=endpoint_limits,
        log_requests=log_requests,
    )

    for exc_class, handler in create_standard_error_handlers().items():
        app.add_exception_handler(exc_class, handler)
