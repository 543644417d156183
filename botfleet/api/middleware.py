import asyncio

from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import Request, status
from fastapi.responses import JSONResponse

from ..config.settings import settings


class TimeoutMiddleware(BaseHTTPMiddleware):
    """Caps request handling time. Streaming log responses are exempt."""

    def __init__(self, app, timeout_seconds: int = settings.MAX_REQUEST_TIME):
        super().__init__(app)
        self.timeout_seconds = timeout_seconds

    async def dispatch(self, request: Request, call_next):
        if request.query_params.get("follow") == "true":
            return await call_next(request)
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            return JSONResponse(
                status_code=status.HTTP_504_GATEWAY_TIMEOUT,
                content={"detail": f"Request timeout after {self.timeout_seconds} seconds"}
            )


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Strategy code and config layers travel in request bodies; keep them bounded."""

    def __init__(self, app, max_size_mb: int = settings.MAX_REQUEST_SIZE_MB):
        super().__init__(app)
        self.max_size_bytes = max_size_mb * 1024 * 1024

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")

        if content_length and content_length.isdigit() and int(content_length) > self.max_size_bytes:
            return JSONResponse(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                content={"detail": f"Request too large. Max size: {self.max_size_bytes / 1024 / 1024}MB"}
            )

        return await call_next(request)
