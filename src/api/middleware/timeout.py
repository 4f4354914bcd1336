"""
Request timeout middleware.

Bounds every request by ``REQUEST_TIMEOUT_SECONDS`` and answers 504 with
the same ``{detail: {error, message}, error_type}`` envelope governance
errors use. Health checks and manual scoring runs are exempt: the latter
are bounded by ``SCORING_TIMEOUT_SECONDS`` inside the pipeline.
"""

import asyncio
from collections.abc import Iterable

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = structlog.get_logger(__name__)

DEFAULT_EXEMPT_PREFIXES = ("/health", "/admin/scoring/")


class TimeoutMiddleware(BaseHTTPMiddleware):
    """Cancel requests that run past ``timeout_seconds`` and answer 504."""

    def __init__(
        self,
        app,
        timeout_seconds: float = 30.0,
        exempt_prefixes: Iterable[str] = DEFAULT_EXEMPT_PREFIXES,
    ):
        super().__init__(app)
        self.timeout_seconds = timeout_seconds
        self.exempt_prefixes = tuple(exempt_prefixes)

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith(self.exempt_prefixes):
            return await call_next(request)

        try:
            async with asyncio.timeout(self.timeout_seconds):
                return await call_next(request)
        except TimeoutError:
            logger.warning(
                "Request timed out",
                path=request.url.path,
                method=request.method,
                timeout_seconds=self.timeout_seconds,
            )
            return JSONResponse(
                status_code=504,
                content={
                    "detail": {
                        "error": "RequestTimeout",
                        "message": f"Request timed out after {self.timeout_seconds}s",
                    },
                    "error_type": "RequestTimeout",
                },
            )
