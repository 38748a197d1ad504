"""
Recovery middleware: turn unhandled exceptions into a logged 500 envelope.
"""

from __future__ import annotations

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

log = structlog.get_logger()


class RecoveryMiddleware(BaseHTTPMiddleware):
    """Catch anything the route handlers and error handlers let through."""

    async def dispatch(self, request: Request, call_next) -> Response:
        try:
            return await call_next(request)
        except Exception:
            log.exception("request.recovered", method=request.method, url=str(request.url))
            return JSONResponse(
                status_code=500,
                content={
                    "error": {
                        "code": "INTERNAL_ERROR",
                        "message": "An internal error occurred.",
                        "status": 500,
                    }
                },
            )
