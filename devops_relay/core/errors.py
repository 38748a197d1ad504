"""
Error taxonomy and the JSON error envelope.

Every error carries a machine-readable code and an HTTP status. Handlers
registered in `install_error_handlers` render them as

    {"error": {"code": ..., "message": ..., "status": ..., **details}}
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

log = structlog.get_logger()


class RelayError(Exception):
    """Base class for all errors surfaced to API callers."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "status": self.status_code,
            **self.details,
        }


class ValidationError(RelayError):
    code = "VALIDATION_FAILED"
    status_code = 400


class Unauthorized(RelayError):
    code = "UNAUTHORIZED"
    status_code = 401


# --- Conflicts ---


class Conflict(RelayError):
    code = "CONFLICT"
    status_code = 400


class AlreadyLinked(Conflict):
    code = "ALREADY_LINKED"


class AlreadySubscribed(Conflict):
    code = "ALREADY_SUBSCRIBED"


# --- Not found ---


class NotFound(RelayError):
    code = "NOT_FOUND"
    status_code = 400


class NotLinked(NotFound):
    code = "NOT_LINKED"


class NotSubscribed(NotFound):
    code = "NOT_SUBSCRIBED"


class ProjectNotFound(NotFound):
    code = "PROJECT_NOT_FOUND"


# --- Infrastructure ---


class UpstreamError(RelayError):
    """The issue tracker failed or could not be reached.

    `upstream_status` is None for timeouts and network errors, in which
    case the remote state is unknown.
    """

    code = "UPSTREAM_ERROR"

    def __init__(self, message: str, upstream_status: int | None = None, **details: Any):
        super().__init__(message, upstreamStatus=upstream_status, **details)
        self.upstream_status = upstream_status

    @property
    def status_code(self) -> int:  # type: ignore[override]
        status = self.upstream_status
        if status is not None and 400 <= status < 500 and status not in (401, 403, 429):
            return 400
        return 500


class StorageError(RelayError):
    code = "STORAGE_ERROR"
    status_code = 500


class ChatPlatformError(RelayError):
    code = "CHAT_PLATFORM_ERROR"
    status_code = 500

    def __init__(self, message: str, platform_status: int | None = None, **details: Any):
        super().__init__(message, platformStatus=platform_status, **details)
        self.platform_status = platform_status


class PartialCascadeFailure(RelayError):
    """Some subscriptions of an unlinked project could not be removed.

    Removed subscriptions stay removed; retrying the unlink is safe.
    """

    code = "PARTIAL_CASCADE_FAILURE"
    status_code = 500

    def __init__(self, message: str, removed: list[dict], remaining: list[dict]):
        super().__init__(message, removed=removed, remaining=remaining)
        self.removed = removed
        self.remaining = remaining


class OrphanedRemoteSubscription(RelayError):
    """A remote subscription exists with no local record and could not be deleted."""

    code = "ORPHANED_REMOTE_SUBSCRIPTION"
    status_code = 500

    def __init__(self, message: str, remote_subscription_id: str, subscription: dict):
        super().__init__(
            message,
            remoteSubscriptionID=remote_subscription_id,
            subscription=subscription,
        )
        self.remote_subscription_id = remote_subscription_id


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def error_response(exc: RelayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


async def _relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    level = log.error if exc.status_code >= 500 else log.warning
    level(
        "request.failed",
        path=request.url.path,
        code=exc.code,
        status=exc.status_code,
        error=exc.message,
    )
    return error_response(exc)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg", "")}
        for e in exc.errors()
    ]
    log.warning("request.invalid", path=request.url.path, errors=errors)
    return error_response(ValidationError("Invalid request", errors=errors))


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RelayError, _relay_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
