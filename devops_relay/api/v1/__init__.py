"""
API v1 Router

User-facing routes require the caller identity header; /notification is
called by Azure DevOps and may require the webhook secret instead.
"""

from fastapi import APIRouter

from devops_relay import __version__

from . import channels, notifications, projects, subscriptions, tasks

router = APIRouter()

router.include_router(projects.router, tags=["Projects"])
router.include_router(subscriptions.router, tags=["Subscriptions"])
router.include_router(notifications.router, tags=["Notifications"])
router.include_router(tasks.router, tags=["Tasks"])
router.include_router(channels.router, tags=["Channels"])


@router.get("/", tags=["API"])
async def api_root():
    """API root: version and available endpoints."""
    return {
        "api": "v1",
        "version": __version__,
        "endpoints": [
            "/link",
            "/project/link",
            "/project/unlink",
            "/subscriptions",
            "/notification",
            "/tasks",
            "/channels/{team_id}",
        ],
    }
