"""
Project link endpoints.

- POST /link: link an Azure DevOps project to the caller
- GET /project/link: list the caller's linked projects
- POST /project/unlink: unlink a project, removing its subscriptions first
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from devops_relay.chat import send_direct_message
from devops_relay.core.auth import require_user
from devops_relay.core.container import Services, get_services
from devops_relay.schemas import LinkRequest, UnlinkRequest

router = APIRouter()


@router.post("/link")
async def link_project(
    body: LinkRequest,
    user_id: str = Depends(require_user),
    services: Services = Depends(get_services),
):
    """Link a project after confirming it exists in Azure DevOps."""
    project = await services.reconciler.link(user_id, body.organization, body.project)

    await send_direct_message(
        services.chat,
        services.settings.bot_user_id,
        user_id,
        f"Linked Azure DevOps project **{project.project_name}** "
        f"from organization **{project.organization_name}**.",
    )
    return project.dump()


@router.get("/project/link")
async def list_linked_projects(
    user_id: str = Depends(require_user),
    services: Services = Depends(get_services),
):
    projects = await services.reconciler.list_projects(user_id)
    return [p.dump() for p in projects]


@router.post("/project/unlink")
async def unlink_project(
    body: UnlinkRequest,
    user_id: str = Depends(require_user),
    services: Services = Depends(get_services),
):
    project, removed = await services.reconciler.unlink(
        user_id, body.organization_name, body.project_name, body.project_id
    )
    return {
        "unlinked": project.dump(),
        "removedSubscriptions": [s.dump() for s in removed],
    }
