"""
Work item endpoints.

- POST /tasks: create a work item in one of the caller's linked projects
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from devops_relay.chat import send_direct_message
from devops_relay.core.auth import require_user
from devops_relay.core.container import Services, get_services
from devops_relay.schemas import TaskRequest

router = APIRouter()


@router.post("/tasks")
async def create_task(
    body: TaskRequest,
    user_id: str = Depends(require_user),
    services: Services = Depends(get_services),
):
    await services.reconciler.require_linked(user_id, body.organization, body.project)

    task = await services.gateway.create_task(
        body.organization,
        body.project,
        body.type,
        body.fields.title,
        body.fields.description,
    )
    services.metrics.inc("tasks_created_total")

    await send_direct_message(
        services.chat,
        services.settings.bot_user_id,
        user_id,
        f"Created {body.type} [#{task.id}: {task.title}]({task.url}) in **{body.project}**.",
    )
    return task.model_dump()
