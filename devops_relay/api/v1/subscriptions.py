"""
Subscription endpoints.

- POST /subscriptions: register a service hook and record it
- GET /subscriptions?project=: list the caller's subscriptions
- DELETE /subscriptions: remove a subscription remotely, then locally
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Response

from devops_relay.core.auth import require_user
from devops_relay.core.container import Services, get_services
from devops_relay.core.errors import ValidationError
from devops_relay.schemas import SubscriptionRequest

router = APIRouter()


@router.post("/subscriptions")
async def create_subscription(
    body: SubscriptionRequest,
    user_id: str = Depends(require_user),
    services: Services = Depends(get_services),
):
    if body.event_type not in services.settings.event_types:
        raise ValidationError(
            f"Unsupported event type: {body.event_type}",
            supported=services.settings.event_types,
        )
    if await services.chat.get_channel(body.channel_id) is None:
        raise ValidationError(f"Channel {body.channel_id} does not exist", channelID=body.channel_id)

    subscription = await services.reconciler.subscribe(
        user_id, body.organization, body.project, body.event_type, body.channel_id
    )
    return subscription.dump()


@router.get("/subscriptions")
async def list_subscriptions(
    project: Optional[str] = None,
    user_id: str = Depends(require_user),
    services: Services = Depends(get_services),
):
    subscriptions = await services.reconciler.list_subscriptions(user_id, project_name=project)
    return [s.dump() for s in subscriptions]


@router.delete("/subscriptions", status_code=204)
async def delete_subscription(
    body: SubscriptionRequest,
    user_id: str = Depends(require_user),
    services: Services = Depends(get_services),
):
    await services.reconciler.unsubscribe(
        user_id, body.organization, body.project, body.event_type, body.channel_id
    )
    return Response(status_code=204)
