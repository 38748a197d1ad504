"""
Webhook callback endpoint.

- POST /notification?channelID=: service-hook callback from Azure DevOps
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from devops_relay.core.auth import verify_webhook_secret
from devops_relay.core.container import Services, get_services

router = APIRouter()


@router.post("/notification", dependencies=[Depends(verify_webhook_secret)])
async def receive_notification(
    request: Request,
    channel_id: Optional[str] = Query(default=None, alias="channelID"),
    services: Services = Depends(get_services),
):
    posted = await services.ingestor.ingest(channel_id, await request.body())
    return {"posted": posted}
