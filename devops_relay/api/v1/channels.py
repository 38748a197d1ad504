"""
Channel lookup for the subscription form.

- GET /channels/{team_id}: the caller's open and private channels in a team
"""

from __future__ import annotations

import re

from fastapi import APIRouter, Depends

from devops_relay.chat import CHANNEL_OPEN, CHANNEL_PRIVATE
from devops_relay.core.auth import require_user
from devops_relay.core.container import Services, get_services
from devops_relay.core.errors import ValidationError

router = APIRouter()

# Chat platform ids are 26 lowercase base32 characters.
ID_PATTERN = re.compile(r"^[a-z0-9]{26}$")


@router.get("/channels/{team_id}")
async def list_user_channels_for_team(
    team_id: str,
    user_id: str = Depends(require_user),
    services: Services = Depends(get_services),
):
    if not ID_PATTERN.match(team_id):
        raise ValidationError(f"Invalid team id: {team_id}")

    channels = await services.chat.get_channels_for_team_for_user(team_id, user_id)
    return [
        c.model_dump(by_alias=True)
        for c in channels
        if c.type in (CHANNEL_OPEN, CHANNEL_PRIVATE)
    ]
