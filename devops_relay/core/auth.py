"""
Caller identity.

Requests reach the relay through the chat platform, which authenticates the
user and forwards their id in a trusted header (`Mattermost-User-ID` by
default). Webhook callbacks carry no user; they may be checked against a
shared secret instead.
"""

from __future__ import annotations

import hmac

from fastapi import Depends, Request

from devops_relay.core.container import Services, get_services
from devops_relay.core.errors import Unauthorized
from devops_relay.gateway import WEBHOOK_SECRET_HEADER


def require_user(request: Request, services: Services = Depends(get_services)) -> str:
    """FastAPI dependency returning the authenticated chat user id."""
    user_id = request.headers.get(services.settings.user_id_header, "").strip()
    if not user_id:
        raise Unauthorized("Not authorized")
    return user_id


def verify_webhook_secret(request: Request, services: Services = Depends(get_services)) -> None:
    """Reject callbacks without the configured shared secret. No-op when unset."""
    expected = services.settings.webhook_secret
    if not expected:
        return
    supplied = request.headers.get(WEBHOOK_SECRET_HEADER, "")
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise Unauthorized("Invalid webhook secret")
