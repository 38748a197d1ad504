"""
Webhook ingestion: service-hook callback → chat post.

The destination channel arrives as a query parameter that was baked into
the callback URL when the subscription was registered, so no local lookup
is needed. Posting is best-effort: once the payload parsed, a chat failure
is logged and the callback is still acknowledged, so the sender does not
retry it.
"""

from __future__ import annotations

from typing import Any, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from devops_relay.chat import ChatPlatform
from devops_relay.core.errors import ChatPlatformError, ValidationError
from devops_relay.core.metrics import MetricsCollector
from devops_relay.schemas import WebhookEvent

log = structlog.get_logger()


def parse_event(raw: bytes) -> WebhookEvent:
    """Parse a callback body; anything but a JSON object is rejected."""
    try:
        return WebhookEvent.model_validate_json(raw or b"")
    except PydanticValidationError as exc:
        raise ValidationError("Webhook payload is not a valid JSON object") from exc


def summarize(event: WebhookEvent) -> str:
    candidates = (
        _rich_text(event.detailed_message, "markdown"),
        _rich_text(event.message, "markdown"),
        _rich_text(event.message, "text"),
    )
    for text in candidates:
        if text and text.strip():
            return text
    event_type = _scalar(event.event_type)
    if event_type:
        return f"Received a `{event_type}` event from Azure DevOps."
    return "Received an event notification from Azure DevOps."


def _rich_text(value: Any, key: str) -> Optional[str]:
    """`value[key]` when `value` is an object holding a string there."""
    if not isinstance(value, dict):
        return None
    text = value.get(key)
    return text if isinstance(text, str) else None


def _scalar(value: Any) -> Optional[str]:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return None
    return str(value)


class NotificationIngestor:
    def __init__(self, chat: ChatPlatform, metrics: MetricsCollector | None = None):
        self._chat = chat
        self._metrics = metrics or MetricsCollector()

    async def ingest(self, channel_id: Optional[str], raw: bytes) -> bool:
        """Post the event to the channel. Returns whether a post was created."""
        if not channel_id or not channel_id.strip():
            raise ValidationError("channelID query parameter is required")

        event = parse_event(raw)
        self._metrics.inc("notifications_received_total")
        message = summarize(event)

        try:
            await self._chat.create_post(channel_id, message, props=_post_props(event))
        except ChatPlatformError as exc:
            self._metrics.inc("notification_post_errors_total")
            log.error(
                "notifications.post_failed",
                channel_id=channel_id,
                event_type=_scalar(event.event_type),
                error=exc.message,
            )
            return False

        self._metrics.inc("notifications_posted_total")
        log.info("notifications.posted", channel_id=channel_id, event_type=_scalar(event.event_type))
        return True


def _post_props(event: WebhookEvent) -> dict[str, str]:
    props = {}
    event_type, event_id = _scalar(event.event_type), _scalar(event.id)
    if event_type:
        props["devops_event_type"] = event_type
    if event_id:
        props["devops_event_id"] = event_id
    return props
