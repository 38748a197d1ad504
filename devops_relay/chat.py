"""
Chat platform client (Mattermost REST API v4).

Posts messages to channels, opens bot direct-message channels and lists
a user's channels in a team. Failures are raised as ChatPlatformError.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

import httpx
import structlog

from devops_relay.core.errors import ChatPlatformError
from devops_relay.schemas import ChannelInfo

log = structlog.get_logger()

CHANNEL_OPEN = "O"
CHANNEL_PRIVATE = "P"


class ChatPlatform(Protocol):
    async def create_post(self, channel_id: str, message: str, props: Optional[dict[str, Any]] = None) -> str: ...

    async def get_channel(self, channel_id: str) -> Optional[ChannelInfo]: ...

    async def get_direct_channel(self, user_id: str, other_user_id: str) -> str: ...

    async def get_channels_for_team_for_user(self, team_id: str, user_id: str) -> list[ChannelInfo]: ...

    async def close(self) -> None: ...


class ChatClient:
    """Mattermost implementation of ChatPlatform, authenticated as the bot."""

    def __init__(
        self,
        base_url: str,
        token: str,
        bot_user_id: str = "",
        request_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self.bot_user_id = bot_user_id
        self._client = httpx.AsyncClient(
            base_url=f"{self._base_url}/api/v4",
            headers={"Authorization": f"Bearer {token}"},
            timeout=httpx.Timeout(request_timeout),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, *, operation: str, json: Any = None) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            log.error("chat.unreachable", operation=operation, error=str(exc))
            raise ChatPlatformError(f"{operation} failed: {exc}") from exc
        return resp

    @staticmethod
    def _raise_for_status(resp: httpx.Response, operation: str) -> None:
        if resp.is_success:
            return
        log.error("chat.request_failed", operation=operation, status=resp.status_code)
        raise ChatPlatformError(
            f"{operation} failed with status {resp.status_code}",
            platform_status=resp.status_code,
        )

    @staticmethod
    def _decode(resp: httpx.Response, operation: str, expected: type) -> Any:
        """Decode a successful response body, checking its top-level type."""
        try:
            body = resp.json()
        except ValueError as exc:
            log.error("chat.bad_response", operation=operation, status=resp.status_code)
            raise ChatPlatformError(
                f"{operation} returned a body that is not JSON", platform_status=resp.status_code
            ) from exc
        if not isinstance(body, expected):
            log.error("chat.bad_response", operation=operation, status=resp.status_code)
            raise ChatPlatformError(
                f"{operation} returned an unexpected body", platform_status=resp.status_code
            )
        return body

    async def create_post(self, channel_id: str, message: str, props: Optional[dict[str, Any]] = None) -> str:
        """Create a post. Returns its id, or "" when the platform omitted it."""
        body: dict[str, Any] = {"channel_id": channel_id, "message": message}
        if props:
            body["props"] = props
        resp = await self._request("POST", "/posts", operation="create_post", json=body)
        self._raise_for_status(resp, "create_post")
        # The post exists once the status is 2xx; the body is informational.
        try:
            created = resp.json()
        except ValueError:
            created = None
        if not isinstance(created, dict):
            log.warning("chat.post_without_body", channel_id=channel_id, status=resp.status_code)
            return ""
        return str(created.get("id") or "")

    async def get_channel(self, channel_id: str) -> Optional[ChannelInfo]:
        """Return the channel, or None when it does not exist."""
        resp = await self._request("GET", f"/channels/{channel_id}", operation="get_channel")
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp, "get_channel")
        return _channel_info(self._decode(resp, "get_channel", dict))

    async def get_direct_channel(self, user_id: str, other_user_id: str) -> str:
        resp = await self._request(
            "POST", "/channels/direct", operation="get_direct_channel", json=[user_id, other_user_id]
        )
        self._raise_for_status(resp, "get_direct_channel")
        channel_id = self._decode(resp, "get_direct_channel", dict).get("id")
        if not channel_id or not isinstance(channel_id, str):
            raise ChatPlatformError("get_direct_channel returned no channel id", platform_status=resp.status_code)
        return channel_id

    async def get_channels_for_team_for_user(self, team_id: str, user_id: str) -> list[ChannelInfo]:
        resp = await self._request(
            "GET",
            f"/users/{user_id}/teams/{team_id}/channels",
            operation="get_channels_for_team_for_user",
        )
        self._raise_for_status(resp, "get_channels_for_team_for_user")
        if not resp.content:
            return []
        channels = self._decode(resp, "get_channels_for_team_for_user", list)
        return [_channel_info(c) for c in channels if isinstance(c, dict)]


def _channel_info(raw: dict[str, Any]) -> ChannelInfo:
    return ChannelInfo(
        id=str(raw.get("id") or ""),
        display_name=str(raw.get("display_name") or raw.get("name") or ""),
        type=str(raw.get("type") or ""),
    )


async def send_direct_message(chat: ChatPlatform, bot_user_id: str, user_id: str, message: str) -> bool:
    """Best-effort DM from the bot. Failures are logged, never raised."""
    if not bot_user_id:
        return False
    try:
        channel_id = await chat.get_direct_channel(user_id, bot_user_id)
        await chat.create_post(channel_id, message)
    except ChatPlatformError as exc:
        log.warning("chat.direct_message_failed", user_id=user_id, error=exc.message)
        return False
    return True
