"""
Shared fixtures: in-memory storage and fake Azure DevOps / chat backends.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import pytest
from httpx import ASGITransport, AsyncClient

from devops_relay.core.config import Settings
from devops_relay.core.errors import ChatPlatformError, ProjectNotFound, StorageError, UpstreamError
from devops_relay.core.kvstore import MemoryKVStore
from devops_relay.core.metrics import MetricsCollector
from devops_relay.main import create_app
from devops_relay.schemas import ChannelInfo, RemoteProject, RemoteTask
from devops_relay.services.reconciler import Reconciler
from devops_relay.store import LinkedProjectStore, SubscriptionStore

USER = "user-1"
BOT = "bot-user"
CHANNEL = "town-square"


class FakeGateway:
    """Records remote subscriptions in a dict keyed by remote id."""

    def __init__(self) -> None:
        self.projects = {("acme", "Web"): "proj-web", ("acme", "Api"): "proj-api"}
        self.remote: dict[str, dict[str, str]] = {}
        self.create_delay = 0.0
        self.fail_create = False
        self.fail_delete: set[str] = set()
        self.create_calls = 0
        self.tasks: list[dict[str, Any]] = []
        self._next_id = 0

    async def describe_project(self, organization: str, project: str) -> RemoteProject:
        project_id = self.projects.get((organization, project))
        if project_id is None:
            raise ProjectNotFound(f"Project {organization}/{project} does not exist")
        return RemoteProject(id=project_id, name=project)

    async def create_subscription(
        self,
        organization: str,
        project: str,
        event_type: str,
        channel_id: str,
        *,
        project_id: Optional[str] = None,
    ) -> str:
        self.create_calls += 1
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.fail_create:
            raise UpstreamError("create_subscription failed: boom", upstream_status=500)
        self._next_id += 1
        remote_id = f"hook-{self._next_id}"
        self.remote[remote_id] = {
            "organization": organization,
            "project": project,
            "eventType": event_type,
            "channelID": channel_id,
            "projectID": project_id or "",
        }
        return remote_id

    async def delete_subscription(self, organization: str, project: str, remote_subscription_id: str) -> None:
        if remote_subscription_id in self.fail_delete:
            raise UpstreamError("delete_subscription failed: boom", upstream_status=503)
        self.remote.pop(remote_subscription_id, None)

    async def create_task(
        self,
        organization: str,
        project: str,
        task_type: str,
        title: str,
        description: Optional[str] = None,
    ) -> RemoteTask:
        self.tasks.append(
            {"organization": organization, "project": project, "type": task_type, "title": title}
        )
        task_id = len(self.tasks)
        return RemoteTask(id=task_id, url=f"https://dev.azure.com/{organization}/_workitems/{task_id}", title=title)

    async def close(self) -> None:
        pass


class FakeChat:
    def __init__(self) -> None:
        self.posts: list[dict[str, Any]] = []
        self.channels = {
            CHANNEL: ChannelInfo(id=CHANNEL, display_name="Town Square", type="O"),
        }
        self.team_channels: list[ChannelInfo] = []
        self.fail_posts = False

    async def create_post(self, channel_id: str, message: str, props: Optional[dict[str, Any]] = None) -> str:
        if self.fail_posts:
            raise ChatPlatformError("create_post failed with status 503", platform_status=503)
        self.posts.append({"channel_id": channel_id, "message": message, "props": props or {}})
        return f"post-{len(self.posts)}"

    async def get_channel(self, channel_id: str) -> Optional[ChannelInfo]:
        return self.channels.get(channel_id)

    async def get_direct_channel(self, user_id: str, other_user_id: str) -> str:
        return f"dm-{user_id}"

    async def get_channels_for_team_for_user(self, team_id: str, user_id: str) -> list[ChannelInfo]:
        return self.team_channels

    async def close(self) -> None:
        pass


class FlakyKVStore(MemoryKVStore):
    """MemoryKVStore whose writes fail for keys starting with `fail_writes_for`."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_writes_for: Optional[str] = None

    async def set(self, key: str, value: bytes) -> None:
        if self.fail_writes_for and key.startswith(self.fail_writes_for):
            raise StorageError(f"Failed to write {key}: disk full")
        await super().set(key, value)


@pytest.fixture
def settings():
    return Settings(
        kv_url="memory://",
        bot_user_id=BOT,
        public_url="https://relay.example.com",
        log_level="warning",
        log_format="text",
    )


@pytest.fixture
def kv():
    return FlakyKVStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def reconciler(kv, gateway):
    return Reconciler(
        projects=LinkedProjectStore(kv),
        subscriptions=SubscriptionStore(kv),
        gateway=gateway,
        locks=kv,
        metrics=MetricsCollector(),
    )


@pytest.fixture
def app(settings, kv, gateway, chat):
    return create_app(settings, kv=kv, gateway=gateway, chat=chat)


@pytest.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"Mattermost-User-ID": USER},
    ) as ac:
        yield ac
