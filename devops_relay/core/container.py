"""
Service container: the collaborators every request handler needs.

Built once per application in `create_app` and stored on `app.state`;
tests build it with fake gateway/chat implementations.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from devops_relay.chat import ChatClient, ChatPlatform
from devops_relay.core.config import Settings
from devops_relay.core.kvstore import KVStore, create_kv_store
from devops_relay.core.metrics import MetricsCollector
from devops_relay.gateway import AzureDevOpsGateway, RemoteGateway
from devops_relay.services.notifications import NotificationIngestor
from devops_relay.services.reconciler import Reconciler
from devops_relay.store import LinkedProjectStore, SubscriptionStore


@dataclass
class Services:
    settings: Settings
    kv: KVStore
    gateway: RemoteGateway
    chat: ChatPlatform
    metrics: MetricsCollector
    reconciler: Reconciler
    ingestor: NotificationIngestor

    async def close(self) -> None:
        await self.gateway.close()
        await self.chat.close()
        await self.kv.close()


def build_services(
    settings: Settings,
    *,
    kv: KVStore | None = None,
    gateway: RemoteGateway | None = None,
    chat: ChatPlatform | None = None,
) -> Services:
    kv = kv or create_kv_store(settings.kv_url, lock_timeout=settings.lock_timeout_seconds)
    gateway = gateway or AzureDevOpsGateway(
        base_url=settings.devops_url,
        token=settings.devops_token,
        callback_base_url=settings.public_url,
        api_version=settings.devops_api_version,
        request_timeout=settings.request_timeout_seconds,
        webhook_secret=settings.webhook_secret,
    )
    chat = chat or ChatClient(
        base_url=settings.chat_url,
        token=settings.chat_token,
        bot_user_id=settings.bot_user_id,
        request_timeout=settings.request_timeout_seconds,
    )
    metrics = MetricsCollector()
    reconciler = Reconciler(
        projects=LinkedProjectStore(kv),
        subscriptions=SubscriptionStore(kv),
        gateway=gateway,
        locks=kv,
        metrics=metrics,
    )
    return Services(
        settings=settings,
        kv=kv,
        gateway=gateway,
        chat=chat,
        metrics=metrics,
        reconciler=reconciler,
        ingestor=NotificationIngestor(chat, metrics=metrics),
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency for the application's service container."""
    return request.app.state.services
