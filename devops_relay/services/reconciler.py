"""
Reconciler: keeps linked projects, local subscriptions and the remote
service-hook registry consistent.

Every mutating operation runs under the caller's user lock and follows a
fixed order:
- link:        remote lookup → duplicate check → persist
- unlink:      remote delete + local delete per subscription → delete project
- subscribe:   linked check → duplicate check → remote create → persist
               (compensating remote delete if persisting fails)
- unsubscribe: remote delete → local delete

Local records are never removed before the remote side confirms, and no
subscription is persisted without a remote id.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog

from devops_relay.core.errors import (
    AlreadyLinked,
    AlreadySubscribed,
    NotLinked,
    NotSubscribed,
    OrphanedRemoteSubscription,
    PartialCascadeFailure,
    RelayError,
    StorageError,
    UpstreamError,
)
from devops_relay.core.kvstore import LockProvider
from devops_relay.core.metrics import MetricsCollector
from devops_relay.gateway import RemoteGateway
from devops_relay.schemas import LinkedProject, Subscription
from devops_relay.store import LinkedProjectStore, SubscriptionStore

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def is_project_linked(
    projects: list[LinkedProject], candidate: LinkedProject
) -> tuple[Optional[LinkedProject], bool]:
    for project in projects:
        if project.identity == candidate.identity:
            return project, True
    return None, False


def is_subscription_present(
    subscriptions: list[Subscription], candidate: Subscription
) -> tuple[Optional[Subscription], bool]:
    for subscription in subscriptions:
        if subscription.identity == candidate.identity:
            return subscription, True
    return None, False


class Reconciler:
    def __init__(
        self,
        projects: LinkedProjectStore,
        subscriptions: SubscriptionStore,
        gateway: RemoteGateway,
        locks: LockProvider,
        metrics: MetricsCollector | None = None,
    ):
        self._projects = projects
        self._subscriptions = subscriptions
        self._gateway = gateway
        self._locks = locks
        self._metrics = metrics or MetricsCollector()

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        async with self._locks.lock(f"user:{user_id}"):
            self._metrics.add_gauge("user_locks_held", 1)
            try:
                yield
            finally:
                self._metrics.add_gauge("user_locks_held", -1)

    # --- Reads ---

    async def list_projects(self, user_id: str) -> list[LinkedProject]:
        return await self._projects.get_all(user_id)

    async def list_subscriptions(self, user_id: str, project_name: Optional[str] = None) -> list[Subscription]:
        return await self._subscriptions.get_all(user_id, project_name=project_name)

    async def require_linked(self, user_id: str, organization: str, project: str) -> LinkedProject:
        candidate = LinkedProject(
            owner_user_id=user_id, organization_name=organization, project_name=project
        )
        linked, found = is_project_linked(await self._projects.get_all(user_id), candidate)
        if not found:
            raise NotLinked(
                f"Project {organization}/{project} is not linked",
                organization=organization,
                project=project,
            )
        assert linked
        return linked

    # --- Projects ---

    async def link(self, user_id: str, organization: str, project: str) -> LinkedProject:
        # Remote lookup stays outside the user lock.
        remote = await self._gateway.describe_project(organization, project)

        candidate = LinkedProject(
            owner_user_id=user_id,
            organization_name=organization,
            project_name=project,
            project_id=remote.id,
        )
        async with self._user_lock(user_id):
            _, found = is_project_linked(await self._projects.get_all(user_id), candidate)
            if found:
                raise AlreadyLinked(
                    f"Project {organization}/{project} is already linked",
                    organization=organization,
                    project=project,
                )
            await self._projects.put(candidate)

        self._metrics.inc("projects_linked_total")
        log.info("reconciler.linked", user_id=user_id, organization=organization, project=project)
        return candidate

    async def unlink(
        self, user_id: str, organization: str, project: str, project_id: str = ""
    ) -> tuple[LinkedProject, list[Subscription]]:
        """Unlink a project, removing its subscriptions first.

        Returns the removed project and the subscriptions removed with it.
        Raises PartialCascadeFailure if any subscription could not be removed;
        the project then stays linked and the call can be retried.
        """
        async with self._user_lock(user_id):
            linked = await self.require_linked(user_id, organization, project)
            if project_id and linked.project_id and project_id != linked.project_id:
                log.warning(
                    "reconciler.unlink_project_id_mismatch",
                    user_id=user_id,
                    expected=linked.project_id,
                    got=project_id,
                )

            dependents = [
                s
                for s in await self._subscriptions.get_all(user_id)
                if (s.organization_name, s.project_name) == linked.identity
            ]

            removed: list[Subscription] = []
            remaining: list[Subscription] = []
            for subscription in dependents:
                try:
                    await self._remove_subscription(subscription)
                except (UpstreamError, StorageError) as exc:
                    log.error(
                        "reconciler.cascade_step_failed",
                        user_id=user_id,
                        remote_id=subscription.remote_subscription_id,
                        error=exc.message,
                    )
                    remaining.append(subscription)
                else:
                    removed.append(subscription)

            if remaining:
                self._metrics.inc("cascade_failures_total")
                raise PartialCascadeFailure(
                    f"Removed {len(removed)} of {len(dependents)} subscriptions of "
                    f"{organization}/{project}; the project is still linked",
                    removed=[s.dump() for s in removed],
                    remaining=[s.dump() for s in remaining],
                )

            await self._projects.delete(linked)

        self._metrics.inc("projects_unlinked_total")
        log.info(
            "reconciler.unlinked",
            user_id=user_id,
            organization=organization,
            project=project,
            removed_subscriptions=len(removed),
        )
        return linked, removed

    # --- Subscriptions ---

    async def subscribe(
        self,
        user_id: str,
        organization: str,
        project: str,
        event_type: str,
        channel_id: str,
    ) -> Subscription:
        candidate = Subscription(
            owner_user_id=user_id,
            organization_name=organization,
            project_name=project,
            event_type=event_type,
            channel_id=channel_id,
        )
        async with self._user_lock(user_id):
            linked = await self.require_linked(user_id, organization, project)

            _, found = is_subscription_present(await self._subscriptions.get_all(user_id), candidate)
            if found:
                raise AlreadySubscribed(
                    f"{event_type} events of {organization}/{project} are already sent to this channel",
                    **_identity_details(candidate),
                )

            remote_id = await self._gateway.create_subscription(
                organization, project, event_type, channel_id, project_id=linked.project_id or None
            )
            if not remote_id:
                raise UpstreamError("create_subscription returned no subscription id")

            subscription = candidate.model_copy(update={"remote_subscription_id": remote_id})
            try:
                await self._subscriptions.put(subscription)
            except StorageError as exc:
                await self._compensate(subscription, exc)
                raise

        self._metrics.inc("subscriptions_created_total")
        log.info("reconciler.subscribed", user_id=user_id, remote_id=remote_id, **_identity_details(subscription))
        return subscription

    async def _compensate(self, subscription: Subscription, cause: StorageError) -> None:
        """Delete a remote subscription whose local record could not be saved."""
        remote_id = subscription.remote_subscription_id
        try:
            await self._gateway.delete_subscription(
                subscription.organization_name, subscription.project_name, remote_id
            )
        except RelayError as exc:
            self._metrics.inc("orphaned_remote_subscriptions_total")
            log.error(
                "reconciler.orphaned_remote_subscription",
                user_id=subscription.owner_user_id,
                remote_id=remote_id,
                storage_error=cause.message,
                error=exc.message,
            )
            raise OrphanedRemoteSubscription(
                f"Subscription {remote_id} was registered remotely but could not be saved "
                f"or removed; delete it in the issue tracker",
                remote_subscription_id=remote_id,
                subscription=subscription.dump(),
            ) from exc

        cause.details["remoteRolledBack"] = True
        log.warning(
            "reconciler.subscription_rolled_back",
            user_id=subscription.owner_user_id,
            remote_id=remote_id,
            error=cause.message,
        )

    async def unsubscribe(
        self,
        user_id: str,
        organization: str,
        project: str,
        event_type: str,
        channel_id: str,
    ) -> Subscription:
        candidate = Subscription(
            owner_user_id=user_id,
            organization_name=organization,
            project_name=project,
            event_type=event_type,
            channel_id=channel_id,
        )
        async with self._user_lock(user_id):
            existing, found = is_subscription_present(await self._subscriptions.get_all(user_id), candidate)
            if not found:
                raise NotSubscribed("Subscription not found", **_identity_details(candidate))
            assert existing
            await self._remove_subscription(existing)

        log.info("reconciler.unsubscribed", user_id=user_id, **_identity_details(existing))
        return existing

    async def _remove_subscription(self, subscription: Subscription) -> None:
        # Remote first: a local record must outlive its live remote subscription.
        await self._gateway.delete_subscription(
            subscription.organization_name,
            subscription.project_name,
            subscription.remote_subscription_id,
        )
        await self._subscriptions.delete(subscription)
        self._metrics.inc("subscriptions_deleted_total")


def _identity_details(subscription: Subscription) -> dict[str, str]:
    return {
        "organization": subscription.organization_name,
        "project": subscription.project_name,
        "eventType": subscription.event_type,
        "channelID": subscription.channel_id,
    }
