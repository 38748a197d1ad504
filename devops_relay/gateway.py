"""
Remote gateway: thin client over the Azure DevOps REST API.

Handles:
- Project lookup (validates organization/project pairs on link)
- Service-hook subscription create/delete
- Work item creation

No retries happen here; every failure is raised as UpstreamError with the
remote status so the caller can decide what to do.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol
from urllib.parse import quote, urlencode

import httpx
import structlog

from devops_relay.core.errors import ProjectNotFound, UpstreamError
from devops_relay.schemas import RemoteProject, RemoteTask

log = structlog.get_logger()

WEBHOOK_SECRET_HEADER = "X-Webhook-Secret"


class RemoteGateway(Protocol):
    async def describe_project(self, organization: str, project: str) -> RemoteProject: ...

    async def create_subscription(
        self,
        organization: str,
        project: str,
        event_type: str,
        channel_id: str,
        *,
        project_id: Optional[str] = None,
    ) -> str: ...

    async def delete_subscription(
        self, organization: str, project: str, remote_subscription_id: str
    ) -> None: ...

    async def create_task(
        self,
        organization: str,
        project: str,
        task_type: str,
        title: str,
        description: Optional[str] = None,
    ) -> RemoteTask: ...

    async def close(self) -> None: ...


class AzureDevOpsGateway:
    """Azure DevOps implementation of RemoteGateway."""

    def __init__(
        self,
        base_url: str,
        token: str,
        callback_base_url: str,
        api_version: str = "7.1",
        request_timeout: float = 30.0,
        webhook_secret: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._callback_base_url = callback_base_url.rstrip("/")
        self._api_version = api_version
        self._webhook_secret = webhook_secret
        self._client = httpx.AsyncClient(
            auth=httpx.BasicAuth("", token),
            timeout=httpx.Timeout(request_timeout),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def callback_url(self, channel_id: str) -> str:
        return f"{self._callback_base_url}/api/v1/notification?{urlencode({'channelID': channel_id})}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}/{path}"
        try:
            resp = await self._client.request(
                method,
                url,
                params={"api-version": self._api_version},
                json=json,
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            log.error("gateway.timeout", operation=operation, url=url)
            raise UpstreamError(f"{operation} timed out; remote state is unknown") from exc
        except httpx.HTTPError as exc:
            log.error("gateway.unreachable", operation=operation, url=url, error=str(exc))
            raise UpstreamError(f"{operation} failed: {exc}") from exc
        return resp

    def _raise_for_status(self, resp: httpx.Response, operation: str) -> None:
        if resp.is_success:
            return
        message = _remote_message(resp)
        log.error(
            "gateway.request_failed",
            operation=operation,
            status=resp.status_code,
            error=message,
        )
        raise UpstreamError(f"{operation} failed: {message}", upstream_status=resp.status_code)

    @staticmethod
    def _decode(resp: httpx.Response, operation: str) -> dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            log.error("gateway.bad_response", operation=operation, status=resp.status_code)
            raise UpstreamError(f"{operation} returned an unexpected body", upstream_status=resp.status_code)
        return body

    # --- Projects ---

    async def describe_project(self, organization: str, project: str) -> RemoteProject:
        resp = await self._request(
            "GET",
            f"{quote(organization)}/_apis/projects/{quote(project)}",
            operation="describe_project",
        )
        if resp.status_code == 404:
            raise ProjectNotFound(
                f"Project {organization}/{project} does not exist or is not accessible",
                organization=organization,
                project=project,
            )
        self._raise_for_status(resp, "describe_project")
        body = self._decode(resp, "describe_project")
        if not body.get("id"):
            raise UpstreamError("describe_project returned no project id", upstream_status=resp.status_code)
        return RemoteProject(id=str(body["id"]), name=str(body.get("name") or project))

    # --- Subscriptions ---

    async def create_subscription(
        self,
        organization: str,
        project: str,
        event_type: str,
        channel_id: str,
        *,
        project_id: Optional[str] = None,
    ) -> str:
        if not project_id:
            project_id = (await self.describe_project(organization, project)).id

        consumer_inputs = {"url": self.callback_url(channel_id)}
        if self._webhook_secret:
            consumer_inputs["httpHeaders"] = f"{WEBHOOK_SECRET_HEADER}:{self._webhook_secret}"

        body = {
            "publisherId": "tfs",
            "eventType": event_type,
            "resourceVersion": "1.0",
            "consumerId": "webHooks",
            "consumerActionId": "httpRequest",
            "publisherInputs": {"projectId": project_id},
            "consumerInputs": consumer_inputs,
        }
        resp = await self._request(
            "POST",
            f"{quote(organization)}/_apis/hooks/subscriptions",
            operation="create_subscription",
            json=body,
        )
        self._raise_for_status(resp, "create_subscription")
        remote_id = str(self._decode(resp, "create_subscription").get("id") or "")
        log.info(
            "gateway.subscription_created",
            organization=organization,
            project=project,
            event_type=event_type,
            remote_id=remote_id,
        )
        return remote_id

    async def delete_subscription(
        self, organization: str, project: str, remote_subscription_id: str
    ) -> None:
        resp = await self._request(
            "DELETE",
            f"{quote(organization)}/_apis/hooks/subscriptions/{quote(remote_subscription_id)}",
            operation="delete_subscription",
        )
        if resp.status_code == 404:
            log.info("gateway.subscription_already_gone", remote_id=remote_subscription_id)
            return
        self._raise_for_status(resp, "delete_subscription")
        log.info("gateway.subscription_deleted", organization=organization, remote_id=remote_subscription_id)

    # --- Work items ---

    async def create_task(
        self,
        organization: str,
        project: str,
        task_type: str,
        title: str,
        description: Optional[str] = None,
    ) -> RemoteTask:
        patch = [{"op": "add", "path": "/fields/System.Title", "value": title}]
        if description:
            patch.append({"op": "add", "path": "/fields/System.Description", "value": description})

        resp = await self._request(
            "POST",
            f"{quote(organization)}/{quote(project)}/_apis/wit/workitems/${quote(task_type)}",
            operation="create_task",
            json=patch,
            headers={"Content-Type": "application/json-patch+json"},
        )
        self._raise_for_status(resp, "create_task")
        body = self._decode(resp, "create_task")
        if not isinstance(body.get("id"), int):
            raise UpstreamError("create_task returned no work item id", upstream_status=resp.status_code)
        links = body.get("_links", {})
        return RemoteTask(
            id=body["id"],
            url=links.get("html", {}).get("href", body.get("url", "")),
            title=body.get("fields", {}).get("System.Title", title),
        )


def _remote_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return resp.reason_phrase
