"""
Integration tests for the user-facing endpoints.

Tests cover:
- Caller identity header enforcement
- Project link/list/unlink
- Subscription create/list/delete
- Work item creation
- Team channel listing
- Error envelope shape and status codes
"""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from devops_relay.core.errors import StorageError
from devops_relay.schemas import ChannelInfo

from .conftest import BOT, CHANNEL, USER

TEAM_ID = "a" * 26


async def link(client, project="Web"):
    return await client.post("/api/v1/link", json={"organization": "acme", "project": project})


def subscription_body(event_type="build.complete", channel=CHANNEL, project="Web"):
    return {
        "organization": "acme",
        "project": project,
        "eventType": event_type,
        "channelID": channel,
    }


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "method,path",
    [
        ("POST", "/api/v1/link"),
        ("GET", "/api/v1/project/link"),
        ("POST", "/api/v1/project/unlink"),
        ("POST", "/api/v1/subscriptions"),
        ("GET", "/api/v1/subscriptions"),
        ("DELETE", "/api/v1/subscriptions"),
        ("POST", "/api/v1/tasks"),
        ("GET", f"/api/v1/channels/{TEAM_ID}"),
    ],
)
async def test_user_header_required(app, method, path):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as anonymous:
        response = await anonymous.request(method, path)
    assert response.status_code == 401
    assert response.json()["error"] == {
        "code": "UNAUTHORIZED",
        "message": "Not authorized",
        "status": 401,
    }


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


async def test_link_project(client, chat):
    response = await link(client)
    assert response.status_code == 200
    assert response.json() == {
        "ownerUserID": USER,
        "organizationName": "acme",
        "projectName": "Web",
        "projectID": "proj-web",
    }
    # Confirmation goes to the user's DM with the bot.
    assert chat.posts[0]["channel_id"] == f"dm-{USER}"
    assert "Web" in chat.posts[0]["message"]


async def test_link_duplicate(client):
    await link(client)
    response = await link(client)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "ALREADY_LINKED"

    listed = await client.get("/api/v1/project/link")
    assert len(listed.json()) == 1


async def test_link_unknown_project(client):
    response = await link(client, project="Missing")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "PROJECT_NOT_FOUND"


@pytest.mark.parametrize(
    "body",
    [
        {"organization": "acme"},
        {"organization": "", "project": "Web"},
        {"organization": "acme", "project": "   "},
    ],
)
async def test_link_malformed_body(client, body):
    response = await client.post("/api/v1/link", json=body)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_FAILED"


async def test_link_non_json_body(client):
    response = await client.post(
        "/api/v1/link", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400


async def test_list_linked_projects_empty(client):
    response = await client.get("/api/v1/project/link")
    assert response.status_code == 200
    assert response.json() == []


async def test_unlink_project(client, gateway):
    await link(client)
    await client.post("/api/v1/subscriptions", json=subscription_body())

    response = await client.post(
        "/api/v1/project/unlink",
        json={"organizationName": "acme", "projectName": "Web", "projectID": "proj-web"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["unlinked"]["projectName"] == "Web"
    assert [s["eventType"] for s in data["removedSubscriptions"]] == ["build.complete"]
    assert gateway.remote == {}

    assert (await client.get("/api/v1/project/link")).json() == []
    assert (await client.get("/api/v1/subscriptions")).json() == []


async def test_unlink_not_linked(client):
    response = await client.post(
        "/api/v1/project/unlink", json={"organizationName": "acme", "projectName": "Web"}
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "NOT_LINKED"


async def test_unlink_partial_failure(client, gateway):
    await link(client)
    created = (await client.post("/api/v1/subscriptions", json=subscription_body())).json()
    gateway.fail_delete.add(created["remoteSubscriptionID"])

    response = await client.post(
        "/api/v1/project/unlink", json={"organizationName": "acme", "projectName": "Web"}
    )
    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "PARTIAL_CASCADE_FAILURE"
    assert error["remaining"] == [created]
    assert len((await client.get("/api/v1/project/link")).json()) == 1


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


async def test_create_subscription(client, gateway):
    await link(client)
    response = await client.post("/api/v1/subscriptions", json=subscription_body())

    assert response.status_code == 200
    data = response.json()
    assert data["ownerUserID"] == USER
    assert data["channelID"] == CHANNEL
    assert data["remoteSubscriptionID"] in gateway.remote


async def test_create_subscription_not_linked(client, gateway):
    response = await client.post("/api/v1/subscriptions", json=subscription_body())
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "NOT_LINKED"
    assert gateway.create_calls == 0


async def test_create_subscription_duplicate(client):
    await link(client)
    await client.post("/api/v1/subscriptions", json=subscription_body())
    response = await client.post("/api/v1/subscriptions", json=subscription_body())
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "ALREADY_SUBSCRIBED"


async def test_create_subscription_unsupported_event(client, gateway):
    await link(client)
    response = await client.post("/api/v1/subscriptions", json=subscription_body(event_type="nope"))
    assert response.status_code == 400
    assert "build.complete" in response.json()["error"]["supported"]
    assert gateway.create_calls == 0


async def test_create_subscription_unknown_channel(client, gateway):
    await link(client)
    response = await client.post("/api/v1/subscriptions", json=subscription_body(channel="ghost"))
    assert response.status_code == 400
    assert gateway.create_calls == 0


async def test_create_subscription_remote_failure(client, gateway):
    await link(client)
    gateway.fail_create = True
    response = await client.post("/api/v1/subscriptions", json=subscription_body())
    assert response.status_code == 500
    assert response.json()["error"]["code"] == "UPSTREAM_ERROR"
    assert (await client.get("/api/v1/subscriptions")).json() == []


async def test_create_subscription_storage_failure(client, gateway, kv):
    await link(client)
    kv.fail_writes_for = "subscriptions:"
    response = await client.post("/api/v1/subscriptions", json=subscription_body())

    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "STORAGE_ERROR"
    assert error["remoteRolledBack"] is True
    assert gateway.remote == {}


async def test_list_subscriptions_by_project(client):
    await link(client)
    await link(client, project="Api")
    await client.post("/api/v1/subscriptions", json=subscription_body())
    await client.post("/api/v1/subscriptions", json=subscription_body(project="Api"))

    everything = await client.get("/api/v1/subscriptions")
    assert len(everything.json()) == 2

    api_only = await client.get("/api/v1/subscriptions", params={"project": "Api"})
    assert [s["projectName"] for s in api_only.json()] == ["Api"]


async def test_delete_subscription(client, gateway):
    await link(client)
    await client.post("/api/v1/subscriptions", json=subscription_body())

    response = await client.request("DELETE", "/api/v1/subscriptions", json=subscription_body())
    assert response.status_code == 204
    assert response.content == b""
    assert gateway.remote == {}
    assert (await client.get("/api/v1/subscriptions")).json() == []


async def test_delete_unknown_subscription(client):
    await link(client)
    response = await client.request("DELETE", "/api/v1/subscriptions", json=subscription_body())
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "NOT_SUBSCRIBED"


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


async def test_create_task(client, gateway, chat):
    await link(client)
    chat.posts.clear()

    response = await client.post(
        "/api/v1/tasks",
        json={
            "organization": "acme",
            "project": "Web",
            "type": "Bug",
            "fields": {"title": "Login broken", "description": "500 on submit"},
        },
    )
    assert response.status_code == 200
    assert response.json()["id"] == 1
    assert gateway.tasks == [
        {"organization": "acme", "project": "Web", "type": "Bug", "title": "Login broken"}
    ]
    assert "Login broken" in chat.posts[0]["message"]


async def test_create_task_requires_link(client, gateway):
    response = await client.post(
        "/api/v1/tasks",
        json={"organization": "acme", "project": "Web", "type": "Bug", "fields": {"title": "x"}},
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "NOT_LINKED"
    assert gateway.tasks == []


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


async def test_list_team_channels(client, chat):
    chat.team_channels = [
        ChannelInfo(id="c1", display_name="Town Square", type="O"),
        ChannelInfo(id="c2", display_name="Builds", type="P"),
        ChannelInfo(id="c3", display_name=BOT, type="D"),
    ]
    response = await client.get(f"/api/v1/channels/{TEAM_ID}")
    assert response.status_code == 200
    assert response.json() == [
        {"id": "c1", "displayName": "Town Square", "type": "O"},
        {"id": "c2", "displayName": "Builds", "type": "P"},
    ]


async def test_list_team_channels_invalid_team(client):
    response = await client.get("/api/v1/channels/not-a-team")
    assert response.status_code == 400


# ---------------------------------------------------------------------------
# Unexpected failures
# ---------------------------------------------------------------------------


async def test_unhandled_error_returns_envelope(client, app, monkeypatch):
    async def explode(user_id, project_name=None):
        raise RuntimeError("boom")

    monkeypatch.setattr(app.state.services.reconciler, "list_subscriptions", explode)
    response = await client.get("/api/v1/subscriptions")
    assert response.status_code == 500
    assert response.json()["error"]["code"] == "INTERNAL_ERROR"


async def test_storage_read_failure(client, kv, monkeypatch):
    async def broken_get(key):
        raise StorageError(f"Failed to read {key}: connection reset")

    monkeypatch.setattr(kv, "get", broken_get)
    response = await client.get("/api/v1/project/link")
    assert response.status_code == 500
    assert response.json()["error"]["code"] == "STORAGE_ERROR"
