"""
Pydantic models for persisted records, request bodies and remote payloads.

Persisted records and API responses use the camelCase field names of the
exchange format (`ownerUserID`, `remoteSubscriptionID`, ...); Python code
uses the snake_case attribute names.
"""

from __future__ import annotations

from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def dump(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def _required(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be empty")
    return value


NonEmptyStr = Annotated[str, AfterValidator(_required)]


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class LinkedProject(_Record):
    owner_user_id: str = Field(alias="ownerUserID")
    organization_name: str = Field(alias="organizationName")
    project_name: str = Field(alias="projectName")
    project_id: str = Field(default="", alias="projectID")

    @property
    def identity(self) -> tuple[str, str]:
        return (self.organization_name, self.project_name)


class Subscription(_Record):
    owner_user_id: str = Field(alias="ownerUserID")
    organization_name: str = Field(alias="organizationName")
    project_name: str = Field(alias="projectName")
    event_type: str = Field(alias="eventType")
    channel_id: str = Field(alias="channelID")
    remote_subscription_id: str = Field(default="", alias="remoteSubscriptionID")

    @property
    def identity(self) -> tuple[str, str, str, str]:
        return (self.organization_name, self.project_name, self.event_type, self.channel_id)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class LinkRequest(BaseModel):
    organization: NonEmptyStr
    project: NonEmptyStr


class UnlinkRequest(BaseModel):
    organization_name: NonEmptyStr = Field(alias="organizationName")
    project_name: NonEmptyStr = Field(alias="projectName")
    project_id: str = Field(default="", alias="projectID")


class SubscriptionRequest(BaseModel):
    """Body of POST and DELETE /subscriptions."""

    organization: NonEmptyStr
    project: NonEmptyStr
    event_type: NonEmptyStr = Field(alias="eventType")
    channel_id: NonEmptyStr = Field(alias="channelID")


class TaskFields(BaseModel):
    title: NonEmptyStr
    description: Optional[str] = None


class TaskRequest(BaseModel):
    organization: NonEmptyStr
    project: NonEmptyStr
    type: NonEmptyStr
    fields: TaskFields


# ---------------------------------------------------------------------------
# Remote / chat payloads
# ---------------------------------------------------------------------------


class RemoteProject(BaseModel):
    id: str
    name: str


class RemoteTask(BaseModel):
    id: int
    url: str = ""
    title: str = ""


class ChannelInfo(BaseModel):
    id: str
    display_name: str = Field(default="", alias="displayName")
    type: str = ""

    model_config = ConfigDict(populate_by_name=True)


class WebhookEvent(BaseModel):
    """Service-hook callback body.

    Only the top level must be a JSON object. Publishers differ in the shape
    of the nested fields, so they are kept as sent and read leniently.
    """

    model_config = ConfigDict(extra="allow")

    id: Any = None
    event_type: Any = Field(default=None, alias="eventType")
    publisher_id: Any = Field(default=None, alias="publisherId")
    message: Any = None
    detailed_message: Any = Field(default=None, alias="detailedMessage")
    resource: Any = None
