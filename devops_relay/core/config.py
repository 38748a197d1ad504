"""
Application configuration loaded from environment variables.

A YAML file may be layered on top (values in the file win over the
environment); secrets such as tokens are expected to come from the
environment.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_EVENT_TYPES = [
    "workitem.created",
    "workitem.updated",
    "workitem.deleted",
    "workitem.commented",
    "git.pullrequest.created",
    "git.pullrequest.updated",
    "git.push",
    "build.complete",
    "ms.vss-release.release-created-event",
]


class Settings(BaseSettings):
    """devops-relay configuration."""

    model_config = SettingsConfigDict(env_prefix="DEVOPS_RELAY_", env_file=".env", extra="ignore")

    # Key-value storage: redis://, rediss://, sqlite:///path or memory://
    kv_url: str = "redis://localhost:6379/0"
    lock_timeout_seconds: float = 60.0

    # Azure DevOps
    devops_url: str = "https://dev.azure.com"
    devops_token: str = ""
    devops_api_version: str = "7.1"
    request_timeout_seconds: float = 30.0

    # Chat platform
    chat_url: str = "http://localhost:8065"
    chat_token: str = ""
    bot_user_id: str = ""

    # Webhook callbacks
    public_url: str = "http://localhost:8000"
    webhook_secret: str = ""
    event_types: list[str] = DEFAULT_EVENT_TYPES

    # Identity header set by the upstream auth proxy
    user_id_header: str = "Mattermost-User-ID"

    # Logging
    log_level: str = "info"
    log_format: Literal["json", "text"] = "json"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()


def load_settings(path: str | Path) -> Settings:
    """Load settings from a YAML file, falling back to the environment for missing keys."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return Settings(**raw)
