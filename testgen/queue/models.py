"""Data models for queued webhook events."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class RepositoryInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int | None = None
    full_name: str
    owner: str | None = None
    name: str | None = None
    clone_url: str | None = None


class PullRequestEndpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    ref: str | None = None
    sha: str | None = None


class PullRequestInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    number: int
    title: str | None = None
    body: str | None = None
    url: str | None = None
    head: PullRequestEndpoint = Field(default_factory=PullRequestEndpoint)
    base: PullRequestEndpoint = Field(default_factory=PullRequestEndpoint)


class PullRequestPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    installation_id: int
    repository: RepositoryInfo
    action: str
    pull_request: PullRequestInfo
    sender: Dict[str, Any] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    """A pull request event accepted at the HTTP boundary, immutable once queued."""

    model_config = ConfigDict(frozen=True)

    delivery_id: str
    event_type: str
    action: str
    payload: PullRequestPayload
    raw_payload: Dict[str, Any] = Field(default_factory=dict, repr=False)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
