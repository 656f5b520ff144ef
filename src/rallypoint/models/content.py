"""Scoped content (events, trainings, announcements) and RSVP registrations."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from rallypoint.auth.roles import Role, Scope

VALID_KINDS = {"event", "training", "announcement"}
RSVP_KINDS = {"event", "training"}
COMMENT_KINDS = {"event", "announcement"}


def normalize_timestamp(value: str | datetime | None) -> str | None:
    """Render a timestamp as a UTC ISO string so stored values sort lexically."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


class Content(BaseModel):
    """An event, training or announcement addressed to one scope.

    ``author_role`` is the author's role when the item was created. Later
    promotions or demotions of the author never change it.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    kind: str
    title: str
    body: str | None = None
    location: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    scope: Scope
    chapter_id: str | None = None
    region_id: str | None = None
    author_id: str
    author_role: Role
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    updated_at: str | None = None

    @field_validator("title")
    @classmethod
    def _title_present(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must not be blank")
        return value.strip()

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _utc(cls, value: Any) -> str | None:
        return normalize_timestamp(value)

    @model_validator(mode="after")
    def _target_matches_scope(self) -> Content:
        if self.kind not in VALID_KINDS:
            raise ValueError(f"Invalid content kind: {self.kind}")
        match self.scope:
            case Scope.CITY:
                consistent = self.chapter_id is not None and self.region_id is None
            case Scope.REGIONAL:
                consistent = self.region_id is not None and self.chapter_id is None
            case Scope.GLOBAL:
                consistent = self.chapter_id is None and self.region_id is None
        if not consistent:
            raise ValueError(f"{self.scope} content has inconsistent target ids")
        return self

    def to_storage(self) -> dict:
        return self.model_dump(mode="json")

    def to_response(self, *, detail: str = "summary") -> dict[str, Any]:
        data: dict[str, Any] = {
            "_v": "1.0",
            "id": self.id,
            "kind": self.kind,
            "title": self.title,
            "scope": self.scope,
            "chapter_id": self.chapter_id,
            "region_id": self.region_id,
            "start_time": self.start_time,
        }
        if detail != "summary":
            data.update(
                {
                    "body": self.body,
                    "location": self.location,
                    "end_time": self.end_time,
                    "author_id": self.author_id,
                    "author_role": self.author_role,
                    "created_at": self.created_at,
                    "updated_at": self.updated_at,
                }
            )
        return data


class Registration(BaseModel):
    """A user's RSVP to an event or training."""

    user_id: str
    content_id: str
    attended: bool = False
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_storage(self) -> dict:
        return self.model_dump(mode="json")

    def to_response(self) -> dict:
        return {
            "_v": "1.0",
            "user_id": self.user_id,
            "content_id": self.content_id,
            "attended": self.attended,
        }


class Comment(BaseModel):
    """A comment on an event or announcement."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    content_id: str
    author_id: str
    body: str
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    @field_validator("body")
    @classmethod
    def _body_present(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Comment content cannot be empty.")
        return value.strip()

    def to_storage(self) -> dict:
        return self.model_dump(mode="json")

    def to_response(self) -> dict:
        return {
            "_v": "1.0",
            "id": self.id,
            "content_id": self.content_id,
            "author_id": self.author_id,
            "body": self.body,
            "created_at": self.created_at,
        }
