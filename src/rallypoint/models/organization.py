"""Regions, chapters and the membership records that join users to them."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, Field, field_validator

from rallypoint.auth.roles import MEMBERSHIP_ROLES, Role


def _now() -> str:
    return datetime.now(UTC).isoformat()


class Region(BaseModel):
    """A top-level geographic grouping of chapters."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    name: str
    created_at: str = Field(default_factory=_now)

    def to_storage(self) -> dict:
        return self.model_dump(mode="json")

    def to_response(self) -> dict:
        return {"_v": "1.0", "id": self.id, "name": self.name}


class Chapter(BaseModel):
    """A city-level unit belonging to exactly one region."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    name: str
    description: str | None = None
    region_id: str | None = None
    created_at: str = Field(default_factory=_now)

    def to_storage(self) -> dict:
        return self.model_dump(mode="json")

    def to_response(self) -> dict:
        return {
            "_v": "1.0",
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "region_id": self.region_id,
        }


class ChapterMembership(BaseModel):
    """A user's membership in one chapter, with its chapter-local role."""

    user_id: str
    chapter_id: str
    role: Role = Role.ACTIVIST
    joined_at: str = Field(default_factory=_now)

    @field_validator("role")
    @classmethod
    def _membership_role(cls, value: Role) -> Role:
        if value not in MEMBERSHIP_ROLES:
            raise ValueError(f"Chapter memberships cannot carry role {value}")
        return value

    def to_storage(self) -> dict:
        return self.model_dump(mode="json")

    def to_response(self) -> dict:
        return {
            "_v": "1.0",
            "user_id": self.user_id,
            "chapter_id": self.chapter_id,
            "role": self.role,
            "joined_at": self.joined_at,
        }


class JoinRequest(BaseModel):
    """A pending request from a user to join a chapter."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    user_id: str
    chapter_id: str
    status: str = "PENDING"
    created_at: str = Field(default_factory=_now)

    def to_storage(self) -> dict:
        return self.model_dump(mode="json")

    def to_response(self) -> dict:
        return {
            "_v": "1.0",
            "id": self.id,
            "user_id": self.user_id,
            "chapter_id": self.chapter_id,
            "status": self.status,
            "created_at": self.created_at,
        }
