"""User and principal models."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from rallypoint.auth.roles import Role


class Principal(BaseModel):
    """The authenticated caller as seen by permission checks."""

    id: str
    role: Role = Role.ACTIVIST
    managed_region_id: str | None = None


class User(BaseModel):
    """A registered member of the organisation."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    email: str
    name: str
    role: Role = Role.ACTIVIST
    managed_region_id: str | None = None
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    def principal(self) -> Principal:
        return Principal(id=self.id, role=self.role, managed_region_id=self.managed_region_id)

    def to_storage(self) -> dict:
        return self.model_dump(mode="json")

    def to_response(self, *, detail: str = "summary") -> dict[str, Any]:
        data: dict[str, Any] = {"_v": "1.0", "id": self.id, "name": self.name, "role": self.role}
        if detail != "summary":
            data.update(
                {
                    "email": self.email,
                    "managed_region_id": self.managed_region_id,
                    "created_at": self.created_at,
                }
            )
        return data
