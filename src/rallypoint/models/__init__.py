"""Rallypoint data models."""

from rallypoint.models.content import Content, Registration
from rallypoint.models.organization import Chapter, ChapterMembership, JoinRequest, Region
from rallypoint.models.user import Principal, User

__all__ = [
    "Chapter",
    "ChapterMembership",
    "Content",
    "JoinRequest",
    "Principal",
    "Region",
    "Registration",
    "User",
]
