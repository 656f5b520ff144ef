"""Membership resolver: which chapters and regions a user reaches."""

from __future__ import annotations

import logging

from rallypoint.auth.roles import Role, parse_role
from rallypoint.models.user import Principal
from rallypoint.storage.base import StorageBackend

logger = logging.getLogger(__name__)


class MembershipResolver:
    """Read-only view over memberships, chapters and regions.

    Explicit reach comes from chapter membership rows. Implicit reach comes
    from the global role: Co-founders reach every region, Regional
    Organisers reach the region they manage.
    """

    def __init__(self, store: StorageBackend) -> None:
        self.store = store

    async def explicit_chapter_ids(self, user: Principal) -> set[str]:
        memberships = await self.store.list_memberships_for_user(user.id)
        return {m["chapter_id"] for m in memberships}

    async def explicit_region_ids(self, user: Principal) -> set[str]:
        memberships = await self.store.list_memberships_for_user(user.id)
        return {m["region_id"] for m in memberships if m["region_id"] is not None}

    async def implicit_region_ids(self, user: Principal) -> set[str]:
        match user.role:
            case Role.COFOUNDER:
                return {region["id"] for region in await self.store.list_regions()}
            case Role.REGIONAL_ORGANISER if user.managed_region_id:
                return {user.managed_region_id}
            case _:
                return set()

    async def reachable_region_ids(self, user: Principal) -> set[str]:
        return await self.explicit_region_ids(user) | await self.implicit_region_ids(user)

    async def membership_role(self, user_id: str, chapter_id: str) -> Role | None:
        """The chapter-local role a user holds, or None if not a member."""
        membership = await self.store.get_membership(user_id, chapter_id)
        if membership is None:
            return None
        try:
            return parse_role(membership["role"])
        except ValueError:
            logger.warning(
                "Ignoring membership %s/%s with unknown role %r",
                user_id,
                chapter_id,
                membership["role"],
            )
            return None

    async def organised_chapter_ids(self, user: Principal) -> set[str]:
        """Chapters where the user holds a CITY_ORGANISER membership."""
        memberships = await self.store.list_memberships_for_user(user.id)
        return {m["chapter_id"] for m in memberships if m["role"] == Role.CITY_ORGANISER}

    async def managed_chapter_ids(self, user: Principal) -> set[str]:
        """Every chapter the user may manage through role or membership."""
        managed = await self.organised_chapter_ids(user)
        match user.role:
            case Role.COFOUNDER:
                chapters = await self.store.list_chapters()
            case Role.REGIONAL_ORGANISER if user.managed_region_id:
                chapters = await self.store.list_chapters(region_id=user.managed_region_id)
            case _:
                chapters = []
        return managed | {chapter["id"] for chapter in chapters}
