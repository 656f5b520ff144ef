"""Chapter engine: regions, chapters, join requests and memberships."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from rallypoint.auth.permissions import PermissionEvaluator
from rallypoint.auth.roles import Role
from rallypoint.core.membership import MembershipResolver
from rallypoint.errors import (
    DuplicateMembership,
    DuplicateName,
    Forbidden,
    TargetNotFound,
    ValidationError,
)
from rallypoint.events.bus import EventBus
from rallypoint.events.types import EventType
from rallypoint.models.organization import Chapter, ChapterMembership, JoinRequest, Region
from rallypoint.models.user import Principal, User
from rallypoint.storage.base import StorageBackend

logger = logging.getLogger(__name__)


class ChapterEngine:
    """Membership workflows on top of the permission evaluator."""

    def __init__(
        self,
        store: StorageBackend,
        event_bus: EventBus,
        permissions: PermissionEvaluator | None = None,
    ) -> None:
        self.store = store
        self.bus = event_bus
        self.permissions = permissions or PermissionEvaluator(store)

    @property
    def resolver(self) -> MembershipResolver:
        return self.permissions.resolver

    # --- Regions ---

    async def create_region(self, user: Principal, name: str) -> Region:
        if not name or not name.strip():
            raise ValidationError("name is required")
        if user.role != Role.COFOUNDER:
            raise Forbidden("forbidden: only co-founders can create regions")

        region = Region(name=name.strip())
        try:
            await self.store.insert_region(region.to_storage())
        except sqlite3.IntegrityError as e:
            raise DuplicateName(f'A region with the name "{region.name}" already exists.') from e

        await self.bus.emit(
            EventType.REGION_CREATED,
            {"region_id": region.id, "name": region.name},
            actor_id=user.id,
        )
        return region

    async def get_region(self, region_id: str) -> Region:
        data = await self.store.get_region(region_id)
        if data is None:
            raise TargetNotFound(f"Region not found: {region_id}")
        return Region(**data)

    async def list_regions(self) -> list[Region]:
        return [Region(**row) for row in await self.store.list_regions()]

    # --- Chapters ---

    async def create_chapter(
        self,
        user: Principal,
        *,
        name: str,
        region_id: str | None,
        description: str | None = None,
    ) -> Chapter:
        """Create a chapter in ``region_id``.

        Raises:
            MissingRequiredTarget: If no region is given.
            Forbidden: If the user may not create chapters in that region.
            DuplicateName: If another chapter already has this name.
        """
        if not name or not name.strip():
            raise ValidationError("name is required")
        (await self.permissions.can_create_chapter(user, region_id)).enforce()

        chapter = Chapter(name=name.strip(), description=description, region_id=region_id)
        try:
            await self.store.insert_chapter(chapter.to_storage())
        except sqlite3.IntegrityError as e:
            raise DuplicateName(f'A chapter with the name "{chapter.name}" already exists.') from e

        logger.info("Created chapter %s (%s) in region %s", chapter.id, chapter.name, region_id)
        await self.bus.emit(
            EventType.CHAPTER_CREATED,
            {"chapter_id": chapter.id, "name": chapter.name, "region_id": region_id},
            actor_id=user.id,
        )
        return chapter

    async def get_chapter(self, chapter_id: str) -> Chapter:
        data = await self.store.get_chapter(chapter_id)
        if data is None:
            raise TargetNotFound(f"Chapter not found: {chapter_id}")
        return Chapter(**data)

    async def chapter_detail(self, user: Principal, chapter_id: str) -> dict[str, Any]:
        """The chapter with its region, member count and the caller's ``can_manage`` flag."""
        chapter = await self.get_chapter(chapter_id)
        data = chapter.to_response()
        data["region"] = (
            (await self.get_region(chapter.region_id)).to_response() if chapter.region_id else None
        )
        data["member_count"] = await self.store.count_chapter_members([chapter_id])
        data["can_manage"] = await self.can_manage(user, chapter_id)
        return data

    async def list_chapters(self, *, region_id: str | None = None) -> list[Chapter]:
        return [Chapter(**row) for row in await self.store.list_chapters(region_id=region_id)]

    async def my_chapters(self, user: Principal) -> list[Chapter]:
        chapters = []
        for membership in await self.store.list_memberships_for_user(user.id):
            data = await self.store.get_chapter(membership["chapter_id"])
            if data:
                chapters.append(Chapter(**data))
        return chapters

    async def managed_chapters(self, user: Principal) -> list[Chapter]:
        managed = await self.resolver.managed_chapter_ids(user)
        chapters = [c for c in await self.list_chapters() if c.id in managed]
        return sorted(chapters, key=lambda c: c.name)

    # --- Registration and join requests ---

    async def register(self, *, email: str, name: str, chapter_id: str) -> User:
        """Create an Activist account with a pending request for ``chapter_id``."""
        if not email or not name or not chapter_id:
            raise ValidationError("Name, email and a chapter selection are required.")
        if await self.store.get_chapter(chapter_id) is None:
            raise TargetNotFound(f"Chapter not found: {chapter_id}")
        if await self.store.get_user_by_email(email):
            raise DuplicateName("An account with this email already exists.")

        user = User(email=email, name=name, role=Role.ACTIVIST)
        request = JoinRequest(user_id=user.id, chapter_id=chapter_id)
        try:
            async with self.store.transaction():
                await self.store.insert_user(user.to_storage())
                await self.store.insert_join_request(request.to_storage())
        except sqlite3.IntegrityError as e:
            raise DuplicateName("An account with this email already exists.") from e

        await self.bus.emit(
            EventType.USER_REGISTERED,
            {"user_id": user.id, "chapter_id": chapter_id},
            actor_id=user.id,
        )
        return user

    async def request_to_join(self, user: Principal, chapter_id: str) -> JoinRequest:
        if await self.store.get_chapter(chapter_id) is None:
            raise TargetNotFound(f"Chapter not found: {chapter_id}")
        if await self.store.get_membership(user.id, chapter_id):
            raise DuplicateMembership("You are already a member of this chapter.")
        if await self.store.find_join_request(user.id, chapter_id):
            raise DuplicateMembership(
                "You already have a pending request to join this chapter."
            )

        request = JoinRequest(user_id=user.id, chapter_id=chapter_id)
        try:
            await self.store.insert_join_request(request.to_storage())
        except sqlite3.IntegrityError as e:
            raise DuplicateMembership(
                "You already have a pending request to join this chapter."
            ) from e

        await self.bus.emit(
            EventType.JOIN_REQUESTED,
            {"request_id": request.id, "chapter_id": chapter_id},
            actor_id=user.id,
        )
        return request

    async def join_requests(self, manager: Principal, chapter_id: str) -> list[dict[str, Any]]:
        (await self.permissions.can_manage_members(manager, chapter_id)).enforce()
        return await self.store.list_join_requests(chapter_id)

    async def resolve_join_request(
        self, manager: Principal, chapter_id: str, request_id: str, *, approve: bool
    ) -> bool:
        """Approve or deny a pending request. Returns the approval flag."""
        if not isinstance(approve, bool):
            raise ValidationError("Approval status is required.")
        (await self.permissions.can_manage_members(manager, chapter_id)).enforce()

        async with self.store.transaction():
            request = await self.store.get_join_request(request_id)
            if request is None or request["chapter_id"] != chapter_id:
                raise TargetNotFound(f"Request not found: {request_id}")
            if approve:
                membership = ChapterMembership(user_id=request["user_id"], chapter_id=chapter_id)
                await self.store.upsert_membership(membership.to_storage())
            await self.store.delete_join_request(request_id)

        await self.bus.emit(
            EventType.JOIN_APPROVED if approve else EventType.JOIN_DENIED,
            {"request_id": request_id, "chapter_id": chapter_id, "user_id": request["user_id"]},
            actor_id=manager.id,
        )
        return approve

    # --- Members ---

    async def can_manage(self, user: Principal, chapter_id: str) -> bool:
        """Whether member-management controls should be offered for the chapter."""
        return (await self.permissions.can_manage_members(user, chapter_id)).allowed

    async def members(self, manager: Principal, chapter_id: str) -> list[dict[str, Any]]:
        (await self.permissions.can_manage_members(manager, chapter_id)).enforce()
        return await self.store.list_chapter_members(chapter_id)

    async def add_member(
        self, manager: Principal, chapter_id: str, user_id: str
    ) -> ChapterMembership:
        """Add ``user_id`` as an Activist member. An existing membership is kept as is."""
        (await self.permissions.can_manage_members(manager, chapter_id)).enforce()
        if await self.store.get_user(user_id) is None:
            raise TargetNotFound(f"User not found: {user_id}")

        membership = ChapterMembership(user_id=user_id, chapter_id=chapter_id)
        stored = await self.store.upsert_membership(membership.to_storage())
        await self.bus.emit(
            EventType.MEMBER_ADDED,
            {"chapter_id": chapter_id, "user_id": user_id},
            actor_id=manager.id,
        )
        return ChapterMembership(**stored)

    async def remove_member(self, manager: Principal, chapter_id: str, user_id: str) -> bool:
        """Remove a membership.

        A City Organiser left without any chapter is demoted to Activist in
        the same transaction. Returns True if a demotion happened.
        """
        (await self.permissions.can_manage_members(manager, chapter_id)).enforce()

        demoted = False
        async with self.store.transaction():
            if not await self.store.delete_membership(user_id, chapter_id):
                raise TargetNotFound(f"Membership not found: {user_id} in {chapter_id}")
            user = await self.store.get_user(user_id)
            if (
                user is not None
                and user["role"] == Role.CITY_ORGANISER
                and await self.store.count_memberships(user_id) == 0
            ):
                await self.store.update_user(user_id, {"role": Role.ACTIVIST.value})
                demoted = True

        await self.bus.emit(
            EventType.MEMBER_REMOVED,
            {"chapter_id": chapter_id, "user_id": user_id},
            actor_id=manager.id,
        )
        if demoted:
            logger.info("Demoted %s to ACTIVIST after removal from %s", user_id, chapter_id)
            await self.bus.emit(
                EventType.USER_DEMOTED,
                {"user_id": user_id, "to_role": Role.ACTIVIST.value},
                actor_id=manager.id,
            )
        return demoted

    async def become_official_member(self, user: Principal, chapter_id: str) -> ChapterMembership:
        """Join a chapter directly as its organiser, skipping the join request."""
        if await self.store.get_chapter(chapter_id) is None:
            raise TargetNotFound(f"Chapter not found: {chapter_id}")
        (await self.permissions.can_join_directly(user, chapter_id)).enforce()

        membership = ChapterMembership(
            user_id=user.id, chapter_id=chapter_id, role=Role.CITY_ORGANISER
        )
        stored = await self.store.upsert_membership(membership.to_storage(), overwrite_role=True)
        await self.bus.emit(
            EventType.MEMBER_ADDED,
            {"chapter_id": chapter_id, "user_id": user.id, "role": Role.CITY_ORGANISER.value},
            actor_id=user.id,
        )
        return ChapterMembership(**stored)

    async def search_users(self, text: str, *, limit: int = 10) -> list[dict[str, Any]]:
        if not text or len(text) < 2:
            raise ValidationError("Search query must be at least 2 characters long.")
        return await self.store.search_users(text, limit=limit)
