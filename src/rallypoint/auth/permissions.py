"""Permission checks for content, chapter membership and chapter creation.

Every check returns a ``Decision``. Denials are values, not exceptions; a
caller that must stop on denial calls ``Decision.enforce()``. Missing
required input raises ``MissingRequiredTarget`` before any rule runs. Any
lookup that misses (unknown chapter or region) denies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from rallypoint.auth.roles import Role, Scope, at_least_as_powerful
from rallypoint.core.membership import MembershipResolver
from rallypoint.errors import Forbidden, MissingRequiredTarget
from rallypoint.models.content import Content
from rallypoint.models.user import Principal
from rallypoint.storage.base import StorageBackend

logger = logging.getLogger(__name__)

TARGET_MISMATCH = "forbidden: insufficient role/target mismatch"
NOT_ASSIGNED = "forbidden: not assigned to a region"
AUTHOR_OUTRANKS = "forbidden: cannot modify content from a user at or above your level"
CANNOT_MODIFY = "forbidden: you do not have permission to modify this content"
CANNOT_MANAGE = "forbidden: you do not have permission to manage this chapter"
CANNOT_CREATE_CHAPTER = "forbidden: you do not have permission to create a chapter in this region"
CANNOT_JOIN_DIRECTLY = "forbidden: only co-founders and the region's organiser may join directly"
CHAPTER_NOT_FOUND = "forbidden: chapter not found"
REGION_NOT_FOUND = "forbidden: region not found"


@dataclass(frozen=True)
class Decision:
    """Outcome of a permission check with a reason the caller can show."""

    allowed: bool
    reason: str

    def __bool__(self) -> bool:
        return self.allowed

    @classmethod
    def allow(cls, reason: str = "allowed") -> Decision:
        return cls(True, reason)

    @classmethod
    def deny(cls, reason: str) -> Decision:
        return cls(False, reason)

    def enforce(self) -> None:
        """Raise Forbidden if the decision is a denial."""
        if not self.allowed:
            logger.info("Denied: %s", self.reason)
            raise Forbidden(self.reason)


class PermissionEvaluator:
    """Answers "may this principal do this?" against the current store state."""

    def __init__(self, store: StorageBackend, resolver: MembershipResolver | None = None) -> None:
        self.store = store
        self.resolver = resolver or MembershipResolver(store)

    async def _chapter_region(self, chapter_id: str) -> tuple[bool, str | None]:
        chapter = await self.store.get_chapter(chapter_id)
        if chapter is None:
            return False, None
        return True, chapter["region_id"]

    async def _holds_organiser_membership(self, user: Principal, chapter_id: str) -> bool:
        return await self.resolver.membership_role(user.id, chapter_id) == Role.CITY_ORGANISER

    # --- Create content ---

    async def can_create_content(
        self,
        user: Principal,
        scope: Scope | None,
        *,
        chapter_id: str | None = None,
        region_id: str | None = None,
    ) -> Decision:
        """Decide whether ``user`` may publish content with this scope and target.

        Raises:
            MissingRequiredTarget: If the scope, or the id it requires, is absent.
        """
        if scope is None:
            raise MissingRequiredTarget("scope is required")
        if scope == Scope.CITY and not chapter_id:
            raise MissingRequiredTarget("chapter_id is required for CITY content")
        if scope == Scope.REGIONAL and not region_id:
            raise MissingRequiredTarget("region_id is required for REGIONAL content")

        chapter_region: str | None = None
        if scope == Scope.CITY:
            found, chapter_region = await self._chapter_region(chapter_id)
            if not found:
                return Decision.deny(CHAPTER_NOT_FOUND)
        elif scope == Scope.REGIONAL and await self.store.get_region(region_id) is None:
            return Decision.deny(REGION_NOT_FOUND)

        if user.role == Role.COFOUNDER:
            return Decision.allow()

        if user.role == Role.REGIONAL_ORGANISER:
            if not user.managed_region_id:
                return Decision.deny(NOT_ASSIGNED)
            if scope == Scope.REGIONAL and region_id == user.managed_region_id:
                return Decision.allow()
            if scope == Scope.CITY and chapter_region == user.managed_region_id:
                return Decision.allow()
            # Otherwise fall through: a chapter organiser membership still counts.

        if scope == Scope.CITY and await self._holds_organiser_membership(user, chapter_id):
            return Decision.allow()

        return Decision.deny(TARGET_MISMATCH)

    # --- Modify / delete content ---

    async def can_modify_content(self, manager: Principal, content: Content) -> Decision:
        if manager.id == content.author_id:
            return Decision.allow("author")

        if at_least_as_powerful(content.author_role, manager.role):
            return Decision.deny(AUTHOR_OUTRANKS)

        if manager.role == Role.COFOUNDER:
            return Decision.allow()

        if (
            manager.role == Role.REGIONAL_ORGANISER
            and manager.managed_region_id
            and content.scope == Scope.CITY
            and content.chapter_id
        ):
            found, chapter_region = await self._chapter_region(content.chapter_id)
            if found and chapter_region == manager.managed_region_id:
                return Decision.allow()

        return Decision.deny(CANNOT_MODIFY)

    async def modification_flag(self, manager: Principal, content: Content) -> bool:
        """Whether read responses should offer edit controls. Never raises."""
        try:
            return (await self.can_modify_content(manager, content)).allowed
        except Exception:
            logger.exception("Modification check failed for content %s", content.id)
            return False

    # --- Chapter members ---

    async def can_manage_members(self, manager: Principal, chapter_id: str | None) -> Decision:
        """Covers member listing, adding, removing and join-request resolution."""
        if not chapter_id:
            raise MissingRequiredTarget("chapter_id is required")

        found, chapter_region = await self._chapter_region(chapter_id)
        if not found:
            return Decision.deny(CHAPTER_NOT_FOUND)

        if manager.role == Role.COFOUNDER:
            return Decision.allow()

        if manager.role == Role.REGIONAL_ORGANISER:
            if not manager.managed_region_id:
                return Decision.deny(NOT_ASSIGNED)
            if chapter_region == manager.managed_region_id:
                return Decision.allow()

        if await self._holds_organiser_membership(manager, chapter_id):
            return Decision.allow()

        return Decision.deny(CANNOT_MANAGE)

    async def can_join_directly(self, user: Principal, chapter_id: str) -> Decision:
        """Whether ``user`` may skip the join request and organise the chapter."""
        found, chapter_region = await self._chapter_region(chapter_id)
        if not found:
            return Decision.deny(CHAPTER_NOT_FOUND)
        if user.role == Role.COFOUNDER:
            return Decision.allow()
        if (
            user.role == Role.REGIONAL_ORGANISER
            and user.managed_region_id
            and user.managed_region_id == chapter_region
        ):
            return Decision.allow()
        return Decision.deny(CANNOT_JOIN_DIRECTLY)

    # --- Chapter creation ---

    async def can_create_chapter(self, user: Principal, region_id: str | None) -> Decision:
        if not region_id:
            raise MissingRequiredTarget("region_id is required to create a chapter")

        if await self.store.get_region(region_id) is None:
            return Decision.deny(REGION_NOT_FOUND)

        if user.role == Role.COFOUNDER:
            return Decision.allow()

        if user.role == Role.REGIONAL_ORGANISER and user.managed_region_id == region_id:
            return Decision.allow()

        return Decision.deny(CANNOT_CREATE_CHAPTER)
