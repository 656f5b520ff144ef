"""Promotion state machine for global roles.

Roles only move upward here (Activist → City Organiser → Regional
Organiser). The one downward move in the system is the demotion that
follows removing a City Organiser from their last chapter, handled by the
chapter engine.
"""

from __future__ import annotations

import logging

from rallypoint.auth.permissions import Decision
from rallypoint.auth.roles import Role, outranks, parse_role
from rallypoint.errors import (
    Forbidden,
    MissingRequiredTarget,
    PromotionGuardFailed,
    TargetNotFound,
    ValidationError,
)
from rallypoint.events.bus import EventBus
from rallypoint.events.types import EventType
from rallypoint.models.organization import ChapterMembership
from rallypoint.models.user import Principal, User
from rallypoint.storage.base import StorageBackend

logger = logging.getLogger(__name__)

ROLE_AT_OR_ABOVE_OWN = (
    "You cannot promote a user to a role equal to or greater than your own."
)
TARGET_AT_OR_ABOVE_OWN = (
    "You cannot promote a user who is at or above your own hierarchical level."
)
NOT_UPWARD = "Promotions cannot lower a user's role."
REGIONAL_ACTIVISTS_ONLY = "Regional Organisers can only promote Activists to City Organisers."
REGIONAL_OWN_CHAPTERS_ONLY = "You can only promote users to chapters within your own region."
NO_PROMOTION_RIGHTS = "You do not have permission to promote users."
UNKNOWN_REGION = "The target region does not exist."
UNKNOWN_CHAPTER = "The target chapter does not exist."


class PromotionMachine:
    """Validates and applies role transitions."""

    def __init__(self, store: StorageBackend, event_bus: EventBus) -> None:
        self.store = store
        self.bus = event_bus

    async def check(
        self,
        manager: Principal,
        target: User,
        new_role: Role,
        target_id: str | None = None,
    ) -> Decision:
        """Run the promotion guards without writing anything."""
        if not outranks(manager.role, new_role):
            return Decision.deny(ROLE_AT_OR_ABOVE_OWN)
        if not outranks(manager.role, target.role):
            return Decision.deny(TARGET_AT_OR_ABOVE_OWN)
        if outranks(target.role, new_role):
            return Decision.deny(NOT_UPWARD)

        match manager.role:
            case Role.COFOUNDER:
                pass
            case Role.REGIONAL_ORGANISER:
                if target.role != Role.ACTIVIST or new_role != Role.CITY_ORGANISER:
                    return Decision.deny(REGIONAL_ACTIVISTS_ONLY)
                chapter = await self.store.get_chapter(target_id) if target_id else None
                if (
                    chapter is None
                    or not manager.managed_region_id
                    or chapter["region_id"] != manager.managed_region_id
                ):
                    return Decision.deny(REGIONAL_OWN_CHAPTERS_ONLY)
            case Role.CITY_ORGANISER | Role.ACTIVIST:
                return Decision.deny(NO_PROMOTION_RIGHTS)

        if new_role == Role.REGIONAL_ORGANISER and await self.store.get_region(target_id) is None:
            return Decision.deny(UNKNOWN_REGION)
        if (
            new_role == Role.CITY_ORGANISER
            and target_id
            and await self.store.get_chapter(target_id) is None
        ):
            return Decision.deny(UNKNOWN_CHAPTER)

        return Decision.allow("Permission granted.")

    async def promote(
        self,
        manager: Principal,
        target_user_id: str,
        new_role: Role | str,
        target_id: str | None = None,
    ) -> User:
        """Promote ``target_user_id`` to ``new_role``.

        ``target_id`` names the chapter (City Organiser) or region (Regional
        Organiser) the new role applies to. The guards are evaluated against
        rows read inside the same transaction that writes the new role, so a
        concurrent promotion cannot slip in between check and write.

        Raises:
            ValidationError: If ``new_role`` is not a known role.
            MissingRequiredTarget: If a Regional Organiser promotion has no region.
            TargetNotFound: If the target user does not exist.
            PromotionGuardFailed: If any guard rejects the transition.
        """
        try:
            new_role = parse_role(new_role)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if new_role == Role.REGIONAL_ORGANISER and not target_id:
            raise MissingRequiredTarget("A region is required to promote a Regional Organiser")

        async with self.store.transaction():
            current_manager = await self.store.get_user(manager.id)
            if current_manager is None:
                raise Forbidden("forbidden: unknown manager")
            acting = User(**current_manager).principal()

            target_row = await self.store.get_user(target_user_id)
            if target_row is None:
                raise TargetNotFound(f"User to promote not found: {target_user_id}")
            target = User(**target_row)

            decision = await self.check(acting, target, new_role, target_id)
            if not decision:
                logger.info(
                    "Promotion of %s to %s by %s denied: %s",
                    target.id,
                    new_role,
                    acting.id,
                    decision.reason,
                )
                raise PromotionGuardFailed(decision.reason)

            updates: dict[str, object] = {"role": new_role.value}
            if new_role == Role.REGIONAL_ORGANISER:
                updates["managed_region_id"] = target_id
            promoted = await self.store.update_user(target.id, updates)

            if new_role == Role.CITY_ORGANISER and target_id:
                membership = ChapterMembership(
                    user_id=target.id, chapter_id=target_id, role=Role.CITY_ORGANISER
                )
                await self.store.upsert_membership(membership.to_storage(), overwrite_role=True)

        logger.info("Promoted %s from %s to %s", target.id, target.role, new_role)
        await self.bus.emit(
            EventType.USER_PROMOTED,
            {
                "user_id": target.id,
                "from_role": target.role.value,
                "to_role": new_role.value,
                "target_id": target_id,
            },
            actor_id=acting.id,
        )
        return User(**promoted)
