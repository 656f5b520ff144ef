"""Organiser dashboard: pending requests, upcoming events and member growth."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from rallypoint.auth.roles import Role
from rallypoint.core.membership import MembershipResolver
from rallypoint.errors import Forbidden
from rallypoint.models.content import Content
from rallypoint.models.user import Principal
from rallypoint.storage.base import StorageBackend

logger = logging.getLogger(__name__)

SUMMARY_SIZE = 5
GROWTH_WINDOW = timedelta(days=30)


class OrganiserDashboard:
    """Summaries over the chapters an organiser manages."""

    def __init__(self, store: StorageBackend, resolver: MembershipResolver | None = None) -> None:
        self.store = store
        self.resolver = resolver or MembershipResolver(store)

    async def summary(self, user: Principal) -> dict[str, Any]:
        """What needs the organiser's attention across their managed chapters.

        Co-founders manage every chapter and also see GLOBAL events.
        Regional Organisers see the events of their region's chapters and
        the region itself. City Organisers see their organised chapters.

        Raises:
            Forbidden: If the user is an Activist.
        """
        if user.role == Role.ACTIVIST:
            logger.info("Denied dashboard for %s: not an organiser", user.id)
            raise Forbidden("forbidden: the organiser dashboard is for organisers only")

        managed = await self.resolver.managed_chapter_ids(user)
        match user.role:
            case Role.COFOUNDER:
                regions = await self.resolver.implicit_region_ids(user)
            case Role.REGIONAL_ORGANISER if user.managed_region_id:
                regions = {user.managed_region_id}
            case _:
                regions = set()

        now = datetime.now(UTC)
        events = await self.store.query_content(
            kind="event",
            chapter_ids=managed,
            region_ids=regions,
            starts_after=now.isoformat(),
            include_global=user.role == Role.COFOUNDER,
            limit=SUMMARY_SIZE,
        )
        return {
            "pending_join_requests": await self.store.recent_join_requests(
                managed, limit=SUMMARY_SIZE
            ),
            "upcoming_events": [Content(**row).to_response() for row in events],
            "stats": {
                "total_members": await self.store.count_chapter_members(managed),
                "recent_growth": await self.store.count_chapter_members(
                    managed, joined_since=(now - GROWTH_WINDOW).isoformat()
                ),
            },
        }
