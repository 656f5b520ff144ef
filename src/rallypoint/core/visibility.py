"""Visibility filter for listing scoped content."""

from __future__ import annotations

from dataclasses import dataclass, field

from rallypoint.auth.roles import Scope
from rallypoint.core.membership import MembershipResolver
from rallypoint.models.content import Content
from rallypoint.models.user import Principal


@dataclass(frozen=True)
class VisibleScope:
    """The id sets a listing query is restricted to, besides GLOBAL content.

    Regional reach includes role-derived regions. City reach is explicit
    membership only, so a Regional Organiser does not see CITY content of
    chapters in their region unless they belong to the chapter.
    """

    chapter_ids: frozenset[str] = field(default_factory=frozenset)
    region_ids: frozenset[str] = field(default_factory=frozenset)

    def admits(self, content: Content) -> bool:
        match content.scope:
            case Scope.GLOBAL:
                return True
            case Scope.REGIONAL:
                return content.region_id in self.region_ids
            case Scope.CITY:
                return content.chapter_id in self.chapter_ids
        return False


class VisibilityFilter:
    def __init__(self, resolver: MembershipResolver) -> None:
        self.resolver = resolver

    async def scope_for(self, user: Principal) -> VisibleScope:
        return VisibleScope(
            chapter_ids=frozenset(await self.resolver.explicit_chapter_ids(user)),
            region_ids=frozenset(await self.resolver.reachable_region_ids(user)),
        )

    async def is_visible(self, content: Content, user: Principal) -> bool:
        return (await self.scope_for(user)).admits(content)
