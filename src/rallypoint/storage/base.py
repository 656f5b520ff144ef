"""Abstract storage interface for Rallypoint."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from contextlib import AbstractAsyncContextManager
from typing import Any


class StorageBackend(ABC):
    """Abstract interface for Rallypoint storage backends."""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize database schema and connections."""

    @abstractmethod
    async def close(self) -> None:
        """Close all connections."""

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Run the enclosed writes as one all-or-nothing unit."""

    # --- User operations ---

    @abstractmethod
    async def insert_user(self, user: dict[str, Any]) -> dict[str, Any]:
        """Insert a user. Raises IntegrityError on a duplicate email."""

    @abstractmethod
    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        """Get a user by ID."""

    @abstractmethod
    async def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        """Get a user by email."""

    @abstractmethod
    async def update_user(self, user_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        """Update role, managed region or name. Returns updated user or None."""

    @abstractmethod
    async def search_users(self, text: str, *, limit: int = 10) -> list[dict[str, Any]]:
        """Case-insensitive substring search over name and email."""

    # --- Region operations ---

    @abstractmethod
    async def insert_region(self, region: dict[str, Any]) -> dict[str, Any]:
        """Insert a region. Raises IntegrityError on a duplicate name."""

    @abstractmethod
    async def get_region(self, region_id: str) -> dict[str, Any] | None:
        """Get a region by ID."""

    @abstractmethod
    async def list_regions(self) -> list[dict[str, Any]]:
        """List regions ordered by name."""

    # --- Chapter operations ---

    @abstractmethod
    async def insert_chapter(self, chapter: dict[str, Any]) -> dict[str, Any]:
        """Insert a chapter. Raises IntegrityError on a duplicate name."""

    @abstractmethod
    async def get_chapter(self, chapter_id: str) -> dict[str, Any] | None:
        """Get a chapter by ID."""

    @abstractmethod
    async def list_chapters(self, *, region_id: str | None = None) -> list[dict[str, Any]]:
        """List chapters ordered by name, optionally within one region."""

    # --- Membership operations ---

    @abstractmethod
    async def get_membership(self, user_id: str, chapter_id: str) -> dict[str, Any] | None:
        """Get the membership row for a (user, chapter) pair."""

    @abstractmethod
    async def list_memberships_for_user(self, user_id: str) -> list[dict[str, Any]]:
        """List a user's memberships, each carrying its chapter's region_id."""

    @abstractmethod
    async def list_chapter_members(self, chapter_id: str) -> list[dict[str, Any]]:
        """List members of a chapter joined with their user rows."""

    @abstractmethod
    async def upsert_membership(
        self, membership: dict[str, Any], *, overwrite_role: bool = False
    ) -> dict[str, Any]:
        """Insert a membership, or keep the existing row.

        With ``overwrite_role`` an existing row takes the new role.
        Returns the stored row.
        """

    @abstractmethod
    async def delete_membership(self, user_id: str, chapter_id: str) -> bool:
        """Delete a membership. Returns True if a row was removed."""

    @abstractmethod
    async def count_memberships(self, user_id: str) -> int:
        """Count a user's memberships."""

    @abstractmethod
    async def count_chapter_members(
        self, chapter_ids: Iterable[str], *, joined_since: str | None = None
    ) -> int:
        """Count memberships across chapters, optionally joined on or after a time."""

    # --- Join request operations ---

    @abstractmethod
    async def insert_join_request(self, request: dict[str, Any]) -> dict[str, Any]:
        """Insert a join request. Raises IntegrityError on a duplicate pair."""

    @abstractmethod
    async def get_join_request(self, request_id: str) -> dict[str, Any] | None:
        """Get a join request by ID."""

    @abstractmethod
    async def find_join_request(self, user_id: str, chapter_id: str) -> dict[str, Any] | None:
        """Get the pending join request for a (user, chapter) pair."""

    @abstractmethod
    async def list_join_requests(self, chapter_id: str) -> list[dict[str, Any]]:
        """List pending join requests for a chapter, oldest first."""

    @abstractmethod
    async def delete_join_request(self, request_id: str) -> bool:
        """Delete a join request. Returns True if a row was removed."""

    @abstractmethod
    async def recent_join_requests(
        self, chapter_ids: Iterable[str], *, limit: int = 5
    ) -> list[dict[str, Any]]:
        """Newest pending join requests across chapters, with user and chapter names."""

    # --- Content operations ---

    @abstractmethod
    async def insert_content(self, content: dict[str, Any]) -> dict[str, Any]:
        """Insert a content item."""

    @abstractmethod
    async def get_content(self, content_id: str) -> dict[str, Any] | None:
        """Get a content item by ID."""

    @abstractmethod
    async def update_content(
        self, content_id: str, updates: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Update editable content fields. Returns updated item or None."""

    @abstractmethod
    async def delete_content(self, content_id: str) -> bool:
        """Delete a content item with its registrations and comments."""

    @abstractmethod
    async def query_content(
        self,
        *,
        kind: str,
        chapter_ids: Iterable[str] = (),
        region_ids: Iterable[str] = (),
        starts_after: str | None = None,
        include_global: bool = True,
        limit: int = 10,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """List content of a kind addressed to the given ids, plus GLOBAL items by default."""

    # --- Registration operations ---

    @abstractmethod
    async def insert_registration(self, registration: dict[str, Any]) -> dict[str, Any]:
        """Insert an RSVP. Raises IntegrityError on a duplicate pair."""

    @abstractmethod
    async def get_registration(self, user_id: str, content_id: str) -> dict[str, Any] | None:
        """Get an RSVP by (user, content) pair."""

    @abstractmethod
    async def delete_registration(self, user_id: str, content_id: str) -> bool:
        """Delete an RSVP. Returns True if a row was removed."""

    @abstractmethod
    async def list_registrations(self, content_id: str) -> list[dict[str, Any]]:
        """List RSVPs for a content item joined with user names."""

    @abstractmethod
    async def count_registrations(self, content_ids: list[str]) -> dict[str, int]:
        """Map each content ID to its RSVP count."""

    @abstractmethod
    async def registered_content_ids(self, user_id: str, content_ids: list[str]) -> set[str]:
        """Return the subset of content IDs the user has RSVPed to."""

    @abstractmethod
    async def set_attendance(self, user_id: str, content_id: str, attended: bool) -> bool:
        """Mark an RSVP as attended or not. Returns True if the RSVP exists."""

    @abstractmethod
    async def attended_event_spans(self, chapter_id: str) -> list[dict[str, Any]]:
        """Start/end times of attended events in a chapter."""

    @abstractmethod
    async def attended_events(self, user_id: str) -> list[dict[str, Any]]:
        """Events a user attended, newest first, with their chapter names."""

    @abstractmethod
    async def count_content(self, *, kind: str, chapter_id: str | None = None) -> int:
        """Count content items of a kind, optionally for one chapter."""

    # --- Comment operations ---

    @abstractmethod
    async def insert_comment(self, comment: dict[str, Any]) -> dict[str, Any]:
        """Insert a comment."""

    @abstractmethod
    async def list_comments(self, content_id: str) -> list[dict[str, Any]]:
        """List comments on a content item, oldest first, with author names."""

    # --- Activity log ---

    @abstractmethod
    async def log_activity(self, entry: dict[str, Any]) -> None:
        """Record an activity log entry."""

    @abstractmethod
    async def get_activity_log(
        self, *, entity_type: str | None = None, limit: int = 20
    ) -> list[dict[str, Any]]:
        """Get recent activity log entries."""

    # --- Stats ---

    @abstractmethod
    async def get_stats(self) -> dict[str, Any]:
        """Get row counts per table."""
