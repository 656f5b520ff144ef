"""Content engine: events, trainings, announcements, RSVPs, attendance and comments."""

from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError as ModelValidationError

from rallypoint.auth.permissions import PermissionEvaluator
from rallypoint.auth.roles import Scope, parse_scope
from rallypoint.core.visibility import VisibilityFilter
from rallypoint.errors import (
    DuplicateMembership,
    MissingRequiredTarget,
    TargetNotFound,
    ValidationError,
)
from rallypoint.events.bus import EventBus
from rallypoint.events.types import EventType
from rallypoint.models.content import (
    COMMENT_KINDS,
    RSVP_KINDS,
    VALID_KINDS,
    Comment,
    Content,
    Registration,
    normalize_timestamp,
)
from rallypoint.models.user import Principal
from rallypoint.storage.base import StorageBackend

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "body", "location", "start_time", "end_time")


def _total_hours(spans: list[dict[str, Any]]) -> float:
    total = 0.0
    for span in spans:
        if not span["start_time"] or not span["end_time"]:
            continue
        start = datetime.fromisoformat(span["start_time"])
        end = datetime.fromisoformat(span["end_time"])
        total += (end - start).total_seconds() / 3600
    return round(total, 2)


def _check_times(kind: str, start_time: str | None, end_time: str | None) -> None:
    if kind == "announcement":
        return
    if not start_time or not end_time:
        raise ValidationError(f"start_time and end_time are required for a {kind}")
    if end_time < start_time:
        raise ValidationError("end_time must not be before start_time")


class ContentEngine:
    """Scoped content lifecycle gated by the permission evaluator."""

    def __init__(
        self,
        store: StorageBackend,
        event_bus: EventBus,
        permissions: PermissionEvaluator | None = None,
    ) -> None:
        self.store = store
        self.bus = event_bus
        self.permissions = permissions or PermissionEvaluator(store)
        self.visibility = VisibilityFilter(self.permissions.resolver)

    async def _load(self, content_id: str) -> Content:
        data = await self.store.get_content(content_id)
        if data is None:
            raise TargetNotFound(f"Content not found: {content_id}")
        return Content(**data)

    async def _load_visible(self, user: Principal, content_id: str) -> Content:
        """Load content the user can see or manage; anything else reads as missing."""
        content = await self._load(content_id)
        if await self.visibility.is_visible(content, user):
            return content
        if await self.permissions.modification_flag(user, content):
            return content
        raise TargetNotFound(f"Content not found: {content_id}")

    # --- Create / read / update / delete ---

    async def create(
        self,
        user: Principal,
        *,
        kind: str,
        title: str,
        scope: Scope | str | None,
        chapter_id: str | None = None,
        region_id: str | None = None,
        body: str | None = None,
        location: str | None = None,
        start_time: str | datetime | None = None,
        end_time: str | datetime | None = None,
    ) -> Content:
        """Publish a content item on behalf of ``user``.

        The author's current role is copied onto the item and never
        recomputed; later modification checks compare against it.

        Raises:
            ValidationError: If kind, title, scope or times are invalid.
            MissingRequiredTarget: If the scope's target id is missing.
            Forbidden: If the user may not publish to that target.
        """
        if kind not in VALID_KINDS:
            raise ValidationError(f"Invalid content kind: {kind}. Must be one of {VALID_KINDS}")
        if not title or not title.strip():
            raise ValidationError("title is required")
        if scope is None:
            raise MissingRequiredTarget("scope is required")
        try:
            scope = parse_scope(scope)
            start_time = normalize_timestamp(start_time)
            end_time = normalize_timestamp(end_time)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        _check_times(kind, start_time, end_time)

        decision = await self.permissions.can_create_content(
            user, scope, chapter_id=chapter_id, region_id=region_id
        )
        decision.enforce()

        content = Content(
            kind=kind,
            title=title.strip(),
            body=body,
            location=location,
            start_time=start_time,
            end_time=end_time,
            scope=scope,
            chapter_id=chapter_id if scope == Scope.CITY else None,
            region_id=region_id if scope == Scope.REGIONAL else None,
            author_id=user.id,
            author_role=user.role,
        )
        await self.store.insert_content(content.to_storage())

        logger.info("Created %s %s (scope=%s) by %s", kind, content.id, scope, user.id)
        await self.bus.emit(
            EventType.CONTENT_CREATED,
            {"content_id": content.id, "kind": kind, "scope": scope.value},
            actor_id=user.id,
        )
        return content

    async def get(self, user: Principal, content_id: str) -> dict[str, Any]:
        """Detail view, with ``can_modify`` telling the caller whether to offer edits."""
        content = await self._load_visible(user, content_id)
        data = content.to_response(detail="full")
        data["can_modify"] = await self.permissions.modification_flag(user, content)
        if content.kind in RSVP_KINDS:
            counts = await self.store.count_registrations([content.id])
            data["attendee_count"] = counts.get(content.id, 0)
            data["is_registered"] = (
                await self.store.get_registration(user.id, content.id) is not None
            )
        return data

    async def list_content(
        self,
        user: Principal,
        *,
        kind: str,
        upcoming_only: bool = True,
        limit: int = 10,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Content of ``kind`` the user may see.

        Events and trainings are upcoming-only by default, soonest first.
        Announcements are newest first.
        """
        if kind not in VALID_KINDS:
            raise ValidationError(f"Invalid content kind: {kind}. Must be one of {VALID_KINDS}")

        visible = await self.visibility.scope_for(user)
        starts_after = None
        if upcoming_only and kind in RSVP_KINDS:
            starts_after = datetime.now(UTC).isoformat()
        rows = await self.store.query_content(
            kind=kind,
            chapter_ids=visible.chapter_ids,
            region_ids=visible.region_ids,
            starts_after=starts_after,
            limit=limit,
            offset=offset,
        )
        items = [Content(**row) for row in rows]

        ids = [item.id for item in items]
        counts: dict[str, int] = {}
        registered: set[str] = set()
        if kind in RSVP_KINDS:
            counts = await self.store.count_registrations(ids)
            registered = await self.store.registered_content_ids(user.id, ids)

        results = []
        for item in items:
            data = item.to_response()
            data["can_modify"] = await self.permissions.modification_flag(user, item)
            if kind in RSVP_KINDS:
                data["attendee_count"] = counts.get(item.id, 0)
                data["is_registered"] = item.id in registered
            results.append(data)
        return results

    async def update(self, manager: Principal, content_id: str, **updates: Any) -> Content:
        """Edit title, body, location or times. Scope and target never change."""
        content = await self._load(content_id)
        (await self.permissions.can_modify_content(manager, content)).enforce()

        updates = {k: v for k, v in updates.items() if v is not None and k in EDITABLE_FIELDS}
        try:
            for key in ("start_time", "end_time"):
                if key in updates:
                    updates[key] = normalize_timestamp(updates[key])
        except ValueError as e:
            raise ValidationError(str(e)) from e
        _check_times(
            content.kind,
            updates.get("start_time", content.start_time),
            updates.get("end_time", content.end_time),
        )

        updates["updated_at"] = datetime.now(UTC).isoformat()
        try:
            updated = Content(**{**content.to_storage(), **updates})
        except ModelValidationError as e:
            raise ValidationError(str(e)) from e
        await self.store.update_content(
            content_id, {key: getattr(updated, key) for key in updates}
        )

        await self.bus.emit(
            EventType.CONTENT_UPDATED, {"content_id": content_id}, actor_id=manager.id
        )
        return updated

    async def delete(self, manager: Principal, content_id: str) -> bool:
        content = await self._load(content_id)
        (await self.permissions.can_modify_content(manager, content)).enforce()

        deleted = await self.store.delete_content(content_id)
        if deleted:
            await self.bus.emit(
                EventType.CONTENT_DELETED,
                {"content_id": content_id, "kind": content.kind},
                actor_id=manager.id,
            )
        return deleted

    # --- RSVP and attendance ---

    async def rsvp(self, user: Principal, content_id: str) -> Registration:
        content = await self._load_visible(user, content_id)
        if content.kind not in RSVP_KINDS:
            raise ValidationError(f"Cannot RSVP to a {content.kind}")

        registration = Registration(user_id=user.id, content_id=content_id)
        try:
            await self.store.insert_registration(registration.to_storage())
        except sqlite3.IntegrityError as e:
            raise DuplicateMembership(f"You are already registered for this {content.kind}.") from e

        await self.bus.emit(
            EventType.RSVP_CREATED, {"content_id": content_id}, actor_id=user.id
        )
        return registration

    async def cancel_rsvp(self, user: Principal, content_id: str) -> bool:
        if not await self.store.delete_registration(user.id, content_id):
            raise TargetNotFound("Registration not found.")
        await self.bus.emit(
            EventType.RSVP_CANCELLED, {"content_id": content_id}, actor_id=user.id
        )
        return True

    async def registrations(self, manager: Principal, content_id: str) -> list[dict[str, Any]]:
        content = await self._load(content_id)
        (await self.permissions.can_modify_content(manager, content)).enforce()
        return await self.store.list_registrations(content_id)

    async def mark_attendance(
        self, manager: Principal, content_id: str, user_id: str, *, attended: bool
    ) -> bool:
        if not isinstance(attended, bool):
            raise ValidationError('A boolean "attended" status is required.')
        content = await self._load(content_id)
        (await self.permissions.can_modify_content(manager, content)).enforce()

        if not await self.store.set_attendance(user_id, content_id, attended):
            raise TargetNotFound("Registration not found.")
        await self.bus.emit(
            EventType.ATTENDANCE_MARKED,
            {"content_id": content_id, "user_id": user_id, "attended": attended},
            actor_id=manager.id,
        )
        return attended

    # --- Comments ---

    async def add_comment(self, user: Principal, content_id: str, body: str) -> Comment:
        """Comment on an event or announcement the user can see."""
        if not body or not body.strip():
            raise ValidationError("Comment content cannot be empty.")
        content = await self._load_visible(user, content_id)
        if content.kind not in COMMENT_KINDS:
            raise ValidationError(f"Cannot comment on a {content.kind}")

        comment = Comment(content_id=content_id, author_id=user.id, body=body)
        await self.store.insert_comment(comment.to_storage())
        await self.bus.emit(
            EventType.COMMENT_CREATED,
            {"comment_id": comment.id, "content_id": content_id},
            actor_id=user.id,
        )
        return comment

    async def comments(self, user: Principal, content_id: str) -> list[dict[str, Any]]:
        content = await self._load_visible(user, content_id)
        if content.kind not in COMMENT_KINDS:
            raise ValidationError(f"Cannot comment on a {content.kind}")
        return await self.store.list_comments(content_id)

    # --- Stats ---

    async def profile(self, user_id: str) -> dict[str, Any]:
        """Participation stats plus the attended events, newest first."""
        history = await self.store.attended_events(user_id)
        return {
            "participated_events": len(history),
            "total_hours": _total_hours(history),
            "attendance_history": history,
        }

    async def chapter_stats(self, chapter_id: str) -> dict[str, Any]:
        chapter = await self.store.get_chapter(chapter_id)
        if chapter is None:
            raise TargetNotFound(f"Chapter not found: {chapter_id}")
        spans = await self.store.attended_event_spans(chapter_id)
        return {
            "name": chapter["name"],
            "total_events": await self.store.count_content(kind="event", chapter_id=chapter_id),
            "total_hours": _total_hours(spans),
        }
