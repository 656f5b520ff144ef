"""Event type constants for Rallypoint."""

from enum import StrEnum


class EventType(StrEnum):
    USER_REGISTERED = "user.registered"
    USER_PROMOTED = "user.promoted"
    USER_DEMOTED = "user.demoted"

    REGION_CREATED = "region.created"
    CHAPTER_CREATED = "chapter.created"

    JOIN_REQUESTED = "join.requested"
    JOIN_APPROVED = "join.approved"
    JOIN_DENIED = "join.denied"

    MEMBER_ADDED = "member.added"
    MEMBER_REMOVED = "member.removed"

    CONTENT_CREATED = "content.created"
    CONTENT_UPDATED = "content.updated"
    CONTENT_DELETED = "content.deleted"

    RSVP_CREATED = "rsvp.created"
    RSVP_CANCELLED = "rsvp.cancelled"
    ATTENDANCE_MARKED = "attendance.marked"

    COMMENT_CREATED = "comment.created"
