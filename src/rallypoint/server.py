"""FastMCP server: five consolidated tools over the chapter and content engines."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Any, Literal

from fastmcp import FastMCP
from pydantic import Field

from rallypoint.auth.jwt import TokenExpiredError, TokenInvalidError, principal_from_token
from rallypoint.auth.permissions import PermissionEvaluator
from rallypoint.config import Config
from rallypoint.core.chapters import ChapterEngine
from rallypoint.core.content import ContentEngine
from rallypoint.core.dashboard import OrganiserDashboard
from rallypoint.core.promotion import PromotionMachine
from rallypoint.errors import RallypointError, ValidationError
from rallypoint.events.bus import ActivityRecorder, EventBus
from rallypoint.models.user import Principal, User
from rallypoint.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

Token = Annotated[str, Field(description="Bearer token of the calling user")]


def _json(data: Any) -> str:
    return json.dumps(data, default=str)


def _ok(data: dict[str, Any]) -> str:
    """Return a versioned JSON success response."""
    return _json({**data, "_v": "1.0"})


def _err(msg: str, status: int) -> str:
    """Return a versioned JSON error response with its transport status."""
    return _json({"_v": "1.0", "error": msg, "status": status})


def create_server(db_path: str, *, config: Config | None = None) -> FastMCP:
    """Create the FastMCP server bound to one database."""
    config = config or Config.load()

    state: dict[str, Any] = {}
    _lock = asyncio.Lock()

    async def _shutdown() -> None:
        async with _lock:
            store = state.pop("store", None)
            state.clear()
            if store is not None:
                await store.close()
                logger.info("Closed rallypoint store at %s", db_path)

    @asynccontextmanager
    async def _lifespan(server: FastMCP) -> AsyncIterator[dict[str, Any]]:
        try:
            yield {}
        finally:
            await _shutdown()

    mcp = FastMCP("rallypoint", version="0.1.0", lifespan=_lifespan)

    async def _init() -> dict[str, Any]:
        async with _lock:
            if "init_failed" in state:
                raise RuntimeError(f"Rallypoint init previously failed for {db_path}")
            if "chapters" not in state:
                try:
                    store = SQLiteStore(Path(db_path), wal_mode=config.wal_mode)
                    await store.initialize()
                except Exception as e:
                    state["init_failed"] = True
                    logger.error("Failed to initialize database: %s", e)
                    raise RuntimeError(f"Rallypoint init failed: {db_path}") from e
                bus = EventBus()
                ActivityRecorder(store).attach(bus)
                permissions = PermissionEvaluator(store)
                state["store"] = store
                state["bus"] = bus
                state["chapters"] = ChapterEngine(store, bus, permissions)
                state["content"] = ContentEngine(store, bus, permissions)
                state["promotions"] = PromotionMachine(store, bus)
                state["dashboard"] = OrganiserDashboard(store, permissions.resolver)
        return state

    async def _authenticate(token: str) -> tuple[dict[str, Any], Principal]:
        """Verify the token and reload the caller's current row."""
        s = await _init()
        claimed = principal_from_token(token, config.jwt_secret)
        row = await s["store"].get_user(claimed.id)
        if row is None:
            raise TokenInvalidError("Token names an unknown user")
        return s, User(**row).principal()

    async def _run(token: str, handler: Any) -> str:
        try:
            s, principal = await _authenticate(token)
            return await handler(s, principal)
        except (TokenExpiredError, TokenInvalidError) as e:
            return _err(str(e), 401)
        except RallypointError as e:
            return _err(e.message, e.status_code)

    def _require(value: Any, name: str, action: str) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(f"{name} is required for {action}")
        return value

    # ── rp_chapters ──────────────────────────────────────────

    @mcp.tool()
    async def rp_chapters(
        token: Token,
        action: Annotated[
            Literal[
                "list", "get", "mine", "managed", "create", "join", "become_member",
                "regions", "create_region", "stats",
            ],
            Field(description="list | get | mine | managed | create | join | become_member | "
                  "regions | create_region | stats"),
        ],
        chapter_id: Annotated[
            str | None, Field(description="Chapter ID (get, join, become_member, stats)")
        ] = None,
        region_id: Annotated[
            str | None, Field(description="Region ID (create; list: filter by region)")
        ] = None,
        name: Annotated[str | None, Field(description="Name (create, create_region)")] = None,
        description: Annotated[str | None, Field(description="Chapter description")] = None,
    ) -> str:
        """Chapters and regions: browse, create, request to join, or join as organiser."""

        async def handle(s: dict[str, Any], me: Principal) -> str:
            chapters: ChapterEngine = s["chapters"]

            if action == "list":
                items = await chapters.list_chapters(region_id=region_id)
                return _ok({"items": [c.to_response() for c in items], "count": len(items)})
            if action == "get":
                return _ok(
                    await chapters.chapter_detail(me, _require(chapter_id, "chapter_id", action))
                )
            if action == "mine":
                items = await chapters.my_chapters(me)
                return _ok({"items": [c.to_response() for c in items], "count": len(items)})
            if action == "managed":
                items = await chapters.managed_chapters(me)
                return _ok({"items": [c.to_response() for c in items], "count": len(items)})
            if action == "create":
                chapter = await chapters.create_chapter(
                    me,
                    name=_require(name, "name", action),
                    region_id=region_id,
                    description=description,
                )
                return _ok(chapter.to_response())
            if action == "join":
                request = await chapters.request_to_join(
                    me, _require(chapter_id, "chapter_id", action)
                )
                return _ok(request.to_response())
            if action == "become_member":
                membership = await chapters.become_official_member(
                    me, _require(chapter_id, "chapter_id", action)
                )
                return _ok(membership.to_response())
            if action == "regions":
                items = await chapters.list_regions()
                return _ok({"items": [r.to_response() for r in items], "count": len(items)})
            if action == "create_region":
                region = await chapters.create_region(me, _require(name, "name", action))
                return _ok(region.to_response())
            if action == "stats":
                stats = await s["content"].chapter_stats(_require(chapter_id, "chapter_id", action))
                return _ok(stats)
            return _err(f"Unknown action: {action}", 400)

        return await _run(token, handle)

    # ── rp_members ───────────────────────────────────────────

    @mcp.tool()
    async def rp_members(
        token: Token,
        action: Annotated[
            Literal["list", "add", "remove", "requests", "resolve", "search"],
            Field(description="list | add | remove | requests | resolve | search"),
        ],
        chapter_id: Annotated[str | None, Field(description="Chapter ID")] = None,
        user_id: Annotated[str | None, Field(description="Member user ID (add, remove)")] = None,
        request_id: Annotated[str | None, Field(description="Join request ID (resolve)")] = None,
        approve: Annotated[bool | None, Field(description="Approve or deny (resolve)")] = None,
        text: Annotated[str | None, Field(description="Name or email fragment (search)")] = None,
    ) -> str:
        """Chapter membership management: members, join requests, user search."""

        async def handle(s: dict[str, Any], me: Principal) -> str:
            chapters: ChapterEngine = s["chapters"]

            if action == "search":
                items = await chapters.search_users(text or "")
                return _ok({"items": items, "count": len(items)})

            chapter = _require(chapter_id, "chapter_id", action)
            if action == "list":
                items = await chapters.members(me, chapter)
                can_manage = await chapters.can_manage(me, chapter)
                return _ok({"items": items, "count": len(items), "can_manage": can_manage})
            if action == "add":
                membership = await chapters.add_member(
                    me, chapter, _require(user_id, "user_id", action)
                )
                return _ok(membership.to_response())
            if action == "remove":
                demoted = await chapters.remove_member(
                    me, chapter, _require(user_id, "user_id", action)
                )
                return _ok({"removed": True, "demoted": demoted})
            if action == "requests":
                items = await chapters.join_requests(me, chapter)
                return _ok({"items": items, "count": len(items)})
            if action == "resolve":
                approved = await chapters.resolve_join_request(
                    me,
                    chapter,
                    _require(request_id, "request_id", action),
                    approve=_require(approve, "approve", action),
                )
                return _ok({"request_id": request_id, "approved": approved})
            return _err(f"Unknown action: {action}", 400)

        return await _run(token, handle)

    # ── rp_content ───────────────────────────────────────────

    @mcp.tool()
    async def rp_content(
        token: Token,
        action: Annotated[
            Literal[
                "create", "list", "get", "update", "delete", "rsvp", "cancel_rsvp",
                "registrations", "attendance", "comment", "comments",
            ],
            Field(description="create | list | get | update | delete | rsvp | cancel_rsvp | "
                  "registrations | attendance | comment | comments"),
        ],
        kind: Annotated[
            Literal["event", "training", "announcement"] | None,
            Field(description="Content kind (create, list)"),
        ] = None,
        content_id: Annotated[str | None, Field(description="Content ID")] = None,
        title: Annotated[str | None, Field(description="Title (create, update)")] = None,
        body: Annotated[
            str | None, Field(description="Body text (create, update, comment)")
        ] = None,
        location: Annotated[str | None, Field(description="Location (create, update)")] = None,
        start_time: Annotated[str | None, Field(description="ISO start time")] = None,
        end_time: Annotated[str | None, Field(description="ISO end time")] = None,
        scope: Annotated[
            Literal["CITY", "REGIONAL", "GLOBAL"] | None,
            Field(description="Audience scope (create)"),
        ] = None,
        chapter_id: Annotated[str | None, Field(description="Chapter for CITY scope")] = None,
        region_id: Annotated[str | None, Field(description="Region for REGIONAL scope")] = None,
        user_id: Annotated[str | None, Field(description="Attendee user ID (attendance)")] = None,
        attended: Annotated[bool | None, Field(description="Attendance flag")] = None,
        upcoming_only: Annotated[bool, Field(description="Hide past items (list)")] = True,
        limit: Annotated[int, Field(description="Max results 1-50 (list)", ge=1, le=50)] = 10,
        offset: Annotated[int, Field(description="Pagination offset (list)", ge=0)] = 0,
    ) -> str:
        """Events, trainings and announcements: publish, browse, edit, RSVP, comments."""

        async def handle(s: dict[str, Any], me: Principal) -> str:
            content: ContentEngine = s["content"]

            if action == "create":
                item = await content.create(
                    me,
                    kind=_require(kind, "kind", action),
                    title=_require(title, "title", action),
                    scope=scope,
                    chapter_id=chapter_id,
                    region_id=region_id,
                    body=body,
                    location=location,
                    start_time=start_time,
                    end_time=end_time,
                )
                return _ok(item.to_response(detail="full"))
            if action == "list":
                items = await content.list_content(
                    me,
                    kind=_require(kind, "kind", action),
                    upcoming_only=upcoming_only,
                    limit=config.clamp_limit(limit),
                    offset=offset,
                )
                return _ok({"items": items, "count": len(items)})

            target = _require(content_id, "content_id", action)
            if action == "get":
                return _ok(await content.get(me, target))
            if action == "update":
                item = await content.update(
                    me,
                    target,
                    title=title,
                    body=body,
                    location=location,
                    start_time=start_time,
                    end_time=end_time,
                )
                return _ok(item.to_response(detail="full"))
            if action == "delete":
                return _ok({"deleted": await content.delete(me, target)})
            if action == "rsvp":
                registration = await content.rsvp(me, target)
                return _ok(registration.to_response())
            if action == "cancel_rsvp":
                return _ok({"cancelled": await content.cancel_rsvp(me, target)})
            if action == "registrations":
                items = await content.registrations(me, target)
                return _ok({"items": items, "count": len(items)})
            if action == "attendance":
                marked = await content.mark_attendance(
                    me,
                    target,
                    _require(user_id, "user_id", action),
                    attended=_require(attended, "attended", action),
                )
                return _ok({"user_id": user_id, "attended": marked})
            if action == "comment":
                comment = await content.add_comment(me, target, _require(body, "body", action))
                return _ok(comment.to_response())
            if action == "comments":
                items = await content.comments(me, target)
                return _ok({"items": items, "count": len(items)})
            return _err(f"Unknown action: {action}", 400)

        return await _run(token, handle)

    # ── rp_promote ───────────────────────────────────────────

    @mcp.tool()
    async def rp_promote(
        token: Token,
        user_id: Annotated[str, Field(description="User to promote")],
        new_role: Annotated[
            Literal["CITY_ORGANISER", "REGIONAL_ORGANISER", "COFOUNDER"],
            Field(description="Role to grant"),
        ],
        target_id: Annotated[
            str | None,
            Field(description="Chapter (City Organiser) or region (Regional Organiser)"),
        ] = None,
    ) -> str:
        """Promote a user up the organiser hierarchy."""

        async def handle(s: dict[str, Any], me: Principal) -> str:
            promoted = await s["promotions"].promote(me, user_id, new_role, target_id)
            return _ok(promoted.to_response(detail="full"))

        return await _run(token, handle)

    # ── rp_status ────────────────────────────────────────────

    @mcp.tool()
    async def rp_status(token: Token) -> str:
        """The caller's profile, attendance history and organisation totals."""

        async def handle(s: dict[str, Any], me: Principal) -> str:
            user = User(**await s["store"].get_user(me.id))
            return _ok(
                {
                    "user": user.to_response(detail="full"),
                    "participation": await s["content"].profile(me.id),
                    "totals": await s["store"].get_stats(),
                }
            )

        return await _run(token, handle)

    # ── rp_dashboard ─────────────────────────────────────────

    @mcp.tool()
    async def rp_dashboard(token: Token) -> str:
        """Organiser summary: pending join requests, upcoming events, member growth."""

        async def handle(s: dict[str, Any], me: Principal) -> str:
            return _ok(await s["dashboard"].summary(me))

        return await _run(token, handle)

    return mcp
