"""Tests for the FastMCP server (5 tools)."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import pytest
from conftest import Org
from fastmcp import Client

from rallypoint.auth.jwt import create_token
from rallypoint.config import Config
from rallypoint.models.user import Principal
from rallypoint.server import create_server
from rallypoint.storage.sqlite_store import SQLiteStore


def _data(result) -> dict:
    """Extract parsed JSON from CallToolResult."""
    return json.loads(result.content[0].text)


def _token(config: Config, principal: Principal) -> str:
    return create_token(
        principal.id,
        principal.role,
        managed_region_id=principal.managed_region_id,
        secret=config.jwt_secret,
    )


@pytest.fixture
async def client(tmp_db, config: Config, org: Org):
    server = create_server(str(tmp_db), config=config)
    async with Client(server) as c:
        yield c


async def test_list_tools(client: Client):
    tools = await client.list_tools()
    names = {t.name for t in tools}
    assert names == {
        "rp_chapters", "rp_members", "rp_content", "rp_promote", "rp_status", "rp_dashboard",
    }


async def test_tool_descriptions_short(client: Client):
    tools = await client.list_tools()
    for tool in tools:
        assert len(tool.description) <= 100, f"{tool.name} description too long"


async def test_invalid_token(client: Client):
    data = _data(await client.call_tool("rp_status", {"token": "garbage"}))
    assert data["status"] == 401
    assert data["_v"] == "1.0"


async def test_token_for_unknown_user(client: Client, config: Config):
    ghost = Principal(id="ghost")
    data = _data(await client.call_tool("rp_status", {"token": _token(config, ghost)}))
    assert data["status"] == 401


async def test_status(client: Client, config: Config, org: Org):
    data = _data(await client.call_tool("rp_status", {"token": _token(config, org.cofounder)}))
    assert data["user"]["role"] == "COFOUNDER"
    assert data["participation"] == {
        "participated_events": 0, "total_hours": 0.0, "attendance_history": []
    }
    assert data["totals"]["chapters"] == 4


async def test_list_chapters(client: Client, config: Config, org: Org):
    token = _token(config, org.activist)
    data = _data(await client.call_tool("rp_chapters", {"token": token, "action": "list"}))
    assert data["count"] == 4

    data = _data(
        await client.call_tool(
            "rp_chapters", {"token": token, "action": "list", "region_id": org.spain}
        )
    )
    assert {c["name"] for c in data["items"]} == {"Madrid", "Barcelona"}

    data = _data(await client.call_tool("rp_chapters", {"token": token, "action": "mine"}))
    assert [c["id"] for c in data["items"]] == [org.madrid]


async def test_join_conflict(client: Client, config: Config, org: Org):
    token = _token(config, org.activist)
    data = _data(
        await client.call_tool(
            "rp_chapters", {"token": token, "action": "join", "chapter_id": org.madrid}
        )
    )
    assert data["status"] == 409
    assert "already a member" in data["error"]


async def test_missing_parameter(client: Client, config: Config, org: Org):
    data = _data(
        await client.call_tool(
            "rp_chapters", {"token": _token(config, org.activist), "action": "join"}
        )
    )
    assert data["status"] == 400


async def test_city_organiser_cannot_publish_global(client: Client, config: Config, org: Org):
    data = _data(
        await client.call_tool(
            "rp_content",
            {
                "token": _token(config, org.city),
                "action": "create",
                "kind": "announcement",
                "title": "To everyone",
                "scope": "GLOBAL",
            },
        )
    )
    assert data["status"] == 403
    assert data["error"].startswith("forbidden")


async def test_content_lifecycle(client: Client, config: Config, org: Org):
    city = _token(config, org.city)
    start = datetime.now(UTC) + timedelta(days=1)
    created = _data(
        await client.call_tool(
            "rp_content",
            {
                "token": city,
                "action": "create",
                "kind": "event",
                "title": "Street stall",
                "scope": "CITY",
                "chapter_id": org.madrid,
                "start_time": start.isoformat(),
                "end_time": (start + timedelta(hours=2)).isoformat(),
            },
        )
    )
    assert created["author_role"] == "CITY_ORGANISER"

    activist = _token(config, org.activist)
    rsvp = _data(
        await client.call_tool(
            "rp_content", {"token": activist, "action": "rsvp", "content_id": created["id"]}
        )
    )
    assert rsvp["content_id"] == created["id"]

    listed = _data(
        await client.call_tool("rp_content", {"token": activist, "action": "list", "kind": "event"})
    )
    assert listed["items"][0]["attendee_count"] == 1
    assert listed["items"][0]["is_registered"] is True

    newcomer = _token(config, org.newcomer)
    hidden = _data(
        await client.call_tool(
            "rp_content", {"token": newcomer, "action": "get", "content_id": created["id"]}
        )
    )
    assert hidden["status"] == 404

    deleted = _data(
        await client.call_tool(
            "rp_content", {"token": city, "action": "delete", "content_id": created["id"]}
        )
    )
    assert deleted["deleted"] is True


async def test_members_require_manager(client: Client, config: Config, org: Org):
    data = _data(
        await client.call_tool(
            "rp_members",
            {"token": _token(config, org.city), "action": "list", "chapter_id": org.madrid},
        )
    )
    assert data["count"] == 2
    assert data["can_manage"] is True

    data = _data(
        await client.call_tool(
            "rp_members",
            {"token": _token(config, org.activist), "action": "list", "chapter_id": org.madrid},
        )
    )
    assert data["status"] == 403


async def test_promotion_takes_effect_without_new_token(client: Client, config: Config, org: Org):
    stale = _token(config, org.newcomer)
    promoted = _data(
        await client.call_tool(
            "rp_promote",
            {
                "token": _token(config, org.cofounder),
                "user_id": org.newcomer.id,
                "new_role": "CITY_ORGANISER",
                "target_id": org.berlin,
            },
        )
    )
    assert promoted["role"] == "CITY_ORGANISER"

    data = _data(await client.call_tool("rp_status", {"token": stale}))
    assert data["user"]["role"] == "CITY_ORGANISER"


async def test_promotion_guard_failure(client: Client, config: Config, org: Org):
    data = _data(
        await client.call_tool(
            "rp_promote",
            {
                "token": _token(config, org.regional),
                "user_id": org.newcomer.id,
                "new_role": "REGIONAL_ORGANISER",
                "target_id": org.spain,
            },
        )
    )
    assert data["status"] == 403


async def test_actions_are_logged(client: Client, config: Config, org: Org, store):
    await client.call_tool(
        "rp_chapters",
        {"token": _token(config, org.cofounder), "action": "create_region", "name": "Italy"},
    )
    entries = await store.get_activity_log(entity_type="region")
    assert [e["activity_type"] for e in entries] == ["region.created"]


async def test_chapter_detail(client: Client, config: Config, org: Org):
    data = _data(
        await client.call_tool(
            "rp_chapters",
            {"token": _token(config, org.activist), "action": "get", "chapter_id": org.madrid},
        )
    )
    assert data["region"]["name"] == "Spain"
    assert data["member_count"] == 2
    assert data["can_manage"] is False


async def test_comments(client: Client, config: Config, org: Org):
    created = _data(
        await client.call_tool(
            "rp_content",
            {
                "token": _token(config, org.cofounder),
                "action": "create",
                "kind": "announcement",
                "title": "New season",
                "scope": "GLOBAL",
            },
        )
    )
    token = _token(config, org.activist)
    posted = _data(
        await client.call_tool(
            "rp_content",
            {"token": token, "action": "comment", "content_id": created["id"], "body": "Yes!"},
        )
    )
    assert posted["body"] == "Yes!"

    thread = _data(
        await client.call_tool(
            "rp_content", {"token": token, "action": "comments", "content_id": created["id"]}
        )
    )
    assert thread["count"] == 1
    assert thread["items"][0]["author_name"] == "Pablo"

    missing = _data(
        await client.call_tool(
            "rp_content", {"token": token, "action": "comment", "content_id": created["id"]}
        )
    )
    assert missing["status"] == 400


async def test_dashboard(client: Client, config: Config, org: Org):
    data = _data(await client.call_tool("rp_dashboard", {"token": _token(config, org.city)}))
    assert data["stats"] == {"total_members": 2, "recent_growth": 2}
    assert data["pending_join_requests"] == []

    data = _data(await client.call_tool("rp_dashboard", {"token": _token(config, org.activist)}))
    assert data["status"] == 403


async def test_store_closed_when_session_ends(tmp_db, config: Config, org: Org, monkeypatch):
    closed = []
    original_close = SQLiteStore.close

    async def recording_close(self):
        closed.append(self.db_path)
        await original_close(self)

    monkeypatch.setattr(SQLiteStore, "close", recording_close)
    server = create_server(str(tmp_db), config=config)

    async with Client(server) as c:
        await c.call_tool("rp_status", {"token": _token(config, org.activist)})
    assert closed == [tmp_db]

    async with Client(server) as c:
        data = _data(await c.call_tool("rp_status", {"token": _token(config, org.activist)}))
    assert data["user"]["name"] == "Pablo"
    assert closed == [tmp_db, tmp_db]
