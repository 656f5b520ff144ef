"""Tests for the SQLite storage backend."""

from __future__ import annotations

import asyncio
import sqlite3

import pytest
from conftest import Org

from rallypoint.auth.roles import Role
from rallypoint.models.organization import ChapterMembership, Region
from rallypoint.storage.sqlite_store import SQLiteStore

# --- Initialization ---


async def test_initialize_creates_db(tmp_path):
    db_path = tmp_path / "nested" / "test.db"
    store = SQLiteStore(db_path)
    await store.initialize()
    assert db_path.exists()
    await store.close()


async def test_initialize_wal_mode(store: SQLiteStore):
    cursor = await store.db.execute("PRAGMA journal_mode")
    row = await cursor.fetchone()
    assert row[0] == "wal"


async def test_initialize_foreign_keys(store: SQLiteStore):
    cursor = await store.db.execute("PRAGMA foreign_keys")
    row = await cursor.fetchone()
    assert row[0] == 1


async def test_double_initialize(tmp_path):
    store = SQLiteStore(tmp_path / "test.db")
    await store.initialize()
    await store.initialize()
    await store.close()


async def test_uninitialized_store_raises(tmp_path):
    store = SQLiteStore(tmp_path / "test.db")
    with pytest.raises(RuntimeError, match="not initialized"):
        _ = store.db


# --- Constraints ---


async def test_region_names_unique(store: SQLiteStore):
    await store.insert_region(Region(name="Spain").to_storage())
    with pytest.raises(sqlite3.IntegrityError):
        await store.insert_region(Region(name="Spain").to_storage())


async def test_membership_role_constraint(store: SQLiteStore, org: Org):
    row = ChapterMembership(user_id=org.newcomer.id, chapter_id=org.madrid).to_storage()
    row["role"] = Role.COFOUNDER.value
    with pytest.raises(sqlite3.IntegrityError):
        await store.upsert_membership(row)


# --- Memberships ---


async def test_upsert_without_overwrite_keeps_role(store: SQLiteStore, org: Org):
    row = ChapterMembership(user_id=org.city.id, chapter_id=org.madrid).to_storage()
    stored = await store.upsert_membership(row)
    assert stored["role"] == Role.CITY_ORGANISER


async def test_upsert_with_overwrite(store: SQLiteStore, org: Org):
    row = ChapterMembership(
        user_id=org.activist.id, chapter_id=org.madrid, role=Role.CITY_ORGANISER
    ).to_storage()
    stored = await store.upsert_membership(row, overwrite_role=True)
    assert stored["role"] == Role.CITY_ORGANISER
    assert await store.count_memberships(org.activist.id) == 1


async def test_memberships_carry_region(store: SQLiteStore, org: Org):
    rows = await store.list_memberships_for_user(org.city.id)
    assert rows[0]["region_id"] == org.spain
    assert rows[0]["chapter_name"] == "Madrid"


# --- Updates ---


async def test_update_user_ignores_unknown_columns(store: SQLiteStore, org: Org):
    updated = await store.update_user(org.activist.id, {"email": "x@y.z", "name": "Pablo R"})
    assert updated["name"] == "Pablo R"
    assert updated["email"] == "pablo@example.org"


async def test_update_missing_user(store: SQLiteStore):
    assert await store.update_user("nobody", {"name": "X"}) is None


# --- Transactions ---


async def test_transaction_rolls_back(store: SQLiteStore, org: Org):
    with pytest.raises(RuntimeError):
        async with store.transaction():
            await store.update_user(org.activist.id, {"role": Role.CITY_ORGANISER.value})
            raise RuntimeError("boom")
    assert (await store.get_user(org.activist.id))["role"] == Role.ACTIVIST


async def test_nested_transaction_joins_outer(store: SQLiteStore, org: Org):
    async with store.transaction():
        async with store.transaction():
            await store.update_user(org.activist.id, {"name": "Inner"})
        await store.update_user(org.activist.id, {"role": Role.CITY_ORGANISER.value})
    row = await store.get_user(org.activist.id)
    assert row["name"] == "Inner"
    assert row["role"] == Role.CITY_ORGANISER


async def test_other_tasks_wait_for_transaction(store: SQLiteStore, org: Org):
    seen: list[str] = []
    entered = asyncio.Event()

    async def reader() -> None:
        await entered.wait()
        row = await store.get_user(org.activist.id)
        seen.append(row["role"])

    async def writer() -> None:
        async with store.transaction():
            await store.update_user(org.activist.id, {"role": Role.CITY_ORGANISER.value})
            entered.set()
            await asyncio.sleep(0.05)
            await store.update_user(org.activist.id, {"role": Role.REGIONAL_ORGANISER.value})

    await asyncio.gather(reader(), writer())
    assert seen == [Role.REGIONAL_ORGANISER]


# --- Stats and activity ---


async def test_stats(store: SQLiteStore, org: Org):
    stats = await store.get_stats()
    assert stats["regions"] == 3
    assert stats["chapters"] == 4
    assert stats["users"] == 5
    assert stats["roles"][Role.ACTIVIST] == 2
    assert stats["content"] == {}


async def test_activity_log_filter(store: SQLiteStore):
    for n, entity in enumerate(["chapter", "user", "chapter"]):
        await store.log_activity(
            {
                "id": f"a{n}",
                "user_id": None,
                "activity_type": f"{entity}.created",
                "entity_type": entity,
                "entity_id": f"e{n}",
                "description": None,
                "created_at": f"2030-01-0{n + 1}T00:00:00+00:00",
            }
        )
    entries = await store.get_activity_log(entity_type="chapter")
    assert [e["id"] for e in entries] == ["a2", "a0"]
    assert len(await store.get_activity_log(limit=2)) == 2


async def test_member_counts_and_scoped_queries(store: SQLiteStore, org: Org):
    assert await store.count_chapter_members([org.madrid, org.berlin]) == 2
    assert await store.count_chapter_members([]) == 0
    assert await store.count_chapter_members([org.madrid], joined_since="2999-01-01") == 0
    assert await store.recent_join_requests([]) == []
    assert await store.query_content(kind="event", include_global=False) == []
