"""Shared test fixtures for Rallypoint."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import pytest

from rallypoint.auth.permissions import PermissionEvaluator
from rallypoint.auth.roles import Role
from rallypoint.config import Config
from rallypoint.core.chapters import ChapterEngine
from rallypoint.core.content import ContentEngine
from rallypoint.core.promotion import PromotionMachine
from rallypoint.events.bus import EventBus
from rallypoint.models.organization import Chapter, ChapterMembership, Region
from rallypoint.models.user import Principal, User
from rallypoint.storage.sqlite_store import SQLiteStore


@dataclass
class Org:
    """A small seeded organisation.

    Regions Spain, Germany and France. Madrid and Barcelona are in Spain,
    Berlin in Germany, Paris in France. ``regional`` manages Spain;
    ``city`` organises Madrid; ``activist`` is a plain member of Madrid;
    ``newcomer`` has no membership at all.
    """

    spain: str
    germany: str
    france: str
    madrid: str
    barcelona: str
    berlin: str
    paris: str
    cofounder: Principal
    regional: Principal
    city: Principal
    activist: Principal
    newcomer: Principal


async def add_user(
    store: SQLiteStore,
    name: str,
    role: Role = Role.ACTIVIST,
    *,
    region_id: str | None = None,
) -> Principal:
    user = User(
        email=f"{name.lower()}@example.org",
        name=name,
        role=role,
        managed_region_id=region_id,
    )
    await store.insert_user(user.to_storage())
    return user.principal()


async def add_membership(
    store: SQLiteStore, user_id: str, chapter_id: str, role: Role = Role.ACTIVIST
) -> None:
    membership = ChapterMembership(user_id=user_id, chapter_id=chapter_id, role=role)
    await store.upsert_membership(membership.to_storage(), overwrite_role=True)


async def seed_org(store: SQLiteStore) -> Org:
    regions = {}
    for name in ("Spain", "Germany", "France"):
        region = Region(name=name)
        await store.insert_region(region.to_storage())
        regions[name] = region.id

    chapters = {}
    for name, region in (
        ("Madrid", "Spain"),
        ("Barcelona", "Spain"),
        ("Berlin", "Germany"),
        ("Paris", "France"),
    ):
        chapter = Chapter(name=name, region_id=regions[region])
        await store.insert_chapter(chapter.to_storage())
        chapters[name] = chapter.id

    cofounder = await add_user(store, "Ada", Role.COFOUNDER)
    regional = await add_user(
        store, "Rosa", Role.REGIONAL_ORGANISER, region_id=regions["Spain"]
    )
    city = await add_user(store, "Carmen", Role.CITY_ORGANISER)
    await add_membership(store, city.id, chapters["Madrid"], Role.CITY_ORGANISER)
    activist = await add_user(store, "Pablo")
    await add_membership(store, activist.id, chapters["Madrid"])
    newcomer = await add_user(store, "Nina")

    return Org(
        spain=regions["Spain"],
        germany=regions["Germany"],
        france=regions["France"],
        madrid=chapters["Madrid"],
        barcelona=chapters["Barcelona"],
        berlin=chapters["Berlin"],
        paris=chapters["Paris"],
        cofounder=cofounder,
        regional=regional,
        city=city,
        activist=activist,
        newcomer=newcomer,
    )


@pytest.fixture
def tmp_db(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
async def store(tmp_db: Path) -> SQLiteStore:
    s = SQLiteStore(tmp_db)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(workspace_path=tmp_path)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
async def org(store: SQLiteStore) -> Org:
    return await seed_org(store)


@pytest.fixture
def permissions(store: SQLiteStore) -> PermissionEvaluator:
    return PermissionEvaluator(store)


@pytest.fixture
def chapters(store: SQLiteStore, bus: EventBus, permissions: PermissionEvaluator) -> ChapterEngine:
    return ChapterEngine(store, bus, permissions)


@pytest.fixture
def content(store: SQLiteStore, bus: EventBus, permissions: PermissionEvaluator) -> ContentEngine:
    return ContentEngine(store, bus, permissions)


@pytest.fixture
def promotions(store: SQLiteStore, bus: EventBus) -> PromotionMachine:
    return PromotionMachine(store, bus)
