"""SQLite storage backend with WAL mode and serialized connection access."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite

from rallypoint.storage.base import StorageBackend

logger = logging.getLogger(__name__)

# Column whitelists per table; prevents SQL injection in UPDATE operations
_ALLOWED_COLUMNS: dict[str, set[str]] = {
    "users": {"name", "role", "managed_region_id"},
    "content": {"title", "body", "location", "start_time", "end_time", "updated_at"},
}


def _validate_update_keys(table: str, updates: dict[str, Any]) -> dict[str, Any]:
    """Filter update dict to only allowed column names."""
    allowed = _ALLOWED_COLUMNS.get(table, set())
    filtered = {k: v for k, v in updates.items() if k in allowed}
    rejected = set(updates.keys()) - allowed - {"id"}
    if rejected:
        logger.warning("Rejected invalid column names for %s: %s", table, rejected)
    return filtered


class SQLiteStore(StorageBackend):
    """SQLite-based storage over a single aiosqlite connection.

    All statements go through one lock. A transaction holds the lock for its
    whole body, so statements from other tasks never interleave with it and
    never see its uncommitted rows.
    """

    def __init__(self, db_path: Path, *, wal_mode: bool = True) -> None:
        self.db_path = db_path
        self.wal_mode = wal_mode
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._tx_task: asyncio.Task | None = None

    async def initialize(self) -> None:
        """Create database and apply schema."""
        if self._db is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(str(self.db_path))
            self._db.row_factory = aiosqlite.Row

        if self.wal_mode:
            await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")

        await self._db.executescript(_load_sql("organization.sql"))
        await self._db.commit()
        logger.info("Initialized SQLite store at %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Store not initialized. Call initialize() first.")
        return self._db

    # --- Connection access ---

    def _owns_transaction(self) -> bool:
        return self._tx_task is not None and self._tx_task is asyncio.current_task()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._owns_transaction():
            # Nested use joins the enclosing transaction.
            yield
            return
        async with self._lock:
            await self.db.execute("BEGIN IMMEDIATE")
            self._tx_task = asyncio.current_task()
            try:
                yield
            except BaseException:
                await self.db.rollback()
                raise
            else:
                await self.db.commit()
            finally:
                self._tx_task = None

    @asynccontextmanager
    async def _access(self) -> AsyncIterator[None]:
        if self._owns_transaction():
            yield
        else:
            async with self._lock:
                yield

    async def _write(self, sql: str, params: Any = ()) -> aiosqlite.Cursor:
        async with self._access():
            cursor = await self.db.execute(sql, params)
            if not self._owns_transaction():
                await self.db.commit()
            return cursor

    async def _fetchone(self, sql: str, params: Any = ()) -> dict[str, Any] | None:
        async with self._access():
            cursor = await self.db.execute(sql, params)
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def _fetchall(self, sql: str, params: Any = ()) -> list[dict[str, Any]]:
        async with self._access():
            cursor = await self.db.execute(sql, params)
            rows = await cursor.fetchall()
        return [_row_to_dict(row) for row in rows]

    async def _scalar(self, sql: str, params: Any = ()) -> int:
        async with self._access():
            cursor = await self.db.execute(sql, params)
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def _update(
        self, table: str, key: str, key_value: str, updates: dict[str, Any]
    ) -> bool:
        updates = _validate_update_keys(table, updates)
        if not updates:
            return False
        set_clauses = [f"{column} = ?" for column in updates]
        values = [*updates.values(), key_value]
        await self._write(
            f"UPDATE {table} SET {', '.join(set_clauses)} WHERE {key} = ?",
            values,
        )
        return True

    # --- User operations ---

    async def insert_user(self, user: dict[str, Any]) -> dict[str, Any]:
        await self._write(
            """INSERT INTO users (id, email, name, role, managed_region_id, created_at)
               VALUES (:id, :email, :name, :role, :managed_region_id, :created_at)""",
            user,
        )
        return user

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        return await self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))

    async def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        return await self._fetchone("SELECT * FROM users WHERE email = ?", (email,))

    async def update_user(self, user_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        existing = await self.get_user(user_id)
        if not existing:
            return None
        if not await self._update("users", "id", user_id, updates):
            return existing
        return await self.get_user(user_id)

    async def search_users(self, text: str, *, limit: int = 10) -> list[dict[str, Any]]:
        pattern = f"%{text.lower()}%"
        return await self._fetchall(
            """SELECT id, name, email FROM users
               WHERE lower(name) LIKE ? OR lower(email) LIKE ?
               ORDER BY name LIMIT ?""",
            (pattern, pattern, limit),
        )

    # --- Region operations ---

    async def insert_region(self, region: dict[str, Any]) -> dict[str, Any]:
        await self._write(
            "INSERT INTO regions (id, name, created_at) VALUES (:id, :name, :created_at)",
            region,
        )
        return region

    async def get_region(self, region_id: str) -> dict[str, Any] | None:
        return await self._fetchone("SELECT * FROM regions WHERE id = ?", (region_id,))

    async def list_regions(self) -> list[dict[str, Any]]:
        return await self._fetchall("SELECT * FROM regions ORDER BY name")

    # --- Chapter operations ---

    async def insert_chapter(self, chapter: dict[str, Any]) -> dict[str, Any]:
        await self._write(
            """INSERT INTO chapters (id, name, description, region_id, created_at)
               VALUES (:id, :name, :description, :region_id, :created_at)""",
            chapter,
        )
        return chapter

    async def get_chapter(self, chapter_id: str) -> dict[str, Any] | None:
        return await self._fetchone("SELECT * FROM chapters WHERE id = ?", (chapter_id,))

    async def list_chapters(self, *, region_id: str | None = None) -> list[dict[str, Any]]:
        if region_id:
            return await self._fetchall(
                "SELECT * FROM chapters WHERE region_id = ? ORDER BY name", (region_id,)
            )
        return await self._fetchall("SELECT * FROM chapters ORDER BY name")

    # --- Membership operations ---

    async def get_membership(self, user_id: str, chapter_id: str) -> dict[str, Any] | None:
        return await self._fetchone(
            "SELECT * FROM chapter_memberships WHERE user_id = ? AND chapter_id = ?",
            (user_id, chapter_id),
        )

    async def list_memberships_for_user(self, user_id: str) -> list[dict[str, Any]]:
        return await self._fetchall(
            """SELECT m.*, c.region_id AS region_id, c.name AS chapter_name
               FROM chapter_memberships m
               JOIN chapters c ON c.id = m.chapter_id
               WHERE m.user_id = ?
               ORDER BY c.name""",
            (user_id,),
        )

    async def list_chapter_members(self, chapter_id: str) -> list[dict[str, Any]]:
        return await self._fetchall(
            """SELECT u.id, u.name, u.email, u.role, m.role AS membership_role, m.joined_at
               FROM chapter_memberships m
               JOIN users u ON u.id = m.user_id
               WHERE m.chapter_id = ?
               ORDER BY u.name""",
            (chapter_id,),
        )

    async def upsert_membership(
        self, membership: dict[str, Any], *, overwrite_role: bool = False
    ) -> dict[str, Any]:
        conflict = "DO UPDATE SET role = excluded.role" if overwrite_role else "DO NOTHING"
        await self._write(
            f"""INSERT INTO chapter_memberships (user_id, chapter_id, role, joined_at)
                VALUES (:user_id, :chapter_id, :role, :joined_at)
                ON CONFLICT(user_id, chapter_id) {conflict}""",
            membership,
        )
        stored = await self.get_membership(membership["user_id"], membership["chapter_id"])
        return stored or membership

    async def delete_membership(self, user_id: str, chapter_id: str) -> bool:
        cursor = await self._write(
            "DELETE FROM chapter_memberships WHERE user_id = ? AND chapter_id = ?",
            (user_id, chapter_id),
        )
        return cursor.rowcount > 0

    async def count_memberships(self, user_id: str) -> int:
        return await self._scalar(
            "SELECT COUNT(*) FROM chapter_memberships WHERE user_id = ?", (user_id,)
        )

    async def count_chapter_members(
        self, chapter_ids: Iterable[str], *, joined_since: str | None = None
    ) -> int:
        chapter_ids = sorted(set(chapter_ids))
        if not chapter_ids:
            return 0
        conditions = [f"chapter_id IN ({_placeholders(chapter_ids)})"]
        params: list[Any] = list(chapter_ids)
        if joined_since is not None:
            conditions.append("joined_at >= ?")
            params.append(joined_since)
        return await self._scalar(
            f"SELECT COUNT(*) FROM chapter_memberships WHERE {' AND '.join(conditions)}",
            params,
        )

    # --- Join request operations ---

    async def insert_join_request(self, request: dict[str, Any]) -> dict[str, Any]:
        await self._write(
            """INSERT INTO join_requests (id, user_id, chapter_id, status, created_at)
               VALUES (:id, :user_id, :chapter_id, :status, :created_at)""",
            request,
        )
        return request

    async def get_join_request(self, request_id: str) -> dict[str, Any] | None:
        return await self._fetchone("SELECT * FROM join_requests WHERE id = ?", (request_id,))

    async def find_join_request(self, user_id: str, chapter_id: str) -> dict[str, Any] | None:
        return await self._fetchone(
            "SELECT * FROM join_requests WHERE user_id = ? AND chapter_id = ?",
            (user_id, chapter_id),
        )

    async def list_join_requests(self, chapter_id: str) -> list[dict[str, Any]]:
        return await self._fetchall(
            """SELECT r.*, u.name AS user_name, u.email AS user_email
               FROM join_requests r
               JOIN users u ON u.id = r.user_id
               WHERE r.chapter_id = ? AND r.status = 'PENDING'
               ORDER BY r.created_at""",
            (chapter_id,),
        )

    async def delete_join_request(self, request_id: str) -> bool:
        cursor = await self._write("DELETE FROM join_requests WHERE id = ?", (request_id,))
        return cursor.rowcount > 0

    async def recent_join_requests(
        self, chapter_ids: Iterable[str], *, limit: int = 5
    ) -> list[dict[str, Any]]:
        chapter_ids = sorted(set(chapter_ids))
        if not chapter_ids:
            return []
        return await self._fetchall(
            f"""SELECT r.*, u.name AS user_name, c.name AS chapter_name
                FROM join_requests r
                JOIN users u ON u.id = r.user_id
                JOIN chapters c ON c.id = r.chapter_id
                WHERE r.status = 'PENDING' AND r.chapter_id IN ({_placeholders(chapter_ids)})
                ORDER BY r.created_at DESC
                LIMIT ?""",
            [*chapter_ids, limit],
        )

    # --- Content operations ---

    async def insert_content(self, content: dict[str, Any]) -> dict[str, Any]:
        await self._write(
            """INSERT INTO content (id, kind, title, body, location, start_time, end_time,
               scope, chapter_id, region_id, author_id, author_role, created_at, updated_at)
               VALUES (:id, :kind, :title, :body, :location, :start_time, :end_time,
               :scope, :chapter_id, :region_id, :author_id, :author_role, :created_at,
               :updated_at)""",
            content,
        )
        return content

    async def get_content(self, content_id: str) -> dict[str, Any] | None:
        return await self._fetchone("SELECT * FROM content WHERE id = ?", (content_id,))

    async def update_content(
        self, content_id: str, updates: dict[str, Any]
    ) -> dict[str, Any] | None:
        existing = await self.get_content(content_id)
        if not existing:
            return None
        if not await self._update("content", "id", content_id, updates):
            return existing
        return await self.get_content(content_id)

    async def delete_content(self, content_id: str) -> bool:
        async with self.transaction():
            await self._write("DELETE FROM registrations WHERE content_id = ?", (content_id,))
            await self._write("DELETE FROM comments WHERE content_id = ?", (content_id,))
            cursor = await self._write("DELETE FROM content WHERE id = ?", (content_id,))
        return cursor.rowcount > 0

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
        chapter_ids = sorted(set(chapter_ids))
        region_ids = sorted(set(region_ids))

        audience = ["scope = 'GLOBAL'"] if include_global else []
        params: list[Any] = [kind]
        if region_ids:
            audience.append(f"(scope = 'REGIONAL' AND region_id IN ({_placeholders(region_ids)}))")
            params.extend(region_ids)
        if chapter_ids:
            audience.append(f"(scope = 'CITY' AND chapter_id IN ({_placeholders(chapter_ids)}))")
            params.extend(chapter_ids)

        if not audience:
            return []
        conditions = ["kind = ?", f"({' OR '.join(audience)})"]
        if starts_after is not None:
            conditions.append("start_time >= ?")
            params.append(starts_after)

        order = "created_at DESC" if kind == "announcement" else "start_time ASC, created_at ASC"
        query = f"""
            SELECT * FROM content
            WHERE {' AND '.join(conditions)}
            ORDER BY {order}
            LIMIT ? OFFSET ?
        """
        params.extend([limit, offset])
        return await self._fetchall(query, params)

    async def count_content(self, *, kind: str, chapter_id: str | None = None) -> int:
        if chapter_id:
            return await self._scalar(
                "SELECT COUNT(*) FROM content WHERE kind = ? AND chapter_id = ?",
                (kind, chapter_id),
            )
        return await self._scalar("SELECT COUNT(*) FROM content WHERE kind = ?", (kind,))

    # --- Registration operations ---

    async def insert_registration(self, registration: dict[str, Any]) -> dict[str, Any]:
        await self._write(
            """INSERT INTO registrations (user_id, content_id, attended, created_at)
               VALUES (:user_id, :content_id, :attended, :created_at)""",
            registration,
        )
        return registration

    async def get_registration(self, user_id: str, content_id: str) -> dict[str, Any] | None:
        return await self._fetchone(
            "SELECT * FROM registrations WHERE user_id = ? AND content_id = ?",
            (user_id, content_id),
        )

    async def delete_registration(self, user_id: str, content_id: str) -> bool:
        cursor = await self._write(
            "DELETE FROM registrations WHERE user_id = ? AND content_id = ?",
            (user_id, content_id),
        )
        return cursor.rowcount > 0

    async def list_registrations(self, content_id: str) -> list[dict[str, Any]]:
        return await self._fetchall(
            """SELECT r.*, u.name AS user_name, u.email AS user_email
               FROM registrations r
               JOIN users u ON u.id = r.user_id
               WHERE r.content_id = ?
               ORDER BY u.name""",
            (content_id,),
        )

    async def count_registrations(self, content_ids: list[str]) -> dict[str, int]:
        if not content_ids:
            return {}
        rows = await self._fetchall(
            f"""SELECT content_id, COUNT(*) AS count FROM registrations
                WHERE content_id IN ({_placeholders(content_ids)})
                GROUP BY content_id""",
            content_ids,
        )
        return {row["content_id"]: row["count"] for row in rows}

    async def registered_content_ids(self, user_id: str, content_ids: list[str]) -> set[str]:
        if not content_ids:
            return set()
        rows = await self._fetchall(
            f"""SELECT content_id FROM registrations
                WHERE user_id = ? AND content_id IN ({_placeholders(content_ids)})""",
            [user_id, *content_ids],
        )
        return {row["content_id"] for row in rows}

    async def set_attendance(self, user_id: str, content_id: str, attended: bool) -> bool:
        cursor = await self._write(
            "UPDATE registrations SET attended = ? WHERE user_id = ? AND content_id = ?",
            (int(attended), user_id, content_id),
        )
        return cursor.rowcount > 0

    async def attended_event_spans(self, chapter_id: str) -> list[dict[str, Any]]:
        return await self._fetchall(
            """SELECT c.start_time, c.end_time FROM registrations r
               JOIN content c ON c.id = r.content_id
               WHERE r.attended = 1 AND c.kind = 'event' AND c.chapter_id = ?""",
            (chapter_id,),
        )

    async def attended_events(self, user_id: str) -> list[dict[str, Any]]:
        return await self._fetchall(
            """SELECT c.id, c.title, c.start_time, c.end_time, ch.name AS chapter_name
               FROM registrations r
               JOIN content c ON c.id = r.content_id
               LEFT JOIN chapters ch ON ch.id = c.chapter_id
               WHERE r.user_id = ? AND r.attended = 1 AND c.kind = 'event'
               ORDER BY c.start_time DESC""",
            (user_id,),
        )

    # --- Comment operations ---

    async def insert_comment(self, comment: dict[str, Any]) -> dict[str, Any]:
        await self._write(
            """INSERT INTO comments (id, content_id, author_id, body, created_at)
               VALUES (:id, :content_id, :author_id, :body, :created_at)""",
            comment,
        )
        return comment

    async def list_comments(self, content_id: str) -> list[dict[str, Any]]:
        return await self._fetchall(
            """SELECT m.*, u.name AS author_name
               FROM comments m
               JOIN users u ON u.id = m.author_id
               WHERE m.content_id = ?
               ORDER BY m.created_at, m.id""",
            (content_id,),
        )

    # --- Activity log ---

    async def log_activity(self, entry: dict[str, Any]) -> None:
        await self._write(
            """INSERT INTO activity_log (id, user_id, activity_type, entity_type,
               entity_id, description, created_at)
               VALUES (:id, :user_id, :activity_type, :entity_type,
               :entity_id, :description, :created_at)""",
            entry,
        )

    async def get_activity_log(
        self, *, entity_type: str | None = None, limit: int = 20
    ) -> list[dict[str, Any]]:
        if entity_type:
            return await self._fetchall(
                "SELECT * FROM activity_log WHERE entity_type = ? ORDER BY created_at DESC LIMIT ?",
                (entity_type, limit),
            )
        return await self._fetchall(
            "SELECT * FROM activity_log ORDER BY created_at DESC LIMIT ?", (limit,)
        )

    # --- Stats ---

    async def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {}
        for table in (
            "users", "regions", "chapters", "chapter_memberships", "join_requests", "comments"
        ):
            stats[table] = await self._scalar(f"SELECT COUNT(*) FROM {table}")

        rows = await self._fetchall("SELECT kind, COUNT(*) AS count FROM content GROUP BY kind")
        stats["content"] = {row["kind"]: row["count"] for row in rows}

        rows = await self._fetchall("SELECT role, COUNT(*) AS count FROM users GROUP BY role")
        stats["roles"] = {row["role"]: row["count"] for row in rows}
        stats["db_path"] = str(self.db_path)
        return stats


# --- Helpers ---


def _load_sql(filename: str) -> str:
    """Load SQL file from the schema package."""
    schema_dir = Path(__file__).parent.parent / "schema"
    return (schema_dir / filename).read_text()


def _placeholders(values: list[Any]) -> str:
    return ",".join("?" * len(values))


def _row_to_dict(row: aiosqlite.Row) -> dict[str, Any]:
    """Convert an aiosqlite Row to a dict, decoding boolean columns."""
    d = dict(row)
    if "attended" in d and d["attended"] is not None:
        d["attended"] = bool(d["attended"])
    return d
