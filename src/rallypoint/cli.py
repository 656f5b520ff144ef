"""CLI: init, serve, status, region, user and activity commands."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from rallypoint.auth.jwt import issue_token_for
from rallypoint.auth.roles import Role
from rallypoint.config import Config
from rallypoint.core.chapters import ChapterEngine
from rallypoint.errors import RallypointError
from rallypoint.events.bus import ActivityRecorder, EventBus
from rallypoint.models.organization import Region
from rallypoint.models.user import User
from rallypoint.storage.sqlite_store import SQLiteStore

# City Organisers are created by promotion only.
BOOTSTRAP_ROLES = (Role.COFOUNDER, Role.REGIONAL_ORGANISER, Role.ACTIVIST)


def _open_workspace(path: str) -> tuple[Config, Path]:
    workspace = Path(path).expanduser().resolve()
    config = Config.load(workspace)
    config.configure_logging()
    if not config.db_path.exists():
        click.echo(f"Error: No database at {config.db_path}. Run 'rallypoint init' first.", err=True)
        sys.exit(1)
    return config, config.db_path


@click.group()
@click.version_option(package_name="rallypoint")
def main() -> None:
    """Rallypoint: roles, chapters and scoped content for volunteer organisations."""


@main.command()
@click.argument("path", type=click.Path(), default="~/.rallypoint")
def init(path: str) -> None:
    """Initialize a new rallypoint workspace."""
    workspace = Path(path).expanduser().resolve()

    async def _init() -> None:
        config = Config(workspace_path=workspace)
        config.save()
        store = SQLiteStore(config.db_path, wal_mode=config.wal_mode)
        await store.initialize()
        await store.close()

    asyncio.run(_init())
    click.echo(f"Initialized workspace at {workspace}")
    click.echo(f"Database: {workspace / 'rallypoint.db'}")
    click.echo("Add to your MCP client config:")
    click.echo(f'  "rallypoint": {{"command": "rallypoint", "args": ["serve", "{workspace}"]}}')


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--transport", type=click.Choice(["stdio"]), default="stdio")
def serve(path: str, transport: str) -> None:
    """Start the MCP server."""
    config, db_path = _open_workspace(path)

    from rallypoint.server import create_server

    server = create_server(str(db_path), config=config)
    server.run(transport=transport)  # type: ignore[arg-type]


@main.command()
@click.argument("path", type=click.Path(exists=True))
def status(path: str) -> None:
    """Show workspace status."""
    config, db_path = _open_workspace(path)

    async def _status() -> dict:
        store = SQLiteStore(db_path, wal_mode=config.wal_mode)
        try:
            await store.initialize()
            return await store.get_stats()
        finally:
            await store.close()

    stats = asyncio.run(_status())
    click.echo(json.dumps(stats, indent=2))


# --- Regions ---


@main.group()
def region() -> None:
    """Manage regions."""


@region.command("create")
@click.argument("path", type=click.Path(exists=True))
@click.argument("name")
def create_region(path: str, name: str) -> None:
    """Create a region (workspace bootstrap, no token needed)."""
    config, db_path = _open_workspace(path)

    async def _create() -> Region:
        store = SQLiteStore(db_path, wal_mode=config.wal_mode)
        await store.initialize()
        try:
            new_region = Region(name=name.strip())
            await store.insert_region(new_region.to_storage())
            return new_region
        finally:
            await store.close()

    try:
        created = asyncio.run(_create())
    except sqlite3.IntegrityError:
        click.echo(f'Error: A region with the name "{name}" already exists.', err=True)
        sys.exit(1)

    Console().print(
        Panel(
            f"[green]✓[/green] Region created: {created.name}\nID: {created.id}",
            title="Region Created",
        )
    )


# --- Users ---


@main.group()
def user() -> None:
    """Manage users and tokens."""


@user.command("create")
@click.argument("path", type=click.Path(exists=True))
@click.argument("email")
@click.argument("name")
@click.option(
    "--role",
    type=click.Choice([r.value for r in BOOTSTRAP_ROLES]),
    default=Role.ACTIVIST.value,
    help="Global role",
)
@click.option("--region", "region_id", default=None, help="Managed region (Regional Organiser)")
def create_user(path: str, email: str, name: str, role: str, region_id: str | None) -> None:
    """Create a user directly, e.g. the first Co-founder."""
    config, db_path = _open_workspace(path)
    if role == Role.REGIONAL_ORGANISER and not region_id:
        click.echo("Error: --region is required for a Regional Organiser", err=True)
        sys.exit(1)

    async def _create() -> User:
        store = SQLiteStore(db_path, wal_mode=config.wal_mode)
        await store.initialize()
        try:
            if region_id and await store.get_region(region_id) is None:
                raise click.ClickException(f"Region not found: {region_id}")
            new_user = User(
                email=email,
                name=name,
                role=Role(role),
                managed_region_id=region_id if role == Role.REGIONAL_ORGANISER else None,
            )
            await store.insert_user(new_user.to_storage())
            return new_user
        finally:
            await store.close()

    try:
        created = asyncio.run(_create())
    except sqlite3.IntegrityError:
        click.echo(f"Error: An account with the email {email} already exists.", err=True)
        sys.exit(1)

    Console().print(
        Panel(
            f"[green]✓[/green] User created: {created.name} <{created.email}>\n"
            f"ID: {created.id}\n"
            f"Role: {created.role}",
            title="User Created",
        )
    )


@user.command("register")
@click.argument("path", type=click.Path(exists=True))
@click.argument("email")
@click.argument("name")
@click.argument("chapter_id")
def register_user(path: str, email: str, name: str, chapter_id: str) -> None:
    """Register an Activist with a pending request to join a chapter."""
    config, db_path = _open_workspace(path)

    async def _register() -> User:
        store = SQLiteStore(db_path, wal_mode=config.wal_mode)
        await store.initialize()
        try:
            bus = EventBus()
            ActivityRecorder(store).attach(bus)
            return await ChapterEngine(store, bus).register(
                email=email, name=name, chapter_id=chapter_id
            )
        finally:
            await store.close()

    try:
        created = asyncio.run(_register())
    except RallypointError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    Console().print(
        Panel(
            f"[green]✓[/green] User registered: {created.name} <{created.email}>\n"
            f"ID: {created.id}\n"
            f"Join request pending for chapter {chapter_id}",
            title="User Registered",
        )
    )


@user.command("token")
@click.argument("path", type=click.Path(exists=True))
@click.argument("email")
def user_token(path: str, email: str) -> None:
    """Issue a bearer token for a user."""
    config, db_path = _open_workspace(path)

    async def _issue() -> str:
        store = SQLiteStore(db_path, wal_mode=config.wal_mode)
        await store.initialize()
        try:
            row = await store.get_user_by_email(email)
            if row is None:
                raise click.ClickException(f"No user with email {email}")
            found = User(**row)
            memberships = await store.count_memberships(found.id)
            return issue_token_for(
                found,
                memberships,
                secret=config.jwt_secret,
                exp_minutes=config.token_exp_minutes,
            )
        finally:
            await store.close()

    try:
        token = asyncio.run(_issue())
    except RallypointError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    click.echo(token)


# --- Activity ---


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--entity", "entity_type", default=None, help="Filter by entity type")
@click.option("--limit", default=20, help="Number of entries")
def activity(path: str, entity_type: str | None, limit: int) -> None:
    """Show the recent activity log."""
    config, db_path = _open_workspace(path)

    async def _activity() -> list[dict]:
        store = SQLiteStore(db_path, wal_mode=config.wal_mode)
        await store.initialize()
        try:
            return await store.get_activity_log(entity_type=entity_type, limit=limit)
        finally:
            await store.close()

    entries = asyncio.run(_activity())

    table = Table(title="Recent Activity")
    table.add_column("When", style="dim")
    table.add_column("Activity", style="cyan")
    table.add_column("Entity")
    table.add_column("Actor")
    for entry in entries:
        table.add_row(
            entry["created_at"][:19],
            entry["activity_type"],
            f"{entry['entity_type']}:{entry['entity_id'] or '-'}",
            entry["user_id"] or "-",
        )
    Console().print(table)


if __name__ == "__main__":
    main()
