"""CLI entrypoint (Typer).

Commands:
- init-db       create the tables on DATABASE_URL
- show-config   print the effective settings
- create-user   add a workspace account through the storage layer
"""

from __future__ import annotations

import asyncio
import logging

import typer
from sqlalchemy.engine import make_url

from devstudio.config import Settings, get_settings
from devstudio.database.models import User, UserCreate
from devstudio.database.session import build_engine, init_db
from devstudio.database.storage import create_storage
from devstudio.exceptions import IntegrityViolationError


logger = logging.getLogger(__name__)

app = typer.Typer(help="DevStudio workspace storage CLI.", no_args_is_help=True)


def _masked_url(settings: Settings) -> str:
    if not settings.database_url:
        return "(not set, in-memory storage)"
    return make_url(settings.database_url).render_as_string(hide_password=True)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@app.command("init-db")
def init_db_command() -> None:
    """Create all tables on the configured database."""
    settings = get_settings()
    if not settings.uses_database:
        typer.echo("DATABASE_URL is not set; in-memory storage needs no tables.", err=True)
        raise typer.Exit(code=1)

    async def _run() -> None:
        engine = build_engine(settings.database_url, echo=settings.debug)
        try:
            await init_db(engine)
        finally:
            await engine.dispose()

    asyncio.run(_run())
    typer.echo(f"Initialized database {_masked_url(settings)}")


@app.command("show-config")
def show_config() -> None:
    """Print the effective settings."""
    settings = get_settings()
    typer.echo(f"app_name: {settings.app_name}")
    typer.echo(f"app_version: {settings.app_version}")
    typer.echo(f"environment: {settings.environment}")
    typer.echo(f"storage: {'database' if settings.uses_database else 'memory'}")
    typer.echo(f"database_url: {_masked_url(settings)}")


@app.command("create-user")
def create_user(
    username: str = typer.Argument(..., help="Unique login name"),
    password: str = typer.Option(..., prompt=True, hide_input=True),
) -> None:
    """Insert a user."""
    settings = get_settings()
    if not settings.uses_database:
        logger.warning("No DATABASE_URL; the user only lives for this process")

    async def _run() -> User:
        storage = create_storage(settings)
        try:
            return await storage.create_user(UserCreate(username=username, password=password))
        finally:
            await storage.close()

    try:
        user = asyncio.run(_run())
    except IntegrityViolationError as e:
        typer.echo(f"Could not create user {username!r}: {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Created user {user.username} ({user.id})")


if __name__ == "__main__":
    app()
