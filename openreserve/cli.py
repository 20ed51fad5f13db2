"""Typer CLI for OpenReserve."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .maintenance import run_ticket_cleanup, vacuum_database
from .seed import seed_fake_data
from .storage import (
    create_admin,
    ensure_signing_key,
    init_db,
    rotate_signing_key,
    upgrade_database,
)

app = typer.Typer(help="OpenReserve command-line interface")


def _exit_if_readonly(exc: OperationalError, action: str) -> None:
    message = str(getattr(exc, "orig", exc)).lower()
    if "readonly" in message or "read-only" in message:
        typer.secho(
            f"Unable to {action} because the database is read-only. "
            f"Ensure write access to {settings.database_path}.",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        _exit_if_readonly(exc, "upgrade")
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    ensure_signing_key()
    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("create-admin")
def create_admin_command(
    email: str = typer.Option(..., "--email", prompt=True, help="Admin email"),
    name: str = typer.Option("Admin", "--name", help="Display name"),
    password: str = typer.Option(
        ...,
        "--password",
        prompt=True,
        hide_input=True,
        confirmation_prompt=True,
        help="Admin password (6-72 characters)",
    ),
) -> None:
    """Create an admin account, or promote an existing account to admin."""
    if not 6 <= len(password) <= 72:
        typer.secho(
            "Password must be between 6 and 72 characters.",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    init_db()
    user, created = create_admin(name=name, email=email, password=password)
    if created:
        typer.echo(f"Created admin {user.email} ({user.id})")
    else:
        typer.echo(f"{user.email} is an admin")


@app.command("rotate-signing-key")
def rotate_signing_key_command() -> None:
    """Rotate the token signing key; every issued session stops working."""
    if settings.jwt_secret:
        typer.secho(
            "jwt_secret is set in configuration; change it there to rotate.",
            err=True,
            fg=typer.colors.YELLOW,
        )
        raise typer.Exit(code=1)
    try:
        init_db()
        rotate_signing_key()
    except OperationalError as exc:
        _exit_if_readonly(exc, "rotate the signing key")
        raise
    typer.echo("Signing key rotated. All users must log in again.")


@app.command("purge-tickets")
def purge_tickets(
    vacuum: bool = typer.Option(
        False,
        "--vacuum",
        help="Run SQLite VACUUM after the purge completes",
    ),
) -> None:
    """Delete ticket PDFs older than the retention window."""
    removed = run_ticket_cleanup()
    typer.echo(f"Removed {removed} ticket file(s) from {settings.tickets_dir}")
    if vacuum:
        init_db()
        vacuum_database()
        typer.echo("Database vacuum complete.")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start the API server; the app starts the scheduler when enabled."""
    init_db()
    config = uvicorn.Config(
        "openreserve.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting OpenReserve on {host}:{port}")
    server.run()


@app.command("seed-data")
def seed_data(
    events: int = typer.Option(
        settings.seed_events, "--events", min=0, help="Number of events to create"
    ),
    participants: int = typer.Option(
        settings.seed_participants,
        "--participants",
        min=0,
        help="Number of participant accounts to create",
    ),
    max_reservations: int = typer.Option(
        settings.seed_reservations_per_event,
        "--max-reservations",
        min=0,
        help="Maximum reservations to attach to each published event",
    ),
    draft_percent: int = typer.Option(
        20,
        "--draft-percent",
        min=0,
        max=100,
        help="Percentage of events left as drafts (0-100)",
    ),
):
    """Populate the database with fake participants, events and reservations."""
    stats = seed_fake_data(
        event_count=events,
        participant_count=participants,
        max_reservations_per_event=max_reservations,
        draft_percentage=draft_percent,
    )
    typer.echo(
        f"Seed complete: {stats['participants']} participants, {stats['events']} events, "
        f"{stats['reservations']} reservations ({stats['confirmed']} confirmed)."
    )


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    config_path: Path | None = typer.Option(
        None,
        "--config-path",
        help="Path to openreserve.toml (default: ./openreserve.toml)",
    ),
    database_url: str | None = typer.Option(
        None, "--database-url", help="SQLAlchemy URL; defaults to the SQLite file"
    ),
    jwt_secret: str | None = typer.Option(
        None, "--jwt-secret", help="Token signing secret (overrides the stored key)"
    ),
    token_lifetime_minutes: int | None = typer.Option(
        None, "--token-lifetime-minutes", min=1, help="Lifetime of one access token"
    ),
    session_max_age_hours: int | None = typer.Option(
        None,
        "--session-max-age-hours",
        min=1,
        help="Hours after login beyond which tokens can no longer be refreshed",
    ),
    bcrypt_rounds: int | None = typer.Option(
        None, "--bcrypt-rounds", min=4, max=31, help="bcrypt cost factor"
    ),
    ticket_retention_hours: int | None = typer.Option(
        None, "--ticket-retention-hours", min=1, help="Hours to keep ticket PDFs"
    ),
    ticket_purge_interval_hours: int | None = typer.Option(
        None,
        "--ticket-purge-interval-hours",
        min=1,
        help="Hours between ticket purge runs",
    ),
    vacuum_hours: int | None = typer.Option(
        None, "--vacuum-hours", min=1, help="Hours between SQLite VACUUM runs"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle background scheduler (ticket purge/vacuum)",
    ),
    admin_email: str | None = typer.Option(
        None, "--admin-email", help="Bootstrap admin email"
    ),
    admin_name: str | None = typer.Option(
        None, "--admin-name", help="Bootstrap admin display name"
    ),
    events_per_page: int | None = typer.Option(
        None, "--events-per-page", min=1, help="Public pagination size"
    ),
    admin_events_per_page: int | None = typer.Option(
        None, "--admin-events-per-page", min=1, help="Admin pagination size"
    ),
    seed_events: int | None = typer.Option(
        None, "--seed-events", min=0, help="Default seed-data events"
    ),
    seed_participants: int | None = typer.Option(
        None, "--seed-participants", min=0, help="Default seed-data participants"
    ),
    seed_reservations_per_event: int | None = typer.Option(
        None,
        "--seed-reservations-per-event",
        min=0,
        help="Default seed-data reservations per event",
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
):
    """View or update the persistent configuration file."""

    updates = {
        "database_url": database_url,
        "jwt_secret": jwt_secret,
        "token_lifetime_minutes": token_lifetime_minutes,
        "session_max_age_hours": session_max_age_hours,
        "bcrypt_rounds": bcrypt_rounds,
        "ticket_retention_hours": ticket_retention_hours,
        "ticket_purge_interval_hours": ticket_purge_interval_hours,
        "sqlite_vacuum_hours": vacuum_hours,
        "enable_scheduler": enable_scheduler,
        "admin_email": admin_email,
        "admin_name": admin_name,
        "events_per_page": events_per_page,
        "admin_events_per_page": admin_events_per_page,
        "seed_events": seed_events,
        "seed_participants": seed_participants,
        "seed_reservations_per_event": seed_reservations_per_event,
        "app_host": host,
        "app_port": port,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


@app.command("test")
def run_tests(pytest_args: list[str] = typer.Argument(None, help="Extra pytest args")):
    """Run the test suite with helpful defaults."""
    env = os.environ.copy()
    env.setdefault("PYTHONPATH", ".")
    env.setdefault("UV_CACHE_DIR", ".uv-cache")
    uv_path = shutil.which("uv")
    if uv_path:
        cmd = [uv_path, "run", "pytest"]
    else:
        typer.echo("uv not found, falling back to python -m pytest")
        cmd = [sys.executable, "-m", "pytest"]
    if pytest_args:
        cmd.extend(pytest_args)
    typer.echo(f"Running tests: {' '.join(cmd)}")
    result = subprocess.run(cmd, env=env)
    raise typer.Exit(code=result.returncode)


if __name__ == "__main__":
    app()
