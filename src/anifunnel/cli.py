"""CLI interface for the anifunnel server."""

from __future__ import annotations

import asyncio
import re
from collections import deque
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
import typer
from rich.console import Console
from rich.table import Table

from anifunnel.config import (
    ConfigKeyError,
    config_exists,
    ensure_dirs,
    get_base_dir,
    load_config,
    save_config,
    update_setting,
)
from anifunnel.storage import Database, StorageError

app = typer.Typer(
    name="anifunnel",
    help="Plex webhook server that keeps AniList watch progress in sync.",
    add_completion=False,
)
console = Console()

T = TypeVar("T")


def main() -> None:
    """Entry point that wraps ``app()`` with a clean KeyboardInterrupt handler."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("Interrupted.")
        raise SystemExit(130) from None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _with_db(action: Callable[[Database], Awaitable[T]]) -> T:
    """Open the database, run *action* on it and close it again."""

    async def _main() -> T:
        db = Database(load_config().database_path)
        await db.connect()
        try:
            return await action(db)
        finally:
            await db.close()

    ensure_dirs()
    try:
        return asyncio.run(_main())
    except StorageError as exc:
        console.print(f"[red]Database error:[/red] {exc}")
        raise typer.Exit(1) from exc


def _format_duration(seconds: float) -> str:
    """Render *seconds* as its two largest units, e.g. ``3d 4h`` or ``5m 12s``."""
    remaining = int(seconds)
    parts: list[tuple[int, str]] = []
    for size, unit in ((86400, "d"), (3600, "h"), (60, "m"), (1, "s")):
        amount, remaining = divmod(remaining, size)
        if amount or parts or unit == "s":
            parts.append((amount, unit))
    return " ".join(f"{amount}{unit}" for amount, unit in parts[:2])


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


@app.command()
def serve(
    address: str | None = typer.Option(None, "--address", envvar="ANIFUNNEL_ADDRESS", help="Bind address"),
    port: int | None = typer.Option(None, "--port", envvar="ANIFUNNEL_PORT", help="Bind port"),
    plex_user: str | None = typer.Option(
        None, "--plex-user", envvar="ANILIST_PLEX_USER", help="Only process events from this Plex account"
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Logging level"),
) -> None:
    """Run the webhook server in the foreground."""
    from anifunnel.daemon import Server
    from anifunnel.logging import setup_logging

    cfg = load_config()
    if address is not None:
        cfg.server.bind_address = address
    if port is not None:
        cfg.server.port = port
    if plex_user is not None:
        cfg.matching.plex_user = plex_user
    if log_level is not None:
        cfg.server.log_level = log_level

    ensure_dirs()
    setup_logging(cfg.server.log_level, cfg.log_dir, console=True)

    try:
        Server(cfg).run()
    except StorageError as exc:
        console.print(f"[red]Could not open the database:[/red] {exc}")
        raise typer.Exit(1) from exc


@app.command()
def status() -> None:
    """Show whether the server is up, the stored credential and override count."""
    from anifunnel.storage import Credential

    cfg = load_config()
    console.print()

    host = "127.0.0.1" if cfg.server.bind_address in ("0.0.0.0", "::") else cfg.server.bind_address  # noqa: S104
    try:
        resp = httpx.get(f"http://{host}:{cfg.server.port}/health", timeout=3.0)
        resp.raise_for_status()
        health = resp.json()
    except httpx.HTTPError:
        console.print("  [bold]Server:[/bold]  [yellow]not reachable[/yellow]")
    else:
        console.print("  [bold]Server:[/bold]  [green]running[/green]")
        console.print(f"  [bold]Uptime:[/bold]  {_format_duration(health.get('uptime_seconds', 0))}")
        console.print(f"  [bold]Tracked:[/bold] {health.get('tracked_entries', 0)} entries cached")

    async def _load(db: Database) -> tuple[Credential | None, int]:
        return await db.get_active_credential(), len(await db.list_overrides())

    credential, override_count = _with_db(_load)

    console.print("\n  [bold cyan]AniList[/bold cyan]")
    if credential is None:
        console.print("    [yellow]not authenticated[/yellow]  (run [bold]anifunnel login TOKEN[/bold])")
    else:
        console.print(f"    user:    {credential.owner_name} (#{credential.owner_id})")
        console.print(f"    expires: {credential.expiry:%Y-%m-%d %H:%M} UTC")
        console.print(f"    valid:   {_format_duration(credential.remaining().total_seconds())}")

    console.print(f"\n  [bold cyan]Overrides[/bold cyan]\n    {override_count} stored")
    console.print()


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


@app.command()
def login(token: str = typer.Argument(help="AniList API token (JWT)")) -> None:
    """Validate an AniList token and store it as the active credential."""
    from anifunnel.sync.anilist import AnilistAuthError, AnilistClient, AnilistError
    from anifunnel.sync.auth import CredentialManager

    cfg = load_config()

    async def _login(db: Database):  # noqa: ANN202
        async with AnilistClient(cfg.anilist) as client:
            return await CredentialManager(db, client).login(token)

    try:
        credential = _with_db(_login)
    except AnilistAuthError as exc:
        console.print(f"[red]Token rejected:[/red] {exc}")
        raise typer.Exit(1) from exc
    except AnilistError as exc:
        console.print(f"[red]AniList error:[/red] {exc}")
        raise typer.Exit(1) from exc

    console.print(
        f"[green]Authenticated[/green] as [bold]{credential.owner_name}[/bold], "
        f"valid until {credential.expiry:%Y-%m-%d}."
    )
    console.print("[dim]A running server picks this up after a restart; use POST /api/user to switch live.[/dim]")


@app.command()
def logout() -> None:
    """Remove the stored AniList credential."""
    removed = _with_db(lambda db: db.clear_credential())
    if removed:
        console.print("[green]Credential removed.[/green]")
    else:
        console.print("[yellow]No credential stored.[/yellow]")


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------


overrides_app = typer.Typer(name="overrides", help="Manage per-series matching overrides.", add_completion=False)
app.add_typer(overrides_app)


@overrides_app.command(name="list")
def overrides_list() -> None:
    """List stored overrides."""
    overrides = _with_db(lambda db: db.list_overrides())
    if not overrides:
        console.print("[dim]No overrides stored.[/dim]")
        return

    table = Table("media id", "title override", "episode offset", "updated")
    for o in overrides:
        table.add_row(
            str(o.media_id),
            o.title_override or "[dim]-[/dim]",
            str(o.episode_offset) if o.episode_offset else "[dim]-[/dim]",
            f"{o.updated_at:%Y-%m-%d %H:%M}" if o.updated_at else "",
        )
    console.print(table)


@overrides_app.command(name="set")
def overrides_set(
    media_id: int = typer.Argument(help="AniList media ID"),
    title: str | None = typer.Option(None, "--title", "-t", help="Exact Plex title to map (empty string unsets)"),
    offset: int | None = typer.Option(None, "--offset", "-o", help="Episode offset (0 unsets)"),
) -> None:
    """Set or update the override for a series; omitted options are kept."""
    from anifunnel.storage import OverrideConflictError

    if title is None and offset is None:
        console.print("[red]Nothing to set.[/red] Pass --title and/or --offset.")
        raise typer.Exit(1)

    async def _set(db: Database):  # noqa: ANN202
        existing = await db.get_override(media_id)
        return await db.upsert_override(
            media_id,
            title_override=title if title is not None else (existing.title_override if existing else None),
            episode_offset=offset if offset is not None else (existing.episode_offset if existing else None),
        )

    try:
        override = _with_db(_set)
    except OverrideConflictError as exc:
        console.print(f"[red]Conflict:[/red] {exc}")
        raise typer.Exit(1) from exc

    if override is None:
        console.print(f"[green]Override for {media_id} removed[/green] (no fields left).")
    else:
        console.print(
            f"[green]Saved[/green] {media_id}: title={override.title_override!r} "
            f"offset={override.episode_offset or 0}"
        )


@overrides_app.command(name="clear")
def overrides_clear(media_id: int = typer.Argument(help="AniList media ID")) -> None:
    """Delete the override for a series."""
    if _with_db(lambda db: db.delete_override(media_id)):
        console.print(f"[green]Override for {media_id} removed.[/green]")
    else:
        console.print(f"[yellow]No override stored for {media_id}.[/yellow]")


# ---------------------------------------------------------------------------
# Logs
# ---------------------------------------------------------------------------


@app.command()
def logs(
    tail_lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show"),
    scrobble: bool = typer.Option(False, "--scrobble", help="Show scrobble.log (JSON) instead of anifunnel.log"),
) -> None:
    """Show recent server log output."""
    from anifunnel.logging import MAIN_LOG, SCROBBLE_LOG

    log_file = load_config().log_dir / (SCROBBLE_LOG if scrobble else MAIN_LOG)
    if not log_file.exists():
        console.print(f"[yellow]Log file not found:[/yellow] {log_file}")
        raise typer.Exit(1)

    with open(log_file, encoding="utf-8") as fh:
        last_lines = deque(fh, maxlen=tail_lines)

    if not last_lines:
        console.print("[dim]Log file is empty.[/dim]")
        return

    for line in last_lines:
        _print_log_line(line)


# Matches both "[warning  ]" (console renderer) and '"level": "warning"' (JSON).
_LEVEL_RE = re.compile(r'\[(debug|warning|error|critical)\s*\]|"level": "(debug|warning|error|critical)"')
_LEVEL_STYLES = {"debug": "dim", "warning": "yellow", "error": "red", "critical": "bold red"}


def _print_log_line(line: str) -> None:
    line = line.rstrip("\n")
    if not line:
        return
    found = _LEVEL_RE.search(line)
    style = _LEVEL_STYLES[found.group(1) or found.group(2)] if found else None
    console.print(line, style=style, highlight=False, markup=False)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


config_app = typer.Typer(name="config", help="View and modify configuration.", add_completion=False)
app.add_typer(config_app)


@config_app.command(name="show")
def config_show() -> None:
    """Show current configuration."""
    cfg = load_config()

    console.print("\n[bold]Current Configuration[/bold]")
    console.print(f"[dim]{get_base_dir()}[/dim]")
    if not config_exists():
        console.print("[dim]No config.toml yet, showing defaults.[/dim]")
    console.print()
    for section_name, fields in cfg.model_dump().items():
        console.print(f"[bold cyan]\\[{section_name}][/bold cyan]")
        for key, value in fields.items():
            console.print(f"  {key} = {value!r}", highlight=False)
        console.print()


@config_app.command(name="set")
def config_set(
    key: str = typer.Argument(help="Dotted key, e.g. matching.threshold"),
    value: str = typer.Argument(help="New value"),
) -> None:
    """Set a configuration value (e.g. anifunnel config set server.port 8080)."""
    from pydantic import ValidationError

    try:
        cfg = update_setting(load_config(), key, value)
    except ConfigKeyError as exc:
        console.print(f"[red]Unknown key:[/red] {exc}")
        raise typer.Exit(1) from exc
    except ValidationError as exc:
        console.print(f"[red]Invalid value for {key}:[/red] {exc.errors()[0]['msg']}")
        raise typer.Exit(1) from exc

    save_config(cfg)
    section_name, _, field_name = key.partition(".")
    console.print(f"[green]Set[/green] {key} = {getattr(getattr(cfg, section_name), field_name)!r}", highlight=False)
