"""CLI interface for notesync."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import aclosing, asynccontextmanager

import typer
from rich.console import Console
from rich.table import Table

from notesync.config import AppConfig, config_exists, ensure_dirs, get_base_dir, load_config, save_config
from notesync.logging import setup_logging
from notesync.storage import Note, NoteStore
from notesync.sync.api import NoteAPI
from notesync.sync.repository import SyncedNoteRepository

app = typer.Typer(
    name="notesync",
    help="Keep shared notes in sync between a local database and the notes server.",
    add_completion=False,
)
console = Console()


def main() -> None:
    """Entry point that wraps ``app()`` with a clean KeyboardInterrupt handler."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("Interrupted.")
        raise SystemExit(130) from None


@app.callback()
def _setup(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Echo log events to stderr"),
) -> None:
    cfg = load_config()
    ensure_dirs()
    setup_logging(cfg.logging, cfg.log_dir, console=verbose)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _open_repository(cfg: AppConfig) -> AsyncIterator[SyncedNoteRepository]:
    store = NoteStore(cfg.db_path)
    await store.connect()
    try:
        async with NoteAPI(cfg.server) as api, SyncedNoteRepository(store, api, cfg.sync) as repo:
            yield repo
    finally:
        await store.close()


@asynccontextmanager
async def _open_store(cfg: AppConfig) -> AsyncIterator[NoteStore]:
    store = NoteStore(cfg.db_path)
    await store.connect()
    try:
        yield store
    finally:
        await store.close()


def _print_note(note: Note) -> None:
    console.print(f"[bold]{note.key}[/bold]  [dim]v{note.version}[/dim]")
    console.print(note.content or "[dim](empty)[/dim]", highlight=False)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def show(
    key: str = typer.Argument(..., help="Note title"),
    wait: float = typer.Option(15.0, "--wait", "-w", help="Seconds to wait for the server's answer"),
) -> None:
    """Show a note after reconciling the local copy with one server poll."""

    async def _run() -> Note | None:
        async with _open_repository(load_config()) as repo:
            try:
                return await repo.resolve(key, timeout=wait)
            except TimeoutError:
                return None

    note = asyncio.run(_run())
    if note is None:
        console.print(f"[yellow]Timed out waiting for note[/yellow] {key!r}.")
        raise typer.Exit(1)
    _print_note(note)


@app.command()
def watch(
    key: str = typer.Argument(..., help="Note title"),
    count: int = typer.Option(0, "--count", "-c", help="Stop after this many updates (0 = forever)"),
) -> None:
    """Print every update of a note as it arrives (Ctrl-C to stop)."""

    async def _run() -> None:
        seen = 0
        async with (
            _open_repository(load_config()) as repo,
            aclosing(repo.get_synced(key).updates()) as updates,
        ):
            async for note in updates:
                if note is None:
                    continue
                console.print(f"[cyan]v{note.version}[/cyan] {note.content}", highlight=False)
                seen += 1
                if count and seen >= count:
                    break

    asyncio.run(_run())


@app.command()
def save(
    key: str = typer.Argument(..., help="Note title"),
    content: str = typer.Argument(..., help="New note content"),
) -> None:
    """Save a note locally and push it to the server."""

    async def _run() -> Note:
        async with _open_repository(load_config()) as repo:
            current = await repo.get_local(key).wait_for(lambda _: True)
            base = current or Note.empty(key)
            return await repo.save_synced(base.model_copy(update={"content": content}))

    note = asyncio.run(_run())
    console.print(f"[green]Saved[/green] {note.key!r} at version {note.version}.")


@app.command(name="list")
def list_notes() -> None:
    """List notes stored locally."""

    async def _run() -> list[Note]:
        async with _open_store(load_config()) as store:
            return await store.list_notes()

    notes = asyncio.run(_run())
    if not notes:
        console.print("[dim]No local notes.[/dim]")
        return

    table = Table(title="Local notes")
    table.add_column("Title", style="bold")
    table.add_column("Version", justify="right")
    table.add_column("Content")
    for note in notes:
        preview = note.content if len(note.content) <= 60 else note.content[:57] + "..."
        table.add_row(note.key, str(note.version), preview)
    console.print(table)


@app.command()
def delete(key: str = typer.Argument(..., help="Note title")) -> None:
    """Delete a note from the local store only."""

    async def _run() -> bool:
        async with _open_store(load_config()) as store:
            return await store.delete(Note.empty(key))

    if not asyncio.run(_run()):
        console.print(f"[yellow]No local note[/yellow] {key!r}.")
        raise typer.Exit(1)
    console.print(f"[green]Deleted[/green] {key!r} locally.")


# ---------------------------------------------------------------------------
# Config sub-commands
# ---------------------------------------------------------------------------

config_app = typer.Typer(name="config", help="View and create configuration.", add_completion=False)
app.add_typer(config_app)


@config_app.command("show")
def config_show() -> None:
    """Display the current configuration."""
    cfg = load_config()

    console.print("\n[bold]Current Configuration[/bold]\n")

    console.print("[bold cyan]\\[server][/bold cyan]")
    console.print(f"  base_url        = {cfg.server.base_url}")
    console.print(f"  timeout_seconds = {cfg.server.timeout_seconds}")

    console.print("\n[bold cyan]\\[sync][/bold cyan]")
    console.print(f"  poll_interval_ms      = {cfg.sync.poll_interval_ms}")
    console.print(f"  fetch_timeout_seconds = {cfg.sync.fetch_timeout_seconds}")
    console.print(f"  max_pollers           = {cfg.sync.max_pollers or '[dim](unbounded)[/dim]'}")

    console.print("\n[bold cyan]\\[storage][/bold cyan]")
    console.print(f"  db_file = {cfg.storage.db_file}  [dim]({cfg.db_path})[/dim]")

    console.print("\n[bold cyan]\\[logging][/bold cyan]")
    console.print(f"  log_level    = {cfg.logging.log_level}")
    console.print(f"  max_file_mb  = {cfg.logging.max_file_mb}")
    console.print(f"  backup_count = {cfg.logging.backup_count}")
    console.print(f"  sync_log     = {str(cfg.logging.sync_log).lower()}")
    console.print()


@config_app.command("init")
def config_init(
    base_url: str = typer.Option("", "--base-url", help="Notes server base URL"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config file"),
) -> None:
    """Write a config file with default settings."""
    if config_exists() and not force:
        console.print(f"[yellow]Config already exists[/yellow] in {get_base_dir()} (use --force).")
        raise typer.Exit(1)

    cfg = AppConfig()
    if base_url:
        cfg.server.base_url = base_url
    path = save_config(cfg)
    console.print(f"[green]Configuration saved[/green] to {path}.")
