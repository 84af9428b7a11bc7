"""Command-line interface for notesbridge."""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.tree import Tree

from notesbridge import __version__
from notesbridge.core.config import MAX_EXPORT_JOBS, AppConfig, BackendMode, load_config
from notesbridge.core.errors import ExportAborted, NotesBridgeError
from notesbridge.core.export import ExportPipeline, ExportSummary
from notesbridge.core.models import FolderTree, split_folder_path
from notesbridge.core.service import NotesService
from notesbridge.utils.converters import markdown_to_html, text_to_html
from notesbridge.utils.logging import setup_logging

T = TypeVar("T")

# Create Typer app
app = typer.Typer(
    name="notesbridge",
    help="Read, edit and export Apple Notes from the command line",
    add_completion=False,
)

accounts_app = typer.Typer(help="Inspect Notes accounts")
folders_app = typer.Typer(help="List and manage folders")
notes_app = typer.Typer(help="List, show and edit notes")
app.add_typer(accounts_app, name="accounts")
app.add_typer(folders_app, name="folders")
app.add_typer(notes_app, name="notes")

# Create console for rich output
console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file",
        exists=True,
        dir_okay=False,
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
    backend: Optional[BackendMode] = typer.Option(
        None,
        "--backend",
        "-b",
        help="Where to read notes from: auto, db or automation",
        case_sensitive=False,
    ),
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Account name"),
    as_json: bool = typer.Option(False, "--json", help="Print machine-readable JSON"),
) -> None:
    """notesbridge - scriptable access to Apple Notes."""
    ctx.ensure_object(dict)

    cfg = load_config(config_file)
    if backend is not None:
        cfg.backend = backend
    if account:
        cfg.account = account

    ctx.obj["config"] = cfg
    ctx.obj["json"] = as_json
    setup_logging(cfg, level_name=log_level)


def _config(ctx: typer.Context) -> AppConfig:
    return ctx.obj["config"]


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str, ensure_ascii=False))


def _run(
    ctx: typer.Context,
    action: str,
    operation: Callable[[NotesService], Awaitable[T]],
) -> T:
    """Run one service call, mapping errors to a red message and exit code 1."""
    cfg = _config(ctx)

    async def runner() -> T:
        service = NotesService(cfg)
        try:
            return await operation(service)
        finally:
            await service.close()

    try:
        return asyncio.run(runner())
    except NotesBridgeError as e:
        console.print(f"[red]{action} failed: {e}[/red]")
        logging.debug("%s failed", action, exc_info=True)
        raise typer.Exit(1) from e


def _body_html(body: Optional[str], body_file: Optional[Path], body_format: str) -> str:
    if body_file is not None:
        text = body_file.read_text(encoding="utf-8")
    elif body is not None:
        text = body
    elif not sys.stdin.isatty():
        text = sys.stdin.read()
    else:
        console.print("[red]Provide --body, --body-file or pipe content on stdin[/red]")
        raise typer.Exit(1)

    if body_format == "html":
        return text
    if body_format == "markdown":
        return markdown_to_html(text)
    return text_to_html(text)


def _folder_path(value: str) -> tuple[str, ...]:
    try:
        return split_folder_path(value)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e


def _require_yes(yes: bool, what: str) -> None:
    if not yes:
        console.print(f"[yellow]Refusing to delete {what} without --yes[/yellow]")
        raise typer.Exit(1)


BODY_FORMAT_HELP = "Body format: text, markdown or html"


@app.command()
def version() -> None:
    """Show version information."""
    import platform

    table = Table(title="notesbridge Version Information")
    table.add_column("Property", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Python", platform.python_version())
    table.add_row("Platform", platform.platform())
    table.add_row("Architecture", platform.machine())

    console.print(table)


@app.command()
def config(
    ctx: typer.Context,
    show: bool = typer.Option(False, "--show", "-s", help="Show current configuration"),
    init: bool = typer.Option(False, "--init", "-i", help="Create a default configuration file"),
) -> None:
    """Manage configuration."""
    cfg = _config(ctx)

    if init:
        config_path = cfg.general.config_file or cfg.default_config_path

        if config_path.exists():
            console.print(f"[yellow]Config file already exists:[/yellow] {config_path}")
            if not typer.confirm("Overwrite existing config?"):
                console.print("[dim]Config creation cancelled[/dim]")
                raise typer.Exit(0)

        cfg.save_to_file(config_path)
        console.print(f"[green]✓ Config file created:[/green] {config_path}")
        console.print("[yellow]Edit this file to configure notesbridge.[/yellow]")
        return

    if show:
        if ctx.obj["json"]:
            _print_json(cfg.model_dump(mode="json"))
            return

        table = Table(title="notesbridge Configuration")
        table.add_column("Setting", style="cyan", no_wrap=True)
        table.add_column("Value", style="green")

        table.add_row("Config File", str(cfg.general.config_file or "Not set"))
        table.add_row("Data Directory", str(cfg.general.data_dir))
        table.add_row("Log Level", cfg.general.log_level)
        table.add_row("Backend", cfg.backend.value)
        table.add_row("Account", cfg.account)

        table.add_row("", "")
        table.add_row("[bold]Database[/bold]", "")
        table.add_row("Path", str(cfg.database.path))
        table.add_row("Snapshot", "✓" if cfg.database.snapshot else "✗")

        table.add_row("", "")
        table.add_row("[bold]Automation[/bold]", "")
        table.add_row("osascript", cfg.automation.osascript_bin)
        table.add_row("Retries", str(cfg.automation.max_retries))
        table.add_row("Timeout", f"{cfg.automation.timeout:.0f}s")

        table.add_row("", "")
        table.add_row("[bold]Export[/bold]", "")
        table.add_row("Output", str(cfg.export.out_dir or "Not set"))
        table.add_row("Jobs", str(cfg.export.jobs))

        console.print(table)
    else:
        console.print(f"[yellow]Configuration file:[/yellow] {cfg.general.config_file or 'Not set'}")
        console.print(f"[yellow]Data directory:[/yellow] {cfg.general.data_dir}")
        console.print("\n[dim]Use --show to display full configuration[/dim]")
        console.print("[dim]Use --init to create a default config file[/dim]")


# Accounts


@accounts_app.command("list")
def accounts_list(ctx: typer.Context) -> None:
    """List Notes accounts."""
    selection = _run(ctx, "Listing accounts", lambda service: service.list_accounts())

    if ctx.obj["json"]:
        _print_json([{"id": a.id, "name": a.name} for a in selection.value])
        return

    table = Table(title="Notes Accounts")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("ID", style="dim")
    for account in selection.value:
        table.add_row(account.name, account.id)
    console.print(table)
    console.print(f"\n[dim]Source: {selection.strategy.value}[/dim]")


# Folders


def _folder_tree(tree: FolderTree) -> Tree:
    root = Tree(f"[bold]{tree.account}[/bold]")
    nodes: dict[str | None, Tree] = {None: root}
    for folder in tree.folders:
        parent = nodes.get(folder.parent_id, root)
        nodes[folder.id] = parent.add(folder.name)
    return root


@folders_app.command("list")
def folders_list(
    ctx: typer.Context,
    tree: bool = typer.Option(False, "--tree", "-t", help="Show folders as a tree"),
) -> None:
    """List folders of the selected account."""
    selection = _run(ctx, "Listing folders", lambda service: service.list_folders())
    folder_tree = selection.value

    if ctx.obj["json"]:
        _print_json(
            [
                {"id": f.id, "name": f.name, "parent_id": f.parent_id, "path": list(f.path)}
                for f in folder_tree.folders
            ]
        )
        return

    if tree:
        console.print(_folder_tree(folder_tree))
    else:
        table = Table(title=f"Folders in {folder_tree.account}")
        table.add_column("Path", style="cyan", no_wrap=True)
        table.add_column("ID", style="dim")
        for folder in folder_tree.folders:
            table.add_row(folder.path_string(), folder.id)
        console.print(table)

    for issue in folder_tree.issues:
        console.print(f"[yellow]⚠ {issue}[/yellow]")


@folders_app.command("create")
def folders_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="New folder name"),
    parent: Optional[str] = typer.Option(None, "--parent", "-p", help='Parent folder path, e.g. "Work > Projects"'),
) -> None:
    """Create a folder (at the account root unless --parent is given)."""
    parent_path = _folder_path(parent) if parent else None
    folder_id = _run(ctx, "Creating folder", lambda service: service.create_folder(name, parent_path))
    console.print(f"[green]✓ Created folder:[/green] {name} [dim]({folder_id})[/dim]")


@folders_app.command("rename")
def folders_rename(
    ctx: typer.Context,
    path: str = typer.Argument(..., help='Folder path, e.g. "Work > Projects"'),
    name: str = typer.Argument(..., help="New folder name"),
) -> None:
    """Rename a folder."""
    folder_path = _folder_path(path)
    _run(ctx, "Renaming folder", lambda service: service.rename_folder(folder_path, name))
    console.print(f"[green]✓ Renamed[/green] {path} → {name}")


@folders_app.command("delete")
def folders_delete(
    ctx: typer.Context,
    path: str = typer.Argument(..., help='Folder path, e.g. "Work > Old"'),
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm deletion"),
) -> None:
    """Delete a folder and everything in it."""
    _require_yes(yes, f"folder {path!r}")
    folder_path = _folder_path(path)
    _run(ctx, "Deleting folder", lambda service: service.delete_folder(folder_path))
    console.print(f"[green]✓ Deleted folder:[/green] {path}")


# Notes


@notes_app.command("list")
def notes_list(
    ctx: typer.Context,
    folder: Optional[str] = typer.Option(None, "--folder", "-f", help='Folder path, e.g. "Work > Projects"'),
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Only titles containing this text"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", min=1, help="Maximum number of notes"),
) -> None:
    """List notes (index only, no bodies)."""
    folder_path = _folder_path(folder) if folder else None
    selection = _run(ctx, "Listing notes", lambda service: service.list_notes(folder_path=folder_path))

    notes = selection.value
    if query:
        needle = query.casefold()
        notes = [n for n in notes if needle in n.title.casefold()]
    notes.sort(key=lambda n: n.modified_at.timestamp() if n.modified_at else 0, reverse=True)
    if limit:
        notes = notes[:limit]

    if ctx.obj["json"]:
        _print_json(
            [
                {
                    "id": n.id,
                    "title": n.title,
                    "folder_id": n.folder_id,
                    "created_at": n.created_at.isoformat() if n.created_at else None,
                    "modified_at": n.modified_at.isoformat() if n.modified_at else None,
                }
                for n in notes
            ]
        )
        return

    table = Table(title="Notes")
    table.add_column("Title", style="cyan")
    table.add_column("Modified", style="green", no_wrap=True)
    table.add_column("ID", style="dim")
    for note in notes:
        modified = note.modified_at.strftime("%Y-%m-%d %H:%M") if note.modified_at else "-"
        table.add_row(note.title, modified, note.id)
    console.print(table)
    console.print(f"\n[dim]Total: {len(notes)} notes via {selection.strategy.value}[/dim]")


@notes_app.command("show")
def notes_show(
    ctx: typer.Context,
    note_id: str = typer.Argument(..., help="Note id (x-coredata://...)"),
    html: bool = typer.Option(False, "--html", help="Print the raw HTML body when available"),
) -> None:
    """Show a note as Markdown."""
    note, extraction = _run(ctx, "Reading note", lambda service: service.render_note(note_id))

    if ctx.obj["json"]:
        _print_json(
            {
                "id": note.id,
                "title": note.title,
                "folder_id": note.folder_id,
                "created_at": note.created_at.isoformat(),
                "modified_at": note.modified_at.isoformat(),
                "markdown": extraction.text,
                "exact": extraction.exact,
                "issues": list(extraction.issues),
            }
        )
        return

    if html and not note.is_structured:
        console.print(note.body.html, markup=False, highlight=False)
        return

    console.print(extraction.text, markup=False, highlight=False)
    if not extraction.exact:
        console.print(f"\n[yellow]⚠ Best-effort extraction: {'; '.join(extraction.issues)}[/yellow]")


@notes_app.command("create")
def notes_create(
    ctx: typer.Context,
    folder: str = typer.Option(..., "--folder", "-f", help='Folder path, e.g. "Work > Projects"'),
    title: str = typer.Option(..., "--title", "-t", help="Note title"),
    body: Optional[str] = typer.Option(None, "--body", help="Note body"),
    body_file: Optional[Path] = typer.Option(None, "--body-file", exists=True, dir_okay=False),
    body_format: str = typer.Option("text", "--format", help=BODY_FORMAT_HELP),
) -> None:
    """Create a note."""
    folder_path = _folder_path(folder)
    body_html = _body_html(body, body_file, body_format)
    note_id = _run(ctx, "Creating note", lambda service: service.create_note(folder_path, title, body_html))
    if ctx.obj["json"]:
        _print_json({"id": note_id})
        return
    console.print(f"[green]✓ Created note:[/green] {title} [dim]({note_id})[/dim]")


@notes_app.command("rename")
def notes_rename(
    ctx: typer.Context,
    note_id: str = typer.Argument(..., help="Note id"),
    title: str = typer.Argument(..., help="New title"),
) -> None:
    """Rename a note."""
    _run(ctx, "Renaming note", lambda service: service.rename_note(note_id, title))
    console.print(f"[green]✓ Renamed note to:[/green] {title}")


@notes_app.command("set-body")
def notes_set_body(
    ctx: typer.Context,
    note_id: str = typer.Argument(..., help="Note id"),
    body: Optional[str] = typer.Option(None, "--body", help="New note body"),
    body_file: Optional[Path] = typer.Option(None, "--body-file", exists=True, dir_okay=False),
    body_format: str = typer.Option("text", "--format", help=BODY_FORMAT_HELP),
) -> None:
    """Replace a note's body."""
    body_html = _body_html(body, body_file, body_format)
    _run(ctx, "Updating note", lambda service: service.set_note_body(note_id, body_html))
    console.print("[green]✓ Note body replaced[/green]")


@notes_app.command("append")
def notes_append(
    ctx: typer.Context,
    note_id: str = typer.Argument(..., help="Note id"),
    body: Optional[str] = typer.Option(None, "--body", help="Content to append"),
    body_file: Optional[Path] = typer.Option(None, "--body-file", exists=True, dir_okay=False),
    body_format: str = typer.Option("text", "--format", help=BODY_FORMAT_HELP),
) -> None:
    """Append content to a note's body."""
    body_html = _body_html(body, body_file, body_format)
    _run(ctx, "Appending to note", lambda service: service.append_note_body(note_id, body_html))
    console.print("[green]✓ Content appended[/green]")


@notes_app.command("move")
def notes_move(
    ctx: typer.Context,
    note_id: str = typer.Argument(..., help="Note id"),
    folder: str = typer.Option(..., "--folder", "-f", help="Destination folder path"),
) -> None:
    """Move a note to another folder."""
    folder_path = _folder_path(folder)
    _run(ctx, "Moving note", lambda service: service.move_note(note_id, folder_path))
    console.print(f"[green]✓ Moved note to:[/green] {folder}")


@notes_app.command("delete")
def notes_delete(
    ctx: typer.Context,
    note_id: str = typer.Argument(..., help="Note id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm deletion"),
) -> None:
    """Delete a note."""
    _require_yes(yes, f"note {note_id}")
    _run(ctx, "Deleting note", lambda service: service.delete_note(note_id))
    console.print("[green]✓ Note deleted[/green]")


# Export


def _print_export_summary(summary: ExportSummary) -> None:
    table = Table(title="Export Summary")
    table.add_column("Result", style="cyan")
    table.add_column("Notes", style="green", justify="right")
    table.add_row("Exact", str(summary.exact))
    table.add_row("Best effort", str(summary.best_effort))
    table.add_row("Failed", str(summary.failed))
    table.add_row("Skipped", str(summary.skipped))
    console.print(table)

    for outcome in summary.outcomes:
        if outcome.error:
            console.print(f"  [red]✗[/red] {outcome.title} [dim]({outcome.note_id})[/dim]: {outcome.error}")
    for issue in summary.folder_issues:
        console.print(f"  [yellow]⚠ {issue}[/yellow]")

    source = summary.strategy.value if summary.strategy else "-"
    console.print(f"\n[dim]Output: {summary.out_dir} (via {source})[/dim]")
    if summary.cancelled:
        console.print("[yellow]Export was cancelled before all notes were written[/yellow]")


@app.command()
def export(
    ctx: typer.Context,
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Output directory"),
    jobs: Optional[int] = typer.Option(None, "--jobs", "-j", help="Parallel workers (1-16)"),
    include_html: Optional[bool] = typer.Option(
        None, "--include-html/--no-include-html", help="Also write content.html, fetched from the Notes app"
    ),
    accounts: Optional[list[str]] = typer.Option(
        None, "--only-account", help="Export only this account (repeatable)"
    ),
) -> None:
    """Export every note to a directory tree of Markdown files."""
    cfg = _config(ctx)
    export_config = cfg.export.model_copy()
    if jobs is not None:
        export_config = export_config.model_copy(update={"jobs": min(max(1, jobs), MAX_EXPORT_JOBS)})
    if include_html is not None:
        export_config = export_config.model_copy(update={"include_html": include_html})

    out_dir = (out or export_config.out_dir or Path.cwd() / "notes-export").expanduser().resolve()

    async def run_export() -> ExportSummary:
        service = NotesService(cfg)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            console=console,
            transient=True,
        ) as progress:
            bar = progress.add_task("Exporting notes...", total=100)

            async def on_progress(percent: int, message: str) -> None:
                progress.update(bar, completed=percent, description=message)

            pipeline = ExportPipeline(
                service.selector,
                export_config,
                out_dir=out_dir,
                accounts=accounts,
                progress_callback=on_progress,
            )
            loop = asyncio.get_running_loop()
            loop.add_signal_handler(signal.SIGINT, pipeline.cancel)
            try:
                return await pipeline.run()
            finally:
                loop.remove_signal_handler(signal.SIGINT)
                await service.close()

    try:
        summary = asyncio.run(run_export())
    except ExportAborted as e:
        console.print(f"[red]Export aborted: {e}[/red]")
        _print_export_summary(e.summary)
        raise typer.Exit(1) from e
    except NotesBridgeError as e:
        console.print(f"[red]Export failed: {e}[/red]")
        raise typer.Exit(1) from e

    if ctx.obj["json"]:
        _print_json(summary.to_dict())
    else:
        _print_export_summary(summary)

    if summary.failed:
        raise typer.Exit(1)


def main_entry() -> None:
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        logging.exception("Unhandled exception")
        sys.exit(1)


if __name__ == "__main__":
    main_entry()
