"""CLI entry point for cursor-history."""

import asyncio
import os
from datetime import datetime
from pathlib import Path
from typing import NoReturn

import click
import uvicorn

from .backup import (
    BackupProgress,
    RestoreProgress,
    create_backup,
    list_backups,
    restore_backup,
    validate_backup,
)
from .core import SearchResult
from .debug import debug_log_from_env
from .errors import AlreadyExistsError, CursorHistoryError, ExitCode, exit_code_for
from .export import (
    backup_result_to_json,
    backups_to_json,
    export_result_to_json,
    format_duration,
    format_size,
    parse_message_types,
    restore_result_to_json,
    safe_filename,
    search_results_to_json,
    session_to_json,
    session_to_markdown,
    sessions_to_json,
    validation_result_to_json,
    workspaces_to_json,
)
from .search import DEFAULT_CONTEXT_CHARS
from .storage import CursorStorage

_BACKUP_PHASES = {
    "scanning": "Scanning for database files...",
    "backing-up": "Backing up databases...",
    "compressing": "Compressing into zip...",
    "finalizing": "Finalizing backup...",
}
_RESTORE_PHASES = {
    "validating": "Validating backup...",
    "restoring": "Restoring files...",
    "finalizing": "Finalizing restore...",
}


class Context:
    def __init__(self, data_path: Path | None, as_json: bool):
        self.data_path = data_path
        self.as_json = as_json
        self.log = debug_log_from_env()
        self.storage = CursorStorage(data_path, log=self.log)


pass_context = click.make_pass_decorator(Context)


def _fail(error: CursorHistoryError) -> NoReturn:
    click.secho(f"Error: {error}", fg="red", err=True)
    raise SystemExit(int(error.exit_code))


def _run(coro):
    """Run a coroutine, turning CursorHistoryError into a message and exit code."""
    try:
        return asyncio.run(coro)
    except CursorHistoryError as e:
        _fail(e)


def _message_types(only: str | None) -> list[str]:
    try:
        return parse_message_types(only)
    except CursorHistoryError as e:
        _fail(e)


def _fmt_date(value: datetime | None) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M") if value else "-"


def _show_progress(progress: BackupProgress | RestoreProgress) -> None:
    text = _BACKUP_PHASES.get(progress.phase) or _RESTORE_PHASES.get(progress.phase, progress.phase)
    if progress.total_files:
        text += f" [{progress.files_completed}/{progress.total_files}]"
    if progress.current_file:
        text += f" {progress.current_file}"
    click.echo(f"\r{text}".ljust(80), nl=False, err=True)


def _clear_progress() -> None:
    click.echo("\r".ljust(80) + "\r", nl=False, err=True)


def _highlight(text: str, positions: list[tuple[int, int]]) -> str:
    out, last = [], 0
    for start, end in positions:
        out.append(text[last:start])
        out.append(click.style(text[start:end], bold=True, fg="yellow"))
        last = end
    out.append(text[last:])
    return "".join(out).replace("\n", " ")


@click.group()
@click.option(
    "--data-path",
    type=click.Path(path_type=Path),
    envvar="CURSOR_HISTORY_DATA_PATH",
    help="Cursor 'User' data directory (default: platform location).",
)
@click.option("--json", "as_json", is_flag=True, help="Emit machine-readable JSON.")
@click.pass_context
def main(ctx: click.Context, data_path: Path | None, as_json: bool):
    """Browse, search, export and back up Cursor AI chat history."""
    ctx.obj = Context(data_path, as_json)


# ── Browsing ─────────────────────────────────────────────────────


@main.command("list")
@click.option("--workspace", "-w", help="Only sessions from this workspace (id or path).")
@click.option("--limit", "-n", default=20, show_default=True, help="Maximum sessions to show.")
@click.option("--all", "show_all", is_flag=True, help="Show every session.")
@pass_context
def list_cmd(obj: Context, workspace: str | None, limit: int, show_all: bool):
    """List chat sessions, most recent first."""
    sessions = _run(obj.storage.list_sessions(workspace=workspace, limit=None if show_all else limit))
    if obj.as_json:
        click.echo(sessions_to_json(sessions))
        return
    if not sessions:
        click.echo("No chat sessions found.")
        return
    for s in sessions:
        title = s.title if len(s.title) <= 50 else s.title[:47] + "..."
        click.echo(
            f"{click.style(f'#{s.index:<4}', bold=True)} {title:<50} "
            f"{s.message_count:>4} msgs  {_fmt_date(s.last_updated_at)}  "
            f"{click.style(s.workspace_path or s.workspace_id, dim=True)}"
        )


@main.command()
@pass_context
def workspaces(obj: Context):
    """List workspaces that have chat history."""
    found = _run(obj.storage.list_workspaces())
    if obj.as_json:
        click.echo(workspaces_to_json(found))
        return
    if not found:
        click.echo("No workspaces with chat history found.")
        return
    for ws in found:
        click.echo(f"{ws.session_count:>5} sessions  {ws.path}  {click.style(ws.id, dim=True)}")


@main.command()
@click.argument("ref")
@click.option("--only", help="Comma-separated message types: user,assistant,tool,thinking,error.")
@pass_context
def show(obj: Context, ref: str, only: str | None):
    """Show one session by index or id."""
    types = _message_types(only)
    session = _run(obj.storage.get_session(ref))
    if obj.as_json:
        click.echo(session_to_json(session, types))
    else:
        click.echo(session_to_markdown(session, types))


@main.command()
@click.argument("query")
@click.option("--workspace", "-w", help="Only search this workspace (id or path).")
@click.option("--context", "context_chars", default=DEFAULT_CONTEXT_CHARS, show_default=True,
              help="Characters of context around each match.")
@click.option("--limit", "-n", default=0, show_default=True, help="Maximum sessions (0 = unlimited).")
@pass_context
def search(obj: Context, query: str, workspace: str | None, context_chars: int, limit: int):
    """Search message content (case-insensitive)."""
    results: list[SearchResult] = _run(
        obj.storage.search_sessions(query, workspace=workspace, context_chars=context_chars, limit=limit)
    )
    if obj.as_json:
        click.echo(search_results_to_json(results, query))
        return
    if not results:
        click.echo(f'No matches for "{query}".')
        return
    for r in results:
        click.echo(click.style(f"#{r.index} {r.title}", bold=True) + f"  ({r.match_count} matches)")
        for snippet in r.snippets[:3]:
            click.echo(f"  [{snippet.role}] {_highlight(snippet.text, snippet.match_positions)}")
        if len(r.snippets) > 3:
            click.echo(click.style(f"  ... {len(r.snippets) - 3} more", dim=True))
        click.echo("")


@main.command()
@click.argument("ref")
@click.option("--format", "fmt", type=click.Choice(["md", "json"]), default="md", show_default=True)
@click.option("--output", "-o", type=click.Path(path_type=Path), help="Output directory (default: current).")
@click.option("--stdout", "to_stdout", is_flag=True, help="Print instead of writing files.")
@click.option("--force", "-f", is_flag=True, help="Overwrite existing files.")
@click.option("--only", help="Comma-separated message types to keep.")
@pass_context
def export(obj: Context, ref: str, fmt: str, output: Path | None, to_stdout: bool, force: bool, only: str | None):
    """Export sessions (index, id, range like 1-3, or a comma list) to Markdown or JSON."""
    types = _message_types(only)
    sessions = _run(obj.storage.get_sessions(ref))
    render = session_to_json if fmt == "json" else session_to_markdown

    if to_stdout:
        for session in sessions:
            click.echo(render(session, types))
        return

    out_dir = output or Path.cwd()
    out_dir.mkdir(parents=True, exist_ok=True)
    exported = []
    for session in sessions:
        path = out_dir / f"{session.index}-{safe_filename(session.title)}.{fmt}"
        if path.exists() and not force:
            _fail(AlreadyExistsError(path))
        path.write_text(render(session, types), encoding="utf-8")
        exported.append({"index": session.index, "path": str(path)})

    if obj.as_json:
        click.echo(export_result_to_json(exported))
    else:
        for item in exported:
            click.echo(f"Exported #{item['index']} -> {item['path']}")


@main.command()
@click.argument("ref")
@click.argument("title")
@pass_context
def rename(obj: Context, ref: str, title: str):
    """Rename a session. Writes to Cursor's workspace database; close Cursor first."""
    session_id = _run(obj.storage.rename_session(ref, title))
    click.echo(f"Renamed {session_id} to {title!r}")


# ── Backup ───────────────────────────────────────────────────────


@main.command()
@click.option("--output", "-o", type=click.Path(path_type=Path),
              help="Output file (default: ~/cursor-history-backups/<timestamp>.zip).")
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing backup file.")
@pass_context
def backup(obj: Context, output: Path | None, force: bool):
    """Create a full backup of all Cursor chat databases."""
    result = _run(create_backup(
        source_path=obj.data_path,
        output_path=output,
        force=force,
        on_progress=None if obj.as_json else _show_progress,
        log=obj.log,
    ))
    if not obj.as_json:
        _clear_progress()

    if obj.as_json:
        click.echo(backup_result_to_json(result))
    elif result.success:
        manifest = result.manifest
        click.secho("Backup created successfully!", fg="green")
        click.echo(f"  Location: {result.backup_path}")
        click.echo(f"  Size:     {format_size(manifest.stats.total_size_bytes)}")
        click.echo(f"  Sessions: {manifest.stats.session_count}")
        click.echo(f"  Messages: {manifest.stats.message_count}")
        click.echo(f"  Files:    {len(manifest.files)}")
        click.echo(f"  Duration: {format_duration(result.duration_ms)}")
    else:
        click.secho(f"Backup failed: {result.error}", fg="red", err=True)

    if not result.success:
        raise SystemExit(int(exit_code_for(result.error_kind)))


@main.command()
@click.argument("backup_path", type=click.Path(path_type=Path))
@click.option("--target", "-t", type=click.Path(path_type=Path),
              help="Restore under this directory instead of Cursor's data path.")
@click.option("--force", "-f", is_flag=True, help="Overwrite existing files.")
@pass_context
def restore(obj: Context, backup_path: Path, target: Path | None, force: bool):
    """Restore chat databases from a backup archive."""
    result = _run(restore_backup(
        backup_path,
        target_path=target or obj.data_path,
        force=force,
        on_progress=None if obj.as_json else _show_progress,
        log=obj.log,
    ))
    if not obj.as_json:
        _clear_progress()

    if obj.as_json:
        click.echo(restore_result_to_json(result))
    elif result.success:
        click.secho(f"Restored {result.files_restored} file(s) to {result.target_path}", fg="green")
        for warning in result.warnings:
            click.secho(f"  warning: {warning}", fg="yellow")
    else:
        click.secho(f"Restore failed: {result.error}", fg="red", err=True)

    if not result.success:
        raise SystemExit(int(exit_code_for(result.error_kind)))


@main.command()
@click.argument("backup_path", type=click.Path(path_type=Path))
@pass_context
def validate(obj: Context, backup_path: Path):
    """Verify a backup archive's checksums."""
    result = _run(validate_backup(backup_path))
    if obj.as_json:
        click.echo(validation_result_to_json(result))
    else:
        color = {"valid": "green", "warnings": "yellow"}.get(result.status, "red")
        click.secho(f"Status: {result.status}", fg=color)
        click.echo(f"  Valid files:     {len(result.valid_files)}")
        click.echo(f"  Corrupted files: {len(result.corrupted_files)}")
        click.echo(f"  Missing files:   {len(result.missing_files)}")
        for error in result.errors:
            click.echo(f"  - {error}")
    if result.status == "invalid":
        raise SystemExit(int(ExitCode.GENERAL_ERROR))


@main.command()
@click.option("--dir", "directory", type=click.Path(path_type=Path), help="Backup directory to list.")
@pass_context
def backups(obj: Context, directory: Path | None):
    """List available backups, newest first."""
    found = _run(list_backups(directory))
    if obj.as_json:
        click.echo(backups_to_json(found))
        return
    if not found:
        click.echo("No backups found.")
        return
    for info in found:
        summary = ""
        if info.manifest:
            summary = f"  {info.manifest.stats.session_count} sessions"
        click.echo(f"{info.filename}  {format_size(info.size)}  {_fmt_date(info.modified_at)}{summary}")


# ── Web ──────────────────────────────────────────────────────────


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@pass_context
def serve(obj: Context, port: int, host: str):
    """Start the read-only JSON API."""
    if obj.data_path:
        os.environ["CURSOR_HISTORY_DATA_PATH"] = str(obj.data_path)
    click.echo(f"Starting cursor-history on http://{host}:{port}")
    uvicorn.run("cursor_history.server:app", host=host, port=port, reload=False)
