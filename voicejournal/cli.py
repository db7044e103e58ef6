"""
CLI interface for the voice journal.

Usage:
    voicejournal add recording.m4a --duration 42
    voicejournal process
    voicejournal show entry-3f9c...
"""

import asyncio
import atexit
import json
import logging
import os
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .ai_client import AiBackendClient, AiBackendError
from .config import JournalConfig, load_config, load_or_create_config, save_config
from .errors import JournalError
from .insights import build_weekly_themes
from .logging_config import configure_ops_log, configure_quiet_mode, enable_debug_mode, remove_ops_log
from .types import JOB_STATUSES, JOB_TYPES, Entry, entry_title, format_duration
from .worker import AiWorker
from .workspace import Workspace, WorkspaceRouter


# Configure quiet mode by default (suppress verbose library output)
# Set VOICEJOURNAL_VERBOSE=1 to enable debug mode via environment
if os.environ.get("VOICEJOURNAL_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None
_workspace_override: Optional[str] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


def _workspace_callback(value: Optional[str]):
    global _workspace_override
    if value:
        _workspace_override = value


app = typer.Typer(
    name="voicejournal",
    help="Voice journal with background transcription and summaries.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="VOICEJOURNAL_STORE_PATH",
        help="Path to the store directory (default: ~/.voicejournal/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
    workspace: Annotated[Optional[str], typer.Option(
        "--workspace", "-w",
        help="Workspace to operate on (default: the configured active workspace)",
        callback=_workspace_callback,
        is_eager=True,
    )] = None,
):
    """Voice journal with background transcription and summaries."""


# -----------------------------------------------------------------------------
# Store access
# -----------------------------------------------------------------------------

class _Journal:
    """What a command needs: config, router and the targeted workspace."""

    def __init__(self, config: JournalConfig, router: WorkspaceRouter, ops_log: logging.Handler):
        self.config = config
        self.router = router
        self._ops_log = ops_log

    @property
    def workspace(self) -> Workspace:
        return self.router.resolve(_workspace_override)

    def make_client(self) -> AiBackendClient:
        return AiBackendClient(
            self.config.backend.base_url,
            self.config.backend.token or None,
            timeout=self.config.backend.timeout,
        )

    def close(self) -> None:
        self.router.close()
        remove_ops_log(self._ops_log)


def _get_journal() -> _Journal:
    """Load config and open the router, handling errors gracefully."""
    try:
        config = load_or_create_config(_store_override)
        router = config.make_router()
        if _workspace_override:
            router.resolve_name(_workspace_override)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    journal = _Journal(config, router, configure_ops_log(config.path))
    atexit.register(journal.close)
    return journal


def _run_with_worker(journal: _Journal, action):
    """Run an async action against a worker, closing the HTTP client after."""
    async def _main():
        async with journal.make_client() as client:
            worker = AiWorker(
                journal.router,
                client,
                max_attempts=journal.config.queue.max_attempts,
                retry_backoff=journal.config.queue.retry_backoff,
                stale_claim_seconds=journal.config.queue.stale_claim_seconds,
                log=lambda line: typer.echo(line, err=True),
            )
            return await action(worker)

    try:
        return asyncio.run(_main())
    except ValueError as e:
        # Missing or insecure backend configuration
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def _format_entry_line(entry: Entry) -> str:
    tags = f"  [{', '.join(t.name for t in entry.tags)}]" if entry.tags else ""
    return (
        f"{entry.id}  {format_duration(entry.duration_sec)}  "
        f"{entry.ai_status:<11} {entry_title(entry.summary)}{tags}"
    )


def _echo_entries(entries: list[Entry]) -> None:
    if _get_json_output():
        typer.echo(json.dumps([e.to_dict() for e in entries], indent=2))
        return
    if not entries:
        typer.echo("No entries.", err=True)
        return
    for entry in entries:
        typer.echo(_format_entry_line(entry))


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def add(
    audio: Annotated[Path, typer.Argument(help="Path to the recorded audio file")],
    duration: Annotated[float, typer.Option(
        "--duration", "-d",
        help="Recording length in seconds",
    )] = 0,
    no_queue: Annotated[bool, typer.Option(
        "--no-queue",
        help="Create the entry without queueing transcription",
    )] = False,
):
    """Add a voice note and queue it for transcription."""
    audio_path = audio.expanduser().resolve()
    if not audio_path.is_file():
        typer.echo(f"Error: audio file not found: {audio_path}", err=True)
        raise typer.Exit(1)

    ws = _get_journal().workspace
    entry = ws.entries.create_entry(str(audio_path), duration)
    if not no_queue:
        result = ws.queue.enqueue(entry.id, "transcribe")
        typer.echo(f"Queued {entry.id} for transcription ({result.job_id}).", err=True)
        entry = ws.entries.require_entry(entry.id)

    if _get_json_output():
        _echo_json(entry.to_dict())
    else:
        typer.echo(entry.id)


@app.command("list")
def list_recent():
    """List entries, newest first."""
    _echo_entries(_get_journal().workspace.entries.list_entries())


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Text to look for in transcripts and summaries")],
):
    """Search entries by transcript and summary text."""
    _echo_entries(_get_journal().workspace.entries.search_entries(query))


@app.command()
def show(
    entry_id: Annotated[str, typer.Argument(help="Entry ID")],
):
    """Show one entry with its transcript, summary and jobs."""
    ws = _get_journal().workspace
    entry = ws.entries.get_entry(entry_id)
    if entry is None:
        typer.echo(f"Not found: {entry_id}", err=True)
        raise typer.Exit(1)
    jobs = ws.queue.list_jobs(entry_id=entry_id)

    if _get_json_output():
        data = entry.to_dict()
        data["jobs"] = [j.to_dict() for j in jobs]
        _echo_json(data)
        return

    typer.echo(f"id: {entry.id}")
    typer.echo(f"audio: {entry.audio_uri} ({format_duration(entry.duration_sec)})")
    typer.echo(f"status: {entry.ai_status}")
    if entry.error_msg:
        typer.echo(f"error: {entry.error_msg}")
    if entry.tags:
        typer.echo(f"tags: {', '.join(t.name for t in entry.tags)}")
    if entry.summary:
        typer.echo(f"\n{entry.summary}")
    if entry.transcript:
        typer.echo(f"\n{entry.transcript}")
    for job in jobs:
        line = f"job {job.id}: {job.type} {job.status} (attempts {job.attempts})"
        if job.last_error:
            line += f" - {job.last_error}"
        typer.echo(line, err=True)


@app.command()
def delete(
    entry_id: Annotated[str, typer.Argument(help="Entry ID")],
):
    """Delete an entry with its jobs and tag links."""
    if not _get_journal().workspace.entries.delete_entry(entry_id):
        typer.echo(f"Not found: {entry_id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted {entry_id}", err=True)


@app.command()
def enqueue(
    entry_id: Annotated[str, typer.Argument(help="Entry ID")],
    job_type: Annotated[str, typer.Option(
        "--type", "-t",
        help=f"Job type ({', '.join(JOB_TYPES)})",
    )] = "transcribe",
):
    """Queue an AI job for an entry."""
    ws = _get_journal().workspace
    try:
        result = ws.queue.enqueue(entry_id, job_type)
    except (JournalError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if _get_json_output():
        _echo_json({"enqueued": result.enqueued, "job_id": result.job_id})
    elif result.enqueued:
        typer.echo(f"Queued {job_type} for {entry_id} ({result.job_id}).", err=True)
    else:
        typer.echo(f"Already queued: {result.job_id}", err=True)


@app.command()
def process(
    all_workspaces: Annotated[bool, typer.Option(
        "--all", "-a",
        help="Process every workspace, not just the active one",
    )] = False,
):
    """Process queued AI jobs until the queue is empty."""
    journal = _get_journal()
    ws_name = journal.router.resolve_name(_workspace_override)

    async def _drain(worker: AiWorker):
        if all_workspaces:
            return await worker.run_all()
        return [await worker.run(ws_name)]

    results = _run_with_worker(journal, _drain)

    if _get_json_output():
        _echo_json(results)
        return
    for result in results:
        typer.echo(
            f"{result['workspace']}: {result['processed']} processed, "
            f"{result['failed']} retrying, {result['abandoned']} failed",
            err=True,
        )
    if any(result["aborted"] for result in results):
        raise typer.Exit(1)


@app.command()
def jobs(
    status: Annotated[Optional[str], typer.Option(
        "--status",
        help=f"Only jobs with this status ({', '.join(JOB_STATUSES)})",
    )] = None,
):
    """Show queue statistics, or list jobs with --status."""
    ws = _get_journal().workspace
    if status is None:
        stats = ws.queue.stats()
        if _get_json_output():
            _echo_json(stats)
        else:
            for key, value in stats.items():
                typer.echo(f"{key}: {value}")
        return

    try:
        found = ws.queue.list_jobs(status=status)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        _echo_json([j.to_dict() for j in found])
        return
    for job in found:
        line = f"{job.id}  {job.entry_id}  {job.type:<10} {job.status:<7} attempts={job.attempts}"
        if job.last_error:
            line += f"  {job.last_error}"
        typer.echo(line)


@app.command()
def retry():
    """Queue failed jobs again with a fresh attempt budget."""
    ws = _get_journal().workspace
    queued = 0
    for job in ws.queue.list_failed():
        if ws.entries.get_entry(job.entry_id) is None:
            continue
        if ws.queue.enqueue(job.entry_id, job.type).enqueued:
            queued += 1
    typer.echo(f"Queued {queued} job(s) for retry.", err=True)


@app.command()
def tags(
    entry_id: Annotated[str, typer.Argument(help="Entry ID")],
):
    """Ask the AI backend for tags and attach them to an entry."""
    journal = _get_journal()
    ws_name = journal.router.resolve_name(_workspace_override)

    try:
        outcome = _run_with_worker(
            journal, lambda worker: worker.generate_tags(entry_id, ws_name),
        )
    except (JournalError, AiBackendError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if _get_json_output():
        _echo_json({"suggested": outcome.suggested, "attached": outcome.attached})
    else:
        typer.echo(f"Attached {outcome.attached} tag(s) to {entry_id}.", err=True)


@app.command()
def insights():
    """Weekly themes, entry counts and most used tags."""
    ws = _get_journal().workspace
    themes = build_weekly_themes(ws.entries.list_entries_with_summary())
    counts = ws.entries.list_weekly_counts()
    top_tags = ws.entries.list_top_tags()

    if _get_json_output():
        _echo_json({
            "themes": [
                {"week": t.week, "theme": t.theme, "entry_ids": t.entry_ids} for t in themes
            ],
            "weekly_counts": counts,
            "top_tags": top_tags,
        })
        return

    for theme in themes:
        typer.echo(f"{theme.week}  {theme.theme}  ({len(theme.entry_ids)} entries)")
    if counts:
        typer.echo("")
        for row in counts:
            typer.echo(f"{row['week']}: {row['count']}")
    if top_tags:
        typer.echo("")
        for row in top_tags:
            typer.echo(f"{row['tag_name']}: {row['count']}")


@app.command()
def health():
    """Check that the AI backend is reachable."""
    journal = _get_journal()
    try:
        status = _run_with_worker(journal, lambda worker: worker.client.health())
    except AiBackendError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        _echo_json({"ok": status.ok, "service": status.service})
    else:
        typer.echo(f"ok ({status.service or journal.config.backend.base_url})")


@app.command()
def export(
    output: Annotated[Optional[Path], typer.Option(
        "--output", "-o",
        help="Write to this file instead of stdout",
    )] = None,
):
    """Export the workspace (entries, tags, jobs) as JSON."""
    data = _get_journal().workspace.entries.export_data()
    text = json.dumps(data, indent=2, ensure_ascii=False)
    if output is None:
        typer.echo(text)
        return
    output.write_text(text + "\n", encoding="utf-8")
    typer.echo(f"Exported {len(data['entries'])} entries to {output}", err=True)


@app.command()
def workspace(
    name: Annotated[Optional[str], typer.Argument(help="Workspace to make active")] = None,
):
    """Show workspaces, or switch the active one."""
    journal = _get_journal()
    if name is not None:
        try:
            journal.router.set_active(name)
        except ValueError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)
        # Persist only the file's own settings, not environment overrides
        stored = load_config(journal.config.path)
        stored.workspaces.default = name
        save_config(stored)

    active = journal.router.active
    if _get_json_output():
        _echo_json({"active": active, "workspaces": list(journal.router.names)})
        return
    for ws_name in journal.router.names:
        marker = "*" if ws_name == active else " "
        typer.echo(f"{marker} {ws_name}")


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="voicejournal CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
