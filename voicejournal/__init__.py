"""
Voice Journal

Voice notes with a background AI pipeline: each recording is transcribed,
summarized into a title and bullets, and tagged by a remote AI backend.

Quick Start:
    from voicejournal import AiBackendClient, AiWorker, WorkspaceRouter

    router = WorkspaceRouter(Path("~/.voicejournal").expanduser())
    ws = router.resolve()
    entry = ws.entries.create_entry("/path/to/note.m4a", 42)
    ws.queue.enqueue(entry.id, "transcribe")

    async with AiBackendClient("http://192.168.1.20:8787/ai") as client:
        await AiWorker(router, client).run()

CLI Usage:
    voicejournal add note.m4a --duration 42
    voicejournal process
    voicejournal list --json

Environment Variables:
    VOICEJOURNAL_STORE_PATH       - Override default store location
    VOICEJOURNAL_AI_API_BASE_URL  - AI backend base URL
    VOICEJOURNAL_AI_API_TOKEN     - Optional bearer token for the backend

Each workspace keeps its entries and job queue in its own SQLite file in
the store directory. Configuration is persisted in a TOML file there too.
"""

from .ai_client import AiBackendClient, AiBackendError, BackendUnreachableError
from .errors import EntryNotFoundError, JournalError, PreconditionError
from .types import AiJob, EnqueueResult, Entry, Tag, TagOutcome, format_summary, parse_summary
from .worker import AiWorker
from .workspace import Workspace, WorkspaceRouter

__version__ = "0.1.0"
__all__ = [
    "AiBackendClient",
    "AiBackendError",
    "BackendUnreachableError",
    "AiWorker",
    "WorkspaceRouter",
    "Workspace",
    "Entry",
    "AiJob",
    "Tag",
    "EnqueueResult",
    "TagOutcome",
    "format_summary",
    "parse_summary",
    "JournalError",
    "EntryNotFoundError",
    "PreconditionError",
]
