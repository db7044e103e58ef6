"""
Background AI worker.

Drains a workspace's job queue: claims jobs oldest-first, calls the AI
backend, writes results into the entry and chains the next stage
(transcribe -> summarize -> tag suggestion).

Only one drain runs per workspace at a time. A drain requested while one
is already active for that workspace returns immediately without doing
anything; drains for different workspaces run independently.

Failure handling has two tiers:
- Stage failures (transcribe, summarize) are caught per job and recorded
  through AiJobQueue.requeue_or_fail(): retried after a backoff until
  max_attempts, then the entry shows ai_status 'error'.
- Tag suggestion after a successful summary is an enhancement. Its
  failure becomes a TagOutcome and a note in error_msg; the entry stays
  'summarized'.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from typing import Callable, Optional

import httpx

from .ai_client import AiBackendClient, BackendUnreachableError
from .errors import EntryNotFoundError, PreconditionError
from .job_queue import RETRY_BACKOFF_SECONDS, STALE_CLAIM_SECONDS
from .types import DEFAULT_MAX_ATTEMPTS, AiJob, TagOutcome, format_summary, normalize_tag_name
from .workspace import Workspace, WorkspaceRouter

logger = logging.getLogger(__name__)

TAG_FAILURE_PREFIX = "Tag generation failed: "

# Transcripts in Devanagari script are from before the backend translated
# to English; those are transcribed again instead of reused.
_DEVANAGARI_RE = re.compile(r"[\u0900-\u097F]")

# Errors that retrying cannot fix; these fail the job on the first attempt
_PERMANENT_ERRORS = (EntryNotFoundError, PreconditionError)


def is_likely_untranslated(text: Optional[str]) -> bool:
    return bool(text) and bool(_DEVANAGARI_RE.search(text))


def normalize_error(error: BaseException, base_url: Optional[str] = None) -> str:
    """
    Turn an exception into the message shown on the entry.

    Connectivity failures get an actionable message about the backend
    address instead of the raw transport error.
    """
    if isinstance(error, (BackendUnreachableError, httpx.TransportError, ConnectionError)):
        where = f" at {base_url}" if base_url else ""
        return (
            f"Network request failed: cannot reach the AI backend{where}. "
            "Check the backend address (VOICEJOURNAL_AI_API_BASE_URL), that the AI server "
            "is running, and that this device is on the same network as the server."
        )
    message = str(error).strip()
    return message or type(error).__name__


class AiWorker:
    """
    Processes AI jobs for one or more workspaces.

    The worker owns the per-workspace "drain in progress" flags; nothing
    else about its state is persistent.
    """

    def __init__(
        self,
        router: WorkspaceRouter,
        client: AiBackendClient,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_backoff: float = RETRY_BACKOFF_SECONDS,
        stale_claim_seconds: float = STALE_CLAIM_SECONDS,
        log: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            router: Resolves workspace names to their stores
            client: AI backend client (anything with async transcribe,
                summarize, suggest_tags and a base_url)
            max_attempts: Failed attempts before a job is marked 'error'
            retry_backoff: Base delay in seconds before a failed job is
                retried; doubles per attempt. 0 retries within the same drain.
            stale_claim_seconds: Age after which a 'running' job is taken
                to be orphaned by a crashed process and re-queued
            log: Optional callback receiving progress lines
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if retry_backoff < 0 or stale_claim_seconds < 0:
            raise ValueError("retry_backoff and stale_claim_seconds must not be negative")
        self._router = router
        self._client = client
        self._max_attempts = max_attempts
        self._retry_backoff = retry_backoff
        self._stale_claim_seconds = stale_claim_seconds
        self._log = log
        self._running: dict[str, bool] = {}

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def client(self) -> AiBackendClient:
        return self._client

    def is_running(self, workspace: Optional[str] = None) -> bool:
        """True while a drain is active for the workspace."""
        return self._running.get(self._router.resolve_name(workspace), False)

    def normalize_error(self, error: BaseException) -> str:
        return normalize_error(error, getattr(self._client, "base_url", None))

    def _emit(self, workspace: str, message: str, level: int = logging.INFO) -> None:
        logger.log(level, "[%s] %s", workspace, message)
        if self._log is not None:
            self._log(f"[{workspace}] {message}")

    # -------------------------------------------------------------------------
    # Drain loop
    # -------------------------------------------------------------------------

    async def run(self, workspace: Optional[str] = None) -> dict:
        """
        Process queued jobs for a workspace until none is due.

        Jobs waiting out a retry backoff are left for a later drain. A
        storage error (for example a locked or unwritable database) ends
        the drain; it is logged and reported in the result, not raised.

        Returns:
            Dict with: workspace, processed, failed (requeued),
            abandoned (failed permanently), errors (list), skipped (True
            if a drain for this workspace was already running), aborted
            (True if a storage error ended the drain)
        """
        name = self._router.resolve_name(workspace)
        result = {
            "workspace": name, "processed": 0, "failed": 0,
            "abandoned": 0, "errors": [], "skipped": False, "aborted": False,
        }

        # Flag is checked and set with no await in between
        if self._running.get(name):
            logger.debug("Drain already running for %s, skipping", name)
            result["skipped"] = True
            return result
        self._running[name] = True

        try:
            ws = self._router.resolve(name)
            ws.queue.recover_interrupted(self._stale_claim_seconds)
            while True:
                job = ws.queue.claim_next_queued_job()
                if job is None:
                    if ws.queue.count_ready() == 0:
                        break
                    continue  # lost a claim race; try the next job
                await self._run_job(ws, job, result)
        except sqlite3.Error as e:
            # A job caught mid-flight stays 'running' until its claim goes stale
            self._emit(name, f"Storage error, drain stopped: {e}", logging.ERROR)
            result["aborted"] = True
            result["errors"].append(f"storage: {e}")
        finally:
            self._running[name] = False

        if result["processed"] or result["failed"] or result["abandoned"]:
            logger.info(
                "Drain %s: processed=%d failed=%d abandoned=%d",
                name, result["processed"], result["failed"], result["abandoned"],
            )
        return result

    async def run_all(self) -> list[dict]:
        """Drain every workspace concurrently. One workspace's failures
        or backlog do not hold up the others."""
        return list(await asyncio.gather(*(self.run(name) for name in self._router.names)))

    async def _run_job(self, ws: Workspace, job: AiJob, result: dict) -> None:
        """Process one claimed job. Only storage errors escape."""
        self._emit(ws.name, f"Processing {job.type} for {job.entry_id}")
        try:
            if job.type == "transcribe":
                await self._process_transcribe(ws, job)
            else:
                await self._process_summarize(ws, job)
            result["processed"] += 1
        except Exception as e:
            message = self.normalize_error(e)
            self._emit(ws.name, f"AI job error: {message}", logging.WARNING)
            status = ws.queue.requeue_or_fail(
                job, message, self._max_attempts,
                terminal=isinstance(e, _PERMANENT_ERRORS),
                retry_backoff=self._retry_backoff,
            )
            result["abandoned" if status == "error" else "failed"] += 1
            result["errors"].append(f"{job.id}: {message}")

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _process_transcribe(self, ws: Workspace, job: AiJob) -> None:
        entry = ws.entries.require_entry(job.entry_id)

        if entry.has_transcript and not is_likely_untranslated(entry.transcript):
            # A previous run stored the transcript but didn't get further
            logger.info("Reusing existing transcript for %s", entry.id)
            with ws.database.transaction():
                self._chain_summarize(ws, entry.id)
                ws.queue.mark_done(job.id)
            return

        transcript = await self._client.transcribe(entry.audio_uri)

        with ws.database.transaction():
            ws.entries.update_entry(
                entry.id, transcript=transcript, ai_status="transcribed", error_msg=None,
            )
            self._chain_summarize(ws, entry.id)
            ws.queue.mark_done(job.id)

    def _chain_summarize(self, ws: Workspace, entry_id: str) -> None:
        """Queue the summarize stage. The entry ends up 'queued' even if a
        summarize job was already active."""
        ws.queue.enqueue(entry_id, "summarize")
        ws.entries.update_entry(entry_id, ai_status="queued")

    async def _process_summarize(self, ws: Workspace, job: AiJob) -> None:
        entry = ws.entries.require_entry(job.entry_id)
        if not entry.has_transcript:
            raise PreconditionError("Cannot summarize without transcript.")

        result = await self._client.summarize(entry.transcript)
        summary = format_summary(result.title, result.bullets)

        with ws.database.transaction():
            ws.entries.update_entry(
                entry.id, summary=summary, ai_status="summarized", error_msg=None,
            )
            ws.queue.mark_done(job.id)

        outcome = await self._suggest_tags_best_effort(ws, entry.id)
        if outcome.ok:
            self._emit(ws.name, f"Attached {outcome.attached} tag(s) to {entry.id}")

    async def _suggest_tags_best_effort(self, ws: Workspace, entry_id: str) -> TagOutcome:
        try:
            return await self.generate_tags(entry_id, ws.name)
        except Exception as e:
            # generate_tags already noted the failure on the entry
            return TagOutcome.failure(self.normalize_error(e))

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    async def generate_tags(self, entry_id: str, workspace: Optional[str] = None) -> TagOutcome:
        """
        Ask the backend for tags and attach them to an entry.

        Requires a transcript or summary. On failure the entry's
        error_msg gets a "Tag generation failed" note (ai_status is not
        touched) and the exception propagates.
        """
        ws = self._router.resolve(workspace)
        entry = ws.entries.require_entry(entry_id)

        transcript = (entry.transcript or "").strip()
        summary = (entry.summary or "").strip()
        if not transcript and not summary:
            raise PreconditionError("Add transcript or summary first, then generate tags.")

        try:
            names = await self._client.suggest_tags(transcript, summary or None)
            attached = self._attach_tags(ws, entry.id, names)
        except Exception as e:
            message = self.normalize_error(e)
            ws.entries.update_entry(entry.id, error_msg=f"{TAG_FAILURE_PREFIX}{message}")
            self._emit(ws.name, f"Tag generation failed for {entry.id}: {message}", logging.WARNING)
            raise

        ws.entries.update_entry(entry.id, error_msg=None)
        return TagOutcome.success(suggested=len(names), attached=attached)

    @staticmethod
    def _attach_tags(ws: Workspace, entry_id: str, names: list[str]) -> int:
        unique = list(dict.fromkeys(n for n in (normalize_tag_name(x) for x in names) if n))
        with ws.database.transaction():
            for name in unique:
                tag = ws.entries.create_tag(name)
                ws.entries.attach_tag(entry_id, tag.id)
        return len(unique)
