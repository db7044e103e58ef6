"""
Data types for the voice journal AI pipeline.
"""

import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional


# Entry.ai_status values, in pipeline order
AI_STATUSES = ("none", "queued", "transcribed", "summarized", "error")

JOB_TYPES = ("transcribe", "summarize")
JOB_STATUSES = ("queued", "running", "done", "error")

# Jobs in these states block a second enqueue of the same (entry, type)
ACTIVE_JOB_STATUSES = ("queued", "running")

MAX_SUMMARY_BULLETS = 5
MAX_SUGGESTED_TAGS = 8

DEFAULT_MAX_ATTEMPTS = 3

_WHITESPACE_RE = re.compile(r"\s+")


def now_ms() -> int:
    """Current time in milliseconds since the epoch.

    All timestamps in the journal database use this representation.
    """
    return int(time.time() * 1000)


def make_id(prefix: str) -> str:
    """Generate an opaque identifier like ``entry-3f9c...``."""
    return f"{prefix}-{uuid.uuid4().hex}"


def normalize_tag_name(name: str) -> str:
    """Trim a tag name and collapse internal whitespace."""
    return _WHITESPACE_RE.sub(" ", name.strip())


@dataclass
class Tag:
    """A named label attached to entries."""
    id: str
    name: str


@dataclass
class Entry:
    """
    One voice note and its derived AI artifacts.

    ``tags`` is derived from the entry_tags association and is not
    written through ``update_entry``.
    """
    id: str
    created_at: int
    audio_uri: str
    duration_sec: int
    transcript: Optional[str] = None
    summary: Optional[str] = None
    ai_status: str = "none"
    error_msg: Optional[str] = None
    tags: list[Tag] = field(default_factory=list)

    @property
    def has_transcript(self) -> bool:
        return bool(self.transcript and self.transcript.strip())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "audio_uri": self.audio_uri,
            "duration_sec": self.duration_sec,
            "transcript": self.transcript,
            "summary": self.summary,
            "ai_status": self.ai_status,
            "error_msg": self.error_msg,
            "tags": [t.name for t in self.tags],
        }


@dataclass
class AiJob:
    """A unit of AI work (transcribe or summarize) against one entry."""
    id: str
    entry_id: str
    type: str
    status: str
    attempts: int
    last_error: Optional[str]
    created_at: int
    updated_at: int
    retry_after: int = 0  # epoch ms; a requeued job is not claimed before this

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entry_id": self.entry_id,
            "type": self.type,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "retry_after": self.retry_after,
        }


@dataclass(frozen=True)
class EnqueueResult:
    """Outcome of enqueue().

    ``enqueued=False`` means an active job for the same (entry, type)
    already exists; ``job_id`` is then that job's id.
    """
    enqueued: bool
    job_id: Optional[str] = None


@dataclass(frozen=True)
class SummaryResult:
    """Structured summary returned by the AI backend."""
    title: str
    bullets: tuple[str, ...] = ()


@dataclass(frozen=True)
class TagOutcome:
    """Result of a tag-suggestion pass.

    Tag suggestion is an enhancement on top of a summary, so its failure
    is reported as a value rather than raised from the summarize stage.
    """
    ok: bool
    suggested: int = 0
    attached: int = 0
    error: Optional[str] = None

    @classmethod
    def success(cls, suggested: int, attached: int) -> "TagOutcome":
        return cls(ok=True, suggested=suggested, attached=attached)

    @classmethod
    def failure(cls, error: str) -> "TagOutcome":
        return cls(ok=False, error=error)


@dataclass
class WeeklyTheme:
    """Entries grouped by ISO week with their dominant words."""
    week: str
    theme: str
    entry_ids: list[str] = field(default_factory=list)


# -----------------------------------------------------------------------------
# Summary text convention
#
# The structured summary (title + bullets) is stored in the single
# Entry.summary column:
#
#   Trip planning
#   - Book flights
#   - Reserve hotel
# -----------------------------------------------------------------------------

BULLET_PREFIX = "- "


def _single_line(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", str(text)).strip()


def format_summary(title: str, bullets: list[str] | tuple[str, ...]) -> str:
    """Render a title and bullets into the stored summary text.

    Newlines inside the title or a bullet are collapsed to spaces so that
    parse_summary() recovers the same structure.
    """
    lines = [_single_line(title)]
    for bullet in bullets:
        line = _single_line(bullet)
        if line:
            lines.append(f"{BULLET_PREFIX}{line}")
    return "\n".join(lines)


def parse_summary(text: Optional[str]) -> tuple[str, list[str]]:
    """Split stored summary text back into (title, bullets)."""
    if not text or not text.strip():
        return "", []
    # Keep a leading newline: it marks an empty title
    lines = text.rstrip("\n").split("\n")
    title = lines[0].strip()
    bullets = []
    for line in lines[1:]:
        line = line.strip()
        if line.startswith(BULLET_PREFIX):
            bullets.append(line[len(BULLET_PREFIX):].strip())
        elif line.startswith("-"):
            bullets.append(line[1:].strip())
        elif line:
            bullets.append(line)
    return title, bullets


def entry_title(summary: Optional[str], fallback: Optional[str] = None) -> str:
    """Display title: explicit fallback, else the summary's first line."""
    if fallback and fallback.strip():
        return fallback.strip()
    title, _ = parse_summary(summary)
    return title or "Audio entry"


def format_duration(total_seconds: int | float) -> str:
    """Format seconds as M:SS."""
    safe = max(0, int(total_seconds))
    mins, secs = divmod(safe, 60)
    return f"{mins}:{secs:02d}"
