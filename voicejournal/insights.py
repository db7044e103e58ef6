"""
Weekly themes over journal entries.

Groups entries by ISO week and picks the most frequent meaningful words
from their summaries and transcripts.
"""

import re
from collections import Counter
from datetime import datetime, timezone
from typing import Iterable

from .types import Entry, WeeklyTheme

FALLBACK_THEME = "General reflections"
THEME_WORDS = 3

STOP_WORDS = frozenset({
    "the", "and", "for", "that", "with", "this", "have", "from", "were", "been",
    "about", "into", "your", "just", "audio", "entry", "today", "journal",
    "after", "before", "while", "when", "what", "they", "there", "their", "them",
})

_NON_WORD_RE = re.compile(r"[^a-z0-9\s]")


def week_key(timestamp_ms: int) -> str:
    """ISO week of a millisecond timestamp (UTC), e.g. ``2026-W07``."""
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    year, week, _ = dt.isocalendar()
    return f"{year}-W{week:02d}"


def theme_words(text: str) -> list[str]:
    """Lowercased words longer than three characters, minus stop words."""
    cleaned = _NON_WORD_RE.sub(" ", text.lower())
    return [w for w in cleaned.split() if len(w) > 3 and w not in STOP_WORDS]


def build_weekly_themes(entries: Iterable[Entry]) -> list[WeeklyTheme]:
    """One WeeklyTheme per ISO week, newest week first."""
    grouped: dict[str, list[Entry]] = {}
    for entry in entries:
        grouped.setdefault(week_key(entry.created_at), []).append(entry)

    themes = []
    for week in sorted(grouped, reverse=True):
        week_entries = grouped[week]
        counts: Counter[str] = Counter()
        for entry in week_entries:
            counts.update(theme_words(f"{entry.summary or ''} {entry.transcript or ''}"))
        top = [word for word, _ in counts.most_common(THEME_WORDS)]
        themes.append(WeeklyTheme(
            week=week,
            theme=", ".join(top) or FALLBACK_THEME,
            entry_ids=[e.id for e in week_entries],
        ))
    return themes
