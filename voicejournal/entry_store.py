"""
Entry store using SQLite.

The entry store is the source of truth for:
- Voice note identity and audio location
- Derived AI artifacts (transcript, summary)
- The ai_status / error_msg pair the UI observes
- Tags and their association with entries

The job queue and worker only need get_entry() and update_entry(); every
other operation here serves the capture flow, search and insights.
"""

import json
import logging
import sqlite3
from typing import Any, Optional

from .database import Database
from .errors import EntryNotFoundError
from .types import (
    AI_STATUSES,
    Entry,
    Tag,
    make_id,
    normalize_tag_name,
    now_ms,
)

logger = logging.getLogger(__name__)


# Entry fields writable through update_entry(), mapped to their columns
PATCHABLE_FIELDS = {
    "audio_uri": "audio_uri",
    "duration_sec": "duration_sec",
    "transcript": "transcript",
    "summary": "summary",
    "ai_status": "ai_status",
    "error_msg": "error_msg",
}

# Tags come back as a JSON array of {id, name}; an untagged entry yields
# one object with null fields from the LEFT JOIN
_ENTRY_SELECT = """
    SELECT
        e.id, e.created_at, e.audio_uri, e.duration_sec, e.transcript,
        e.summary, e.ai_status, e.error_msg,
        json_group_array(json_object('id', t.id, 'name', t.name)) AS tags_json
    FROM entries e
    LEFT JOIN entry_tags et ON et.entry_id = e.id
    LEFT JOIN tags t ON t.id = et.tag_id
"""


def _parse_tags(tags_json: Optional[str]) -> list[Tag]:
    if not tags_json:
        return []
    tags = [
        Tag(id=item["id"], name=item["name"])
        for item in json.loads(tags_json)
        if item.get("id") and item.get("name")
    ]
    tags.sort(key=lambda t: t.name.casefold())
    return tags


def _like_pattern(text: str) -> str:
    """Substring LIKE pattern with % _ and the escape character taken literally."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _row_to_entry(row: sqlite3.Row) -> Entry:
    return Entry(
        id=row["id"],
        created_at=row["created_at"],
        audio_uri=row["audio_uri"],
        duration_sec=row["duration_sec"],
        transcript=row["transcript"],
        summary=row["summary"],
        ai_status=row["ai_status"],
        error_msg=row["error_msg"],
        tags=_parse_tags(row["tags_json"]),
    )


class EntryStore:
    """
    SQLite-backed store for entries and tags.

    Shares its Database with the job queue, so an entry write made inside
    Database.transaction() commits together with the queue's writes.
    """

    def __init__(self, database: Database):
        self._db = database

    @property
    def database(self) -> Database:
        return self._db

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    def create_entry(
        self,
        audio_uri: str,
        duration_sec: float,
        *,
        error_msg: Optional[str] = None,
    ) -> Entry:
        """
        Create an entry for a newly captured voice note.

        Args:
            audio_uri: Where the audio was persisted
            duration_sec: Recording length; rounded, never negative
            error_msg: Optional note, e.g. when the audio could only be
                kept in a temporary location

        Returns:
            The stored Entry, with ai_status "none"
        """
        if not audio_uri or not audio_uri.strip():
            raise ValueError("audio_uri is required")
        entry_id = make_id("entry")
        self._db.execute("""
            INSERT INTO entries
            (id, created_at, audio_uri, duration_sec, transcript, summary, ai_status, error_msg)
            VALUES (?, ?, ?, ?, NULL, NULL, 'none', ?)
        """, (entry_id, now_ms(), audio_uri, max(0, round(duration_sec)), error_msg))
        logger.info("Created entry %s (%ds)", entry_id, max(0, round(duration_sec)))
        return self.require_entry(entry_id)

    def get_entry(self, entry_id: str) -> Optional[Entry]:
        """Get an entry with its tags, or None if it doesn't exist."""
        row = self._db.query_one(
            f"{_ENTRY_SELECT} WHERE e.id = ? GROUP BY e.id",
            (entry_id,),
        )
        return _row_to_entry(row) if row else None

    def require_entry(self, entry_id: str) -> Entry:
        """Get an entry, raising EntryNotFoundError if missing."""
        entry = self.get_entry(entry_id)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        return entry

    def update_entry(self, entry_id: str, **fields: Any) -> bool:
        """
        Apply a partial update to an entry.

        Only the keys in PATCHABLE_FIELDS may be given; a value of None
        clears the column.

        Returns:
            True if a row was updated
        """
        if not fields:
            return False
        unknown = set(fields) - set(PATCHABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update entry fields: {', '.join(sorted(unknown))}")
        if "ai_status" in fields and fields["ai_status"] not in AI_STATUSES:
            raise ValueError(f"Invalid ai_status: {fields['ai_status']!r}")

        columns = [f"{PATCHABLE_FIELDS[key]} = ?" for key in fields]
        values = list(fields.values()) + [entry_id]
        cursor = self._db.execute(
            f"UPDATE entries SET {', '.join(columns)} WHERE id = ?",
            values,
        )
        return cursor.rowcount > 0

    def delete_entry(self, entry_id: str) -> bool:
        """Delete an entry. Its jobs and tag links cascade."""
        cursor = self._db.execute("DELETE FROM entries WHERE id = ?", (entry_id,))
        if cursor.rowcount:
            logger.info("Deleted entry %s", entry_id)
        return cursor.rowcount > 0

    def list_entries(self) -> list[Entry]:
        """All entries, newest first."""
        rows = self._db.query_all(
            f"{_ENTRY_SELECT} GROUP BY e.id ORDER BY e.created_at DESC"
        )
        return [_row_to_entry(row) for row in rows]

    def search_entries(self, query: str) -> list[Entry]:
        """Case-insensitive substring search over transcript and summary."""
        pattern = _like_pattern(query.strip().lower())
        rows = self._db.query_all(f"""
            {_ENTRY_SELECT}
            WHERE lower(COALESCE(e.transcript, '') || ' ' || COALESCE(e.summary, '')) LIKE ? ESCAPE '\\'
            GROUP BY e.id
            ORDER BY e.created_at DESC
        """, (pattern,))
        return [_row_to_entry(row) for row in rows]

    def list_entries_with_summary(self) -> list[Entry]:
        rows = self._db.query_all(f"""
            {_ENTRY_SELECT}
            WHERE COALESCE(trim(e.summary), '') <> ''
            GROUP BY e.id
            ORDER BY e.created_at DESC
        """)
        return [_row_to_entry(row) for row in rows]

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    def create_tag(self, name: str) -> Tag:
        """
        Get or create a tag by name.

        Names are trimmed and whitespace-collapsed; matching an existing
        tag is case-insensitive and keeps the existing spelling.
        """
        clean = normalize_tag_name(name)
        if not clean:
            raise ValueError("Tag name cannot be empty.")

        with self._db.transaction():
            row = self._db.query_one(
                "SELECT id, name FROM tags WHERE lower(name) = lower(?) LIMIT 1",
                (clean,),
            )
            if row:
                return Tag(id=row["id"], name=row["name"])
            tag_id = make_id("tag")
            self._db.execute("INSERT INTO tags (id, name) VALUES (?, ?)", (tag_id, clean))
        return Tag(id=tag_id, name=clean)

    def list_tags(self) -> list[Tag]:
        rows = self._db.query_all("SELECT id, name FROM tags ORDER BY lower(name) ASC")
        return [Tag(id=row["id"], name=row["name"]) for row in rows]

    def attach_tag(self, entry_id: str, tag_id: str) -> None:
        """Link a tag to an entry. Linking twice is a no-op."""
        self._db.execute(
            "INSERT OR IGNORE INTO entry_tags (entry_id, tag_id) VALUES (?, ?)",
            (entry_id, tag_id),
        )

    def detach_tag(self, entry_id: str, tag_id: str) -> None:
        self._db.execute(
            "DELETE FROM entry_tags WHERE entry_id = ? AND tag_id = ?",
            (entry_id, tag_id),
        )

    # -------------------------------------------------------------------------
    # Insights
    # -------------------------------------------------------------------------

    def list_weekly_counts(self) -> list[dict]:
        """Entry counts per week (``YYYY-Www``, SQLite %W numbering)."""
        rows = self._db.query_all("""
            SELECT strftime('%Y-W%W', created_at / 1000, 'unixepoch') AS week,
                   COUNT(*) AS count
            FROM entries
            GROUP BY week
            ORDER BY week DESC
        """)
        return [{"week": row["week"], "count": row["count"]} for row in rows]

    def list_top_tags(self, limit: int = 10) -> list[dict]:
        """Tags ranked by how many entries use them."""
        rows = self._db.query_all("""
            SELECT t.id AS tag_id, t.name AS tag_name, COUNT(et.entry_id) AS count
            FROM tags t
            LEFT JOIN entry_tags et ON et.tag_id = t.id
            GROUP BY t.id, t.name
            ORDER BY count DESC, lower(t.name) ASC
            LIMIT ?
        """, (limit,))
        return [
            {"tag_id": row["tag_id"], "tag_name": row["tag_name"], "count": row["count"]}
            for row in rows
        ]

    def export_data(self) -> dict:
        """Dump every table as plain dicts for backup."""
        def dump(sql: str) -> list[dict]:
            return [dict(row) for row in self._db.query_all(sql)]

        return {
            "exported_at": now_ms(),
            "entries": dump("SELECT * FROM entries ORDER BY created_at DESC"),
            "tags": dump("SELECT * FROM tags ORDER BY lower(name) ASC"),
            "entry_tags": dump("SELECT * FROM entry_tags ORDER BY entry_id ASC, tag_id ASC"),
            "ai_jobs": dump("SELECT * FROM ai_jobs ORDER BY created_at DESC"),
        }
