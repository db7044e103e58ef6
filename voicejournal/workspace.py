"""
Workspace routing.

A workspace is an isolated data partition: its own database file, and
therefore its own entries, tags and job queue. The router resolves a
workspace name (or the active workspace when none is given) to the
storage objects that serve it.

With a single configured workspace the router is the identity case:
every call resolves to the same store.
"""

import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .database import Database
from .entry_store import EntryStore
from .job_queue import AiJobQueue

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE = "default"

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


@dataclass
class Workspace:
    """Storage for one workspace."""
    name: str
    database: Database
    entries: EntryStore
    queue: AiJobQueue

    def close(self) -> None:
        self.database.close()


class WorkspaceRouter:
    """
    Resolves workspace names to their stores.

    Workspaces are opened lazily on first use and cached until close().
    """

    def __init__(
        self,
        root: Path,
        workspaces: Iterable[str] = (DEFAULT_WORKSPACE,),
        default: Optional[str] = None,
    ):
        """
        Args:
            root: Directory holding one <name>.db per workspace
            workspaces: Names of the known workspaces
            default: Workspace used when callers don't name one
                (defaults to the first known workspace)
        """
        names = list(dict.fromkeys(workspaces))
        if not names:
            raise ValueError("At least one workspace is required")
        for name in names:
            if not _NAME_RE.match(name):
                raise ValueError(
                    f"Invalid workspace name {name!r}: use lowercase letters, digits, '-' and '_'"
                )
        self._root = Path(root)
        self._names = tuple(names)
        self._active = self._check(default) if default else names[0]
        self._open: dict[str, Workspace] = {}
        self._lock = threading.Lock()

    @property
    def names(self) -> tuple[str, ...]:
        return self._names

    @property
    def active(self) -> str:
        """The workspace used when callers don't name one."""
        return self._active

    def set_active(self, name: str) -> None:
        self._active = self._check(name)
        logger.info("Active workspace: %s", name)

    def _check(self, name: str) -> str:
        if name not in self._names:
            raise ValueError(
                f"Unknown workspace {name!r} (known: {', '.join(self._names)})"
            )
        return name

    def resolve_name(self, name: Optional[str] = None) -> str:
        """Name of the workspace a call targets."""
        return self._check(name) if name else self._active

    def db_path(self, name: str) -> Path:
        return self._root / f"{name}.db"

    def resolve(self, name: Optional[str] = None) -> Workspace:
        """Get the stores for a workspace, opening it if needed."""
        name = self.resolve_name(name)
        with self._lock:
            workspace = self._open.get(name)
            if workspace is None:
                database = Database(self.db_path(name))
                entries = EntryStore(database)
                workspace = Workspace(
                    name=name,
                    database=database,
                    entries=entries,
                    queue=AiJobQueue(database, entries),
                )
                self._open[name] = workspace
                logger.debug("Opened workspace %s at %s", name, database.path)
            return workspace

    def close(self) -> None:
        """Close every opened workspace."""
        with self._lock:
            for workspace in self._open.values():
                workspace.close()
            self._open.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
