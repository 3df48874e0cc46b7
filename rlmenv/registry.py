"""Registry of engine sessions forming the recursive call tree.

Engines do not hold references to each other; a child only knows its
parent's session id.  The registry keeps one :class:`SessionRecord` per
session so the whole tree (states, errors, traces) can be inspected after
the engines themselves are discarded.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .trace import SessionTrace


class SessionState(str, Enum):
    """Lifecycle state of an engine session."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionState.RUNNING


@dataclass
class SessionRecord:
    """Bookkeeping for one engine session."""

    session_id: str
    parent_id: str | None
    depth: int
    max_depth: int
    trace: SessionTrace
    state: SessionState = SessionState.RUNNING
    error: str | None = None
    children: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "parent_id": self.parent_id,
            "depth": self.depth,
            "max_depth": self.max_depth,
            "state": self.state.value,
            "error": self.error,
            "trace": self.trace.to_dict()["events"],
        }


class SessionRegistry:
    """Thread-safe arena of session records indexed by session id."""

    def __init__(self, prefix: str = "s") -> None:
        self._prefix = prefix
        self._counter = itertools.count()
        self._records: dict[str, SessionRecord] = {}
        self._lock = threading.Lock()

    def create(self, parent_id: str | None, depth: int, max_depth: int) -> SessionRecord:
        """Allocate a new session id and record under ``parent_id``."""
        with self._lock:
            session_id = f"{self._prefix}{next(self._counter)}"
            record = SessionRecord(
                session_id=session_id,
                parent_id=parent_id,
                depth=depth,
                max_depth=max_depth,
                trace=SessionTrace(session_id, parent_id, depth),
            )
            self._records[session_id] = record
            if parent_id is not None and parent_id in self._records:
                self._records[parent_id].children.append(session_id)
            return record

    def get(self, session_id: str) -> SessionRecord:
        with self._lock:
            return self._records[session_id]

    def children(self, session_id: str) -> list[SessionRecord]:
        with self._lock:
            return [self._records[c] for c in self._records[session_id].children]

    def records(self) -> list[SessionRecord]:
        with self._lock:
            return list(self._records.values())

    def count(self, state: SessionState | None = None) -> int:
        with self._lock:
            if state is None:
                return len(self._records)
            return sum(1 for r in self._records.values() if r.state is state)

    def tree(self, session_id: str) -> dict[str, Any]:
        """Return the session and all its descendants as nested dicts."""
        record = self.get(session_id)
        data = record.to_dict()
        data["children"] = [self.tree(c.session_id) for c in self.children(session_id)]
        return data

    def __len__(self) -> int:
        return self.count()
