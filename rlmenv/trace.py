"""Structured per-session operation trace.

Every engine operation is recorded with its (summarized) arguments, start
time, duration and outcome.  The trace is the data source for cost and
latency analysis done outside the engine.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

_PREVIEW_CHARS = 80


def summarize_arg(value: Any) -> Any:
    """Reduce an operation argument to a small JSON-friendly form."""
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        if len(value) <= _PREVIEW_CHARS:
            return value
        return {"length": len(value), "preview": value[:_PREVIEW_CHARS] + "..."}
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return {"type": type(value).__name__, "length": len(value)}
    if isinstance(value, dict):
        return {"type": "dict", "keys": sorted(str(k) for k in value)[:10]}
    text = repr(value)
    return text if len(text) <= _PREVIEW_CHARS else text[:_PREVIEW_CHARS] + "..."


@dataclass
class TraceEvent:
    """One recorded operation invocation."""

    operation: str
    args: dict[str, Any]
    started_at: float
    duration: float = 0.0
    outcome: str = "ok"
    error_type: str | None = None
    error: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "operation": self.operation,
            "args": self.args,
            "started_at": self.started_at,
            "duration": round(self.duration, 6),
            "outcome": self.outcome,
        }
        if self.error_type is not None:
            data["error_type"] = self.error_type
            data["error"] = self.error
        if self.detail:
            data["detail"] = self.detail
        return data


class SessionTrace:
    """Ordered list of :class:`TraceEvent` for one engine session."""

    def __init__(self, session_id: str, parent_id: str | None = None, depth: int = 0) -> None:
        self.session_id = session_id
        self.parent_id = parent_id
        self.depth = depth
        self._events: list[TraceEvent] = []
        self._lock = threading.Lock()

    @contextmanager
    def record(self, operation: str, **args: Any) -> Iterator[TraceEvent]:
        """Time an operation and record its outcome.

        Exceptions are recorded on the event and re-raised.
        """
        event = TraceEvent(
            operation=operation,
            args={k: summarize_arg(v) for k, v in args.items()},
            started_at=time.time(),
        )
        start = time.perf_counter()
        try:
            yield event
        except BaseException as e:
            event.outcome = "error"
            event.error_type = type(e).__name__
            event.error = str(e)
            raise
        finally:
            event.duration = time.perf_counter() - start
            with self._lock:
                self._events.append(event)

    @property
    def events(self) -> list[TraceEvent]:
        with self._lock:
            return list(self._events)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "parent_id": self.parent_id,
            "depth": self.depth,
            "events": [e.to_dict() for e in self.events],
        }
