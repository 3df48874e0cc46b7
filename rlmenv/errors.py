"""Error taxonomy for the RLM execution engine.

Every error raised by an engine operation derives from :class:`RLMError` so
that the engine boundary in :meth:`RLMEnvironment.execute` can report it back
to the controller as structured failure text.
"""

from __future__ import annotations

from typing import Any


class RLMError(Exception):
    """Base class for all engine errors."""


class RangeError(RLMError, IndexError):
    """Raised when a context slice falls outside ``[0, length]``."""

    def __init__(self, start: int, end: int, length: int) -> None:
        self.start = start
        self.end = end
        self.length = length
        super().__init__(f"invalid range [{start}, {end}) for context of length {length}")


class InvalidParameterError(RLMError, ValueError):
    """Raised on bad operation parameters (chunk sizes, variable names, ...)."""


class DepthExceededError(RLMError):
    """Raised when a sub-call would exceed the recursion limit."""

    def __init__(self, depth: int, max_depth: int) -> None:
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(f"maximum recursion depth reached (depth={depth}, max_depth={max_depth})")


class VariableNotFoundError(RLMError, LookupError):
    """Raised by ``final_var`` when the requested variable was never set."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"variable '{name}' not found in memory store")

    def __str__(self) -> str:
        # LookupError would otherwise repr() the single argument.
        return str(self.args[0])


class BackendError(RLMError):
    """Raised when the backend gateway fails to produce a response."""


class BackendTimeoutError(BackendError):
    """Raised when a backend call exceeds its per-call or batch timeout."""

    def __init__(self, message: str, timeout: float | None = None) -> None:
        self.timeout = timeout
        super().__init__(message)


class BatchPartialFailureError(RLMError):
    """Aggregate failure of an ``llm_batch`` call.

    Parameters
    ----------
    outcomes : list[dict[str, Any]]
        One entry per batch position: ``{"index", "ok", "value", "error_type",
        "error"}``.
    """

    def __init__(self, outcomes: list[dict[str, Any]]) -> None:
        self.outcomes = outcomes
        failed = [o["index"] for o in outcomes if not o["ok"]]
        self.failed_indices = failed
        super().__init__(f"{len(failed)} of {len(outcomes)} batch items failed: indices {failed}")


class SafetyBreakError(RLMError):
    """Raised by a caller-side iteration cap guarding against runaway loops."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"safety break: {reason}")


class SandboxViolationError(RLMError):
    """Raised when generated code uses syntax the sandbox does not allow."""


class SessionFailedError(RLMError):
    """Raised when a nested controller session ends without an answer."""

    def __init__(self, session_id: str, state: str, reason: str | None = None) -> None:
        self.session_id = session_id
        self.state = state
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"session {session_id} ended in state {state}{detail}")
