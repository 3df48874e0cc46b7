"""The RLM execution engine.

:class:`RLMEnvironment` is the single handle that model-generated code
operates against.  It owns the session's :class:`ContextBuffer`,
:class:`MemoryStore` and :class:`SubCallDispatcher`, enforces the recursion
limit, records every operation in the session trace and drives the session
state machine::

    RUNNING --final_var--> COMPLETED
    RUNNING --unrecovered error--> FAILED
    RUNNING --timeout / cancellation--> ABORTED
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any

from .context import ChunkDescriptor, ContextBuffer
from .dispatcher import SessionRunner, SubCallConfig, SubCallDispatcher, check_batch
from .errors import (
    BackendError,
    DepthExceededError,
    InvalidParameterError,
    SafetyBreakError,
    VariableNotFoundError,
)
from .gateway import BackendGateway
from .memory import MemoryStore
from .registry import SessionRegistry, SessionState
from .repl import REPLEnv, REPLResult
from .trace import SessionTrace

logger = logging.getLogger(__name__)

FINAL_ANSWER_VAR = "final_answer"


class RLMEnvironment:
    """Execution engine for one (possibly nested) RLM session.

    Parameters
    ----------
    context : str | ContextBuffer
        The immutable context of this session.
    gateway : BackendGateway | None
        Gateway used for sub-calls.  Without one, sub-calls fail with
        :class:`BackendError` (after the depth check).
    sub_config : SubCallConfig | None
        Sub-call model, concurrency and timeout settings.
    max_depth : int
        Maximum recursion depth of the call tree.
    current_depth : int
        Depth of this engine (0 for the root).
    parent_id : str | None
        Session id of the parent engine.
    registry : SessionRegistry | None
        Registry shared by the whole call tree (created for a root engine).
    session_runner : SessionRunner | None
        Runs nested sessions; defaults to a single gateway call.
    max_output_length : int
        Truncation limit for printed output of one ``execute()`` call.

    Raises
    ------
    DepthExceededError
        If ``current_depth > max_depth``.
    """

    def __init__(
        self,
        context: str | ContextBuffer,
        *,
        gateway: BackendGateway | None = None,
        sub_config: SubCallConfig | None = None,
        max_depth: int = 1,
        current_depth: int = 0,
        parent_id: str | None = None,
        registry: SessionRegistry | None = None,
        session_runner: SessionRunner | None = None,
        max_output_length: int = 10000,
    ) -> None:
        if max_depth < 0 or current_depth < 0:
            raise InvalidParameterError(
                f"depths must be non-negative (current_depth={current_depth}, max_depth={max_depth})"
            )
        if current_depth > max_depth:
            raise DepthExceededError(current_depth, max_depth)

        self.context = context if isinstance(context, ContextBuffer) else ContextBuffer(context)
        self.memory = MemoryStore()
        self.gateway = gateway
        self.sub_config = sub_config or SubCallConfig()
        self.max_depth = max_depth
        self.current_depth = current_depth
        self.registry = registry if registry is not None else SessionRegistry()
        self.max_output_length = max_output_length
        self.dispatcher = SubCallDispatcher(self, self.sub_config, session_runner)

        self.final_value: Any = None
        self.error: BaseException | None = None
        self._record = self.registry.create(parent_id, current_depth, max_depth)
        self._lock = threading.Lock()
        self._repl: REPLEnv | None = None

    # ------------------------------------------------------------------
    # Identity and state
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._record.session_id

    @property
    def parent_id(self) -> str | None:
        return self._record.parent_id

    @property
    def is_root(self) -> bool:
        return self.current_depth == 0

    @property
    def state(self) -> SessionState:
        return self._record.state

    @property
    def trace(self) -> SessionTrace:
        return self._record.trace

    def _transition(self, state: SessionState, error: BaseException | None = None) -> bool:
        with self._lock:
            if self._record.state is not SessionState.RUNNING:
                return False
            self._record.state = state
            if error is not None:
                self.error = error
                self._record.error = f"{type(error).__name__}: {error}"
        logger.info("Session %s -> %s", self.session_id, state.value)
        return True

    def fail(self, error: BaseException) -> None:
        """Move a running session to ``FAILED``."""
        self._transition(SessionState.FAILED, error)

    def abort(self, reason: str) -> None:
        """Move a running session to ``ABORTED`` (timeout, cancellation)."""
        self._transition(SessionState.ABORTED, TimeoutError(reason))

    def __repr__(self) -> str:
        return (
            f"RLMEnvironment({self.session_id}, depth={self.current_depth}/{self.max_depth}, "
            f"context={len(self.context):,}, state={self.state.value})"
        )

    # ------------------------------------------------------------------
    # Context operations
    # ------------------------------------------------------------------

    def read_context(self, start: int, end: int) -> str:
        """Return context characters ``[start, end)``; raises ``RangeError``."""
        with self.trace.record("read_context", start=start, end=end):
            return self.context.read(start, end)

    def plan_chunks(self, chunk_size: int, overlap: int = 0) -> list[ChunkDescriptor]:
        """Plan chunk descriptors; raises ``InvalidParameterError``."""
        with self.trace.record("plan_chunks", chunk_size=chunk_size, overlap=overlap) as event:
            chunks = self.context.plan_chunks(chunk_size, overlap)
            event.detail["chunks"] = len(chunks)
            return chunks

    def search_context(
        self, pattern: str, flags: int = 0, limit: int | None = None
    ) -> list[tuple[int, int]]:
        """Return ``(start, end)`` offsets of regex matches in the context."""
        with self.trace.record("search_context", pattern=pattern, limit=limit) as event:
            spans = self.context.search(pattern, flags, limit)
            event.detail["matches"] = len(spans)
            return spans

    # ------------------------------------------------------------------
    # Memory operations
    # ------------------------------------------------------------------

    def set_var(self, name: str, value: Any) -> None:
        with self.trace.record("set_var", name=name, value=value):
            self.memory.set(name, value)

    def get_var(self, name: str, default: Any = None) -> Any:
        with self.trace.record("get_var", name=name):
            return self.memory.get(name, default)

    def final_var(self, name: str) -> Any:
        """Return the raw value of ``name`` and complete the session.

        Raises
        ------
        VariableNotFoundError
            If ``name`` was never set.
        """
        with self.trace.record("final_var", name=name):
            value = self.memory.final(name)
        with self._lock:
            if self._record.state is SessionState.COMPLETED:
                self.final_value = value
                return value
        if self._transition(SessionState.COMPLETED):
            self.final_value = value
        return value

    # ------------------------------------------------------------------
    # Sub-calls
    # ------------------------------------------------------------------

    def spawn_child(self, content: str | ContextBuffer) -> RLMEnvironment:
        """Create the nested engine for a sub-call at ``current_depth + 1``."""
        return RLMEnvironment(
            content,
            gateway=self.gateway,
            sub_config=self.sub_config,
            max_depth=self.max_depth,
            current_depth=self.current_depth + 1,
            parent_id=self.session_id,
            registry=self.registry,
            session_runner=self.dispatcher.session_runner,
            max_output_length=self.max_output_length,
        )

    def send(self, prompt: str, system: str | None = None) -> str:
        """Send one prompt through the gateway with the sub-call settings."""
        with self.trace.record("backend_send", prompt=prompt, model=self.sub_config.model):
            if self.gateway is None:
                raise BackendError("no backend gateway configured")
            return self.gateway.send(
                prompt,
                self.sub_config.model,
                timeout=self.sub_config.call_timeout,
                system=system,
                max_tokens=self.sub_config.max_tokens,
            )

    def call_sub_llm(self, instruction: str, content: Any) -> str:
        """Run one nested session over ``content`` and return its text.

        Raises
        ------
        DepthExceededError
            When ``current_depth >= max_depth`` (no backend contact).
        """
        with self.trace.record("call_sub_llm", instruction=instruction, content=content):
            return self.dispatcher.call(instruction, content)

    def llm_batch(self, instruction: str, chunks: Iterable[Any]) -> list[str]:
        """Run nested sessions over ``chunks`` concurrently.

        Returns
        -------
        list[str]
            Aligned with ``chunks``; failed positions hold
            :class:`~rlmenv.dispatcher.SubCallFailure` markers.
        """
        items = list(chunks)
        with self.trace.record("llm_batch", instruction=instruction, chunks=items) as event:
            results = self.dispatcher.batch(instruction, items)
            failed = [r.index for r in results if not r.ok]
            event.detail["children"] = [r.session_id for r in results]
            if failed:
                event.outcome = "partial"
                event.detail["failed"] = failed
                event.detail["errors"] = {r.index: r.error_type for r in results if not r.ok}
            return [r.output() for r in results]

    # ------------------------------------------------------------------
    # Code execution (engine boundary)
    # ------------------------------------------------------------------

    def safety_break(self, reason: str = "iteration limit reached") -> None:
        """Abandon the session from inside a runaway loop."""
        raise SafetyBreakError(reason)

    def _final(self, value: Any) -> Any:
        self.set_var(FINAL_ANSWER_VAR, value)
        return self.final_var(FINAL_ANSWER_VAR)

    def _show_vars(self) -> None:
        repl = self._sandbox()
        stored = self.memory.snapshot()
        scratch = repl.user_variables()
        if not stored and not scratch:
            repl.write("(no variables)\n")
            return
        for label, values in (("stored", stored), ("scratch", scratch)):
            for name, value in values.items():
                rep = repr(value)
                if len(rep) > 100:
                    rep = rep[:97] + "..."
                repl.write(f"[{label}] {name} = {rep}\n")

    def _sandbox(self) -> REPLEnv:
        if self._repl is None:
            self._repl = REPLEnv(
                {
                    "CONTEXT_LENGTH": len(self.context),
                    "DEPTH": self.current_depth,
                    "MAX_DEPTH": self.max_depth,
                    "read_context": self.read_context,
                    "plan_chunks": self.plan_chunks,
                    "search_context": self.search_context,
                    "call_sub_llm": self.call_sub_llm,
                    "llm_batch": self.llm_batch,
                    "check_batch": check_batch,
                    "set_var": self.set_var,
                    "get_var": self.get_var,
                    "final_var": self.final_var,
                    "FINAL_VAR": self.final_var,
                    "FINAL": self._final,
                    "SHOW_VARS": self._show_vars,
                    "safety_break": self.safety_break,
                },
                max_output_length=self.max_output_length,
            )
        return self._repl

    def _is_unrecoverable(self, error: BaseException) -> bool:
        if isinstance(error, (VariableNotFoundError, SafetyBreakError)):
            return True
        return isinstance(error, DepthExceededError) and self.is_root

    def execute(self, code: str) -> REPLResult:
        """Run one block of generated code against this engine.

        Errors escaping the code are reported on the result as
        ``"<ErrorType>: <message>"``.  ``VariableNotFoundError``,
        ``SafetyBreakError`` and, at the root, ``DepthExceededError`` also end
        the session in ``FAILED``; everything else leaves it ``RUNNING`` so the
        controller can react on its next turn.
        """
        if self.state.is_terminal:
            return REPLResult(
                output="",
                error=f"session {self.session_id} is {self.state.value}; no further code runs",
                success=False,
            )

        with self.trace.record("execute", code=code) as event:
            result = self._sandbox().execute(code)
            if result.exception is not None:
                event.outcome = "error"
                event.error_type = type(result.exception).__name__
                event.error = str(result.exception)
                if self._is_unrecoverable(result.exception):
                    self.fail(result.exception)
            event.detail["state"] = self.state.value
        return result
