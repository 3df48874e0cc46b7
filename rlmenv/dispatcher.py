"""Recursive sub-call dispatcher (serial and batched).

Each sub-call runs a nested :class:`~rlmenv.environment.RLMEnvironment` whose
context is the requested slice and whose depth is the parent's depth + 1.
The nested session is executed by a *session runner*: by default a single
gateway call (:func:`direct_sub_session`), or a full controller loop when the
:class:`~rlmenv.rlm.RLM` controller runs with ``recursive_sub_calls=True``.

Batch policy: ``batch()`` never raises for member failures.  Every position
holds a :class:`SubCallResult`; failed members (depth exceeded, backend error,
per-call or batch timeout) are rendered as :class:`SubCallFailure` markers by
the engine.  :func:`check_batch` converts markers into a single
:class:`BatchPartialFailureError` carrying every per-index outcome.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .context import ChunkDescriptor, ContextBuffer
from .errors import (
    BackendTimeoutError,
    BatchPartialFailureError,
    DepthExceededError,
    InvalidParameterError,
)
from .prompts import get_sub_call_system_prompt

if TYPE_CHECKING:
    from .environment import RLMEnvironment

logger = logging.getLogger(__name__)

SessionRunner = Callable[["RLMEnvironment", str], Any]


@dataclass
class SubCallConfig:
    """Settings shared by every engine in one call tree.

    Attributes
    ----------
    model : str
        Model identifier used for sub-calls.
    max_concurrency : int
        Maximum in-flight members of one ``llm_batch`` call.
    call_timeout : float | None
        Per backend call timeout in seconds.
    batch_timeout : float | None
        Wall-clock bound for a whole batch.
    max_tokens : int | None
        Response token limit for sub-calls.
    system_prompt : str | None
        System prompt for direct sub-calls (defaults to the bundled one).
    """

    model: str = "default"
    max_concurrency: int = 4
    call_timeout: float | None = None
    batch_timeout: float | None = None
    max_tokens: int | None = None
    system_prompt: str | None = None

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise InvalidParameterError(
                f"max_concurrency must be >= 1, got {self.max_concurrency}"
            )


class SubCallFailure(str):
    """Failure marker occupying a failed position of a batch result.

    Renders as ``[ERROR:<ErrorType>] <message>`` so generated code that treats
    results as text still sees the failure.
    """

    index: int
    error_type: str
    message: str

    def __new__(cls, index: int, error_type: str, message: str) -> SubCallFailure:
        obj = super().__new__(cls, f"[ERROR:{error_type}] {message}")
        obj.index = index
        obj.error_type = error_type
        obj.message = message
        return obj


@dataclass
class SubCallResult:
    """Outcome of one sub-call at a given batch position."""

    index: int
    ok: bool
    value: str | None = None
    error_type: str | None = None
    error: str | None = None
    session_id: str | None = None
    duration: float = 0.0

    @classmethod
    def failure(
        cls, index: int, error: BaseException, session_id: str | None = None
    ) -> SubCallResult:
        return cls(
            index=index,
            ok=False,
            error_type=type(error).__name__,
            error=str(error),
            session_id=session_id,
        )

    def output(self) -> str:
        """Value on success, :class:`SubCallFailure` marker otherwise."""
        if self.ok:
            return self.value or ""
        return SubCallFailure(self.index, self.error_type or "Error", self.error or "")

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "ok": self.ok,
            "value": self.value,
            "error_type": self.error_type,
            "error": self.error,
            "session_id": self.session_id,
        }


def render_value(value: Any) -> str:
    """Render a nested session's final value as text."""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def direct_sub_session(engine: RLMEnvironment, instruction: str) -> Any:
    """Run a nested session as a single gateway call.

    The response is stored in the nested engine's memory store and returned
    through its ``final_var`` so the nested session terminates the same way a
    controller-driven one does.
    """
    config = engine.sub_config
    system = config.system_prompt or get_sub_call_system_prompt()
    snippet = engine.read_context(0, len(engine.context))
    prompt = f"Context:\n{snippet}\n\nTask: {instruction}"
    engine.set_var("answer", engine.send(prompt, system=system))
    return engine.final_var("answer")


def check_batch(results: Iterable[Any]) -> list[Any]:
    """Return ``results`` unchanged, or raise if any member failed.

    Raises
    ------
    BatchPartialFailureError
        Carrying one outcome dict per position.
    """
    items = list(results)
    outcomes: list[dict[str, Any]] = []
    for i, item in enumerate(items):
        if isinstance(item, SubCallFailure):
            outcomes.append(
                {
                    "index": i,
                    "ok": False,
                    "value": None,
                    "error_type": item.error_type,
                    "error": item.message,
                }
            )
        else:
            outcomes.append(
                {"index": i, "ok": True, "value": item, "error_type": None, "error": None}
            )
    if any(not o["ok"] for o in outcomes):
        raise BatchPartialFailureError(outcomes)
    return items


class SubCallDispatcher:
    """Issues nested sessions on behalf of one engine.

    Parameters
    ----------
    engine : RLMEnvironment
        The owning (parent) engine.
    config : SubCallConfig
        Model, concurrency and timeout settings.
    session_runner : SessionRunner | None
        Callable executing a nested session; defaults to
        :func:`direct_sub_session`.
    """

    def __init__(
        self,
        engine: RLMEnvironment,
        config: SubCallConfig,
        session_runner: SessionRunner | None = None,
    ) -> None:
        self.engine = engine
        self.config = config
        self.session_runner = session_runner or direct_sub_session

    def check_depth(self) -> None:
        """Raise :class:`DepthExceededError` if no further nesting is allowed."""
        if self.engine.current_depth >= self.engine.max_depth:
            raise DepthExceededError(self.engine.current_depth, self.engine.max_depth)

    def _resolve_content(self, content: Any) -> ContextBuffer:
        """Turn text, a descriptor or a ``{"start", "end"}`` mapping into a buffer."""
        if isinstance(content, ContextBuffer):
            return content
        if isinstance(content, ChunkDescriptor):
            return self.engine.context.view(content.start, content.end)
        if isinstance(content, dict) and "start" in content and "end" in content:
            return self.engine.context.view(int(content["start"]), int(content["end"]))
        if isinstance(content, str):
            return ContextBuffer(content)
        raise InvalidParameterError(
            f"sub-call content must be str or ChunkDescriptor, got {type(content).__name__}"
        )

    def _run_session(self, child: RLMEnvironment, instruction: str) -> str:
        try:
            value = self.session_runner(child, instruction)
        except Exception as e:
            child.fail(e)
            raise
        return render_value(value)

    def call(self, instruction: str, content: Any) -> str:
        """Run one nested session and return its textual result.

        Raises
        ------
        DepthExceededError
            When ``current_depth >= max_depth``; the backend is not contacted.
        BackendError
            When the nested session's gateway calls fail.
        """
        if not isinstance(instruction, str):
            raise InvalidParameterError("instruction must be a str")
        self.check_depth()
        child = self.engine.spawn_child(self._resolve_content(content))
        logger.debug(
            "Sub-call %s -> %s (depth=%d, %d chars)",
            self.engine.session_id,
            child.session_id,
            child.current_depth,
            len(child.context),
        )
        return self._run_session(child, instruction)

    def _run_item(
        self,
        index: int,
        instruction: str,
        content: Any,
        inflight: dict[int, RLMEnvironment],
        lock: threading.Lock,
    ) -> SubCallResult:
        start = time.perf_counter()
        child: RLMEnvironment | None = None
        try:
            if not isinstance(instruction, str):
                raise InvalidParameterError("instruction must be a str")
            self.check_depth()
            child = self.engine.spawn_child(self._resolve_content(content))
            with lock:
                inflight[index] = child
            value = self._run_session(child, instruction)
        except Exception as e:
            logger.debug("Batch item %d failed: %s: %s", index, type(e).__name__, e)
            result = SubCallResult.failure(
                index, e, session_id=child.session_id if child is not None else None
            )
        else:
            result = SubCallResult(index=index, ok=True, value=value, session_id=child.session_id)
        result.duration = time.perf_counter() - start
        return result

    def batch(self, instruction: str, chunks: Iterable[Any]) -> list[SubCallResult]:
        """Run one nested session per chunk, concurrently.

        Returns
        -------
        list[SubCallResult]
            Positionally aligned with ``chunks``.  Members still pending when
            ``batch_timeout`` expires are cancelled and reported as
            :class:`BackendTimeoutError` failures.
        """
        items = list(chunks)
        if not items:
            return []

        inflight: dict[int, RLMEnvironment] = {}
        lock = threading.Lock()
        results: list[SubCallResult | None] = [None] * len(items)
        executor = ThreadPoolExecutor(
            max_workers=min(self.config.max_concurrency, len(items)),
            thread_name_prefix=f"rlm-batch-{self.engine.session_id}",
        )
        try:
            futures = {
                executor.submit(self._run_item, i, instruction, c, inflight, lock): i
                for i, c in enumerate(items)
            }
            done, pending = wait(futures, timeout=self.config.batch_timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        for future in done:
            results[futures[future]] = future.result()

        if pending:
            timeout = self.config.batch_timeout
            # Running workers cannot be interrupted; each ends when its gateway
            # call returns or hits call_timeout.
            running = sum(1 for future in pending if not future.cancel())
            logger.warning(
                "Batch in %s timed out after %ss with %d of %d members pending "
                "(%d workers left running)",
                self.engine.session_id,
                timeout,
                len(pending),
                len(items),
                running,
            )
            for future in pending:
                index = futures[future]
                error = BackendTimeoutError(f"batch timed out after {timeout}s", timeout)
                with lock:
                    child = inflight.get(index)
                if child is not None:
                    child.abort(str(error))
                results[index] = SubCallResult.failure(
                    index, error, session_id=child.session_id if child is not None else None
                )

        return [r for r in results if r is not None]
