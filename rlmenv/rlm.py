"""RLM controller.

Drives a root model against an :class:`~rlmenv.environment.RLMEnvironment`:
the model writes Python, the engine executes it, and the printed output is
fed back until the engine leaves ``RUNNING``.
"""

from __future__ import annotations

import re
import time
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

import click

from .backends import LLMBackend
from .context import ContextBuffer
from .dispatcher import SubCallConfig, direct_sub_session, render_value
from .environment import RLMEnvironment
from .errors import (
    BackendError,
    InvalidParameterError,
    SafetyBreakError,
    SessionFailedError,
)
from .gateway import BackendGateway
from .prompts import get_system_prompt, get_user_prompt
from .registry import SessionState

_LOG_PREFIX = click.style("[RLM]", fg="yellow", bold=True)


@dataclass
class RLMStats:
    """Statistics for an RLM completion."""

    iterations: int = 0
    llm_calls: int = 0
    sub_calls: int = 0
    failed_sub_calls: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    elapsed: float = 0.0


@dataclass
class RLMResult:
    """Result from RLM completion."""

    answer: str
    stats: RLMStats
    history: list[dict[str, Any]] = field(default_factory=list)
    success: bool = True
    error: str | None = None
    state: SessionState = SessionState.COMPLETED
    session_id: str | None = None
    trace: dict[str, Any] = field(default_factory=dict)


class RLM:
    """Recursive Language Model controller.

    Parameters
    ----------
    backend : LLMBackend
        Backend for the root model.
    model : str
        Root model identifier.
    sub_model : str | None
        Model for sub-calls (defaults to ``model``).
    sub_backend : LLMBackend | None
        Separate backend for sub-calls (defaults to ``backend``).
    max_iterations : int
        Maximum root turns per session.
    max_depth : int
        Maximum recursion depth of sub-calls.
    max_tokens : int
        Maximum tokens per LLM response.
    max_concurrency : int
        Maximum in-flight members of one ``llm_batch``.
    sub_call_timeout : float | None
        Per backend call timeout for sub-calls.
    batch_timeout : float | None
        Wall-clock bound for one ``llm_batch``.
    requests_per_second : float | None
        Rate limit applied to each backend gateway.
    verbose : bool
        Print progress output.
    prompt_variant : str
        ``"strong"`` or ``"weak"`` root system prompt.
    include_context_sample : bool
        Include evenly spaced context samples in the first user prompt.
    timeout : float | None
        Wall-clock timeout in seconds; the session is aborted when exceeded.
    max_token_budget : int | None
        Maximum total tokens (input + output); the session is aborted when
        exceeded.
    recursive_sub_calls : bool
        Run sub-calls as full nested sessions driven by the sub model instead
        of single gateway calls.  Sessions at ``max_depth`` always use a
        single call, since their code could not delegate further.
    root_system_prompt : str | None
        Custom root system prompt (overrides ``prompt_variant``).
    sub_call_system_prompt : str | None
        Custom system prompt for direct sub-calls.
    """

    def __init__(
        self,
        backend: LLMBackend,
        model: str,
        sub_model: str | None = None,
        sub_backend: LLMBackend | None = None,
        max_iterations: int = 10,
        max_depth: int = 1,
        max_tokens: int = 4096,
        max_concurrency: int = 4,
        sub_call_timeout: float | None = None,
        batch_timeout: float | None = None,
        requests_per_second: float | None = None,
        verbose: bool = False,
        prompt_variant: str = "strong",
        include_context_sample: bool = True,
        timeout: float | None = None,
        max_token_budget: int | None = None,
        recursive_sub_calls: bool = False,
        root_system_prompt: str | None = None,
        sub_call_system_prompt: str | None = None,
    ) -> None:
        if max_iterations < 1:
            raise InvalidParameterError(f"max_iterations must be >= 1, got {max_iterations}")
        if max_depth < 0:
            raise InvalidParameterError(f"max_depth must be >= 0, got {max_depth}")
        if max_concurrency < 1:
            raise InvalidParameterError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.backend = backend
        self.model = model
        self.sub_model = sub_model or model
        self.sub_backend = sub_backend or backend
        self.max_iterations = max_iterations
        self.max_depth = max_depth
        self.max_tokens = max_tokens
        self.max_concurrency = max_concurrency
        self.sub_call_timeout = sub_call_timeout
        self.batch_timeout = batch_timeout
        self.requests_per_second = requests_per_second
        self.verbose = verbose
        self.prompt_variant = prompt_variant
        self.include_context_sample = include_context_sample
        self.timeout = timeout
        self.max_token_budget = max_token_budget
        self.recursive_sub_calls = recursive_sub_calls
        self.root_system_prompt = root_system_prompt or get_system_prompt(prompt_variant)
        self.sub_call_system_prompt = sub_call_system_prompt
        self._last_stats: RLMStats | None = None

    def _log(self, message: str) -> None:
        if self.verbose:
            click.echo(f"{_LOG_PREFIX} {message}")

    @staticmethod
    def _extract_code_blocks(text: str) -> list[str]:
        """Extract Python code blocks from LLM response.

        Only matches fenced code blocks explicitly tagged as ``python``.
        Untagged or differently-tagged blocks (e.g. ``bash``, ``json``) are
        ignored to avoid accidentally executing non-Python code.

        Parameters
        ----------
        text : str
            LLM response text.

        Returns
        -------
        list[str]
            List of Python code strings.
        """
        pattern = r"```python\n(.*?)```"
        return re.findall(pattern, text, re.DOTALL)

    @staticmethod
    def _build_context_sample(
        context: ContextBuffer,
        sample_size: int = 500,
        num_samples: int = 4,
    ) -> str:
        """Build a document sample string for the initial user prompt.

        Extracts evenly-spaced samples so the model can see format variations
        across the whole document without reading it.

        Parameters
        ----------
        context : ContextBuffer
            The session context.
        sample_size : int
            Characters to sample from each region.
        num_samples : int
            Number of evenly-spaced samples (minimum 2: head + tail).

        Returns
        -------
        str
            Formatted sample string.
        """
        size = len(context)
        parts = [f"Size: {size:,} characters"]

        if size <= sample_size * 2:
            parts.append(f"\nFull content preview:\n{context.read(0, size)}")
            return "\n".join(parts)

        num_samples = max(2, num_samples)
        offsets = [size * i // num_samples for i in range(num_samples)]

        labels = ["Beginning", "~25%", "~50%", "~75%"]
        for i, offset in enumerate(offsets):
            start = min(offset, size - sample_size)
            label = labels[i] if i < len(labels) else f"~{100 * i // num_samples}%"
            parts.append(f"\n{label} (offset {start:,}):\n{context.read(start, start + sample_size)}")

        tail_start = size - sample_size
        parts.append(f"\nEnd (offset {tail_start:,}):\n{context.read(tail_start, size)}")
        return "\n".join(parts)

    # ------------------------------------------------------------------
    # Session loop
    # ------------------------------------------------------------------

    @staticmethod
    def _token_usage(gateways: Iterable[BackendGateway]) -> tuple[int, int, int]:
        calls = input_tokens = output_tokens = 0
        for gateway in gateways:
            snapshot = gateway.stats()
            calls += snapshot.calls
            input_tokens += snapshot.input_tokens
            output_tokens += snapshot.output_tokens
        return calls, input_tokens, output_tokens

    def _check_guards(
        self,
        engine: RLMEnvironment,
        gateways: list[BackendGateway],
        start_time: float,
    ) -> bool:
        """Abort ``engine`` when the timeout or token budget is exhausted.

        Returns
        -------
        bool
            True if a guard tripped.
        """
        if self.timeout and (time.monotonic() - start_time) > self.timeout:
            self._log(f"Timeout reached in session {engine.session_id}")
            engine.abort(f"Timeout after {self.timeout}s")
            return True
        _, input_tokens, output_tokens = self._token_usage(gateways)
        total_tokens = input_tokens + output_tokens
        if self.max_token_budget and total_tokens > self.max_token_budget:
            self._log(f"Token budget exceeded in session {engine.session_id}")
            engine.abort(f"Token budget exceeded: {total_tokens} > {self.max_token_budget}")
            return True
        return False

    def _execute_code_blocks(self, code_blocks: list[str], engine: RLMEnvironment) -> list[str]:
        """Execute code blocks until one of them ends the session."""
        all_output: list[str] = []
        for i, code in enumerate(code_blocks):
            self._log(f"Executing code block {i + 1}/{len(code_blocks)}")
            if self.verbose:
                click.echo(click.style("Code:", fg="cyan"))
                click.echo(code)

            exec_result = engine.execute(code)
            if exec_result.output:
                self._log(f"Output: {exec_result.output[:200]}...")
                all_output.append(exec_result.output)
            if not exec_result.success:
                self._log(f"Execution error: {exec_result.error}")
                all_output.append(f"[Error in block {i + 1}]: {exec_result.error}")
            if engine.state.is_terminal:
                break
        return all_output

    def _drive(
        self,
        engine: RLMEnvironment,
        gateway: BackendGateway,
        model: str,
        query: str,
        gateways: list[BackendGateway],
        start_time: float,
        history: list[dict[str, Any]],
    ) -> int:
        """Run the write-execute-observe loop until ``engine`` terminates.

        Returns
        -------
        int
            Number of model turns taken.
        """
        context_sample = (
            self._build_context_sample(engine.context) if self.include_context_sample else ""
        )
        messages = [
            {"role": "system", "content": self.root_system_prompt},
            {"role": "user", "content": get_user_prompt(query, context_sample)},
        ]
        self._log(f"Session {engine.session_id} (depth {engine.current_depth}): {query[:100]}")

        iterations = 0
        for iteration in range(self.max_iterations):
            if self._check_guards(engine, gateways, start_time):
                break
            iterations = iteration + 1
            iter_label = click.style(
                f"{engine.session_id} ITERATION {iterations}/{self.max_iterations}",
                bold=True,
                fg="magenta",
            )
            self._log(f"\n\U0001f504 {iter_label}")

            try:
                result = gateway.complete(messages, model, max_tokens=self.max_tokens)
            except BackendError as e:
                self._log(f"ERROR: LLM call failed: {e}")
                engine.fail(e)
                break

            response = result.text
            self._log(
                f"LLM response: {len(response)} chars "
                f"(in={result.usage.input_tokens} out={result.usage.output_tokens} tokens)"
            )
            messages.append({"role": "assistant", "content": response})

            code_blocks = self._extract_code_blocks(response)
            if not code_blocks:
                self._log("No python code blocks found in LLM response")
                history.append(
                    {
                        "session_id": engine.session_id,
                        "iteration": iterations,
                        "response": response,
                        "code": [],
                        "output": "",
                    }
                )
                messages.append(
                    {
                        "role": "user",
                        "content": "Please provide Python code, and finish with final_var().",
                    }
                )
                continue

            all_output = self._execute_code_blocks(code_blocks, engine)
            output_msg = "\n---\n".join(all_output)
            history.append(
                {
                    "session_id": engine.session_id,
                    "iteration": iterations,
                    "response": response,
                    "code": code_blocks,
                    "output": output_msg,
                }
            )
            if engine.state.is_terminal:
                break

            output_msg = output_msg or "(no output)"
            self._log(f"Feeding {len(output_msg):,} chars of output back to LLM")
            messages.append({"role": "user", "content": f"Output:\n{output_msg}"})
        else:
            self._log(f"Max iterations ({self.max_iterations}) reached without final_var()")
            engine.fail(
                SafetyBreakError(f"max iterations ({self.max_iterations}) reached without an answer")
            )
        return iterations

    def _make_gateways(self) -> tuple[BackendGateway, BackendGateway]:
        root = BackendGateway(self.backend, requests_per_second=self.requests_per_second)
        if self.sub_backend is self.backend:
            return root, root
        sub = BackendGateway(self.sub_backend, requests_per_second=self.requests_per_second)
        return root, sub

    def completion(self, context: str | ContextBuffer, query: str) -> RLMResult:
        """Run one RLM session.

        Parameters
        ----------
        context : str | ContextBuffer
            The document to process.
        query : str
            User's query.

        Returns
        -------
        RLMResult
            Answer, statistics, per-turn history and the session tree trace.
        """
        buffer = context if isinstance(context, ContextBuffer) else ContextBuffer(context)
        root_gateway, sub_gateway = self._make_gateways()
        gateways = [root_gateway] if sub_gateway is root_gateway else [root_gateway, sub_gateway]
        history: list[dict[str, Any]] = []
        start_time = time.monotonic()

        def recursive_runner(child: RLMEnvironment, instruction: str) -> Any:
            # A child at the depth limit cannot delegate further; answer in one call.
            if child.current_depth >= child.max_depth:
                return direct_sub_session(child, instruction)
            self._drive(child, sub_gateway, self.sub_model, instruction, gateways, start_time, history)
            if child.state is not SessionState.COMPLETED:
                reason = child.registry.get(child.session_id).error
                raise SessionFailedError(child.session_id, child.state.value, reason)
            return child.final_value

        engine = RLMEnvironment(
            buffer,
            gateway=sub_gateway,
            sub_config=SubCallConfig(
                model=self.sub_model,
                max_concurrency=self.max_concurrency,
                call_timeout=self.sub_call_timeout,
                batch_timeout=self.batch_timeout,
                max_tokens=self.max_tokens,
                system_prompt=self.sub_call_system_prompt,
            ),
            max_depth=self.max_depth,
            session_runner=recursive_runner if self.recursive_sub_calls else None,
        )

        self._log(f"Starting RLM completion for query: {query}")
        self._log(f"Context size: {len(buffer):,} characters")
        self._log(f"Model: {self.model} | Sub-call model: {self.sub_model}")
        self._log(f"Max iterations: {self.max_iterations} | Max depth: {self.max_depth}")

        try:
            iterations = self._drive(
                engine, root_gateway, self.model, query, gateways, start_time, history
            )
        finally:
            for gateway in gateways:
                gateway.close()

        calls, input_tokens, output_tokens = self._token_usage(gateways)
        registry = engine.registry
        children = [r for r in registry.records() if r.session_id != engine.session_id]
        stats = RLMStats(
            iterations=iterations,
            llm_calls=calls,
            sub_calls=len(children),
            failed_sub_calls=sum(
                1 for r in children if r.state in (SessionState.FAILED, SessionState.ABORTED)
            ),
            total_input_tokens=input_tokens,
            total_output_tokens=output_tokens,
            elapsed=time.monotonic() - start_time,
        )
        self._last_stats = stats

        success = engine.state is SessionState.COMPLETED
        answer = render_value(engine.final_value) if success else ""
        error = None if success else registry.get(engine.session_id).error
        if success:
            self._log(f"Final answer received: {answer[:100]}...")
        else:
            self._log(f"Session {engine.session_id} ended {engine.state.value}: {error}")
        return RLMResult(
            answer=answer,
            stats=stats,
            history=history,
            success=success,
            error=error,
            state=engine.state,
            session_id=engine.session_id,
            trace=registry.tree(engine.session_id),
        )

    def run_sessions(
        self, jobs: Iterable[tuple[str | ContextBuffer, str]], max_workers: int = 1
    ) -> list[RLMResult]:
        """Run independent sessions, one per ``(context, query)`` job.

        A session that raises is reported as a failed result; it never
        affects the other sessions.  Results are in job order.
        """
        items = list(jobs)

        def run(job: tuple[str | ContextBuffer, str]) -> RLMResult:
            context, query = job
            try:
                return self.completion(context, query)
            except Exception as e:
                self._log(f"Session for query {query[:50]!r} raised: {e}")
                return RLMResult(
                    answer="",
                    stats=RLMStats(),
                    success=False,
                    error=f"{type(e).__name__}: {e}",
                    state=SessionState.FAILED,
                )

        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
            return list(executor.map(run, items))

    def cost_summary(self) -> dict[str, Any]:
        """Get usage statistics of the last completion.

        Returns
        -------
        dict[str, Any]
            Dictionary with usage statistics (zeros before the first run).
        """
        stats = self._last_stats or RLMStats()
        return {
            "iterations": stats.iterations,
            "llm_calls": stats.llm_calls,
            "sub_calls": stats.sub_calls,
            "failed_sub_calls": stats.failed_sub_calls,
            "total_input_tokens": stats.total_input_tokens,
            "total_output_tokens": stats.total_output_tokens,
            "elapsed": round(stats.elapsed, 3),
        }
