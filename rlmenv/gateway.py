"""Backend gateway: the single I/O boundary of the engine.

Wraps an :class:`~rlmenv.backends.LLMBackend` behind the capability
``send(prompt, model_id, timeout) -> text`` and owns the only state that
concurrent sub-calls share: a rate-limit token bucket and usage counters,
both serialized under the gateway's own lock.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from .backends import CompletionResult, LLMBackend
from .errors import BackendError, BackendTimeoutError

logger = logging.getLogger(__name__)


class TokenBucket:
    """Thread-safe token bucket limiting request starts per second.

    Parameters
    ----------
    rate : float
        Tokens added per second.
    capacity : float | None
        Maximum burst size (defaults to ``max(1, rate)``).
    clock, sleep : Callable
        Injectable time source and sleeper (for tests).
    """

    def __init__(
        self,
        rate: float,
        capacity: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError(f"rate must be positive, got {rate}")
        self.rate = rate
        self.capacity = capacity if capacity is not None else max(1.0, rate)
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.capacity
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    def acquire(self) -> float:
        """Block until a token is available; return the total time waited."""
        waited = 0.0
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return waited
                delay = (1 - self._tokens) / self.rate
            self._sleep(delay)
            waited += delay


@dataclass
class GatewayStats:
    """Usage counters accumulated by a gateway."""

    calls: int = 0
    failures: int = 0
    timeouts: int = 0
    abandoned: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class BackendGateway:
    """Uniform request/response interface over one provider backend.

    Parameters
    ----------
    backend : LLMBackend
        Provider adapter.
    max_connections : int
        Maximum calls in flight at once.  A call abandoned after its timeout
        gives its slot back immediately.
    requests_per_second : float | None
        Optional rate limit shared by every caller of this gateway.
    default_timeout : float | None
        Timeout applied when a call does not specify one.
    """

    def __init__(
        self,
        backend: LLMBackend,
        max_connections: int = 16,
        requests_per_second: float | None = None,
        default_timeout: float | None = None,
    ) -> None:
        self.backend = backend
        self.default_timeout = default_timeout
        self._bucket = TokenBucket(requests_per_second) if requests_per_second else None
        self._slots = threading.BoundedSemaphore(max_connections)
        self._closed = False
        self._stats = GatewayStats()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Stop accepting calls.  Calls already running finish on their own."""
        self._closed = True

    def __enter__(self) -> BackendGateway:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def stats(self) -> GatewayStats:
        """Return a snapshot of the usage counters."""
        with self._lock:
            return GatewayStats(**asdict(self._stats))

    def _record(self, result: CompletionResult | None, error: BaseException | None) -> None:
        with self._lock:
            self._stats.calls += 1
            if result is not None:
                self._stats.input_tokens += result.usage.input_tokens
                self._stats.output_tokens += result.usage.output_tokens
            if isinstance(error, BackendTimeoutError):
                self._stats.timeouts += 1
            if error is not None:
                self._stats.failures += 1

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _invoke(
        self, messages: list[dict[str, str]], model: str, **kwargs: Any
    ) -> CompletionResult:
        try:
            return self.backend.completion(messages, model, **kwargs)
        except BackendError:
            raise
        except TimeoutError as e:
            raise BackendTimeoutError(f"{model} timed out: {e}", kwargs.get("timeout")) from e
        except Exception as e:
            raise BackendError(f"{type(e).__name__}: {e}") from e

    def complete(
        self,
        messages: list[dict[str, str]],
        model: str,
        timeout: float | None = None,
        max_tokens: int | None = None,
    ) -> CompletionResult:
        """Send a multi-turn conversation and return the completion.

        Raises
        ------
        BackendError
            When the provider fails.
        BackendTimeoutError
            When the call does not finish within ``timeout`` seconds.
        """
        if self._closed:
            raise BackendError("gateway is closed")
        timeout = timeout if timeout is not None else self.default_timeout
        if self._bucket is not None:
            waited = self._bucket.acquire()
            if waited:
                logger.debug("Rate limiter delayed call by %.3fs", waited)

        kwargs: dict[str, Any] = {"max_tokens": max_tokens, "timeout": timeout}
        result: CompletionResult | None = None
        error: BaseException | None = None
        # The timeout clock starts once a slot is held, never while queued.
        self._slots.acquire()
        try:
            if timeout is None:
                result = self._invoke(messages, model, **kwargs)
            else:
                result = self._invoke_with_deadline(messages, model, timeout, kwargs)
        except BackendError as e:
            error = e
            logger.warning("Backend call to %s failed: %s", model, e)
            raise
        finally:
            self._slots.release()
            self._record(result, error)
        return result

    def _invoke_with_deadline(
        self,
        messages: list[dict[str, str]],
        model: str,
        timeout: float,
        kwargs: dict[str, Any],
    ) -> CompletionResult:
        """Run one call on its own daemon thread and wait at most ``timeout``.

        A thread still running at the deadline is abandoned: it cannot be
        interrupted, but it holds no slot and never blocks later calls.
        """
        outcome: dict[str, Any] = {}

        def run() -> None:
            try:
                outcome["result"] = self._invoke(messages, model, **kwargs)
            except BaseException as e:  # noqa: BLE001
                outcome["error"] = e

        worker = threading.Thread(target=run, name=f"rlm-gateway-{model}", daemon=True)
        worker.start()
        worker.join(timeout)
        if worker.is_alive():
            with self._lock:
                self._stats.abandoned += 1
                abandoned = self._stats.abandoned
            logger.warning(
                "Abandoned backend call to %s after %ss (%d abandoned so far)",
                model,
                timeout,
                abandoned,
            )
            raise BackendTimeoutError(
                f"backend call to {model} timed out after {timeout}s", timeout
            )
        if "error" in outcome:
            raise outcome["error"]
        return outcome["result"]

    def send(
        self,
        prompt: str,
        model: str,
        timeout: float | None = None,
        system: str | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Send a single prompt and return the response text."""
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return self.complete(messages, model, timeout=timeout, max_tokens=max_tokens).text
