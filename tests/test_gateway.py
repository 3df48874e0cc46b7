"""Unit tests for rlmenv.gateway (timeouts, error mapping, rate limiting)."""

from __future__ import annotations

import threading

import pytest

from rlmenv.backends import CallbackBackend, CompletionResult, LLMBackend, TokenUsage
from rlmenv.errors import BackendError, BackendTimeoutError
from rlmenv.gateway import BackendGateway, TokenBucket


class _UsageBackend(LLMBackend):
    """Backend returning fixed text with fixed token usage."""

    def __init__(self) -> None:
        self.kwargs: list[dict[str, object]] = []

    def completion(
        self, messages: list[dict[str, str]], model: str, **kwargs: object
    ) -> CompletionResult:
        self.kwargs.append(kwargs)
        return CompletionResult(text=f"{model}:ok", usage=TokenUsage(10, 5))


class TestBackendGatewaySend:
    def test_send_builds_messages(self) -> None:
        seen: list[list[dict[str, str]]] = []

        def cb(messages: list[dict[str, str]], model: str) -> str:
            seen.append(messages)
            return "pong"

        with BackendGateway(CallbackBackend(cb)) as gateway:
            assert gateway.send("ping", "m", system="be brief") == "pong"
        assert seen[0] == [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "ping"},
        ]

    def test_send_without_system(self) -> None:
        seen: list[list[dict[str, str]]] = []

        def cb(messages: list[dict[str, str]], model: str) -> str:
            seen.append(messages)
            return "pong"

        with BackendGateway(CallbackBackend(cb)) as gateway:
            gateway.send("ping", "m")
        assert seen[0] == [{"role": "user", "content": "ping"}]

    def test_forwards_max_tokens_and_timeout(self) -> None:
        backend = _UsageBackend()
        with BackendGateway(backend) as gateway:
            gateway.complete([{"role": "user", "content": "x"}], "m", timeout=5, max_tokens=100)
        assert backend.kwargs[0] == {"max_tokens": 100, "timeout": 5}

    def test_stats_accumulate(self) -> None:
        with BackendGateway(_UsageBackend()) as gateway:
            gateway.send("a", "m")
            gateway.send("b", "m", timeout=5)
            stats = gateway.stats()
        assert stats.calls == 2
        assert stats.failures == 0
        assert stats.input_tokens == 20
        assert stats.output_tokens == 10
        assert stats.to_dict()["calls"] == 2


class TestBackendGatewayErrors:
    def test_provider_exception_becomes_backend_error(self) -> None:
        def cb(messages: list[dict[str, str]], model: str) -> str:
            raise ConnectionError("refused")

        with BackendGateway(CallbackBackend(cb)) as gateway:
            with pytest.raises(BackendError, match="ConnectionError: refused"):
                gateway.send("x", "m")
            assert gateway.stats().failures == 1

    def test_backend_error_passes_through(self) -> None:
        def cb(messages: list[dict[str, str]], model: str) -> str:
            raise BackendError("quota exhausted")

        with BackendGateway(CallbackBackend(cb)) as gateway:
            with pytest.raises(BackendError, match="quota exhausted"):
                gateway.send("x", "m", timeout=5)

    def test_builtin_timeout_maps_to_backend_timeout(self) -> None:
        def cb(messages: list[dict[str, str]], model: str) -> str:
            raise TimeoutError("socket read")

        with BackendGateway(CallbackBackend(cb)) as gateway:
            with pytest.raises(BackendTimeoutError):
                gateway.send("x", "m")

    def test_slow_call_times_out(self) -> None:
        release = threading.Event()

        def cb(messages: list[dict[str, str]], model: str) -> str:
            release.wait(5)
            return "late"

        gateway = BackendGateway(CallbackBackend(cb))
        try:
            with pytest.raises(BackendTimeoutError) as exc_info:
                gateway.send("x", "m", timeout=0.05)
            assert exc_info.value.timeout == 0.05
            stats = gateway.stats()
            assert stats.timeouts == 1
            assert stats.failures == 1
        finally:
            release.set()
            gateway.close()

    def test_default_timeout_applies(self) -> None:
        release = threading.Event()

        def cb(messages: list[dict[str, str]], model: str) -> str:
            release.wait(5)
            return "late"

        gateway = BackendGateway(CallbackBackend(cb), default_timeout=0.05)
        try:
            with pytest.raises(BackendTimeoutError):
                gateway.send("x", "m")
        finally:
            release.set()
            gateway.close()

    def test_abandoned_calls_do_not_starve_later_calls(self) -> None:
        release = threading.Event()
        contacted: list[str] = []

        def cb(messages: list[dict[str, str]], model: str) -> str:
            prompt = messages[-1]["content"]
            contacted.append(prompt)
            if prompt == "hang":
                release.wait(5)
            return "fast"

        gateway = BackendGateway(CallbackBackend(cb), max_connections=2)
        try:
            for _ in range(2):
                with pytest.raises(BackendTimeoutError):
                    gateway.send("hang", "m", timeout=0.1)
            assert gateway.send("quick", "m", timeout=1) == "fast"
            assert "quick" in contacted
            stats = gateway.stats()
            assert stats.abandoned == 2
            assert stats.timeouts == 2
        finally:
            release.set()
            gateway.close()

    def test_untimed_call_after_timeouts_uses_freed_slot(self) -> None:
        release = threading.Event()

        def cb(messages: list[dict[str, str]], model: str) -> str:
            if messages[-1]["content"] == "hang":
                release.wait(5)
            return "done"

        gateway = BackendGateway(CallbackBackend(cb), max_connections=1)
        try:
            with pytest.raises(BackendTimeoutError):
                gateway.send("hang", "m", timeout=0.1)
            assert gateway.send("next", "m") == "done"
        finally:
            release.set()
            gateway.close()

    def test_closed_gateway_rejects_untimed_calls(self) -> None:
        gateway = BackendGateway(_UsageBackend())
        gateway.close()
        with pytest.raises(BackendError, match="closed"):
            gateway.send("x", "m")

    def test_closed_gateway_rejects_timed_calls(self) -> None:
        gateway = BackendGateway(_UsageBackend())
        gateway.close()
        with pytest.raises(BackendError, match="closed"):
            gateway.send("x", "m", timeout=1)


class TestTokenBucket:
    def _fake_time(self) -> tuple[list[float], object, object]:
        now = [0.0]
        sleeps: list[float] = []

        def clock() -> float:
            return now[0]

        def sleep(seconds: float) -> None:
            sleeps.append(seconds)
            now[0] += seconds

        return now, clock, (sleep, sleeps)

    def test_burst_then_wait(self) -> None:
        now, clock, (sleep, sleeps) = self._fake_time()  # type: ignore[misc]
        bucket = TokenBucket(rate=2, capacity=2, clock=clock, sleep=sleep)  # type: ignore[arg-type]
        assert bucket.acquire() == 0
        assert bucket.acquire() == 0
        waited = bucket.acquire()
        assert waited == pytest.approx(0.5)
        assert sleeps == [pytest.approx(0.5)]

    def test_refills_over_time(self) -> None:
        now, clock, (sleep, sleeps) = self._fake_time()  # type: ignore[misc]
        bucket = TokenBucket(rate=1, clock=clock, sleep=sleep)  # type: ignore[arg-type]
        bucket.acquire()
        now[0] += 1.0
        assert bucket.acquire() == 0
        assert sleeps == []

    def test_invalid_rate(self) -> None:
        with pytest.raises(ValueError):
            TokenBucket(rate=0)

    def test_gateway_uses_bucket(self) -> None:
        with BackendGateway(_UsageBackend(), requests_per_second=1000) as gateway:
            for _ in range(3):
                gateway.send("x", "m")
            assert gateway.stats().calls == 3
