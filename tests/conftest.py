"""Shared fixtures for the rlmenv test suite."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest
from dotenv import load_dotenv

from rlmenv.backends import CallbackBackend
from rlmenv.dispatcher import SubCallConfig
from rlmenv.environment import RLMEnvironment
from rlmenv.gateway import BackendGateway


def pytest_configure(config: pytest.Config) -> None:
    """Load .env before test collection so API keys are available for skip checks."""
    load_dotenv(override=True)
    for marker in ("slow", "anthropic", "openai", "openrouter"):
        config.addinivalue_line("markers", f"{marker}: live backend smoke test")


# ---------------------------------------------------------------------------
# Sample text content
# ---------------------------------------------------------------------------

SAMPLE_TEXT = """\
Chapter 1: Introduction
This is the introduction to the document.
It covers the basics of the topic.

Chapter 2: Methods
The methods section describes the approach.
Multiple techniques were used in the analysis.

Chapter 3: Results
The results show significant improvements.
Data was collected over a period of six months.

Chapter 4: Conclusion
In conclusion, the study demonstrates clear benefits.
Future work will focus on scalability.
"""

SAMPLE_TEXT_SMALL = "Hello, world!"


@pytest.fixture()
def tmp_text_file(tmp_path: Path) -> Path:
    """Create a temporary text file with SAMPLE_TEXT."""
    p = tmp_path / "sample.txt"
    p.write_text(SAMPLE_TEXT, encoding="utf-8")
    return p


# ---------------------------------------------------------------------------
# Backend / mock helpers
# ---------------------------------------------------------------------------


def last_user_content(messages: list[dict[str, str]]) -> str:
    """Return the content of the last user message."""
    for msg in reversed(messages):
        if msg["role"] == "user":
            return msg["content"]
    return ""


def make_echo_callback() -> CallbackBackend:
    """Backend that echoes the last user message content."""

    def _echo(messages: list[dict[str, str]], model: str) -> str:
        return messages[-1]["content"] if messages else ""

    return CallbackBackend(_echo)


def make_deterministic_callback(responses: list[str]) -> CallbackBackend:
    """Backend that returns responses from a list in order, cycling."""
    idx = {"i": 0}
    lock = threading.Lock()

    def _cb(messages: list[dict[str, str]], model: str) -> str:
        with lock:
            resp = responses[idx["i"] % len(responses)]
            idx["i"] += 1
        return resp

    return CallbackBackend(_cb)


def make_counting_callback(response: str = "ok") -> tuple[CallbackBackend, list[str]]:
    """Backend that records every prompt it receives."""
    prompts: list[str] = []
    lock = threading.Lock()

    def _cb(messages: list[dict[str, str]], model: str) -> str:
        with lock:
            prompts.append(last_user_content(messages))
        return response

    return CallbackBackend(_cb), prompts


def make_final_in_two_iterations_callback() -> CallbackBackend:
    """Root model that explores on turn 1 and finishes on turn 2."""
    responses = [
        '```python\nprint(f"Size: {CONTEXT_LENGTH}")\n```',
        '```python\nset_var("answer", "The answer is 42")\nfinal_var("answer")\n```',
    ]
    return make_deterministic_callback(responses)


@pytest.fixture()
def echo_backend() -> CallbackBackend:
    """CallbackBackend that echoes the last message."""
    return make_echo_callback()


@pytest.fixture()
def echo_gateway(echo_backend: CallbackBackend) -> BackendGateway:
    """Gateway over the echo backend, closed after the test."""
    gateway = BackendGateway(echo_backend)
    yield gateway  # type: ignore[misc]
    gateway.close()


@pytest.fixture()
def env(echo_gateway: BackendGateway) -> RLMEnvironment:
    """Root engine over SAMPLE_TEXT with max_depth=1."""
    return RLMEnvironment(
        SAMPLE_TEXT,
        gateway=echo_gateway,
        sub_config=SubCallConfig(model="sub"),
        max_depth=1,
    )
