"""LLM provider adapters for the backend gateway.

Supports multiple LLM providers:
- AnthropicBackend: Direct Anthropic API
- OpenAICompatibleBackend: OpenAI-compatible APIs (OpenAI, OpenRouter, vLLM, Ollama, ...)
- CallbackBackend: in-process callables (used by the test suite and custom harnesses)

Adapters translate provider exceptions into :class:`BackendError` /
:class:`BackendTimeoutError` so the engine never needs to know which provider
it is talking to.
"""

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .errors import BackendError, BackendTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class TokenUsage:
    """Token usage statistics from a single LLM call."""

    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class CompletionResult:
    """Result from a backend completion call, including token usage."""

    text: str
    usage: TokenUsage


class LLMBackend(ABC):
    """Abstract base class for LLM backends.

    The caller includes a ``{"role": "system", ...}`` message as the first
    element of ``messages`` when a system prompt is used.  Backends that need
    to separate system messages (e.g. Anthropic) extract them before
    forwarding to the API.
    """

    @abstractmethod
    def completion(
        self, messages: list[dict[str, str]], model: str, **kwargs: Any
    ) -> CompletionResult:
        """Generate completion from messages.

        Parameters
        ----------
        messages : list[dict[str, str]]
            List of message dicts with 'role' and 'content' keys.
        model : str
            Model identifier.
        **kwargs
            ``max_tokens``, ``temperature`` and ``timeout`` (seconds) are
            honored where the provider supports them.

        Returns
        -------
        CompletionResult
            Generated text response with token usage.

        Raises
        ------
        BackendError
            On any provider failure.
        BackendTimeoutError
            When the provider reports a timeout.
        """


class AnthropicBackend(LLMBackend):
    """Backend for Anthropic's Claude models."""

    def __init__(self, api_key: str | None = None) -> None:
        """Initialize Anthropic backend.

        Parameters
        ----------
        api_key : str | None
            Anthropic API key (defaults to ANTHROPIC_API_KEY env var).
        """
        import anthropic

        self._anthropic = anthropic
        self.client = anthropic.Anthropic(api_key=api_key or os.getenv("ANTHROPIC_API_KEY"))

    @staticmethod
    def _split_messages(
        messages: list[dict[str, str]],
    ) -> tuple[str | None, list[dict[str, str]]]:
        """Separate system messages from chat messages.

        Anthropic's API requires system content to be passed via a dedicated
        ``system`` parameter rather than as a message with role ``system``.
        """
        system_message: str | None = None
        chat_messages: list[dict[str, str]] = []
        for msg in messages:
            if msg["role"] == "system":
                system_message = msg["content"]
            else:
                chat_messages.append({"role": msg["role"], "content": msg["content"]})
        return system_message, chat_messages

    def completion(
        self, messages: list[dict[str, str]], model: str, **kwargs: Any
    ) -> CompletionResult:
        system_message, chat_messages = self._split_messages(messages)

        params: dict[str, Any] = {
            "model": model,
            "max_tokens": kwargs.get("max_tokens") or 4096,
            "messages": chat_messages,
        }
        if system_message:
            params["system"] = system_message
        if "temperature" in kwargs:
            params["temperature"] = kwargs["temperature"]
        if kwargs.get("timeout") is not None:
            params["timeout"] = kwargs["timeout"]

        try:
            response = self.client.messages.create(**params)
        except self._anthropic.APITimeoutError as e:
            raise BackendTimeoutError(f"Anthropic request timed out: {e}", kwargs.get("timeout")) from e
        except self._anthropic.APIError as e:
            raise BackendError(f"Anthropic request failed: {e}") from e

        text: str = response.content[0].text
        usage = TokenUsage(
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return CompletionResult(text=text, usage=usage)


class OpenAICompatibleBackend(LLMBackend):
    """Backend for OpenAI-compatible APIs (OpenAI, vLLM, Ollama, LM Studio, etc.)."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434/v1",
        api_key: str = "ollama",
    ) -> None:
        """Initialize OpenAI-compatible backend.

        Parameters
        ----------
        base_url : str
            Base URL for the API endpoint.
        api_key : str
            API key (many local servers don't require a real key).
        """
        import openai

        self._openai = openai
        self.client = openai.OpenAI(base_url=base_url, api_key=api_key)
        self.base_url = base_url

    def completion(
        self, messages: list[dict[str, str]], model: str, **kwargs: Any
    ) -> CompletionResult:
        params: dict[str, Any] = {
            "model": model,
            "messages": messages,
        }
        if "temperature" in kwargs:
            params["temperature"] = kwargs["temperature"]
        if kwargs.get("max_tokens") is not None:
            params["max_tokens"] = kwargs["max_tokens"]
        if kwargs.get("timeout") is not None:
            params["timeout"] = kwargs["timeout"]

        try:
            response = self.client.chat.completions.create(**params)
        except self._openai.APITimeoutError as e:
            raise BackendTimeoutError(
                f"{self.base_url} request timed out: {e}", kwargs.get("timeout")
            ) from e
        except self._openai.APIError as e:
            raise BackendError(f"{self.base_url} request failed: {e}") from e

        text = response.choices[0].message.content or ""
        usage = TokenUsage()
        if response.usage:
            usage = TokenUsage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
            )
        return CompletionResult(text=text, usage=usage)


class CallbackBackend(LLMBackend):
    """Backend using a custom callback function.

    Useful for tests and for integrating with in-house model servers.
    """

    def __init__(self, callback_fn: Callable[[list[dict[str, str]], str], str]) -> None:
        """Initialize callback backend.

        Parameters
        ----------
        callback_fn : Callable
            Function that takes (messages, model) and returns response string.
        """
        self.callback_fn = callback_fn

    def completion(
        self, messages: list[dict[str, str]], model: str, **kwargs: Any
    ) -> CompletionResult:
        text = self.callback_fn(messages, model)
        return CompletionResult(text=text, usage=TokenUsage())
