"""LLM client — HTTP connection to a chat-completion backend.

Turn code injects a text generator matching the protocol:

    async def __call__(self, state: ConversationState) -> str: ...

The generator receives the whole conversation (system prompt + messages)
and returns the reply text. It never mutates the state.

Two implementations are provided:

    HttpLLM   — real HTTP client, supports the Anthropic Messages API and
                 OpenAI-compatible chat completions. Selected by
                 provider_format.
    EchoLLM   — returns the last user message back. Useful for smoke-testing
                 the turn wiring without a running model.

Production code constructs an HttpLLM from Settings.build_llm().
Tests use the scripted StubLLM from conftest.py instead.
"""

from __future__ import annotations

import logging
from typing import Literal, Protocol

import httpx

from storyforge.conversation import ConversationState
from storyforge.errors import TransientError

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


# ---------------------------------------------------------------------------
# Protocol — every generator implementation must match this signature
# ---------------------------------------------------------------------------

class TextGenerator(Protocol):
    async def __call__(self, state: ConversationState) -> str: ...


# ---------------------------------------------------------------------------
# HttpLLM — connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["anthropic", "openai"]


class HttpLLM:
    """Async HTTP client for chat backends.

    Supported formats:
      "anthropic"  — POST /v1/messages   {"model", "max_tokens", "system", "messages"}
                     Response: {"content": [{"type": "text", "text": "..."}]}
      "openai"     — POST /v1/chat/completions  {"model", "max_tokens", "messages"}
                     Response: {"choices": [{"message": {"content": "..."}}]}

    Args:
        provider_url:    Base URL of the backend, e.g. "https://api.anthropic.com".
        api_key:         API key, or empty string if not required.
        provider_format: Wire format to use. Defaults to "anthropic".
        model:           Model identifier sent with every request.
        max_tokens:      Completion length limit.
        timeout:         HTTP timeout in seconds. Defaults to 60. A timeout
                         is terminal for the turn; there is no retry.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "anthropic",
        model: str = "",
        max_tokens: int = 1024,
        timeout: float = 60.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._max_tokens = max_tokens
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._format == "anthropic":
            headers["anthropic-version"] = ANTHROPIC_VERSION
            if self._api_key:
                headers["x-api-key"] = self._api_key
        elif self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, state: ConversationState) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "openai":
            url = f"{self._base_url}/v1/chat/completions"
            messages = state.to_api_messages()
            if state.system_prompt is not None:
                messages.insert(0, {"role": "system", "content": state.system_prompt})
            body: dict = {"messages": messages, "max_tokens": self._max_tokens}
            if self._model:
                body["model"] = self._model
            return url, body

        # anthropic (default)
        url = f"{self._base_url}/v1/messages"
        body = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "messages": state.to_api_messages(),
        }
        if state.system_prompt is not None:
            body["system"] = state.system_prompt
        return url, body

    def _parse_response(self, data: dict) -> str:
        """Extract the reply text from the response body."""
        if self._format == "openai":
            choices = data.get("choices")
            if not choices or "content" not in (choices[0].get("message") or {}):
                raise LLMError("Unexpected response format from OpenAI-compatible backend")
            return choices[0]["message"]["content"]

        # anthropic
        blocks = data.get("content")
        if not blocks:
            raise LLMError("Unexpected response format from Anthropic backend")
        texts = [b["text"] for b in blocks if b.get("type", "text") == "text" and "text" in b]
        if not texts:
            raise LLMError("Unexpected response format from Anthropic backend")
        return "".join(texts)

    async def __call__(self, state: ConversationState) -> str:
        url, body = self._build_request(state)
        logger.debug(
            "llm call url=%s messages=%d system_len=%d",
            url, state.message_count(), len(state.system_prompt or ""),
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.RequestError as e:
            raise LLMError(f"LLM request to {self._base_url} failed: {e!r}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("LLM backend returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise LLMError("Unexpected response format from LLM backend")

        text = self._parse_response(data)
        logger.debug("llm response len=%d", len(text))
        return text


# ---------------------------------------------------------------------------
# EchoLLM — echoes the last user message; useful for wiring smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Returns the last user message as-is. No network calls."""

    async def __call__(self, state: ConversationState) -> str:
        for message in reversed(state.messages):
            if message.role == "user":
                return message.content
        return ""


# ---------------------------------------------------------------------------
# LLMError — raised by HttpLLM for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(TransientError):
    """Raised when the LLM backend cannot be reached or returns an error."""

    kind = "llm"
