"""Conversation buffer and the session-keyed registry that owns it.

A ConversationState is the ordered message log sent to the text generator
plus an optional system prompt. It is serialized into a save slot on save
and replaced wholesale on load.

Wire format (JSON, what goes into story_saves.conversation_json):

    {
      "systemPrompt": "...",          ← omitted entirely when None
      "messages": [{"role": "user", "content": "..."}, ...],
      "messageCount": 2,
      "version": "1.0"
    }

Sessions are keyed by an explicit token: one SessionRegistry per process,
one ConversationState per token, and an asyncio.Lock per token so two
requests on the same session take turns.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from storyforge.errors import NotFoundError, ParseError, ValidationError
from storyforge.models import Message, Role

logger = logging.getLogger(__name__)

FORMAT_VERSION = "1.0"


class _ConversationDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    system_prompt: str | None = Field(default=None, alias="systemPrompt")
    messages: list[Message]
    message_count: int | None = Field(default=None, alias="messageCount")
    version: str = FORMAT_VERSION


class ConversationState:
    """Ordered message log plus optional system prompt."""

    def __init__(
        self,
        system_prompt: str | None = None,
        messages: list[Message] | tuple[Message, ...] = (),
    ) -> None:
        self._system_prompt = system_prompt
        self._messages: list[Message] = list(messages)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    @property
    def system_prompt(self) -> str | None:
        return self._system_prompt

    def set_system_prompt(self, prompt: str | None) -> None:
        self._system_prompt = prompt

    def append_user_message(self, content: str) -> Message:
        return self._append("user", content)

    def append_assistant_message(self, content: str) -> Message:
        return self._append("assistant", content)

    def _append(self, role: Role, content: str) -> Message:
        if content is None or not str(content).strip():
            raise ValidationError(f"Cannot append a blank {role} message")
        message = Message(role=role, content=content)
        self._messages.append(message)
        return message

    def clear(self) -> None:
        """Drop all messages. The system prompt is kept."""
        self._messages.clear()

    def replace_with(self, other: ConversationState) -> None:
        """Overwrite this state with a copy of another (load / session switch)."""
        self._system_prompt = other.system_prompt
        self._messages = list(other.messages)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def message_count(self) -> int:
        return len(self._messages)

    def count_role(self, role: Role) -> int:
        return sum(1 for m in self._messages if m.role == role)

    def is_empty(self) -> bool:
        return not self._messages

    @property
    def awaiting_reply(self) -> bool:
        """True when the last message is a user message with no answer yet."""
        return bool(self._messages) and self._messages[-1].role == "user"

    def snapshot(self) -> ConversationState:
        """Return an independent copy. Mutating it never affects this state."""
        return ConversationState(self._system_prompt, self._messages)

    def to_api_messages(self) -> list[dict[str, str]]:
        """Messages in the {"role", "content"} shape chat APIs expect."""
        return [{"role": m.role, "content": m.content} for m in self._messages]

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def serialize(self) -> str:
        doc = _ConversationDocument(
            system_prompt=self._system_prompt,
            messages=self._messages,
            message_count=len(self._messages),
        )
        # exclude_none drops only systemPrompt; "" is kept so it round-trips as ""
        return doc.model_dump_json(by_alias=True, exclude_none=True, indent=2)

    @classmethod
    def deserialize(cls, text: str | None) -> ConversationState:
        if text is None or not isinstance(text, str) or not text.strip():
            raise ParseError("Conversation JSON cannot be null or empty")
        try:
            doc = _ConversationDocument.model_validate_json(text)
        except pydantic.ValidationError as e:
            raise ParseError(f"Failed to parse conversation JSON: {e}") from e
        if doc.message_count is not None and doc.message_count != len(doc.messages):
            raise ParseError(
                f"Conversation JSON declares {doc.message_count} messages "
                f"but contains {len(doc.messages)}"
            )
        return cls(doc.system_prompt, doc.messages)

    # ------------------------------------------------------------------

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, ConversationState):
            return NotImplemented
        return (
            self._system_prompt == other._system_prompt
            and self._messages == other._messages
        )

    def __repr__(self) -> str:
        prompt = "set" if self._system_prompt is not None else "None"
        return f"ConversationState(system_prompt={prompt}, messages={len(self._messages)})"


class SessionRegistry:
    """Conversation state per session token.

    The controller layer resolves the token for each request; this class
    only guarantees that distinct tokens never share state.
    """

    def __init__(self) -> None:
        self._states: dict[str, ConversationState] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def _check(token: str) -> str:
        if not token or not token.strip():
            raise ValidationError("Session token cannot be blank")
        return token

    def get_or_create(self, token: str) -> ConversationState:
        self._check(token)
        state = self._states.get(token)
        if state is None:
            state = ConversationState()
            self._states[token] = state
            logger.debug("session created token=%s", token)
        return state

    def get(self, token: str) -> ConversationState:
        self._check(token)
        try:
            return self._states[token]
        except KeyError:
            raise NotFoundError(f"No session {token!r}") from None

    def replace(self, token: str, state: ConversationState) -> ConversationState:
        """Install a copy of ``state`` as the session's conversation."""
        self._check(token)
        installed = state.snapshot()
        self._states[token] = installed
        logger.debug("session replaced token=%s messages=%d", token, installed.message_count())
        return installed

    def discard(self, token: str) -> bool:
        """Drop the token's state. Its lock stays so queued turns remain serialized."""
        self._check(token)
        return self._states.pop(token, None) is not None

    def lock(self, token: str) -> asyncio.Lock:
        """Per-session lock; hold it for the whole turn."""
        self._check(token)
        lock = self._locks.get(token)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[token] = lock
        return lock

    def tokens(self) -> list[str]:
        return list(self._states)

    def __contains__(self, token: object) -> bool:
        return token in self._states

    def __len__(self) -> int:
        return len(self._states)
