"""Core domain models.

Every store, catalog and turn function operates on these types.
Pydantic is used for validation and serialisation at every data boundary.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from storyforge.errors import (
    AccountMissingError,
    AlreadyUnlockedError,
    InsufficientBalanceError,
)

Role = Literal["user", "assistant"]
TransactionKind = Literal["earn", "spend"]

NARRATOR_ID = "narrator"


class Message(BaseModel):
    """A single entry in a conversation. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class CharacterProfile(BaseModel):
    """A speaking character, owned by the character catalog."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    role: str = ""
    personality: list[str] = Field(default_factory=list)  # ordered traits
    speech_style: str = ""
    default_mood: str = "neutral"
    relationship_to_user: str = ""
    description: str = ""
    story_id: str | None = None
    avatar_url: str | None = None
    mood_options: list[str] = Field(default_factory=list)

    @property
    def is_narrator(self) -> bool:
        return self.id.lower() == NARRATOR_ID


class ContentItem(BaseModel):
    """An unlockable piece of gallery content."""

    id: str
    story_id: str
    title: str
    unlock_cost: int = Field(ge=0)
    content_type: Literal["scene", "character", "lore", "extra"] = "scene"
    rarity: Literal["common", "rare", "epic", "legendary"] = "common"
    description: str = ""


# ---------------------------------------------------------------------------
# Persistence rows
# ---------------------------------------------------------------------------

class SaveSlot(BaseModel):
    """Save metadata (everything except the serialized conversation)."""

    story_id: str
    slot: int
    user_id: str
    current_speaker: str | None = None
    created_at: datetime
    last_played_at: datetime
    message_count: int = 0
    choice_count: int = 0
    is_completed: bool = False
    ending_id: str | None = None
    completed_at: datetime | None = None


class LedgerAccount(BaseModel):
    user_id: str
    balance: int
    total_earned: int
    total_spent: int
    last_updated: datetime
    created_at: datetime


class LedgerTransaction(BaseModel):
    """One row of the append-only gem audit trail."""

    id: int
    user_id: str
    amount: int
    kind: TransactionKind
    source: str
    story_id: str | None = None
    content_id: str | None = None
    timestamp: datetime


class UnlockRecord(BaseModel):
    user_id: str
    content_id: str
    story_id: str
    unlocked_at: datetime


# ---------------------------------------------------------------------------
# Operation outcomes
# ---------------------------------------------------------------------------

LedgerReason = Literal["ok", "account_missing", "insufficient_balance"]


class LedgerOutcome(BaseModel):
    """Result of an award or spend.

    Truthy when the operation went through. ``balance`` is the balance
    after the operation, or the untouched balance when it was rejected.
    """

    ok: bool
    reason: LedgerReason
    user_id: str
    amount: int
    balance: int = 0
    transaction: LedgerTransaction | None = None

    def __bool__(self) -> bool:
        return self.ok

    def raise_for_status(self) -> LedgerOutcome:
        """Raise the matching PreconditionError if the operation was rejected."""
        if self.reason == "account_missing":
            raise AccountMissingError(f"No ledger account for user {self.user_id!r}")
        if self.reason == "insufficient_balance":
            raise InsufficientBalanceError(
                f"User {self.user_id!r} has {self.balance} gems, needs {self.amount}"
            )
        return self


UnlockReason = Literal["unlocked", "already_unlocked", "account_missing", "insufficient_balance"]


class UnlockOutcome(BaseModel):
    ok: bool
    reason: UnlockReason
    user_id: str
    content_id: str
    cost: int = 0
    balance: int = 0
    record: UnlockRecord | None = None

    def __bool__(self) -> bool:
        return self.ok

    def raise_for_status(self) -> UnlockOutcome:
        if self.reason == "already_unlocked":
            raise AlreadyUnlockedError(
                f"Content {self.content_id!r} already unlocked for user {self.user_id!r}"
            )
        if self.reason == "account_missing":
            raise AccountMissingError(f"No ledger account for user {self.user_id!r}")
        if self.reason == "insufficient_balance":
            raise InsufficientBalanceError(
                f"User {self.user_id!r} has {self.balance} gems, needs {self.cost}"
            )
        return self


# ---------------------------------------------------------------------------
# Narrative turn
# ---------------------------------------------------------------------------

class Choice(BaseModel):
    """A branch offered to the player after a turn."""

    id: str
    label: str
    next_speaker: str


class CharacterReply(BaseModel):
    """A generator reply split into its structured parts."""

    dialogue: str
    action_text: str | None = None
    mood: str | None = None


class NarrativeTurn(BaseModel):
    """Everything one completed turn produced."""

    speaker: str
    speaker_name: str
    dialogue: str
    action_text: str | None = None
    mood: str
    choices: list[Choice] = Field(default_factory=list)
    ending_id: str | None = None
    avatar_url: str | None = None
    raw: str = ""

    @property
    def is_ending(self) -> bool:
        return self.ending_id is not None


class EndingSummary(BaseModel):
    id: str
    title: str
    description: str = ""
    discovered: bool = False
    discovered_at: datetime | None = None


class CompletionStats(BaseModel):
    story_id: str
    total_saves: int
    completed_saves: int
    endings_discovered: int
    total_endings: int
    completion_percentage: float
