"""StoryEngine — one facade over sessions, turns, saves, gems and unlocks.

Turn flow (take_turn):
  0. Validate story, slot and user so a bad key fails before anything runs.
  1. Take the session lock so concurrent requests on one token queue up.
  2. narrate_turn → system prompt, user message, generator call, reply parsing.
  3. Autosave the conversation to the requested slot.
  4. Reward: an ending marks the slot completed and pays the completion
     bonus; any other turn pays the per-choice reward.

A generator failure propagates before step 3, so nothing is saved or paid
for a turn that produced no reply. A missing ledger account only costs the
player the reward; the turn itself still succeeds.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel

from storyforge.catalog import CharacterCatalog, ContentCatalog
from storyforge.config import Settings
from storyforge.conversation import ConversationState, SessionRegistry
from storyforge.llm import TextGenerator
from storyforge.models import (
    CompletionStats,
    EndingSummary,
    LedgerOutcome,
    NarrativeTurn,
    SaveSlot,
    UnlockOutcome,
)
from storyforge.narrative import narrate_turn
from storyforge.store import Database, Ledger, SaveStore, UnlockGate

logger = logging.getLogger(__name__)

CHOICE_SOURCE = "choice_made"
COMPLETION_SOURCE = "story_completed"
DEFAULT_ENDINGS = [EndingSummary(id="default_ending", title="The End",
                                 description="Your journey has come to a close")]


class TurnResult(BaseModel):
    """A narrated turn plus what it did to the save and the gem balance."""

    turn: NarrativeTurn
    save: SaveSlot | None = None
    gems_awarded: int = 0
    balance: int | None = None


class StoryEngine:
    def __init__(
        self,
        *,
        characters: CharacterCatalog,
        content: ContentCatalog,
        generator: TextGenerator,
        saves: SaveStore,
        ledger: Ledger,
        unlocks: UnlockGate,
        sessions: SessionRegistry | None = None,
        choice_reward: int = 5,
        completion_reward: int = 100,
    ) -> None:
        self.characters = characters
        self.content = content
        self.generator = generator
        self.saves = saves
        self.ledger = ledger
        self.unlocks = unlocks
        self.sessions = sessions or SessionRegistry()
        self.choice_reward = choice_reward
        self.completion_reward = completion_reward
        self._endings: dict[str, list[EndingSummary]] = {}

    @classmethod
    async def from_settings(
        cls,
        settings: Settings,
        *,
        characters: CharacterCatalog,
        content: ContentCatalog,
        generator: TextGenerator | None = None,
    ) -> StoryEngine:
        """Open (and create if needed) the database and wire every component."""
        db = Database(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
        await db.init()
        ledger = Ledger(db, create_if_missing=settings.ledger_create_if_missing)
        return cls(
            characters=characters,
            content=content,
            generator=generator or settings.build_llm(),
            saves=SaveStore(db, max_slots=settings.max_save_slots),
            ledger=ledger,
            unlocks=UnlockGate(db, ledger, content),
            choice_reward=settings.choice_reward,
            completion_reward=settings.completion_reward,
        )

    # ------------------------------------------------------------------
    # Endings registry
    # ------------------------------------------------------------------

    def register_endings(self, story_id: str, endings: list[EndingSummary]) -> None:
        self._endings[story_id] = list(endings)

    def available_endings(self, story_id: str) -> list[EndingSummary]:
        return list(self._endings.get(story_id, DEFAULT_ENDINGS))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_session(self, token: str) -> ConversationState:
        """Begin a fresh conversation under ``token``, dropping any previous one."""
        async with self.sessions.lock(token):
            state = self.sessions.replace(token, ConversationState())
        logger.info("Started session %s", token)
        return state

    async def load_session(self, token: str, story_id: str, slot: int, user_id: str) -> SaveSlot:
        """Replace the session's conversation with a saved one."""
        async with self.sessions.lock(token):
            info, state = await self.saves.load_with_info(story_id, slot, user_id)
            self.sessions.replace(token, state)
        return info

    async def save_session(
        self,
        token: str,
        story_id: str,
        slot: int,
        user_id: str,
        current_speaker: str | None = None,
    ) -> SaveSlot:
        async with self.sessions.lock(token):
            state = self.sessions.get(token)
            return await self.saves.save_or_update(
                story_id, slot, user_id, state, current_speaker,
                choice_count=state.count_role("user"),
            )

    async def end_session(self, token: str) -> bool:
        async with self.sessions.lock(token):
            ended = self.sessions.discard(token)
        if ended:
            logger.info("Ended session %s", token)
        return ended

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def take_turn(
        self,
        token: str,
        user_id: str,
        story_id: str,
        character_id: str,
        user_input: str,
        *,
        save_slot: int = 1,
        autosave: bool = True,
    ) -> TurnResult:
        self.saves.validate_key(story_id, save_slot, user_id)
        async with self.sessions.lock(token):
            state = self.sessions.get_or_create(token)
            turn = await narrate_turn(
                user_input, character_id, state, self.characters, self.generator,
                story_id=story_id,
            )

            save = None
            if autosave:
                save = await self.saves.save_or_update(
                    story_id, save_slot, user_id, state, turn.speaker,
                    choice_count=state.count_role("user"),
                )

            if turn.is_ending:
                if save is not None or await self.saves.exists(story_id, save_slot, user_id):
                    save = await self.saves.mark_completed(story_id, save_slot, user_id, turn.ending_id)
                outcome = await self._reward(user_id, self.completion_reward, COMPLETION_SOURCE, story_id)
                if outcome:
                    logger.info(
                        "Story %s completed with ending %r, +%d gem bonus",
                        story_id, turn.ending_id, outcome.amount,
                    )
            else:
                outcome = await self._reward(user_id, self.choice_reward, CHOICE_SOURCE, story_id)

        logger.info(
            "%s responded with %d choices (user %s, story %s)",
            turn.speaker_name, len(turn.choices), user_id, story_id,
        )
        return TurnResult(
            turn=turn,
            save=save,
            gems_awarded=outcome.amount if outcome else 0,
            balance=outcome.balance if outcome else None,
        )

    async def _reward(self, user_id: str, amount: int, source: str, story_id: str) -> LedgerOutcome | None:
        if amount <= 0:
            return None
        outcome = await self.ledger.award(user_id, amount, source, story_id)
        if not outcome:
            logger.warning("No %s reward for %s: %s", source, user_id, outcome.reason)
            return None
        return outcome

    # ------------------------------------------------------------------
    # Gallery
    # ------------------------------------------------------------------

    async def unlock(self, user_id: str, content_id: str | int) -> UnlockOutcome:
        return await self.unlocks.unlock(user_id, content_id)

    async def endings(self, user_id: str, story_id: str) -> list[EndingSummary]:
        endings = await self.saves.endings(user_id, story_id, self.available_endings(story_id))
        logger.info(
            "Returning %d endings for story %s (%d discovered)",
            len(endings), story_id, sum(1 for e in endings if e.discovered),
        )
        return endings

    async def completion_stats(self, user_id: str, story_id: str) -> CompletionStats:
        return await self.saves.completion_stats(
            user_id, story_id, len(self.available_endings(story_id)),
        )
