"""Multi-slot story saves.

One row per (story_id, save_slot, user_id). save_or_update() is a single
``INSERT … ON CONFLICT DO UPDATE`` statement, so two racing saves to the
same slot end up as one row with the later content. The update branch
only touches the conversation, counters, speaker and last_played_at:
created_at and the completion columns are never reset by a save.

Completion is one-way. mark_completed() sets is_completed, keeps the first
ending_id reached on that slot and refreshes the timestamps.
"""

from __future__ import annotations

import logging
from datetime import datetime

import aiosqlite

from storyforge.conversation import ConversationState
from storyforge.errors import NotFoundError, StoreError, ValidationError
from storyforge.models import CompletionStats, EndingSummary, SaveSlot
from storyforge.store.core import Clock, Database, to_db_time, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_SLOTS = 5
HIDDEN_TITLE = "???"
HIDDEN_DESCRIPTION = "Undiscovered ending"

_INFO_COLUMNS = """
    story_id, save_slot AS slot, user_id, current_speaker, created_at,
    last_played_at, message_count, choice_count, is_completed, ending_id,
    completed_at
"""

_UPSERT_SQL = """
INSERT INTO story_saves (
    story_id, save_slot, user_id, current_speaker,
    message_count, choice_count, conversation_json,
    created_at, last_played_at
) VALUES (
    :story_id, :slot, :user_id, :speaker,
    :message_count, COALESCE(:choice_count, 0), :payload,
    :now, :now
)
ON CONFLICT (story_id, save_slot, user_id) DO UPDATE SET
    conversation_json = excluded.conversation_json,
    message_count = excluded.message_count,
    choice_count = COALESCE(:choice_count, story_saves.choice_count),
    current_speaker = excluded.current_speaker,
    last_played_at = excluded.last_played_at
"""


class SaveStore:
    def __init__(
        self,
        db: Database,
        *,
        max_slots: int = DEFAULT_MAX_SLOTS,
        clock: Clock = utcnow,
    ) -> None:
        self._db = db
        self.max_slots = max_slots
        self._clock = clock

    def validate_key(self, story_id: str, slot: int, user_id: str) -> None:
        """Raise ValidationError for a blank id or an out-of-range slot."""
        if not story_id or not story_id.strip():
            raise ValidationError("story_id cannot be blank")
        if not user_id or not user_id.strip():
            raise ValidationError("user_id cannot be blank")
        if isinstance(slot, bool) or not isinstance(slot, int) or not 1 <= slot <= self.max_slots:
            raise ValidationError(f"Save slot must be between 1 and {self.max_slots}, got {slot!r}")

    # ------------------------------------------------------------------
    # Save / load
    # ------------------------------------------------------------------

    async def save_or_update(
        self,
        story_id: str,
        slot: int,
        user_id: str,
        state: ConversationState,
        current_speaker: str | None = None,
        *,
        choice_count: int | None = None,
    ) -> SaveSlot:
        """Insert the slot or overwrite its content. Returns the stored metadata.

        ``choice_count`` None keeps the stored count (0 on insert).
        """
        self.validate_key(story_id, slot, user_id)
        if state is None:
            raise ValidationError("Cannot save: conversation state is None")
        if choice_count is not None and choice_count < 0:
            raise ValidationError(f"choice_count cannot be negative, got {choice_count}")

        params = {
            "story_id": story_id,
            "slot": slot,
            "user_id": user_id,
            "speaker": current_speaker,
            "message_count": state.message_count(),
            "choice_count": choice_count,
            "payload": state.serialize(),
            "now": to_db_time(self._clock()),
        }
        async with self._db.transaction() as db:
            await db.execute(_UPSERT_SQL, params)
            info = await self._info_in(db, story_id, slot, user_id)
        if info is None:
            raise StoreError(f"Save {story_id!r} slot {slot} (user {user_id!r}) missing after write")

        logger.info(
            "Saved %s (slot %d, user %s, %d messages)",
            story_id, slot, user_id, info.message_count,
        )
        return info

    async def load(self, story_id: str, slot: int, user_id: str) -> ConversationState:
        _, state = await self.load_with_info(story_id, slot, user_id)
        return state

    async def load_with_info(
        self, story_id: str, slot: int, user_id: str,
    ) -> tuple[SaveSlot, ConversationState]:
        """Load a slot's metadata and conversation in one read.

        Raises NotFoundError if the slot is empty and ParseError if the
        stored conversation is corrupt.
        """
        self.validate_key(story_id, slot, user_id)
        async with self._db.connect() as db:
            async with db.execute(
                f"""
                SELECT {_INFO_COLUMNS}, conversation_json
                FROM story_saves
                WHERE story_id = ? AND save_slot = ? AND user_id = ?
                """,
                (story_id, slot, user_id),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"No save for {story_id!r} slot {slot} (user {user_id!r})")

        data = dict(row)
        state = ConversationState.deserialize(data.pop("conversation_json"))
        info = SaveSlot.model_validate(data)
        logger.info(
            "Loaded %s (slot %d, %d messages, speaker: %s)",
            story_id, slot, state.message_count(), info.current_speaker,
        )
        return info, state

    async def exists(self, story_id: str, slot: int, user_id: str) -> bool:
        self.validate_key(story_id, slot, user_id)
        async with self._db.connect() as db:
            async with db.execute(
                "SELECT 1 FROM story_saves WHERE story_id = ? AND save_slot = ? AND user_id = ?",
                (story_id, slot, user_id),
            ) as cursor:
                return await cursor.fetchone() is not None

    async def get_info(self, story_id: str, slot: int, user_id: str) -> SaveSlot:
        self.validate_key(story_id, slot, user_id)
        async with self._db.connect() as db:
            info = await self._info_in(db, story_id, slot, user_id)
        if info is None:
            raise NotFoundError(f"No save for {story_id!r} slot {slot} (user {user_id!r})")
        return info

    # ------------------------------------------------------------------
    # Completion / delete
    # ------------------------------------------------------------------

    async def mark_completed(self, story_id: str, slot: int, user_id: str, ending_id: str) -> SaveSlot:
        self.validate_key(story_id, slot, user_id)
        if not ending_id or not ending_id.strip():
            raise ValidationError("ending_id cannot be blank")
        now = to_db_time(self._clock())

        async with self._db.transaction() as db:
            cursor = await db.execute(
                """
                UPDATE story_saves
                SET is_completed = 1,
                    ending_id = COALESCE(ending_id, ?),
                    completed_at = ?,
                    last_played_at = ?
                WHERE story_id = ? AND save_slot = ? AND user_id = ?
                """,
                (ending_id, now, now, story_id, slot, user_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"No save for {story_id!r} slot {slot} (user {user_id!r})")
            info = await self._info_in(db, story_id, slot, user_id)
        if info is None:
            raise StoreError(f"Save {story_id!r} slot {slot} (user {user_id!r}) missing after completion")

        logger.info("Story marked as completed: %s slot %d (ending: %s)", story_id, slot, info.ending_id)
        return info

    async def delete(self, story_id: str, slot: int, user_id: str) -> None:
        self.validate_key(story_id, slot, user_id)
        async with self._db.transaction() as db:
            cursor = await db.execute(
                "DELETE FROM story_saves WHERE story_id = ? AND save_slot = ? AND user_id = ?",
                (story_id, slot, user_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"No save for {story_id!r} slot {slot} (user {user_id!r})")
        logger.info("Deleted save: %s slot %d (user %s)", story_id, slot, user_id)

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def list_for_user(self, user_id: str) -> list[SaveSlot]:
        """All of a user's saves, most recently played first."""
        async with self._db.connect() as db:
            async with db.execute(
                f"""
                SELECT {_INFO_COLUMNS}
                FROM story_saves
                WHERE user_id = ?
                ORDER BY last_played_at DESC, id DESC
                """,
                (user_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [SaveSlot.model_validate(dict(r)) for r in rows]

    async def list_for_story(self, user_id: str, story_id: str) -> list[SaveSlot]:
        """A user's saves for one story, by slot number."""
        async with self._db.connect() as db:
            async with db.execute(
                f"""
                SELECT {_INFO_COLUMNS}
                FROM story_saves
                WHERE user_id = ? AND story_id = ?
                ORDER BY save_slot ASC
                """,
                (user_id, story_id),
            ) as cursor:
                rows = await cursor.fetchall()
        return [SaveSlot.model_validate(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Endings
    # ------------------------------------------------------------------

    async def discovered_endings(self, user_id: str, story_id: str) -> dict[str, str]:
        """ending_id → first completion time, across all of the user's slots."""
        async with self._db.connect() as db:
            async with db.execute(
                """
                SELECT ending_id, MIN(completed_at) AS first_completed_at
                FROM story_saves
                WHERE user_id = ? AND story_id = ? AND is_completed = 1 AND ending_id IS NOT NULL
                GROUP BY ending_id
                """,
                (user_id, story_id),
            ) as cursor:
                rows = await cursor.fetchall()
        return {r["ending_id"]: r["first_completed_at"] for r in rows}

    async def endings(
        self, user_id: str, story_id: str, available: list[EndingSummary],
    ) -> list[EndingSummary]:
        """Mark which of ``available`` the user has reached; hide the rest."""
        found = await self.discovered_endings(user_id, story_id)
        result = []
        for ending in available:
            if ending.id in found:
                result.append(ending.model_copy(update={
                    "discovered": True,
                    "discovered_at": datetime.fromisoformat(found[ending.id]),
                }))
            else:
                result.append(EndingSummary(
                    id=ending.id, title=HIDDEN_TITLE, description=HIDDEN_DESCRIPTION,
                ))
        return result

    async def completion_stats(self, user_id: str, story_id: str, total_endings: int) -> CompletionStats:
        saves = await self.list_for_story(user_id, story_id)
        completed = [s for s in saves if s.is_completed]
        unique_endings = {s.ending_id for s in completed if s.ending_id}
        percentage = min(100.0, len(unique_endings) * 100.0 / total_endings) if total_endings > 0 else 0.0
        return CompletionStats(
            story_id=story_id,
            total_saves=len(saves),
            completed_saves=len(completed),
            endings_discovered=len(unique_endings),
            total_endings=total_endings,
            completion_percentage=round(percentage, 1),
        )

    # ------------------------------------------------------------------

    @staticmethod
    async def _info_in(
        db: aiosqlite.Connection, story_id: str, slot: int, user_id: str,
    ) -> SaveSlot | None:
        async with db.execute(
            f"""
            SELECT {_INFO_COLUMNS}
            FROM story_saves
            WHERE story_id = ? AND save_slot = ? AND user_id = ?
            """,
            (story_id, slot, user_id),
        ) as cursor:
            row = await cursor.fetchone()
        return SaveSlot.model_validate(dict(row)) if row is not None else None
