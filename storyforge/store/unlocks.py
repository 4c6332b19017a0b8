"""Content unlocks — spend gems, record a permanent grant.

unlock() resolves the price from the content catalog, then does the
existence check, the conditional spend and the unlock_records insert in
one transaction. Either all three land or none do, so a failed insert can
never leave gems spent without an unlock.
"""

from __future__ import annotations

import logging

import aiosqlite

from storyforge.catalog import ContentCatalog
from storyforge.errors import NotFoundError, StoreError, ValidationError
from storyforge.models import UnlockOutcome, UnlockRecord
from storyforge.store.core import Clock, Database, to_db_time, utcnow
from storyforge.store.ledger import UNLOCK_SOURCE, Ledger

logger = logging.getLogger(__name__)


class UnlockGate:
    def __init__(
        self,
        db: Database,
        ledger: Ledger,
        content: ContentCatalog,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._content = content
        self._clock = clock

    async def unlock(self, user_id: str, content_id: str | int) -> UnlockOutcome:
        """Unlock content for a user, spending its cost exactly once.

        Already unlocked → ok=False, reason "already_unlocked", nothing spent.
        Unknown content → NotFoundError.
        """
        if not user_id or not user_id.strip():
            raise ValidationError("user_id cannot be blank")
        content_id = str(content_id)
        item = self._content.get_content(content_id)
        now = to_db_time(self._clock())

        try:
            async with self._db.transaction() as db:
                if await self._record_in(db, user_id, content_id) is not None:
                    logger.warning("Content %s already unlocked for user %s", content_id, user_id)
                    return await self._already_unlocked(db, user_id, content_id, item.unlock_cost)

                balance = None
                if item.unlock_cost > 0:
                    spent = await self._ledger.spend_within(
                        db, user_id, item.unlock_cost, content_id,
                        source=UNLOCK_SOURCE, story_id=item.story_id, now=now,
                    )
                    if not spent:
                        return UnlockOutcome(
                            ok=False, reason=spent.reason, user_id=user_id,
                            content_id=content_id, cost=item.unlock_cost, balance=spent.balance,
                        )
                    balance = spent.balance

                await db.execute(
                    """
                    INSERT INTO unlock_records (user_id, content_id, story_id, unlocked_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (user_id, content_id, item.story_id, now),
                )
                if balance is None:
                    balance = await self._ledger.balance_within(db, user_id) or 0
        except aiosqlite.IntegrityError as e:
            # spend rolled back; a duplicate only if a concurrent unlock's record exists
            async with self._db.connect() as db:
                outcome = await self._already_unlocked(db, user_id, content_id, item.unlock_cost)
            if outcome.record is None:
                raise StoreError(f"Could not record unlock of {content_id!r} for user {user_id!r}: {e}") from e
            logger.warning("Concurrent unlock of %s for user %s", content_id, user_id)
            return outcome

        record = UnlockRecord(user_id=user_id, content_id=content_id, story_id=item.story_id, unlocked_at=now)
        logger.info(
            "User %s unlocked content: %s (%s) for story %s",
            user_id, item.title, content_id, item.story_id,
        )
        return UnlockOutcome(
            ok=True, reason="unlocked", user_id=user_id, content_id=content_id,
            cost=item.unlock_cost, balance=balance, record=record,
        )

    async def is_unlocked(self, user_id: str, content_id: str | int) -> bool:
        async with self._db.connect() as db:
            return await self._record_in(db, user_id, str(content_id)) is not None

    async def get_record(self, user_id: str, content_id: str | int) -> UnlockRecord:
        async with self._db.connect() as db:
            record = await self._record_in(db, user_id, str(content_id))
        if record is None:
            raise NotFoundError(f"Content {content_id!r} is not unlocked for user {user_id!r}")
        return record

    async def list_unlocked(self, user_id: str, story_id: str | None = None) -> list[str]:
        """Content ids the user has unlocked, oldest first."""
        sql = "SELECT content_id FROM unlock_records WHERE user_id = ?"
        params: tuple = (user_id,)
        if story_id:
            sql += " AND story_id = ?"
            params = (user_id, story_id)
        sql += " ORDER BY unlocked_at ASC, rowid ASC"

        async with self._db.connect() as db:
            async with db.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        return [r["content_id"] for r in rows]

    # ------------------------------------------------------------------

    async def _already_unlocked(
        self, db: aiosqlite.Connection, user_id: str, content_id: str, cost: int,
    ) -> UnlockOutcome:
        record = await self._record_in(db, user_id, content_id)
        balance = await self._ledger.balance_within(db, user_id)
        return UnlockOutcome(
            ok=False, reason="already_unlocked", user_id=user_id, content_id=content_id,
            cost=cost, balance=balance or 0, record=record,
        )

    @staticmethod
    async def _record_in(db: aiosqlite.Connection, user_id: str, content_id: str) -> UnlockRecord | None:
        async with db.execute(
            """
            SELECT user_id, content_id, story_id, unlocked_at
            FROM unlock_records
            WHERE user_id = ? AND content_id = ?
            """,
            (user_id, content_id),
        ) as cursor:
            row = await cursor.fetchone()
        return UnlockRecord.model_validate(dict(row)) if row is not None else None
