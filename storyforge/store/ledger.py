"""Gem ledger — balance snapshot per user plus an append-only transaction log.

Balances only change through award() and spend(), each a single
transaction that updates ledger_accounts and appends to
ledger_transactions. The spend balance check is part of the UPDATE itself
(``WHERE balance >= ?``), never a separate read.

Whether award() may create a missing account is an explicit policy
(``create_if_missing``). By default accounts must be provisioned first
with open_account().
"""

from __future__ import annotations

import logging

import aiosqlite

from storyforge.errors import NotFoundError, StoreError, ValidationError
from storyforge.models import LedgerAccount, LedgerOutcome, LedgerTransaction, TransactionKind
from storyforge.store.core import Clock, Database, to_db_time, utcnow

logger = logging.getLogger(__name__)

UNLOCK_SOURCE = "unlock_content"
OPENING_SOURCE = "account_opened"


def _check_user(user_id: str) -> None:
    if not user_id or not user_id.strip():
        raise ValidationError("user_id cannot be blank")


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"Gem amount must be a positive integer, got {amount!r}")


class Ledger:
    def __init__(
        self,
        db: Database,
        *,
        create_if_missing: bool = False,
        clock: Clock = utcnow,
    ) -> None:
        self._db = db
        self.create_if_missing = create_if_missing
        self._clock = clock

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def open_account(self, user_id: str, starting_balance: int = 0) -> LedgerAccount:
        """Provision an account. No-op (returns the existing one) if it exists.

        A non-zero starting balance is booked as an ``earn`` transaction so
        the audit trail explains every gem.
        """
        _check_user(user_id)
        if isinstance(starting_balance, bool) or not isinstance(starting_balance, int) or starting_balance < 0:
            raise ValidationError(f"Starting balance must be a non-negative integer, got {starting_balance!r}")
        now = to_db_time(self._clock())

        async with self._db.transaction() as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO ledger_accounts
                    (user_id, balance, total_earned, total_spent, last_updated, created_at)
                VALUES (?, 0, 0, 0, ?, ?)
                """,
                (user_id, now, now),
            )
            if cursor.rowcount == 1:
                if starting_balance > 0:
                    await self._credit(db, user_id, starting_balance, now)
                    await self._append(db, user_id, starting_balance, "earn", OPENING_SOURCE, None, None, now)
                logger.info("Opened ledger account for %s with %d gems", user_id, starting_balance)
            account = await self._account_in(db, user_id)
        if account is None:
            raise StoreError(f"Ledger account for {user_id!r} missing after open")
        return account

    async def get_account(self, user_id: str) -> LedgerAccount:
        async with self._db.connect() as db:
            account = await self._account_in(db, user_id)
        if account is None:
            raise NotFoundError(f"No ledger account for user {user_id!r}")
        return account

    async def get_balance(self, user_id: str) -> int:
        """Current balance, or 0 when the user has no account."""
        async with self._db.connect() as db:
            balance = await self.balance_within(db, user_id)
        return balance or 0

    async def get_transaction_history(self, user_id: str, limit: int = 50) -> list[LedgerTransaction]:
        """Most recent transactions first."""
        if limit <= 0:
            raise ValidationError(f"limit must be positive, got {limit}")
        async with self._db.connect() as db:
            async with db.execute(
                """
                SELECT id, user_id, amount, kind, source, story_id, content_id, timestamp
                FROM ledger_transactions
                WHERE user_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
                """,
                (user_id, int(limit)),
            ) as cursor:
                rows = await cursor.fetchall()
        return [LedgerTransaction.model_validate(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Award / spend
    # ------------------------------------------------------------------

    async def award(
        self,
        user_id: str,
        amount: int,
        source: str,
        story_id: str | None = None,
    ) -> LedgerOutcome:
        """Credit gems and log an ``earn`` transaction, atomically."""
        _check_user(user_id)
        _check_amount(amount)
        if not source or not source.strip():
            raise ValidationError("Award source cannot be blank")
        now = to_db_time(self._clock())

        async with self._db.transaction() as db:
            if not await self._credit(db, user_id, amount, now):
                if not self.create_if_missing:
                    logger.warning("Award of %d gems rejected: no ledger account for %s", amount, user_id)
                    return LedgerOutcome(ok=False, reason="account_missing", user_id=user_id, amount=amount)
                await db.execute(
                    """
                    INSERT INTO ledger_accounts
                        (user_id, balance, total_earned, total_spent, last_updated, created_at)
                    VALUES (?, ?, ?, 0, ?, ?)
                    """,
                    (user_id, amount, amount, now, now),
                )
                logger.info("Created ledger account for %s on first award", user_id)
            txn = await self._append(db, user_id, amount, "earn", source, story_id, None, now)
            balance = await self.balance_within(db, user_id)

        logger.info("Awarded %d gems to %s (source: %s)", amount, user_id, source)
        return LedgerOutcome(
            ok=True, reason="ok", user_id=user_id, amount=amount,
            balance=balance or 0, transaction=txn,
        )

    async def spend(
        self,
        user_id: str,
        amount: int,
        content_id: str | int,
        source: str = UNLOCK_SOURCE,
        story_id: str | None = None,
    ) -> LedgerOutcome:
        """Debit gems if the balance covers it; otherwise change nothing."""
        _check_user(user_id)
        _check_amount(amount)
        now = to_db_time(self._clock())

        async with self._db.transaction() as db:
            outcome = await self.spend_within(
                db, user_id, amount, str(content_id), source=source, story_id=story_id, now=now,
            )
        return outcome

    async def spend_within(
        self,
        db: aiosqlite.Connection,
        user_id: str,
        amount: int,
        content_id: str,
        *,
        source: str = UNLOCK_SOURCE,
        story_id: str | None = None,
        now: str,
    ) -> LedgerOutcome:
        """Conditional debit inside a transaction the caller already holds."""
        cursor = await db.execute(
            """
            UPDATE ledger_accounts
            SET balance = balance - ?,
                total_spent = total_spent + ?,
                last_updated = ?
            WHERE user_id = ? AND balance >= ?
            """,
            (amount, amount, now, user_id, amount),
        )
        if cursor.rowcount == 0:
            balance = await self.balance_within(db, user_id)
            if balance is None:
                logger.warning("Spend of %d gems rejected: no ledger account for %s", amount, user_id)
                return LedgerOutcome(ok=False, reason="account_missing", user_id=user_id, amount=amount)
            logger.warning(
                "User %s has insufficient gems (has: %d, needs: %d)", user_id, balance, amount,
            )
            return LedgerOutcome(
                ok=False, reason="insufficient_balance", user_id=user_id,
                amount=amount, balance=balance,
            )

        txn = await self._append(db, user_id, amount, "spend", source, story_id, content_id, now)
        balance = await self.balance_within(db, user_id)
        logger.info("User %s spent %d gems (new balance: %s)", user_id, amount, balance)
        return LedgerOutcome(
            ok=True, reason="ok", user_id=user_id, amount=amount,
            balance=balance or 0, transaction=txn,
        )

    # ------------------------------------------------------------------
    # Row helpers (run on the caller's connection)
    # ------------------------------------------------------------------

    @staticmethod
    async def _credit(db: aiosqlite.Connection, user_id: str, amount: int, now: str) -> bool:
        cursor = await db.execute(
            """
            UPDATE ledger_accounts
            SET balance = balance + ?,
                total_earned = total_earned + ?,
                last_updated = ?
            WHERE user_id = ?
            """,
            (amount, amount, now, user_id),
        )
        return cursor.rowcount > 0

    @staticmethod
    async def _append(
        db: aiosqlite.Connection,
        user_id: str,
        amount: int,
        kind: TransactionKind,
        source: str,
        story_id: str | None,
        content_id: str | None,
        now: str,
    ) -> LedgerTransaction:
        cursor = await db.execute(
            """
            INSERT INTO ledger_transactions
                (user_id, amount, kind, source, story_id, content_id, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, amount, kind, source, story_id, content_id, now),
        )
        return LedgerTransaction(
            id=int(cursor.lastrowid),
            user_id=user_id,
            amount=amount,
            kind=kind,
            source=source,
            story_id=story_id,
            content_id=content_id,
            timestamp=now,
        )

    @staticmethod
    async def balance_within(db: aiosqlite.Connection, user_id: str) -> int | None:
        async with db.execute(
            "SELECT balance FROM ledger_accounts WHERE user_id = ?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return int(row["balance"]) if row is not None else None

    @staticmethod
    async def _account_in(db: aiosqlite.Connection, user_id: str) -> LedgerAccount | None:
        async with db.execute(
            """
            SELECT user_id, balance, total_earned, total_spent, last_updated, created_at
            FROM ledger_accounts
            WHERE user_id = ?
            """,
            (user_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return LedgerAccount.model_validate(dict(row)) if row is not None else None
