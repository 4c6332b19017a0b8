"""DDL for the four tables the core reads and writes.

Invariants the database enforces on its own, so no application bug can
break them:

  story_saves          UNIQUE (story_id, save_slot, user_id)
  ledger_accounts      balance >= 0, balance = total_earned - total_spent
  ledger_transactions  amount > 0, kind in (earn, spend), append-only (triggers)
  unlock_records       PRIMARY KEY (user_id, content_id)
"""

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS story_saves (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    story_id TEXT NOT NULL,
    save_slot INTEGER NOT NULL CHECK (save_slot >= 1),
    user_id TEXT NOT NULL,
    current_speaker TEXT,
    message_count INTEGER NOT NULL DEFAULT 0,
    choice_count INTEGER NOT NULL DEFAULT 0,
    conversation_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_played_at TEXT NOT NULL,
    is_completed INTEGER NOT NULL DEFAULT 0,
    ending_id TEXT,
    completed_at TEXT,
    UNIQUE (story_id, save_slot, user_id)
);

CREATE INDEX IF NOT EXISTS idx_story_saves_user
ON story_saves(user_id, last_played_at DESC);

CREATE TABLE IF NOT EXISTS ledger_accounts (
    user_id TEXT PRIMARY KEY,
    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
    total_earned INTEGER NOT NULL DEFAULT 0,
    total_spent INTEGER NOT NULL DEFAULT 0,
    last_updated TEXT NOT NULL,
    created_at TEXT NOT NULL,
    CHECK (balance = total_earned - total_spent)
);

CREATE TABLE IF NOT EXISTS ledger_transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES ledger_accounts(user_id),
    amount INTEGER NOT NULL CHECK (amount > 0),
    kind TEXT NOT NULL CHECK (kind IN ('earn', 'spend')),
    source TEXT NOT NULL,
    story_id TEXT,
    content_id TEXT,
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ledger_transactions_user
ON ledger_transactions(user_id, timestamp DESC);

CREATE TRIGGER IF NOT EXISTS ledger_transactions_no_update
BEFORE UPDATE ON ledger_transactions
BEGIN
    SELECT RAISE(ABORT, 'ledger_transactions is append-only');
END;

CREATE TRIGGER IF NOT EXISTS ledger_transactions_no_delete
BEFORE DELETE ON ledger_transactions
BEGIN
    SELECT RAISE(ABORT, 'ledger_transactions is append-only');
END;

CREATE TABLE IF NOT EXISTS unlock_records (
    user_id TEXT NOT NULL,
    content_id TEXT NOT NULL,
    story_id TEXT NOT NULL,
    unlocked_at TEXT NOT NULL,
    PRIMARY KEY (user_id, content_id)
);
"""
