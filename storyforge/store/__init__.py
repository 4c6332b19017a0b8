"""SQLite-backed persistence for saves, gems and unlocks.

Tables (see schema.py):
  story_saves          one row per (story_id, save_slot, user_id), conversation as JSON
  ledger_accounts      balance snapshot per user
  ledger_transactions  append-only gem audit trail
  unlock_records       permanent content grants

All access goes through Database: one short-lived aiosqlite connection per
operation, BEGIN IMMEDIATE for anything that writes more than one row.
"""

from .core import Clock, Database, to_db_time, utcnow
from .ledger import Ledger
from .saves import SaveStore
from .unlocks import UnlockGate

__all__ = ["Clock", "Database", "Ledger", "SaveStore", "UnlockGate", "to_db_time", "utcnow"]
