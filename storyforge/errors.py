"""Error taxonomy shared by every storyforge component.

Each error carries a stable ``kind`` string so an outer layer (an HTTP
controller, the dev launcher) can tell the failure classes apart without
matching on messages:

    validation    — bad input, rejected before any mutation
    not_found     — missing character, content, save, account or session
    conflict      — duplicate unlock, save-slot race
    precondition  — insufficient balance, ledger account missing
    transient     — I/O failure talking to the store or the text generator
"""

from __future__ import annotations


class StoryforgeError(Exception):
    """Base class for all storyforge errors."""

    kind = "error"


class ValidationError(StoryforgeError):
    kind = "validation"


class ParseError(ValidationError):
    """Raised when serialized conversation state cannot be decoded."""

    kind = "parse"


class NotFoundError(StoryforgeError):
    kind = "not_found"


class ConflictError(StoryforgeError):
    kind = "conflict"


class AlreadyUnlockedError(ConflictError):
    kind = "already_unlocked"


class PreconditionError(StoryforgeError):
    kind = "precondition"


class AccountMissingError(PreconditionError):
    kind = "account_missing"


class InsufficientBalanceError(PreconditionError):
    kind = "insufficient_balance"


class TransientError(StoryforgeError):
    kind = "transient"


class StoreError(TransientError):
    """Raised when the relational store cannot complete an operation."""

    kind = "store"
