"""
Checkbook

A personal double-entry ledger: named accounts holding debit and credit
entries, cached balances kept consistent with persisted entries, and
all-or-nothing transfers between accounts.
"""

from .accounts import Account
from .entries import Entry, EntryKind, build_entry
from .errors import (
    CheckbookError, ConsistencyError, RollbackError, StorageError,
    UnknownAccountError, ValidationError
)
from .ledger import Checkbook
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface, create_storage

__version__ = "1.0.0"

__all__ = [
    "Account",
    "Checkbook",
    "CheckbookError",
    "ConsistencyError",
    "Entry",
    "EntryKind",
    "InMemoryStorage",
    "RollbackError",
    "SQLiteStorage",
    "StorageError",
    "StorageInterface",
    "UnknownAccountError",
    "ValidationError",
    "build_entry",
    "create_storage",
]
